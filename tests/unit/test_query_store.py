"""
Unit tests for the query store
"""

import uuid
import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.exc import IntegrityError
from models.query_store import QueryStoreEntry
from schemas.data_options import DataOptions, ColumnOptions, SortBy, DEFAULT_DATA_OPTIONS
from models.base import DataValueType
from cube.query_store import QueryStore, generate_hash, generate_id, ID_ALPHABET
from core.exceptions import QueryStoreException, QueryStoreNotFound
from conftest import make_connection, make_engine, make_session, make_session_maker, scalar_result

DATASET_ID = uuid.UUID("11111111-1111-4111-8111-111111111111")
REVISION_ID = uuid.UUID("22222222-2222-4222-8222-222222222222")
LOCALES = ["en-GB", "cy-GB"]


def store(session=None, conn=None, **kwargs):
    return QueryStore(
        make_session_maker(session or make_session()),
        make_engine(conn or make_connection()),
        locales=LOCALES,
        **kwargs
    )


def stored_entry(total_lines=25):
    return QueryStoreEntry(
        id="abc123def456",
        hash="f" * 64,
        dataset_id=DATASET_ID,
        revision_id=REVISION_ID,
        request_object={},
        query={"en-GB": "SELECT * FROM en", "cy-GB": "SELECT * FROM cy"},
        total_lines=total_lines,
        column_mapping=[]
    )


class TestHashAndId:

    def test_hash_is_deterministic(self):
        first = DataOptions(filters=[{"area": ["A"]}], options=ColumnOptions(use_raw_column_names=True))
        second = DataOptions.model_validate({"options": {"use_raw_column_names": True}, "filters": [{"area": ["A"]}]})

        assert generate_hash(DATASET_ID, REVISION_ID, first) == generate_hash(DATASET_ID, REVISION_ID, second)

    def test_hash_depends_on_revision_and_options(self):
        base = generate_hash(DATASET_ID, REVISION_ID, DEFAULT_DATA_OPTIONS)
        other_revision = generate_hash(DATASET_ID, uuid.uuid4(), DEFAULT_DATA_OPTIONS)
        formatted = generate_hash(
            DATASET_ID, REVISION_ID, DataOptions(options=ColumnOptions(data_value_type=DataValueType.FORMATTED))
        )

        assert len({base, other_revision, formatted}) == 3

    def test_generated_id_alphabet(self):
        entry_id = generate_id(12)

        assert len(entry_id) == 12
        assert set(entry_id) <= set(ID_ALPHABET)


class TestLookups:

    @pytest.mark.asyncio
    async def test_get_by_id_missing(self):
        session = make_session()
        session.execute.return_value = scalar_result(None)

        with pytest.raises(QueryStoreNotFound) as exc_info:
            await store(session).get_by_id("missing")

        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_existing_entry_is_reused(self):
        entry = stored_entry()
        query_store = store()

        with patch.object(query_store, "get_by_hash", AsyncMock(return_value=entry)), \
                patch.object(query_store, "generate", AsyncMock()) as generate:
            result = await query_store.get_by_request(DATASET_ID, REVISION_ID)

        assert result is entry
        generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_miss_generates_with_default_options(self):
        entry = stored_entry()
        query_store = store()

        with patch.object(query_store, "get_by_hash", AsyncMock(return_value=None)), \
                patch.object(query_store, "generate", AsyncMock(return_value=entry)) as generate:
            result = await query_store.get_by_request(DATASET_ID, REVISION_ID)

        assert result is entry
        generate.assert_awaited_once_with(DATASET_ID, REVISION_ID, DEFAULT_DATA_OPTIONS)


class TestGeneration:

    @pytest.mark.asyncio
    async def test_id_collision_retries(self):
        session = make_session()
        session.execute.side_effect = [scalar_result("taken"), scalar_result("taken"), scalar_result(None)]

        entry_id = await store(session).allocate_id(session)

        assert len(entry_id) == 12
        assert session.execute.call_count == 3

    @pytest.mark.asyncio
    async def test_id_allocation_gives_up(self):
        session = make_session()
        session.execute.return_value = scalar_result("taken")

        with pytest.raises(QueryStoreException):
            await store(session, id_attempts=3).allocate_id(session)

        assert session.execute.call_count == 3

    @pytest.mark.asyncio
    async def test_every_locale_gets_a_base_query(self, column_mapping):
        query_store = store()

        with patch("cube.query_store.get_column_mapping", AsyncMock(return_value=column_mapping)), \
                patch("cube.query_store.core_view_chooser", AsyncMock(side_effect=["core_view_mat_en", "core_view_mat_cy"])), \
                patch("cube.query_store.get_columns", AsyncMock(return_value=["*"])), \
                patch("cube.query_store.count_lines", AsyncMock(side_effect=[3, 3])):
            queries, total_lines, mapping = await query_store.build_queries(REVISION_ID, DEFAULT_DATA_OPTIONS)

        assert set(queries) == set(LOCALES)
        assert queries["cy-GB"] == f'SELECT * FROM "{REVISION_ID}"."core_view_mat_cy"'
        assert total_lines == 3
        assert mapping == column_mapping

    @pytest.mark.asyncio
    async def test_locale_count_mismatch_keeps_first(self, column_mapping, caplog):
        query_store = store()

        with patch("cube.query_store.get_column_mapping", AsyncMock(return_value=column_mapping)), \
                patch("cube.query_store.core_view_chooser", AsyncMock(side_effect=["core_view_en", "core_view_cy"])), \
                patch("cube.query_store.get_columns", AsyncMock(return_value=["*"])), \
                patch("cube.query_store.count_lines", AsyncMock(side_effect=[3, 4])):
            _, total_lines, _ = await query_store.build_queries(REVISION_ID, DEFAULT_DATA_OPTIONS)

        assert total_lines == 3
        assert "inconsistent" in caplog.text

    @pytest.mark.asyncio
    async def test_engine_failure_is_wrapped(self):
        query_store = store()

        with patch("cube.query_store.get_column_mapping", AsyncMock(side_effect=RuntimeError("no such schema"))):
            with pytest.raises(QueryStoreException) as exc_info:
                await query_store.build_queries(REVISION_ID, DEFAULT_DATA_OPTIONS)

        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_generate_rereads_stored_entry(self):
        entry = stored_entry()
        session = make_session()
        insert_result = scalar_result(None)
        insert_result.rowcount = 0
        session.execute.side_effect = [scalar_result(None), insert_result, scalar_result(entry)]
        query_store = store(session)

        with patch.object(query_store, "build_queries", AsyncMock(return_value=({"en-GB": "q"}, 1, []))):
            result = await query_store.generate(DATASET_ID, REVISION_ID, DEFAULT_DATA_OPTIONS)

        assert result is entry
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_generate_retries_when_id_taken_concurrently(self):
        entry = stored_entry()
        session = make_session()
        collision = IntegrityError("INSERT", {}, Exception("duplicate key value violates unique constraint \"query_store_pkey\""))
        insert_result = scalar_result(None)
        insert_result.rowcount = 1
        session.execute.side_effect = [
            scalar_result(None), collision, scalar_result(None), insert_result, scalar_result(entry)
        ]
        query_store = store(session)

        with patch.object(query_store, "build_queries", AsyncMock(return_value=({"en-GB": "q"}, 1, []))):
            result = await query_store.generate(DATASET_ID, REVISION_ID, DEFAULT_DATA_OPTIONS)

        assert result is entry
        session.rollback.assert_awaited_once()
        assert session.execute.call_count == 5
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_generate_gives_up_after_repeated_id_collisions(self):
        session = make_session()
        collision = IntegrityError("INSERT", {}, Exception("duplicate key"))
        session.execute.side_effect = [scalar_result(None), collision, scalar_result(None), collision]
        query_store = store(session, id_attempts=2)

        with patch.object(query_store, "build_queries", AsyncMock(return_value=({"en-GB": "q"}, 1, []))):
            with pytest.raises(QueryStoreException) as exc_info:
                await query_store.generate(DATASET_ID, REVISION_ID, DEFAULT_DATA_OPTIONS)

        assert exc_info.value.context["attempts"] == 2
        assert isinstance(exc_info.value.__cause__, IntegrityError)
        assert session.rollback.await_count == 2
        session.commit.assert_not_awaited()


class TestPlayback:

    def test_pages_and_sort(self):
        response = store().build_data_query(
            stored_entry(25), "cy-GB", page_number=2, page_size=10,
            sort=[SortBy(column_name="year", direction="desc"), SortBy(column_name="area")]
        )

        assert response.total_pages == 3
        assert response.query == 'SELECT * FROM (SELECT * FROM cy) AS data ORDER BY "year" DESC, "area" ASC LIMIT 10 OFFSET 10'

    def test_unknown_locale_falls_back(self):
        response = store().build_data_query(stored_entry(), "fr-FR")

        assert response.locale == "en-GB"
        assert response.page_size == 25
        assert response.query.endswith("LIMIT 25 OFFSET 0")

    def test_page_out_of_range(self):
        with pytest.raises(QueryStoreException) as exc_info:
            store().build_data_query(stored_entry(25), "en-GB", page_number=4, page_size=10)

        assert exc_info.value.status == 400

    def test_empty_entry_has_one_page(self):
        response = store().build_data_query(stored_entry(0), "en-GB")

        assert response.total_pages == 1
