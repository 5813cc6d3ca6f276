"""
Unit tests for the fact table materializer
"""

import io
import uuid
import pytest
from cube.loaders import FactTableColumnInfo
from cube.column_roles import FactTableDefinition
from cube.materializer import FactTableMaterializer, PRIMARY_KEY_NAME
from models.base import FactTableColumnType
from core.exceptions import FactTableValidationException, FactTableValidationExceptionType
from conftest import make_connection, make_engine

CSV = "year,area,measure,data,notes,comment\n2015,A,count,10,,first\n2016,B,count,5,x,\n"


class TestCreate:

    def test_create_statement_preserves_order_and_key(self, sample_definitions):
        revision_id = uuid.uuid4()
        materializer = FactTableMaterializer(make_engine(make_connection()))

        ddl = materializer.create_table_statement(revision_id, sample_definitions)

        assert ddl.startswith(f'CREATE TABLE "{revision_id}".fact_table')
        positions = [ddl.index(name) for name in ("year BIGINT", "area VARCHAR", "measure VARCHAR", "data TEXT", "notes VARCHAR")]
        assert positions == sorted(positions)
        assert f"CONSTRAINT {PRIMARY_KEY_NAME} PRIMARY KEY (year, area, measure)" in ddl
        assert "comment" not in ddl

    def test_numeric_data_values_column_is_stored_as_text(self):
        """
        Test: a BIGINT data value column must not reject 'abc' at load time;
        the numeric check reports it instead
        """
        definitions = [
            FactTableDefinition(FactTableColumnInfo("year", "BIGINT", 0), FactTableColumnType.DIMENSION),
            FactTableDefinition(FactTableColumnInfo("value", "DOUBLE", 1), FactTableColumnType.DATA_VALUES),
        ]
        materializer = FactTableMaterializer(make_engine(make_connection()))

        ddl = materializer.create_table_statement(uuid.uuid4(), definitions)

        assert "year BIGINT" in ddl
        assert "value TEXT" in ddl

    def test_unsupported_datatype_fails_creation(self):
        definitions = [
            FactTableDefinition(FactTableColumnInfo("year", "GEOMETRY", 0), FactTableColumnType.DIMENSION)
        ]
        materializer = FactTableMaterializer(make_engine(make_connection()))

        with pytest.raises(FactTableValidationException) as exc_info:
            materializer.fact_table(uuid.uuid4(), definitions)

        assert exc_info.value.kind == FactTableValidationExceptionType.FACT_TABLE_CREATION_FAILED
        assert exc_info.value.status == 500

    @pytest.mark.asyncio
    async def test_create_recreates_schema_and_table(self, sample_definitions):
        conn = make_connection()
        revision_id = uuid.uuid4()

        await FactTableMaterializer(make_engine(conn)).create(revision_id, sample_definitions)

        statements = [call.args[0] for call in conn.exec_driver_sql.call_args_list]
        assert statements[0] == f'CREATE SCHEMA IF NOT EXISTS "{revision_id}"'
        assert statements[1] == f'DROP TABLE IF EXISTS "{revision_id}"."fact_table" CASCADE'
        conn.execute.assert_called_once()

    @pytest.mark.asyncio
    async def test_engine_failure_is_wrapped(self, sample_definitions):
        conn = make_connection()
        conn.execute.side_effect = RuntimeError("type mismatch")

        with pytest.raises(FactTableValidationException) as exc_info:
            await FactTableMaterializer(make_engine(conn)).create(uuid.uuid4(), sample_definitions)

        assert exc_info.value.kind == FactTableValidationExceptionType.FACT_TABLE_CREATION_FAILED
        assert isinstance(exc_info.value.__cause__, RuntimeError)


class TestLoad:

    def test_source_is_read_as_text_with_nulls(self):
        df = FactTableMaterializer.read_source(io.StringIO(CSV))

        assert list(df["year"]) == ["2015", "2016"]
        assert df["notes"][0] is None
        assert df["comment"][1] is None

    @pytest.mark.asyncio
    async def test_load_stages_in_batches_and_relaxes_key(self, sample_definitions):
        conn = make_connection()
        revision_id = uuid.uuid4()
        materializer = FactTableMaterializer(make_engine(conn), batch_size=1)

        loaded = await materializer.load(revision_id, sample_definitions, io.StringIO(CSV))

        assert loaded == 2
        statements = [call.args[0] for call in conn.exec_driver_sql.call_args_list]
        assert any(f'DROP CONSTRAINT IF EXISTS "{PRIMARY_KEY_NAME}"' in s for s in statements)
        assert sum("DROP NOT NULL" in s for s in statements) == 3
        assert statements[-1] == f'DROP TABLE "{revision_id}"."data_table"'

        # create staging + two batches + insert from select
        assert conn.execute.call_count == 4
        first_batch = conn.execute.call_args_list[1].args[1]
        assert first_batch == [{
            "year": "2015", "area": "A", "measure": "count", "data": "10",
            "notes": None, "comment": "first", "line_number": 1
        }]

    @pytest.mark.asyncio
    async def test_missing_source_columns(self, sample_definitions):
        materializer = FactTableMaterializer(make_engine(make_connection()))

        with pytest.raises(FactTableValidationException) as exc_info:
            await materializer.load(uuid.uuid4(), sample_definitions, io.StringIO("year,area\n2015,A\n"))

        assert exc_info.value.context["missing_columns"] == ["measure", "data", "notes"]
        assert exc_info.value.status == 500
