"""
API endpoint tests
"""

import uuid
import pytest
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi.testclient import TestClient
from api.main import app
from api.dependencies import get_db, get_cube_engine, get_query_store, get_cube_builder
from models.query_store import QueryStoreEntry
from models.build_log import BuildLog
from models.base import CubeBuildStatus, CubeBuildType
from cube.query_store import QueryStore
from cube.loaders import DatasetInfo
from core.exceptions import (
    FactTableValidationException, FactTableValidationExceptionType, QueryStoreNotFound, CubeBuildException
)
from conftest import make_connection, make_engine, make_session, scalars_result, mappings_result

DATASET_ID = uuid.UUID("11111111-1111-4111-8111-111111111111")
REVISION_ID = uuid.UUID("22222222-2222-4222-8222-222222222222")


def stored_entry():
    return QueryStoreEntry(
        id="abc123def456",
        hash="e" * 64,
        dataset_id=DATASET_ID,
        revision_id=REVISION_ID,
        request_object={"filters": []},
        query={"en-GB": "SELECT * FROM en", "cy-GB": "SELECT * FROM cy"},
        total_lines=3,
        column_mapping=[{"fact_table_column": "year", "dimension_name": "Year", "language": "en-gb"}]
    )


@pytest.fixture
def db_session():
    return make_session()


@pytest.fixture
def cube_connection():
    return make_connection()


@pytest.fixture
def query_store():
    fake = MagicMock()
    fake.get_by_request = AsyncMock(return_value=stored_entry())
    fake.get_by_id = AsyncMock(return_value=stored_entry())
    real = QueryStore(MagicMock(), MagicMock(), locales=["en-GB", "cy-GB"])
    fake.build_data_query = real.build_data_query
    return fake


@pytest.fixture
def cube_builder():
    return MagicMock()


@pytest.fixture
def client(db_session, cube_connection, query_store, cube_builder):
    """Create test client with dependency overrides"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cube_engine] = lambda: make_engine(cube_connection)
    app.dependency_overrides[get_query_store] = lambda: query_store
    app.dependency_overrides[get_cube_builder] = lambda: cube_builder

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_health_endpoint_reports_failed_builds(client, db_session):
    """Test health endpoint returns database and build status"""
    failed = BuildLog(
        id=uuid.uuid4(), revision_id=REVISION_ID, status=CubeBuildStatus.FAILED,
        type=CubeBuildType.FULL_CUBE, started_at=datetime(2024, 1, 15, 10, 30), failed_stage="core_view"
    )
    db_session.execute.side_effect = [MagicMock(), scalars_result([failed])]

    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["database_connected"] is True
    assert data["cube_database_connected"] is True
    assert data["failed_builds"] == 1
    assert data["status"] == "degraded"
    assert data["recent_builds"][0]["failed_stage"] == "core_view"
    assert "X-Request-ID" in response.headers


def test_health_endpoint_database_down(client, db_session):
    db_session.execute.side_effect = RuntimeError("connection refused")

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "unhealthy"


def test_request_id_is_propagated(client, db_session):
    db_session.execute.side_effect = [MagicMock(), scalars_result([])]

    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"


def test_create_query(client, query_store):
    response = client.post(
        f"/datasets/{DATASET_ID}/revisions/{REVISION_ID}/query",
        json={"filters": [{"year": ["2015"]}], "options": {"data_value_type": "formatted"}}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["id"] == "abc123def456"
    assert body["query"]["cy-GB"] == "SELECT * FROM cy"
    options = query_store.get_by_request.call_args.args[2]
    assert options.filters == [{"year": ["2015"]}]


def test_create_query_without_body_uses_defaults(client, query_store):
    response = client.post(f"/datasets/{DATASET_ID}/revisions/{REVISION_ID}/query")

    assert response.status_code == 200
    assert query_store.get_by_request.call_args.args[2] is None


def test_missing_query_is_404(client, query_store):
    query_store.get_by_id.side_effect = QueryStoreNotFound("Query store entry not found", context={"id": "nope"})

    response = client.get("/query/nope")

    assert response.status_code == 404
    assert response.json()["error"] == "QueryStoreNotFound"


def test_data_query_playback(client):
    response = client.get("/query/abc123def456/data?locale=cy-GB&page_size=2&page_number=2&sort_by=year:desc")

    assert response.status_code == 200
    body = response.json()
    assert body["total_pages"] == 2
    assert body["query"] == 'SELECT * FROM (SELECT * FROM cy) AS data ORDER BY "year" DESC LIMIT 2 OFFSET 2'


def test_data_query_bad_sort(client):
    response = client.get("/query/abc123def456/data?sort_by=year:sideways")

    assert response.status_code == 400


def test_validation_failure_payload(client):
    error = FactTableValidationException(
        "Duplicate facts found in the data table",
        FactTableValidationExceptionType.DUPLICATE_FACT,
        400,
        headers=[{"name": "line_number", "index": 0, "source_type": "line_number"}],
        data=[[1], [2]]
    )

    with patch("api.routes.cube.validate_fact_table", AsyncMock(side_effect=error)):
        response = client.post(
            f"/datasets/{DATASET_ID}/fact-table/validate",
            json={"dataValues": {"column_name": "data", "column_index": 2, "column_type": "data_values"}}
        )

    assert response.status_code == 400
    body = response.json()
    assert body["kind"] == "duplicate_fact"
    assert body["data"] == [[1], [2]]
    assert body["headers"][0]["name"] == "line_number"


def test_build_failure_is_500(client, cube_builder):
    cube_builder.build = AsyncMock(side_effect=CubeBuildException("Cube build failed at stage core_view"))

    with patch("api.routes.cube.load_dataset", AsyncMock(return_value=DatasetInfo(id=DATASET_ID))):
        response = client.post(f"/datasets/{DATASET_ID}/revisions/{REVISION_ID}/build")

    assert response.status_code == 500
    assert response.json()["error"] == "CubeBuildException"
    assert "kind" not in response.json()


def test_revision_filters(client, cube_connection):
    cube_connection.execute.return_value = mappings_result([
        {"reference": "2015", "language": "en-gb", "fact_table_column": "year", "dimension_name": "Year",
         "description": "2015", "hierarchy": None},
    ])

    response = client.get(f"/revisions/{REVISION_ID}/filters?locale=en-GB")

    assert response.status_code == 200
    assert response.json() == [{
        "fact_table_column": "year",
        "column_name": "Year",
        "values": [{"reference": "2015", "description": "2015"}]
    }]
