"""
Query store endpoints: create or reuse an entry, look it up, and play it back
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncEngine
from api.dependencies import get_query_store, get_cube_engine
from schemas.api import QueryStoreResponse, DataQueryResponse
from schemas.data_options import DataOptions, SortBy
from cube.query_store import QueryStore
from cube.consumer import get_filters
from core.exceptions import QueryStoreException
from typing import Optional, List
from uuid import UUID
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Query Store"])


def parse_sort(sort_by: Optional[str]) -> List[SortBy]:
    """'year:desc,area' -> [SortBy(year, DESC), SortBy(area, ASC)]"""
    if not sort_by:
        return []
    sorts = []
    for part in sort_by.split(","):
        column_name, _, direction = part.strip().partition(":")
        try:
            sorts.append(SortBy(column_name=column_name, direction=direction or "ASC"))
        except ValueError as e:
            raise QueryStoreException("Invalid sort", context={"sort_by": sort_by}, original_exception=e, status=400)
    return sorts


@router.post(
    "/datasets/{dataset_id}/revisions/{revision_id}/query",
    response_model=QueryStoreResponse
)
async def create_query(
    dataset_id: UUID,
    revision_id: UUID,
    options: Optional[DataOptions] = None,
    store: QueryStore = Depends(get_query_store)
):
    """Return the query store entry for these data options, generating it on first use"""
    logger.info(f"Query store request for dataset {dataset_id}, revision {revision_id}")
    entry = await store.get_by_request(dataset_id, revision_id, options)
    return QueryStoreResponse.model_validate(entry)


@router.get("/query/{query_id}", response_model=QueryStoreResponse)
async def get_query(query_id: str, store: QueryStore = Depends(get_query_store)):
    entry = await store.get_by_id(query_id)
    return QueryStoreResponse.model_validate(entry)


@router.get("/query/{query_id}/data", response_model=DataQueryResponse)
async def get_data_query(
    query_id: str,
    locale: Optional[str] = Query(None, description="Locale, e.g. en-GB"),
    page_number: int = Query(1, ge=1, description="Page number"),
    page_size: Optional[int] = Query(None, ge=1, le=10000, description="Rows per page"),
    sort_by: Optional[str] = Query(None, description="column[:asc|desc], comma separated"),
    store: QueryStore = Depends(get_query_store)
):
    """Paged, sorted SQL over the stored base query"""
    entry = await store.get_by_id(query_id)
    return store.build_data_query(entry, locale, page_number, page_size, parse_sort(sort_by))


@router.get("/revisions/{revision_id}/filters")
async def get_revision_filters(
    revision_id: UUID,
    locale: str = Query("en-GB", description="Locale, e.g. en-GB"),
    cube_engine: AsyncEngine = Depends(get_cube_engine)
):
    """Filterable values per column, nested by hierarchy"""
    async with cube_engine.connect() as conn:
        return await get_filters(conn, str(revision_id), locale)
