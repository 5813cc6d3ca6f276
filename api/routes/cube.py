"""
Fact table validation and cube build endpoints
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine
from api.dependencies import get_db, get_cube_engine, get_cube_builder
from schemas.api import CubeBuildInfo
from schemas.source_assignment import SourceAssignment, ColumnDescriptor
from cube.validator import validate_fact_table
from cube.builder import CubeBuilder
from cube.loaders import load_dataset, replace_fact_table_columns, DatasetInclude
from dataclasses import asdict
from typing import List
from uuid import UUID
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Cube"])


@router.put("/datasets/{dataset_id}/fact-table")
async def replace_fact_table(
    dataset_id: UUID,
    columns: List[ColumnDescriptor],
    db: AsyncSession = Depends(get_db)
):
    """Replace the column definitions parsed from a new draft upload"""
    replaced = await replace_fact_table_columns(db, dataset_id, columns)
    return {"dataset_id": str(dataset_id), "columns": [asdict(c) for c in replaced]}


@router.post("/datasets/{dataset_id}/fact-table/validate")
async def validate(
    dataset_id: UUID,
    assignment: SourceAssignment,
    db: AsyncSession = Depends(get_db),
    cube_engine: AsyncEngine = Depends(get_cube_engine)
):
    """
    Materialize and validate the draft revision's fact table.

    Validation failures are returned by the CubeException handler with their
    status, kind and diagnostic rows.
    """
    definitions = await validate_fact_table(db, cube_engine, dataset_id, assignment)
    return {
        "dataset_id": str(dataset_id),
        "valid": True,
        "columns": [
            {"column_name": d.name, "column_index": d.column.column_index, "column_type": d.column_type.value}
            for d in definitions
        ]
    }


@router.post("/datasets/{dataset_id}/revisions/{revision_id}/build", response_model=CubeBuildInfo)
async def build(
    dataset_id: UUID,
    revision_id: UUID,
    db: AsyncSession = Depends(get_db),
    builder: CubeBuilder = Depends(get_cube_builder)
):
    """Build (or rebuild) the cube for a validated revision"""
    dataset = await load_dataset(db, dataset_id, DatasetInclude(fact_table=True, dimension_metadata=True))
    build_log = await builder.build(dataset, revision_id)
    return CubeBuildInfo.model_validate(build_log)
