"""
Explicit loaders for datasets and revisions.

ORM relationships are declared ``lazy="raise"``; callers state up front which
related rows they need via an include shape and get back fully populated,
immutable value objects. Nothing downstream can trigger hidden I/O.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence
from uuid import UUID
from sqlalchemy import select, delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from models.dataset import Dataset, FactTableColumn, DimensionMetadata
from models.revision import Revision
from models.base import FactTableColumnType, RevisionStatus
from schemas.source_assignment import ColumnDescriptor
from core.exceptions import RevisionLockedException, CubeException
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FactTableColumnInfo:
    column_name: str
    column_datatype: str
    column_index: int
    column_type: FactTableColumnType = FactTableColumnType.UNKNOWN


@dataclass(frozen=True)
class DimensionLabel:
    fact_table_column: str
    language: str
    name: str
    lookup_table: Optional[str] = None


@dataclass(frozen=True)
class DataTableInfo:
    id: UUID
    filename: str
    location: str
    mime_type: str = "text/csv"
    delimiter: str = ","


@dataclass(frozen=True)
class RevisionInfo:
    id: UUID
    dataset_id: UUID
    revision_index: int
    status: RevisionStatus
    data_table: Optional[DataTableInfo] = None
    published_at: Optional[datetime] = None


@dataclass(frozen=True)
class DatasetInfo:
    id: UUID
    fact_table: List[FactTableColumnInfo] = field(default_factory=list)
    dimension_metadata: List[DimensionLabel] = field(default_factory=list)
    revisions: List[RevisionInfo] = field(default_factory=list)

    @property
    def draft_revision(self) -> Optional[RevisionInfo]:
        drafts = [r for r in self.revisions if r.status == RevisionStatus.DRAFT]
        return max(drafts, key=lambda r: r.revision_index) if drafts else None

    def labels_for(self, fact_table_column: str) -> List[DimensionLabel]:
        return [m for m in self.dimension_metadata if m.fact_table_column == fact_table_column]


@dataclass(frozen=True)
class DatasetInclude:
    """Which related rows to load alongside a dataset"""
    fact_table: bool = False
    dimension_metadata: bool = False
    revisions: bool = False
    data_tables: bool = False  # Only meaningful with revisions


def _to_revision_info(revision: Revision, with_data_table: bool) -> RevisionInfo:
    data_table = None
    if with_data_table and revision.data_table is not None:
        dt = revision.data_table
        data_table = DataTableInfo(
            id=dt.id,
            filename=dt.filename,
            location=dt.location,
            mime_type=dt.mime_type,
            delimiter=dt.delimiter
        )
    return RevisionInfo(
        id=revision.id,
        dataset_id=revision.dataset_id,
        revision_index=revision.revision_index,
        status=revision.status,
        data_table=data_table,
        published_at=revision.published_at
    )


async def load_dataset(session: AsyncSession, dataset_id: UUID, include: DatasetInclude = DatasetInclude()) -> DatasetInfo:
    """
    Load a dataset and exactly the relations named in ``include``.

    Raises:
        CubeException (404): no dataset with this id
    """
    query = select(Dataset).where(Dataset.id == dataset_id)
    if include.fact_table:
        query = query.options(selectinload(Dataset.fact_table))
    if include.dimension_metadata:
        query = query.options(selectinload(Dataset.dimension_metadata))
    if include.revisions:
        revisions = selectinload(Dataset.revisions)
        if include.data_tables:
            revisions = revisions.selectinload(Revision.data_table)
        query = query.options(revisions)

    result = await session.execute(query)
    dataset = result.scalar_one_or_none()
    if dataset is None:
        raise CubeException("Dataset not found", context={"dataset_id": str(dataset_id)}, status=404)

    fact_table = []
    if include.fact_table:
        fact_table = [
            FactTableColumnInfo(
                column_name=col.column_name,
                column_datatype=col.column_datatype,
                column_index=col.column_index,
                column_type=col.column_type
            )
            for col in sorted(dataset.fact_table, key=lambda c: c.column_index)
        ]

    labels = []
    if include.dimension_metadata:
        labels = [
            DimensionLabel(
                fact_table_column=m.fact_table_column,
                language=m.language,
                name=m.name,
                lookup_table=m.lookup_table
            )
            for m in dataset.dimension_metadata
        ]

    revisions = []
    if include.revisions:
        revisions = [_to_revision_info(r, include.data_tables) for r in dataset.revisions]

    return DatasetInfo(id=dataset.id, fact_table=fact_table, dimension_metadata=labels, revisions=revisions)


async def load_revision(session: AsyncSession, revision_id: UUID, with_data_table: bool = False) -> RevisionInfo:
    """Load a single revision, optionally with its data table"""
    query = select(Revision).where(Revision.id == revision_id)
    if with_data_table:
        query = query.options(selectinload(Revision.data_table))
    result = await session.execute(query)
    revision = result.scalar_one_or_none()
    if revision is None:
        raise CubeException("Revision not found", context={"revision_id": str(revision_id)}, status=404)
    return _to_revision_info(revision, with_data_table)


async def _assert_draft(session: AsyncSession, dataset_id: UUID):
    result = await session.execute(
        select(Revision.status)
        .where(Revision.dataset_id == dataset_id)
        .order_by(Revision.revision_index.desc())
        .limit(1)
    )
    status = result.scalar_one_or_none()
    if status is not None and status not in (RevisionStatus.CREATED, RevisionStatus.DRAFT):
        raise RevisionLockedException(
            "Fact table can only be changed while the revision is a draft",
            context={"dataset_id": str(dataset_id), "revision_status": status.value}
        )


async def replace_fact_table_columns(
    session: AsyncSession,
    dataset_id: UUID,
    columns: Sequence[ColumnDescriptor]
) -> List[FactTableColumnInfo]:
    """
    Replace a dataset's fact table column definitions from a parsed upload.

    Raises:
        RevisionLockedException: the latest revision is approved or published
    """
    await _assert_draft(session, dataset_id)

    await session.execute(delete(FactTableColumn).where(FactTableColumn.dataset_id == dataset_id))
    for descriptor in columns:
        session.add(FactTableColumn(
            dataset_id=dataset_id,
            column_name=descriptor.name,
            column_index=descriptor.index,
            column_datatype=descriptor.inferred_type,
            column_type=FactTableColumnType.UNKNOWN
        ))
    await session.commit()

    logger.info(f"Replaced fact table definition for dataset {dataset_id} ({len(columns)} columns)")
    return [
        FactTableColumnInfo(
            column_name=d.name,
            column_datatype=d.inferred_type,
            column_index=d.index
        )
        for d in sorted(columns, key=lambda d: d.index)
    ]


async def record_column_types(session: AsyncSession, dataset_id: UUID, definitions) -> None:
    """Persist resolved roles (a list of FactTableDefinition) onto the dataset's columns"""
    await _assert_draft(session, dataset_id)
    for definition in definitions:
        await session.execute(
            update(FactTableColumn)
            .where(
                FactTableColumn.dataset_id == dataset_id,
                FactTableColumn.column_name == definition.column.column_name
            )
            .values(column_type=definition.column_type)
        )
    await session.commit()
