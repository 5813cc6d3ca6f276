from sqlalchemy import Column, String, Integer, Enum, DateTime, ForeignKey, Index, PrimaryKeyConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from models.base import Base, FactTableColumnType


class Dataset(Base):
    """
    A dataset owns its fact table column definitions, the per-locale dimension
    metadata used to label the cube, and its revisions.

    Relationships are declared with ``lazy="raise"``: related rows are only
    ever loaded through the explicit loaders in ``cube.loaders``.
    """
    __tablename__ = "datasets"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    fact_table = relationship(
        "FactTableColumn", back_populates="dataset", lazy="raise",
        cascade="all, delete-orphan", order_by="FactTableColumn.column_index"
    )
    dimension_metadata = relationship(
        "DimensionMetadata", back_populates="dataset", lazy="raise", cascade="all, delete-orphan"
    )
    revisions = relationship(
        "Revision", back_populates="dataset", lazy="raise",
        cascade="all, delete-orphan", order_by="Revision.revision_index"
    )


class FactTableColumn(Base):
    """
    One physical column of a dataset's fact table.

    Identity is (dataset_id, column_name). Rows are replaceable while the
    dataset's latest revision is a draft and immutable once it is published.
    """
    __tablename__ = "fact_table_columns"

    dataset_id = Column(UUID(as_uuid=True), ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False)
    column_name = Column(String(255), nullable=False)
    column_type = Column(Enum(FactTableColumnType), nullable=False, default=FactTableColumnType.UNKNOWN)
    column_datatype = Column(String(100), nullable=False)  # Engine-native type, e.g. "BIGINT"
    column_index = Column(Integer, nullable=False)  # Ordinal in the source file

    dataset = relationship("Dataset", back_populates="fact_table", lazy="raise")

    __table_args__ = (
        PrimaryKeyConstraint("dataset_id", "column_name", name="pk_fact_table_columns"),
        Index("idx_fact_table_column_index", "dataset_id", "column_index"),
    )


class DimensionMetadata(Base):
    """
    Per-locale labelling for a dimension or measure column.

    lookup_table, when set, names a table in the cube database's
    ``lookup_tables`` schema with columns
    (reference, language, description, sort_order, hierarchy) and, for the
    measure, (format, decimals).
    """
    __tablename__ = "dimension_metadata"

    dataset_id = Column(UUID(as_uuid=True), ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False)
    fact_table_column = Column(String(255), nullable=False)
    language = Column(String(10), nullable=False)  # Locale, e.g. "en-GB"
    name = Column(String(255), nullable=False)  # Display name in this locale
    lookup_table = Column(String(255), nullable=True)

    dataset = relationship("Dataset", back_populates="dimension_metadata", lazy="raise")

    __table_args__ = (
        PrimaryKeyConstraint("dataset_id", "fact_table_column", "language", name="pk_dimension_metadata"),
    )
