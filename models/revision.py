from sqlalchemy import Column, String, Integer, Enum, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from models.base import Base, RevisionStatus


class Revision(Base):
    """
    One versioned state of a dataset.

    Lifecycle: created -> draft -> approved -> published. A draft owns at most
    one pending DataTable; once validated, its fact table lives in the cube
    database schema named after the revision id.
    """
    __tablename__ = "revisions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    dataset_id = Column(UUID(as_uuid=True), ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False, index=True)
    revision_index = Column(Integer, nullable=False, default=1)

    status = Column(Enum(RevisionStatus), nullable=False, default=RevisionStatus.CREATED, index=True)

    data_table_id = Column(UUID(as_uuid=True), ForeignKey("data_tables.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    approved_at = Column(DateTime, nullable=True)
    published_at = Column(DateTime, nullable=True)

    dataset = relationship("Dataset", back_populates="revisions", lazy="raise")
    data_table = relationship("DataTable", lazy="raise")

    __table_args__ = (
        Index("idx_revision_dataset_index", "dataset_id", "revision_index", unique=True),
    )


class DataTable(Base):
    """
    The raw upload for a revision. Only its location and parse hints are
    stored here; the bytes live in the file lake.
    """
    __tablename__ = "data_tables"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    filename = Column(String(500), nullable=False)
    location = Column(String(2048), nullable=False)  # Path or URL readable by pandas
    mime_type = Column(String(100), nullable=False, default="text/csv")
    delimiter = Column(String(5), nullable=False, default=",")
    uploaded_at = Column(DateTime, nullable=False, default=datetime.utcnow)
