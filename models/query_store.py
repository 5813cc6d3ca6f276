from sqlalchemy import Column, String, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime
from models.base import Base


class QueryStoreEntry(Base):
    """
    Cached SQL and metadata for one (dataset, revision, data options) request.

    Design:
    - id is a short random token handed to consumers
    - hash is the sha256 of the request and the idempotence key; the unique
      index is what guarantees one entry per request under concurrency
    - query maps each supported locale to its generated base query
    """
    __tablename__ = "query_store"

    id = Column(String(32), primary_key=True)
    hash = Column(String(64), nullable=False)

    dataset_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    revision_id = Column(UUID(as_uuid=True), nullable=False, index=True)

    request_object = Column(JSONB, nullable=False)
    query = Column(JSONB, nullable=False)  # {locale: sql}
    total_lines = Column(Integer, nullable=False)
    column_mapping = Column(JSONB, nullable=False)  # [{fact_table_column, dimension_name, language}]

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_query_store_hash", "hash", unique=True),
    )
