from sqlalchemy import Column, Enum, DateTime, Float, Text, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime
import uuid
from models.base import Base, CubeBuildStatus, CubeBuildType


class BuildLog(Base):
    """
    Tracks one cube build for a revision.

    Purpose:
    - Audit trail of every build attempt
    - Record of the statements each stage executed
    - Which locales' index columns were built
    - Error capture when a stage fails
    """
    __tablename__ = "build_log"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    revision_id = Column(UUID(as_uuid=True), ForeignKey("revisions.id", ondelete="CASCADE"), nullable=True, index=True)

    status = Column(Enum(CubeBuildStatus), nullable=False, default=CubeBuildStatus.QUEUED, index=True)
    type = Column(Enum(CubeBuildType), nullable=False, default=CubeBuildType.FULL_CUBE)

    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # [{"stage": ..., "statements": [...], "index_columns": {locale: [...]}}]
    stages = Column(JSONB, nullable=False, default=list)
    build_script = Column(Text, nullable=True)
    failed_stage = Column(Text, nullable=True)
    errors = Column(JSONB, nullable=True)

    __table_args__ = (
        Index("idx_build_log_revision_started", "revision_id", "started_at"),
    )

    def complete(self, status: CubeBuildStatus, errors=None):
        """Mark the build finished"""
        self.status = status
        self.completed_at = datetime.utcnow()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()
        if errors is not None:
            self.errors = errors
