from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, Integer, Text, Index, Boolean
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime
import uuid
from models.base import Base, SyncStage, SyncStatus


class SyncRun(Base):
    """
    Tracks metadata for each pipeline invocation.

    Purpose:
    - Audit trail of all sync runs
    - Error tracking and debugging
    - Counter history for comparing runs
    """
    __tablename__ = "sync_runs"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    run_id = Column(UUID(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False, index=True)
    session_id = Column(String(64), nullable=True, index=True)

    # Run metadata
    stage = Column(Enum(SyncStage), nullable=False, index=True)
    status = Column(Enum(SyncStatus), default=SyncStatus.RUNNING, nullable=False, index=True)
    needs_continue = Column(Boolean, default=False, nullable=False)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    created_count = Column(Integer, default=0)
    updated_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    skipped_count = Column(Integer, default=0)
    processed_count = Column(Integer, default=0)
    total_count = Column(Integer, default=0)

    # Error tracking
    message = Column(Text, nullable=True)
    errors = Column(JSONB, nullable=True)
    warnings = Column(JSONB, nullable=True)

    __table_args__ = (
        Index("idx_sync_run_stage_started", "stage", "started_at"),
    )
