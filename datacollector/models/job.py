"""Job and job event models."""

from sqlalchemy import JSON, Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB

from datacollector.database import Base
from datacollector.schemas.job import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Job(Base):
    """Job is one unit of background work and its lifecycle state."""

    __tablename__ = "jobs"

    job_pk = Column(Integer, primary_key=True, autoincrement=True)  # FIFO tie-break
    id = Column(Uuid, nullable=False, unique=True)
    type = Column(String(50), nullable=False)  # 'collection', 'processing', 'indexing', 'search'
    status = Column(String(20), nullable=False)  # 'pending', 'running', 'completed', 'failed', 'cancelled'
    priority = Column(Integer, nullable=False, default=2)
    progress = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    job_metadata = Column("metadata", JSONType)
    results = Column(JSONType)
    error = Column(Text)
    message = Column(Text)
    stage = Column(Text)
    owner_id = Column(String(255))
    cancel_requested = Column(Boolean, nullable=False, default=False)
    visible_after = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_jobs_queue", "type", "status", "priority", "job_pk"),
        Index("idx_jobs_owner_id", "owner_id"),
        Index("idx_jobs_created_at", "created_at"),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_jobs_progress_range"),
        CheckConstraint("priority >= 1 AND priority <= 4", name="ck_jobs_priority_range"),
    )


class JobEvent(Base):
    """Append-only progress and transition log entry."""

    __tablename__ = "job_events"

    event_pk = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    event = Column(String(20), nullable=False)  # 'created', 'transition', 'progress', 'cancel_requested'
    status = Column(String(20), nullable=False)
    progress = Column(Integer, nullable=False, default=0)
    attempt = Column(Integer, nullable=False, default=0)
    message = Column(Text)
    stage = Column(Text)

    __table_args__ = (Index("idx_job_events_job_id_created_at", "job_id", "created_at"),)
