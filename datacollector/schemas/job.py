"""Job-related Pydantic schemas and lifecycle definitions."""

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Naive UTC timestamp, the format stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobType(str, Enum):
    """Closed set of job types sharing the lifecycle engine."""

    COLLECTION = "collection"
    PROCESSING = "processing"
    INDEXING = "indexing"
    SEARCH = "search"


class JobStatus(str, Enum):
    """Lifecycle states of a job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobPriority(IntEnum):
    """Queue ordering; higher values are dequeued first."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    URGENT = 4


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# RUNNING -> PENDING is the retry path (re-enqueued after backoff)
JOB_STATE_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.PENDING}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def is_valid_transition(current: JobStatus, new: JobStatus) -> bool:
    """Check a lifecycle transition against the state machine."""
    return new in JOB_STATE_TRANSITIONS[current]


def parse_job_type(value: Any) -> JobType:
    """Parse a job type, raising ValueError for unknown values."""
    if isinstance(value, JobType):
        return value
    try:
        return JobType(str(value).lower())
    except ValueError:
        raise ValueError(f"Unknown job type: {value}")


def parse_priority(value: Any) -> JobPriority:
    """Accept a priority as enum, int or name."""
    if isinstance(value, JobPriority):
        return value
    if isinstance(value, str) and not value.isdigit():
        try:
            return JobPriority[value.upper()]
        except KeyError:
            raise ValueError(f"Unknown priority: {value}")
    return JobPriority(int(value))


class JobRecord(BaseModel):
    """Snapshot of a persisted job."""

    id: UUID = Field(default_factory=uuid4)
    type: JobType
    status: JobStatus = JobStatus.PENDING
    priority: JobPriority = JobPriority.NORMAL
    progress: int = 0
    attempts: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    results: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    message: Optional[str] = None
    stage: Optional[str] = None
    owner_id: Optional[str] = None
    cancel_requested: bool = False
    visible_after: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobEventRecord(BaseModel):
    """Entry of the append-only progress/audit log."""

    model_config = ConfigDict(from_attributes=True)

    job_id: UUID
    created_at: datetime
    event: str
    status: JobStatus
    progress: int
    attempt: int
    message: Optional[str] = None
    stage: Optional[str] = None


class JobFilters(BaseModel):
    """Filters for listing jobs."""

    type: Optional[JobType] = None
    status: Optional[JobStatus] = None
    owner_id: Optional[str] = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class SubmitOptions(BaseModel):
    """Per-submission queue options."""

    delay: float = Field(default=0.0, ge=0)


class SubmissionResult(BaseModel):
    """Response after a job is accepted by a queue."""

    id: UUID
    queue_position: Optional[int] = None
    estimated_start: Optional[datetime] = None


class QueueStats(BaseModel):
    """Counters for one job type's queue."""

    name: JobType
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    paused: bool


class ProcessorStats(BaseModel):
    """Running totals of the processor."""

    total_processed: int = 0
    success_count: int = 0
    failure_count: int = 0
    retry_count: int = 0
    cancelled_count: int = 0
    average_processing_time: float = 0.0  # seconds
    active_jobs: int = 0


class JobCreate(BaseModel):
    """Schema for submitting a job over HTTP."""

    type: JobType
    metadata: Dict[str, Any] = Field(default_factory=dict)
    priority: JobPriority = JobPriority.NORMAL
    id: Optional[UUID] = None
    delay: float = Field(default=0.0, ge=0)

    @field_validator("type", mode="before")
    @classmethod
    def _parse_type(cls, value: Any) -> JobType:
        return parse_job_type(value)

    @field_validator("priority", mode="before")
    @classmethod
    def _parse_priority(cls, value: Any) -> JobPriority:
        return parse_priority(value)


class HealthInfo(BaseModel):
    """Processor health summary."""

    initialized: bool
    registered_job_types: List[JobType]
    queue_stats: List[QueueStats]
    processor_stats: ProcessorStats
