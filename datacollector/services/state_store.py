"""Job state persistence with validated lifecycle transitions.

Every public method runs in its own session and transaction. Mutations are
compare-and-set updates on the current status (and attempt number when the
caller holds execution rights), so concurrent writers never overwrite each
other silently.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from datacollector.database import SessionFactory
from datacollector.errors import ConflictError, IllegalTransitionError, JobNotFoundError, StateStoreError
from datacollector.models.job import Job, JobEvent
from datacollector.schemas.job import (
    TERMINAL_STATUSES,
    JobEventRecord,
    JobFilters,
    JobPriority,
    JobRecord,
    JobStatus,
    JobType,
    is_valid_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

PATCH_FIELDS = frozenset({"results", "error", "message", "stage", "visible_after", "attempts"})


class StateStore:
    """SQLAlchemy-backed store for job records and their event log."""

    def __init__(self, session_factory: SessionFactory):
        """Initialize the store with a session factory."""
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StateStoreError(f"State store operation failed: {e}") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _to_record(row: Job) -> JobRecord:
        return JobRecord(
            id=row.id,
            type=JobType(row.type),
            status=JobStatus(row.status),
            priority=JobPriority(row.priority),
            progress=row.progress,
            attempts=row.attempts,
            metadata=row.job_metadata or {},
            results=row.results,
            error=row.error,
            message=row.message,
            stage=row.stage,
            owner_id=row.owner_id,
            cancel_requested=bool(row.cancel_requested),
            visible_after=row.visible_after,
            created_at=row.created_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _append_event(
        db: Session,
        row: Job,
        event: str,
        message: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> None:
        db.add(
            JobEvent(
                job_id=row.id,
                created_at=utcnow(),
                event=event,
                status=row.status,
                progress=row.progress,
                attempt=row.attempts,
                message=message,
                stage=stage,
            )
        )

    @staticmethod
    def _load(db: Session, job_id: UUID) -> Optional[Job]:
        return db.execute(select(Job).where(Job.id == job_id)).scalar_one_or_none()

    def insert(self, record: JobRecord) -> JobRecord:
        """
        Persist a new job as PENDING.

        Args:
            record: Job to persist; status, progress and attempts are reset

        Returns:
            The stored record

        Raises:
            ConflictError: If a job with the same id exists
        """
        now = utcnow()
        with self._session() as db:
            if self._load(db, record.id) is not None:
                raise ConflictError(f"Job {record.id} already exists")

            row = Job(
                id=record.id,
                type=record.type.value,
                status=JobStatus.PENDING.value,
                priority=int(record.priority),
                progress=0,
                attempts=0,
                job_metadata=record.metadata or {},
                owner_id=record.owner_id,
                cancel_requested=False,
                visible_after=record.visible_after,
                created_at=record.created_at or now,
                updated_at=now,
            )
            db.add(row)
            try:
                db.flush()
            except IntegrityError as e:
                raise ConflictError(f"Job {record.id} already exists") from e

            self._append_event(db, row, "created", "Job created and queued")
            logger.info(f"Created job {row.id} (type: {row.type}, priority: {row.priority})")
            return self._to_record(row)

    def get(self, job_id: UUID) -> Optional[JobRecord]:
        """Get a job by id."""
        with self._session() as db:
            row = self._load(db, job_id)
            return self._to_record(row) if row else None

    def list(self, filters: Optional[JobFilters] = None) -> List[JobRecord]:
        """List jobs, newest first."""
        filters = filters or JobFilters()
        stmt = select(Job)
        if filters.type is not None:
            stmt = stmt.where(Job.type == filters.type.value)
        if filters.status is not None:
            stmt = stmt.where(Job.status == filters.status.value)
        if filters.owner_id is not None:
            stmt = stmt.where(Job.owner_id == filters.owner_id)
        stmt = stmt.order_by(Job.created_at.desc(), Job.job_pk.desc()).limit(filters.limit).offset(filters.offset)

        with self._session() as db:
            return [self._to_record(row) for row in db.execute(stmt).scalars()]

    def update_status(
        self,
        job_id: UUID,
        status: JobStatus,
        patch: Optional[Dict[str, Any]] = None,
        expected_attempt: Optional[int] = None,
        require_no_cancel: bool = False,
    ) -> JobRecord:
        """
        Apply a lifecycle transition.

        Args:
            job_id: Job id
            status: Target status
            patch: Extra fields (results, error, message, stage, visible_after, attempts)
            expected_attempt: Reject the write unless the job is still on this attempt
            require_no_cancel: Reject the write if cancellation was requested

        Returns:
            The updated record

        Raises:
            JobNotFoundError: If the job does not exist
            IllegalTransitionError: If the transition is not allowed or lost a race
        """
        patch = dict(patch or {})
        unknown = set(patch) - PATCH_FIELDS
        if unknown:
            raise ValueError(f"Unsupported status patch fields: {sorted(unknown)}")

        with self._session() as db:
            row = self._load(db, job_id)
            if row is None:
                raise JobNotFoundError(f"Job {job_id} not found")

            current = JobStatus(row.status)
            if not is_valid_transition(current, status):
                logger.warning(f"Rejected transition of job {job_id} from {current.value} to {status.value}")
                raise IllegalTransitionError(f"Invalid state transition from {current.value} to {status.value}")

            if expected_attempt is not None and row.attempts != expected_attempt:
                logger.warning(
                    f"Rejected {status.value} write for job {job_id}: attempt {expected_attempt} "
                    f"superseded by attempt {row.attempts}"
                )
                raise IllegalTransitionError(f"Attempt {expected_attempt} no longer owns job {job_id}")

            if require_no_cancel and row.cancel_requested:
                raise IllegalTransitionError(f"Cancellation requested for job {job_id}")

            now = utcnow()
            values: Dict[str, Any] = {"status": status.value, "updated_at": now}
            values.update(patch)

            if status == JobStatus.RUNNING and row.started_at is None:
                values["started_at"] = now
            if status == JobStatus.PENDING:
                values.setdefault("visible_after", None)
            if status in TERMINAL_STATUSES:
                values["completed_at"] = now
                values["visible_after"] = None
            if status == JobStatus.COMPLETED:
                values["progress"] = 100
                values["results"] = patch.get("results") or {}
                values["error"] = None
            elif status == JobStatus.FAILED:
                values["results"] = None
                values["error"] = patch.get("error") or "Job failed"
            elif status == JobStatus.CANCELLED:
                values["results"] = None
                values["error"] = None

            conditions = [Job.id == job_id, Job.status == current.value]
            if expected_attempt is not None:
                conditions.append(Job.attempts == expected_attempt)
            if require_no_cancel:
                conditions.append(Job.cancel_requested.is_(False))

            result = db.execute(
                update(Job).where(*conditions).values(**values).execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.warning(f"Job {job_id} changed concurrently; {status.value} write rejected")
                raise IllegalTransitionError(f"Job {job_id} changed concurrently")

            db.refresh(row)
            self._append_event(db, row, "transition", patch.get("message") or patch.get("error"), row.stage)
            logger.info(f"Job {job_id} status {current.value} -> {status.value}")
            return self._to_record(row)

    def update_progress(
        self,
        job_id: UUID,
        percent: float,
        message: Optional[str] = None,
        stage: Optional[str] = None,
        expected_attempt: Optional[int] = None,
    ) -> bool:
        """
        Record progress for a running job.

        Progress never decreases; a lower value is ignored.

        Args:
            job_id: Job id
            percent: Progress percentage, clamped to 0-100
            message: Optional progress message
            stage: Optional stage name
            expected_attempt: Ignore the update unless the job is still on this attempt

        Returns:
            True if the progress was stored
        """
        percent = max(0, min(100, int(percent)))
        values: Dict[str, Any] = {"progress": percent, "updated_at": utcnow()}
        if message is not None:
            values["message"] = message
        if stage is not None:
            values["stage"] = stage

        conditions = [Job.id == job_id, Job.status == JobStatus.RUNNING.value, Job.progress <= percent]
        if expected_attempt is not None:
            conditions.append(Job.attempts == expected_attempt)

        with self._session() as db:
            result = db.execute(
                update(Job).where(*conditions).values(**values).execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.debug(f"Progress {percent}% for job {job_id} not applied")
                return False

            row = self._load(db, job_id)
            self._append_event(db, row, "progress", message, stage)
            return True

    def claim_next(self, job_type: JobType, max_attempts: int) -> Optional[JobRecord]:
        """
        Atomically claim the next eligible PENDING job of a type.

        Orders by priority, then submission order. The claim increments
        ``attempts``, sets RUNNING and sets ``started_at`` on the first attempt.

        Args:
            job_type: Queue to claim from
            max_attempts: Jobs that used all attempts are never claimed

        Returns:
            The claimed record, or None if nothing is eligible
        """
        now = utcnow()
        candidates = (
            select(Job.id, Job.attempts)
            .where(
                Job.type == job_type.value,
                Job.status == JobStatus.PENDING.value,
                or_(Job.visible_after.is_(None), Job.visible_after <= now),
                Job.attempts < max_attempts,
            )
            .order_by(Job.priority.desc(), Job.job_pk.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )

        with self._session() as db:
            # Another claimer may win the compare-and-set between select and update
            for _ in range(3):
                candidate = db.execute(candidates).first()
                if candidate is None:
                    return None

                result = db.execute(
                    update(Job)
                    .where(
                        Job.id == candidate.id,
                        Job.status == JobStatus.PENDING.value,
                        Job.attempts == candidate.attempts,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        attempts=candidate.attempts + 1,
                        visible_after=None,
                        started_at=func.coalesce(Job.started_at, now),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    row = self._load(db, candidate.id)
                    self._append_event(db, row, "transition", f"Attempt {row.attempts} started")
                    return self._to_record(row)

            return None

    def request_cancel(self, job_id: UUID) -> bool:
        """Set the durable cancellation flag on a running job."""
        with self._session() as db:
            result = db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.RUNNING.value)
                .values(cancel_requested=True, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            row = self._load(db, job_id)
            self._append_event(db, row, "cancel_requested", "Cancellation requested")
            return True

    def heartbeat(self, job_id: UUID, attempt: int) -> bool:
        """Refresh ``updated_at`` of a job still running the given attempt."""
        with self._session() as db:
            result = db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.RUNNING.value, Job.attempts == attempt)
                .values(updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def cancel_requested_ids(self, job_ids: Iterable[UUID]) -> Set[UUID]:
        """Subset of the given running jobs flagged for cancellation."""
        job_ids = list(job_ids)
        if not job_ids:
            return set()
        with self._session() as db:
            rows = db.execute(
                select(Job.id).where(
                    Job.id.in_(job_ids),
                    Job.status == JobStatus.RUNNING.value,
                    Job.cancel_requested.is_(True),
                )
            ).scalars()
            return set(rows)

    def count_by_status(self, job_type: JobType) -> Dict[str, int]:
        """Count jobs of a type per queue state."""
        now = utcnow()
        with self._session() as db:
            rows = db.execute(
                select(Job.status, func.count(Job.job_pk)).where(Job.type == job_type.value).group_by(Job.status)
            ).all()
            delayed = db.execute(
                select(func.count(Job.job_pk)).where(
                    Job.type == job_type.value,
                    Job.status == JobStatus.PENDING.value,
                    Job.visible_after > now,
                )
            ).scalar_one()

        counts = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            counts[status] = count
        return {
            "waiting": counts[JobStatus.PENDING.value] - delayed,
            "delayed": delayed,
            "active": counts[JobStatus.RUNNING.value],
            "completed": counts[JobStatus.COMPLETED.value],
            "failed": counts[JobStatus.FAILED.value],
            "cancelled": counts[JobStatus.CANCELLED.value],
        }

    def queue_position(self, job_id: UUID) -> Optional[int]:
        """1-based position of an eligible PENDING job within its queue."""
        now = utcnow()
        with self._session() as db:
            row = self._load(db, job_id)
            if row is None or row.status != JobStatus.PENDING.value:
                return None
            if row.visible_after is not None and row.visible_after > now:
                return None

            ahead = db.execute(
                select(func.count(Job.job_pk)).where(
                    Job.type == row.type,
                    Job.status == JobStatus.PENDING.value,
                    or_(Job.visible_after.is_(None), Job.visible_after <= now),
                    or_(
                        Job.priority > row.priority,
                        (Job.priority == row.priority) & (Job.job_pk < row.job_pk),
                    ),
                )
            ).scalar_one()
            return ahead + 1

    def average_duration(self, job_type: JobType, sample_size: int = 100) -> Optional[float]:
        """Mean run time in seconds of recently completed jobs of a type."""
        with self._session() as db:
            rows = db.execute(
                select(Job.started_at, Job.completed_at)
                .where(
                    Job.type == job_type.value,
                    Job.status == JobStatus.COMPLETED.value,
                    Job.started_at.is_not(None),
                    Job.completed_at.is_not(None),
                )
                .order_by(Job.completed_at.desc())
                .limit(sample_size)
            ).all()

        if not rows:
            return None
        total = sum((completed - started).total_seconds() for started, completed in rows)
        return total / len(rows)

    def find_stale_running(self, heartbeat_before: datetime) -> List[JobRecord]:
        """RUNNING jobs whose last write is older than the cutoff."""
        with self._session() as db:
            rows = db.execute(
                select(Job)
                .where(Job.status == JobStatus.RUNNING.value, Job.updated_at < heartbeat_before)
                .order_by(Job.job_pk)
            ).scalars()
            return [self._to_record(row) for row in rows]

    def events(self, job_id: UUID) -> List[JobEventRecord]:
        """Progress and transition log of a job, oldest first."""
        with self._session() as db:
            rows = db.execute(
                select(JobEvent).where(JobEvent.job_id == job_id).order_by(JobEvent.created_at, JobEvent.event_pk)
            ).scalars()
            return [JobEventRecord.model_validate(row) for row in rows]

    def delete(self, job_id: UUID) -> bool:
        """Delete a job and its event log."""
        with self._session() as db:
            db.execute(delete(JobEvent).where(JobEvent.job_id == job_id))
            result = db.execute(delete(Job).where(Job.id == job_id))
            deleted = result.rowcount > 0
            if deleted:
                logger.info(f"Deleted job {job_id}")
            return deleted

    def cleanup(self, statuses: Iterable[JobStatus], completed_before: datetime) -> int:
        """
        Delete finished jobs older than a cutoff.

        Args:
            statuses: Terminal statuses to clean
            completed_before: Only jobs that finished before this time are removed

        Returns:
            Number of jobs deleted
        """
        status_values = [status.value for status in statuses]
        with self._session() as db:
            job_ids = db.execute(
                select(Job.id).where(Job.status.in_(status_values), Job.completed_at < completed_before)
            ).scalars().all()
            if not job_ids:
                return 0

            db.execute(delete(JobEvent).where(JobEvent.job_id.in_(job_ids)))
            db.execute(delete(Job).where(Job.id.in_(job_ids)))
            logger.info(f"Cleaned up {len(job_ids)} jobs with status {status_values}")
            return len(job_ids)
