"""Per-type job queues backed by the state store."""

import logging
import math
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set
from uuid import UUID

from datacollector.config import QueueConfig
from datacollector.errors import ConfigurationError, IllegalTransitionError
from datacollector.schemas.job import (
    JobRecord,
    JobStatus,
    JobType,
    QueueStats,
    SubmissionResult,
    SubmitOptions,
    utcnow,
)
from datacollector.services.notifier import StatusNotifier
from datacollector.services.state_store import StateStore

logger = logging.getLogger(__name__)


class JobQueue:
    """One logical priority queue per job type.

    Higher priority jobs are dequeued first, FIFO among equal priority.
    The store's compare-and-set claim guarantees a job is handed to at
    most one worker.
    """

    def __init__(
        self,
        store: StateStore,
        notifier: StatusNotifier,
        configs: Dict[JobType, QueueConfig],
        default_job_duration: float = 120.0,
        poll_interval: float = 1.0,
    ):
        """
        Initialize the queues.

        Args:
            store: Job state persistence
            notifier: Status fan-out
            configs: Settings per enabled job type; types without an entry have no queue
            default_job_duration: Seconds per job used for ETAs before real durations exist
            poll_interval: Longest wait between claim attempts while dequeuing
        """
        for job_type, config in configs.items():
            if config.concurrency < 1:
                raise ConfigurationError(f"Concurrency for {job_type.value} must be at least 1")
            if config.max_attempts < 1:
                raise ConfigurationError(f"Max attempts for {job_type.value} must be at least 1")

        self._store = store
        self._notifier = notifier
        self._configs = dict(configs)
        self._default_job_duration = default_job_duration
        self._poll_interval = poll_interval
        self._paused: Set[JobType] = set()
        self._conditions = {job_type: threading.Condition() for job_type in self._configs}
        self._claim_locks = {job_type: threading.Lock() for job_type in self._configs}
        self._cancel_listeners: List[Callable[[UUID], None]] = []

        for job_type, config in self._configs.items():
            logger.info(
                f"Queue initialized: {job_type.value}-queue "
                f"(concurrency: {config.concurrency}, max attempts: {config.max_attempts})"
            )

    @property
    def job_types(self) -> List[JobType]:
        return list(self._configs)

    def config_for(self, job_type: JobType) -> QueueConfig:
        """
        Get the settings of a queue.

        Raises:
            ConfigurationError: If no queue exists for the type
        """
        config = self._configs.get(job_type)
        if config is None:
            raise ConfigurationError(f"Queue for job type '{job_type.value}' not found")
        return config

    def submit(self, record: JobRecord, options: Optional[SubmitOptions] = None) -> SubmissionResult:
        """
        Persist a job as PENDING and enqueue it.

        Args:
            record: Job to submit
            options: Queue options such as an initial delay

        Returns:
            SubmissionResult with the advisory queue position and start estimate

        Raises:
            ConfigurationError: If no queue exists for the job type
            ConflictError: If the job id was already submitted
        """
        config = self.config_for(record.type)
        options = options or SubmitOptions()

        if options.delay > 0:
            record = record.model_copy(update={"visible_after": utcnow() + timedelta(seconds=options.delay)})

        stored = self._store.insert(record)
        self._wake(stored.type)

        position = self._store.queue_position(stored.id)
        if position is not None:
            estimated_start = self._estimate_start(stored.type, config, position)
        else:
            estimated_start = stored.visible_after

        self._notifier.broadcast(
            stored.id,
            JobStatus.PENDING,
            "Job created and queued",
            {"progress": 0, "queue_position": position},
        )
        logger.info(
            f"Job {stored.id} submitted to {stored.type.value}-queue "
            f"(priority: {stored.priority.name}, position: {position})"
        )

        return SubmissionResult(id=stored.id, queue_position=position, estimated_start=estimated_start)

    def dequeue(
        self,
        job_type: JobType,
        timeout: float,
        stop_event: Optional[threading.Event] = None,
    ) -> Optional[JobRecord]:
        """
        Claim the next eligible job, waiting up to ``timeout`` seconds.

        Args:
            job_type: Queue to take from
            timeout: Seconds to wait for work
            stop_event: Returns early once set

        Returns:
            The claimed RUNNING record, or None on timeout, pause or stop
        """
        config = self.config_for(job_type)
        condition = self._conditions[job_type]
        deadline = time.monotonic() + timeout

        while not (stop_event and stop_event.is_set()):
            if job_type not in self._paused:
                with self._claim_locks[job_type]:
                    job = self._store.claim_next(job_type, config.max_attempts)
                if job is not None:
                    return job

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            with condition:
                condition.wait(min(remaining, self._poll_interval))

        return None

    def requeue(self, record: JobRecord, delay: float, message: str) -> JobRecord:
        """
        Return a running job to PENDING, eligible again after ``delay`` seconds.

        Raises:
            IllegalTransitionError: If the attempt lost ownership or cancellation was requested
        """
        visible_after = utcnow() + timedelta(seconds=delay)
        updated = self._store.update_status(
            record.id,
            JobStatus.PENDING,
            {"visible_after": visible_after, "message": message},
            expected_attempt=record.attempts,
            require_no_cancel=True,
        )
        self._wake(record.type)
        return updated

    def release(self, record: JobRecord, message: str) -> JobRecord:
        """
        Return a running job to PENDING without consuming its attempt.

        Used for attempts that were interrupted rather than failed; the job
        is eligible again immediately.

        Raises:
            IllegalTransitionError: If the attempt lost ownership or cancellation was requested
        """
        updated = self._store.update_status(
            record.id,
            JobStatus.PENDING,
            {"attempts": max(0, record.attempts - 1), "message": message},
            expected_attempt=record.attempts,
            require_no_cancel=True,
        )
        self._wake(record.type)
        return updated

    def cancel(self, job_id: UUID) -> bool:
        """
        Cancel a job.

        A pending job is cancelled outright and never dequeued. A running job
        gets a cancellation flag that its handler observes at the next
        checkpoint.

        Returns:
            True if the job was cancelled or flagged, False if unknown or finished
        """
        record = self._store.get(job_id)
        if record is None:
            logger.warning(f"Job {job_id} not found for cancellation")
            return False

        if record.status == JobStatus.PENDING:
            try:
                self._store.update_status(job_id, JobStatus.CANCELLED, {"message": "Job was cancelled"})
            except IllegalTransitionError:
                # Claimed by a worker in the meantime
                record = self._store.get(job_id)
            else:
                self._notifier.broadcast(job_id, JobStatus.CANCELLED, "Job was cancelled")
                logger.info(f"Cancelled pending job {job_id}")
                return True

        if record is not None and record.status == JobStatus.RUNNING:
            if not self._store.request_cancel(job_id):
                return False
            for listener in list(self._cancel_listeners):
                listener(job_id)
            self._notifier.broadcast(job_id, JobStatus.RUNNING, "Cancellation requested")
            logger.info(f"Cancellation requested for running job {job_id}")
            return True

        return False

    def add_cancel_listener(self, listener: Callable[[UUID], None]) -> None:
        """Call ``listener`` with the job id whenever a running job is flagged for cancellation."""
        self._cancel_listeners.append(listener)

    def stats(self, job_type: Optional[JobType] = None) -> List[QueueStats]:
        """Queue counters for one or all job types."""
        job_types = [job_type] if job_type is not None else self.job_types
        stats = []
        for current in job_types:
            self.config_for(current)
            counts = self._store.count_by_status(current)
            stats.append(
                QueueStats(
                    name=current,
                    waiting=counts["waiting"],
                    active=counts["active"],
                    completed=counts["completed"],
                    failed=counts["failed"],
                    delayed=counts["delayed"],
                    paused=current in self._paused,
                )
            )
        return stats

    def pause(self, job_type: JobType) -> None:
        """Stop handing out jobs of a type."""
        self.config_for(job_type)
        self._paused.add(job_type)
        logger.info(f"Queue paused: {job_type.value}")

    def resume(self, job_type: JobType) -> None:
        """Restart handing out jobs of a type."""
        self.config_for(job_type)
        self._paused.discard(job_type)
        self._wake(job_type)
        logger.info(f"Queue resumed: {job_type.value}")

    def is_paused(self, job_type: JobType) -> bool:
        return job_type in self._paused

    def clean(self, completed_age: timedelta, failed_age: timedelta) -> int:
        """
        Remove finished jobs past their retention.

        Args:
            completed_age: Retention of completed jobs
            failed_age: Retention of failed and cancelled jobs

        Returns:
            Number of jobs removed
        """
        now = utcnow()
        removed = self._store.cleanup([JobStatus.COMPLETED], now - completed_age)
        removed += self._store.cleanup([JobStatus.FAILED, JobStatus.CANCELLED], now - failed_age)
        logger.info(f"Queue cleanup removed {removed} jobs")
        return removed

    def wake_all(self) -> None:
        """Wake every waiting dequeue."""
        for job_type in self._configs:
            self._wake(job_type)

    def _wake(self, job_type: JobType) -> None:
        condition = self._conditions.get(job_type)
        if condition is None:
            return
        with condition:
            condition.notify_all()

    def _estimate_start(self, job_type: JobType, config: QueueConfig, position: int) -> datetime:
        average = self._store.average_duration(job_type) or self._default_job_duration
        wait = math.ceil(position / config.concurrency) * average
        return utcnow() + timedelta(seconds=wait)
