"""Bounded worker pools that execute queued jobs."""

import logging
import threading
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from uuid import UUID

from fastapi.encoders import jsonable_encoder
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from datacollector.errors import (
    ConfigurationError,
    IllegalTransitionError,
    JobCancelled,
    JobNotFoundError,
    RetryableFailure,
    StateStoreError,
    TerminalFailure,
    UnregisteredTypeError,
)
from datacollector.job_queue import JobQueue
from datacollector.jobs.base import BaseJobHandler, JobContext
from datacollector.schemas.job import (
    HealthInfo,
    JobRecord,
    JobStatus,
    JobType,
    ProcessorStats,
    parse_job_type,
    utcnow,
)
from datacollector.services.notifier import StatusNotifier
from datacollector.services.registry import ConfigAccessor, ServiceRegistry
from datacollector.services.state_store import StateStore

logger = logging.getLogger(__name__)

HandlerFactory = Callable[[], BaseJobHandler]


class _Execution:
    """One in-flight attempt of a job."""

    def __init__(self, job: JobRecord, timeout: float):
        self.job = job
        self.timeout = timeout
        self.started = time.monotonic()
        self.deadline = self.started + timeout if timeout > 0 else None
        self.cancel_event = threading.Event()
        self.interrupted = False
        self._lock = threading.Lock()
        self._settled = False

    @property
    def key(self) -> Tuple[UUID, int]:
        return self.job.id, self.job.attempts

    def settle(self) -> bool:
        """Claim the right to record this attempt's outcome; True exactly once."""
        with self._lock:
            if self._settled:
                return False
            self._settled = True
            return True


class JobProcessor:
    """Runs ``concurrency`` worker threads per job type.

    Each worker claims one job at a time and runs its handler inline, so a
    type never has more than ``concurrency`` handlers executing in this
    process. A watchdog thread enforces per-attempt timeouts and relays
    cancellation flags set by other processes.
    """

    def __init__(
        self,
        queue: JobQueue,
        store: StateStore,
        notifier: StatusNotifier,
        services: ServiceRegistry,
        config: ConfigAccessor,
        poll_interval: float = 1.0,
        watchdog_interval: float = 1.0,
        store_retries: int = 3,
        stale_after: float = 1800.0,
    ):
        """
        Initialize the processor.

        Args:
            queue: Source of jobs
            store: Job state persistence
            notifier: Status fan-out
            services: Registry handed to handlers
            config: Read-only configuration handed to handlers
            poll_interval: Seconds a worker waits for work before re-checking shutdown
            watchdog_interval: Seconds between timeout and cancellation checks
            store_retries: Attempts for each outcome write
            stale_after: Seconds without a write after which another process's running job is recovered
        """
        self._queue = queue
        self._store = store
        self._notifier = notifier
        self._services = services
        self._config = config
        self._poll_interval = poll_interval
        self._watchdog_interval = watchdog_interval
        self._store_retries = max(1, store_retries)
        self._stale_after = stale_after
        self._sweep_interval = max(watchdog_interval, stale_after / 2)

        self._handlers: Dict[JobType, HandlerFactory] = {}
        self._lifecycle_lock = threading.Lock()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._workers: List[Tuple[JobType, threading.Thread]] = []
        self._worker_seq = 0
        self._watchdog: Optional[threading.Thread] = None
        self._executions: Dict[Tuple[UUID, int], _Execution] = {}
        self._initialized = False

        self._total_processed = 0
        self._success_count = 0
        self._failure_count = 0
        self._retry_count = 0
        self._cancelled_count = 0
        self._average_processing_time = 0.0

        queue.add_cancel_listener(self._on_cancel_requested)

    @property
    def initialized(self) -> bool:
        return self._initialized

    def register_handler(self, job_type: Any, factory: HandlerFactory) -> None:
        """
        Register the handler factory for a job type.

        The factory is looked up when a job is dequeued, so a handler may be
        registered after the processor started.

        Raises:
            ConfigurationError: If the job type is unknown or the factory is not callable
        """
        try:
            job_type = parse_job_type(job_type)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        if not callable(factory):
            raise ConfigurationError(f"Handler factory for {job_type.value} is not callable")

        self._handlers[job_type] = factory
        logger.info(f"Registered handler for job type: {job_type.value}")

    def registered_job_types(self) -> List[JobType]:
        return [job_type for job_type in JobType if job_type in self._handlers]

    def initialize(self) -> None:
        """
        Start the worker pools and the watchdog.

        Calling it again while running is a no-op.

        Raises:
            ConfigurationError: If a queue has an invalid concurrency
        """
        with self._lifecycle_lock:
            if self._initialized:
                logger.debug("Job processor already initialized")
                return

            pools = {}
            for job_type in self._queue.job_types:
                concurrency = self._queue.config_for(job_type).concurrency
                if concurrency < 1:
                    raise ConfigurationError(f"Concurrency for {job_type.value} must be at least 1")
                pools[job_type] = concurrency

            # Workers that outlived a previous shutdown rejoin their pool
            self._workers = [(job_type, worker) for job_type, worker in self._workers if worker.is_alive()]
            self._stop_event.clear()
            for job_type, concurrency in pools.items():
                surviving = sum(1 for worker_type, _ in self._workers if worker_type == job_type)
                for _ in range(concurrency - surviving):
                    self._worker_seq += 1
                    worker = threading.Thread(
                        target=self._worker_loop,
                        args=(job_type,),
                        name=f"{job_type.value}-worker-{self._worker_seq}",
                        daemon=True,
                    )
                    worker.start()
                    self._workers.append((job_type, worker))
                if surviving:
                    logger.info(
                        f"Started {concurrency - surviving} workers for {job_type.value} jobs "
                        f"({surviving} still running)"
                    )
                else:
                    logger.info(f"Started {concurrency} workers for {job_type.value} jobs")

            self._watchdog = threading.Thread(target=self._watchdog_loop, name="job-watchdog", daemon=True)
            self._watchdog.start()
            self._initialized = True

            missing = [job_type.value for job_type in pools if job_type not in self._handlers]
            if missing:
                logger.warning(f"No handlers registered for: {', '.join(missing)}")
            logger.info("Job processor initialized")

    def shutdown(self, grace_period: float = 30.0) -> None:
        """
        Stop dequeuing and wait for in-flight jobs.

        Handlers still running after the grace period are signalled to stop;
        their jobs are re-queued as interrupted.
        """
        with self._lifecycle_lock:
            if not self._initialized:
                return

            logger.info("Shutting down job processor...")
            self._stop_event.set()
            self._queue.wake_all()

            deadline = time.monotonic() + grace_period
            for _, worker in self._workers:
                worker.join(max(0.0, deadline - time.monotonic()))

            alive = [worker for _, worker in self._workers if worker.is_alive()]
            if alive:
                logger.warning(f"Grace period of {grace_period}s elapsed, interrupting {len(alive)} active jobs")
                with self._lock:
                    executions = list(self._executions.values())
                for execution in executions:
                    execution.interrupted = True
                    execution.cancel_event.set()

                join_timeout = min(grace_period, 5.0)
                for worker in alive:
                    worker.join(join_timeout)
                still_alive = [worker.name for worker in alive if worker.is_alive()]
                if still_alive:
                    logger.warning(f"Workers still active after shutdown: {', '.join(still_alive)}")

            if self._watchdog is not None:
                self._watchdog.join(self._watchdog_interval * 2)

            # Still-running workers keep their pool slot until they exit
            self._workers = [(job_type, worker) for job_type, worker in self._workers if worker.is_alive()]
            self._watchdog = None
            self._initialized = False
            logger.info("Job processor shut down")

    def reconcile_stale(self, stale_after: float, exclude: Optional[Set[UUID]] = None) -> int:
        """
        Recover RUNNING jobs left behind by a crashed process.

        Jobs without a write for ``stale_after`` seconds are re-queued if they
        have attempts left, cancelled if cancellation was requested, and
        failed otherwise. Runs at startup and periodically from the watchdog.

        Args:
            stale_after: Seconds since the job's last write
            exclude: Job ids executing in this process

        Returns:
            Number of jobs recovered
        """
        cutoff = utcnow() - timedelta(seconds=stale_after)
        recovered = 0

        for job in self._store.find_stale_running(cutoff):
            if exclude and job.id in exclude:
                continue
            max_attempts = self._max_attempts(job.type)
            try:
                if job.cancel_requested:
                    self._store.update_status(
                        job.id, JobStatus.CANCELLED, {"message": "Job was cancelled"}, expected_attempt=job.attempts
                    )
                    status = JobStatus.CANCELLED
                elif job.attempts < max_attempts:
                    self._store.update_status(
                        job.id,
                        JobStatus.PENDING,
                        {"message": "Re-queued after stale heartbeat"},
                        expected_attempt=job.attempts,
                    )
                    status = JobStatus.PENDING
                else:
                    self._store.update_status(
                        job.id,
                        JobStatus.FAILED,
                        {"error": f"Job stalled: no heartbeat since {job.updated_at} after {job.attempts} attempts"},
                        expected_attempt=job.attempts,
                    )
                    status = JobStatus.FAILED
            except IllegalTransitionError as e:
                logger.info(f"Stale job {job.id} changed concurrently, skipping: {e}")
                continue

            recovered += 1
            logger.warning(f"Reconciled stale job {job.id} (attempt {job.attempts}) -> {status.value}")
            self._notifier.broadcast(job.id, status, "Recovered after interrupted execution")

        if recovered:
            logger.info(f"Reconciled {recovered} stale running jobs")
            self._queue.wake_all()
        return recovered

    def get_stats(self) -> ProcessorStats:
        with self._lock:
            return ProcessorStats(
                total_processed=self._total_processed,
                success_count=self._success_count,
                failure_count=self._failure_count,
                retry_count=self._retry_count,
                cancelled_count=self._cancelled_count,
                average_processing_time=self._average_processing_time,
                active_jobs=len(self._executions),
            )

    def health(self) -> HealthInfo:
        return HealthInfo(
            initialized=self._initialized,
            registered_job_types=self.registered_job_types(),
            queue_stats=self._queue.stats(),
            processor_stats=self.get_stats(),
        )

    def _worker_loop(self, job_type: JobType) -> None:
        name = threading.current_thread().name
        logger.debug(f"Worker {name} started")

        while not self._stop_event.is_set():
            try:
                job = self._queue.dequeue(job_type, self._poll_interval, stop_event=self._stop_event)
            except StateStoreError as e:
                logger.error(f"Worker {name} failed to dequeue: {e}")
                self._stop_event.wait(self._poll_interval)
                continue

            if job is not None:
                self._process(job)

        logger.debug(f"Worker {name} stopped")

    def _process(self, job: JobRecord) -> None:
        execution = _Execution(job, self._queue.config_for(job.type).timeout)
        with self._lock:
            self._executions[execution.key] = execution

        logger.info(f"Processing job {job.id} (type: {job.type.value}, attempt {job.attempts})")
        self._notifier.broadcast(
            job.id,
            JobStatus.RUNNING,
            f"Attempt {job.attempts} started",
            {"progress": job.progress, "attempt": job.attempts},
        )

        try:
            factory = self._handlers.get(job.type)
            if factory is None:
                raise UnregisteredTypeError(f"No handler registered for job type '{job.type.value}'")

            handler = factory()
            context = JobContext(job, self._store, self._notifier, self._services, self._config, execution.cancel_event)
            outcome = ("success", handler.execute(job, context))
        except JobCancelled:
            if execution.interrupted:
                outcome = ("interrupted", None)
            else:
                outcome = ("cancelled", None)
        except Exception as e:
            logger.error(f"Job {job.id} attempt {job.attempts} raised: {e}", exc_info=True)
            outcome = ("error", e)
        finally:
            with self._lock:
                self._executions.pop(execution.key, None)

        if execution.settle():
            self._record_outcome(execution, *outcome)
        else:
            logger.warning(f"Discarding late result of job {job.id} attempt {job.attempts}")

    def _watchdog_loop(self) -> None:
        next_sweep = time.monotonic() + self._sweep_interval
        while not self._stop_event.wait(self._watchdog_interval):
            try:
                self._check_timeouts()
                self._sync_cancellations()
                if time.monotonic() >= next_sweep:
                    next_sweep = time.monotonic() + self._sweep_interval
                    self._sweep_stale()
            except StateStoreError as e:
                logger.error(f"Watchdog check failed: {e}")

    def _sweep_stale(self) -> None:
        """Heartbeat this process's jobs, then recover jobs abandoned by others."""
        with self._lock:
            executions = list(self._executions.values())
        for execution in executions:
            self._store.heartbeat(execution.job.id, execution.job.attempts)
        self.reconcile_stale(self._stale_after, exclude={e.job.id for e in executions})

    def _check_timeouts(self) -> None:
        now = time.monotonic()
        with self._lock:
            expired = [e for e in self._executions.values() if e.deadline is not None and now >= e.deadline]

        for execution in expired:
            if not execution.settle():
                continue
            job = execution.job
            logger.warning(f"Job {job.id} attempt {job.attempts} exceeded timeout of {execution.timeout:g}s")
            execution.cancel_event.set()
            self._record_outcome(
                execution,
                "error",
                RetryableFailure(f"Job stalled: exceeded timeout of {execution.timeout:g}s"),
            )

    def _sync_cancellations(self) -> None:
        """Relay durable cancellation flags to in-flight handlers."""
        with self._lock:
            pending = {e.job.id: e for e in self._executions.values() if not e.cancel_event.is_set()}
        if not pending:
            return
        for job_id in self._store.cancel_requested_ids(pending):
            logger.info(f"Cancellation flag observed for job {job_id}")
            pending[job_id].cancel_event.set()

    def _on_cancel_requested(self, job_id: UUID) -> None:
        with self._lock:
            executions = [e for e in self._executions.values() if e.job.id == job_id]
        for execution in executions:
            execution.cancel_event.set()

    def _record_outcome(self, execution: _Execution, kind: str, value: Any) -> None:
        job = execution.job
        duration = time.monotonic() - execution.started
        try:
            if kind == "success":
                self._complete(job, value if isinstance(value, dict) else {"result": value}, duration)
            elif kind == "cancelled":
                self._cancel(job, duration)
            elif kind == "interrupted":
                self._release(job, duration)
            else:
                self._fail_or_retry(job, value, duration)
        except (IllegalTransitionError, JobNotFoundError) as e:
            logger.warning(f"Outcome of job {job.id} attempt {job.attempts} not recorded: {e}")
        except StateStoreError as e:
            logger.error(f"Could not persist outcome of job {job.id}; it stays running until reconciled: {e}")

    def _complete(self, job: JobRecord, results: Dict[str, Any], duration: float) -> None:
        try:
            results = jsonable_encoder(results)
        except (TypeError, ValueError) as e:
            self._fail_or_retry(job, TerminalFailure(f"Job result is not JSON serializable: {e}"), duration)
            return

        if not self._write_unless_cancelled(
            job, JobStatus.COMPLETED, {"results": results, "message": "Job completed successfully"}, duration
        ):
            return

        self._count(duration, success=1)
        logger.info(f"Job {job.id} completed in {duration:.2f}s")
        self._notifier.broadcast(
            job.id,
            JobStatus.COMPLETED,
            "Job completed successfully",
            {"progress": 100, "duration": duration, "results": results},
        )

    def _cancel(self, job: JobRecord, duration: float) -> None:
        self._persist(
            self._store.update_status,
            job.id,
            JobStatus.CANCELLED,
            {"message": "Job was cancelled"},
            expected_attempt=job.attempts,
        )
        self._count(duration, cancelled=1)
        logger.info(f"Job {job.id} cancelled")
        self._notifier.broadcast(job.id, JobStatus.CANCELLED, "Job was cancelled", {"duration": duration})

    def _release(self, job: JobRecord, duration: float) -> None:
        """Put a job interrupted by shutdown back in its queue; the attempt is not counted."""
        message = "Interrupted by processor shutdown"
        try:
            self._persist(self._queue.release, job, message)
        except IllegalTransitionError:
            if self._cancel_won(job):
                self._cancel(job, duration)
                return
            raise

        logger.warning(f"Job {job.id} interrupted on attempt {job.attempts}, returned to queue")
        self._notifier.broadcast(job.id, JobStatus.PENDING, message, {"attempt": job.attempts - 1})

    def _fail_or_retry(self, job: JobRecord, error: BaseException, duration: float) -> None:
        config = self._queue.config_for(job.type)
        message = str(error) or error.__class__.__name__
        retryable = bool(getattr(error, "retryable", False))

        if retryable and job.attempts < config.max_attempts:
            delay = config.backoff_delay * (2 ** (job.attempts - 1))
            try:
                self._persist(self._queue.requeue, job, delay, f"Retrying after error: {message}")
            except IllegalTransitionError:
                if self._cancel_won(job):
                    self._cancel(job, duration)
                    return
                raise

            self._count(duration, retry=1)
            logger.warning(
                f"Job {job.id} attempt {job.attempts}/{config.max_attempts} failed, retrying in {delay:g}s: {message}"
            )
            self._notifier.broadcast(
                job.id,
                JobStatus.PENDING,
                f"Retrying after error: {message}",
                {"attempt": job.attempts, "retry_in": delay, "error": message},
            )
            return

        if not self._write_unless_cancelled(job, JobStatus.FAILED, {"error": message}, duration):
            return

        self._count(duration, failure=1)
        logger.error(f"Job {job.id} failed after {job.attempts} attempts: {message}")
        self._notifier.broadcast(
            job.id,
            JobStatus.FAILED,
            message,
            {"attempt": job.attempts, "duration": duration, "error_type": error.__class__.__name__},
        )

    def _write_unless_cancelled(
        self, job: JobRecord, status: JobStatus, patch: Dict[str, Any], duration: float
    ) -> bool:
        """Write a terminal outcome; a pending cancellation request wins instead."""
        try:
            self._persist(
                self._store.update_status,
                job.id,
                status,
                patch,
                expected_attempt=job.attempts,
                require_no_cancel=True,
            )
        except IllegalTransitionError:
            if self._cancel_won(job):
                logger.info(f"Cancellation of job {job.id} wins over {status.value}, discarding outcome")
                self._cancel(job, duration)
                return False
            raise
        return True

    def _cancel_won(self, job: JobRecord) -> bool:
        current = self._store.get(job.id)
        return (
            current is not None
            and current.status == JobStatus.RUNNING
            and current.attempts == job.attempts
            and current.cancel_requested
        )

    def _persist(self, write: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        retryer = Retrying(
            stop=stop_after_attempt(self._store_retries),
            wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
            retry=retry_if_exception_type(StateStoreError),
            reraise=True,
        )
        return retryer(write, *args, **kwargs)

    def _max_attempts(self, job_type: JobType) -> int:
        try:
            return self._queue.config_for(job_type).max_attempts
        except ConfigurationError:
            return 1

    def _count(self, duration: float, success: int = 0, failure: int = 0, retry: int = 0, cancelled: int = 0) -> None:
        with self._lock:
            self._total_processed += 1
            self._success_count += success
            self._failure_count += failure
            self._retry_count += retry
            self._cancelled_count += cancelled
            self._average_processing_time += (duration - self._average_processing_time) / self._total_processed
