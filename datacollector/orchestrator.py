"""Composition root and facade over the queue, processor and state store."""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from datacollector.config import Settings
from datacollector.database import SessionFactory, create_db_engine, create_session_factory
from datacollector.errors import ConfigurationError, JobNotFoundError
from datacollector.job_queue import JobQueue
from datacollector.jobs import register_default_handlers
from datacollector.processor import JobProcessor
from datacollector.schemas.job import (
    HealthInfo,
    JobEventRecord,
    JobFilters,
    JobPriority,
    JobRecord,
    JobType,
    QueueStats,
    SubmissionResult,
    SubmitOptions,
    parse_job_type,
    parse_priority,
)
from datacollector.services.downloader import ContentDownloader
from datacollector.services.embeddings import EmbeddingService
from datacollector.services.file_processor import FileProcessor
from datacollector.services.notifier import StatusNotifier
from datacollector.services.registry import ConfigAccessor, ServiceRegistry
from datacollector.services.state_store import StateStore

logger = logging.getLogger(__name__)


class Orchestrator:
    """Single entry point for submitting and managing jobs."""

    def __init__(
        self,
        settings: Settings,
        store: StateStore,
        notifier: StatusNotifier,
        services: ServiceRegistry,
        queue: JobQueue,
        processor: JobProcessor,
    ):
        self.settings = settings
        self.store = store
        self.notifier = notifier
        self.services = services
        self.queue = queue
        self.processor = processor

    def start(self) -> None:
        """Recover stale jobs, then start the worker pools."""
        self.processor.reconcile_stale(self.settings.STALE_JOB_THRESHOLD)
        self.processor.initialize()

    def shutdown(self, grace_period: Optional[float] = None) -> None:
        if grace_period is None:
            grace_period = self.settings.SHUTDOWN_GRACE_PERIOD
        self.processor.shutdown(grace_period)

    def submit(
        self,
        job_type: Any,
        metadata: Optional[Dict[str, Any]] = None,
        priority: Any = JobPriority.NORMAL,
        owner_id: Optional[str] = None,
        job_id: Optional[UUID] = None,
        delay: float = 0,
    ) -> SubmissionResult:
        """
        Submit a job.

        Args:
            job_type: Job type (enum or name)
            metadata: Handler input
            priority: Priority (enum, int or name)
            owner_id: Submitting user
            job_id: Caller-chosen id; generated when omitted
            delay: Seconds before the job becomes eligible

        Returns:
            SubmissionResult

        Raises:
            ConfigurationError: If the type or priority is unknown or the type has no queue
            ConflictError: If the job id already exists
        """
        try:
            job_type = parse_job_type(job_type)
            priority = parse_priority(priority)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        fields: Dict[str, Any] = {
            "type": job_type,
            "priority": priority,
            "metadata": metadata or {},
            "owner_id": owner_id,
        }
        if job_id is not None:
            fields["id"] = job_id

        return self.queue.submit(JobRecord(**fields), SubmitOptions(delay=delay))

    def cancel(self, job_id: UUID) -> bool:
        return self.queue.cancel(job_id)

    def get(self, job_id: UUID) -> Optional[JobRecord]:
        return self.store.get(job_id)

    def list(self, filters: Optional[JobFilters] = None) -> List[JobRecord]:
        return self.store.list(filters)

    def events(self, job_id: UUID) -> List[JobEventRecord]:
        """
        Event log of a job.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        if self.store.get(job_id) is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return self.store.events(job_id)

    def stats(self, job_type: Optional[JobType] = None) -> List[QueueStats]:
        return self.queue.stats(job_type)

    def delete(self, job_id: UUID) -> bool:
        """Delete a job; a running job is cancelled first."""
        self.queue.cancel(job_id)
        self.notifier.unsubscribe(job_id)
        return self.store.delete(job_id)

    def clean(
        self,
        completed_age: Optional[timedelta] = None,
        failed_age: Optional[timedelta] = None,
    ) -> int:
        """Remove finished jobs older than their retention."""
        if completed_age is None:
            completed_age = timedelta(hours=self.settings.COMPLETED_RETENTION_HOURS)
        if failed_age is None:
            failed_age = timedelta(days=self.settings.FAILED_RETENTION_DAYS)
        return self.queue.clean(completed_age, failed_age)

    def pause(self, job_type: Any) -> None:
        self.queue.pause(self._job_type(job_type))

    def resume(self, job_type: Any) -> None:
        self.queue.resume(self._job_type(job_type))

    def health(self) -> HealthInfo:
        return self.processor.health()

    @staticmethod
    def _job_type(value: Any) -> JobType:
        try:
            return parse_job_type(value)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e


def default_services(settings: Settings) -> ServiceRegistry:
    """Registry with the built-in downloader, file processor and embedder."""
    services = ServiceRegistry()
    services.register(
        "downloader",
        ContentDownloader(
            download_dir=settings.DOWNLOAD_DIR,
            timeout=settings.DOWNLOAD_TIMEOUT,
            max_bytes=settings.DOWNLOAD_MAX_BYTES,
            max_retries=settings.DOWNLOAD_MAX_RETRIES,
        ),
    )
    services.register(
        "file_processor",
        FileProcessor(
            chunk_target_size=settings.CHUNK_TARGET_SIZE,
            chunk_overlap_percent=settings.CHUNK_OVERLAP_PERCENT,
            max_text_length=settings.MAX_TEXT_LENGTH,
        ),
    )
    services.register(
        "embedder",
        EmbeddingService(
            base_url=settings.OLLAMA_BASE_URL,
            model=settings.OLLAMA_MODEL,
            embed_dim=settings.EMBED_DIM,
        ),
    )
    return services


def build_orchestrator(
    settings: Settings,
    session_factory: Optional[SessionFactory] = None,
    services: Optional[ServiceRegistry] = None,
) -> Orchestrator:
    """
    Wire the state store, notifier, queue and processor together.

    Args:
        settings: Application settings
        session_factory: Database sessions; created from DATABASE_URL when omitted
        services: Subsystems handed to handlers; the built-in ones when omitted

    Returns:
        An orchestrator whose processor is not started yet
    """
    if session_factory is None:
        session_factory = create_session_factory(create_db_engine(settings.DATABASE_URL))
    if services is None:
        services = default_services(settings)

    store = StateStore(session_factory)
    notifier = StatusNotifier()
    queue = JobQueue(
        store,
        notifier,
        settings.queue_configs(),
        default_job_duration=settings.DEFAULT_JOB_DURATION,
        poll_interval=settings.WORKER_POLL_INTERVAL,
    )
    processor = JobProcessor(
        queue,
        store,
        notifier,
        services,
        ConfigAccessor(settings.model_dump()),
        poll_interval=settings.WORKER_POLL_INTERVAL,
        watchdog_interval=settings.WATCHDOG_INTERVAL,
        store_retries=settings.STATE_STORE_RETRIES,
        stale_after=settings.STALE_JOB_THRESHOLD,
    )

    registered = register_default_handlers(processor, services)
    logger.info(f"Orchestrator ready with handlers: {', '.join(t.value for t in registered) or 'none'}")

    return Orchestrator(settings, store, notifier, services, queue, processor)
