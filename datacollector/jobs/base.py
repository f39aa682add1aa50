"""Base job handler, execution context and step tracking."""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel

from datacollector.errors import JobCancelled, StateStoreError, TerminalFailure
from datacollector.schemas.job import JobRecord, JobStatus, JobType
from datacollector.services.notifier import StatusNotifier
from datacollector.services.registry import ConfigAccessor, ServiceRegistry
from datacollector.services.state_store import StateStore


class JobLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the job id."""

    def process(self, msg, kwargs):
        return f"[job {self.extra['job_id']}] {msg}", kwargs


class JobContext:
    """Everything a handler may touch while executing one attempt."""

    def __init__(
        self,
        job: JobRecord,
        store: StateStore,
        notifier: StatusNotifier,
        services: ServiceRegistry,
        config: ConfigAccessor,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.job = job
        self.attempt = job.attempts
        self.notifier = notifier
        self.services = services
        self.config = config
        self.cancel_event = cancel_event or threading.Event()
        self.logger = JobLoggerAdapter(
            logging.getLogger(f"datacollector.jobs.{job.type.value}"),
            {"job_id": str(job.id)},
        )
        self._store = store

    def report_progress(self, percent: float, message: Optional[str] = None, stage: Optional[str] = None) -> bool:
        """
        Persist progress, then broadcast it.

        Nothing is broadcast when the store rejects the update (lower value,
        lost ownership, or the job already left RUNNING).

        Returns:
            True if the progress was stored and announced
        """
        percent = max(0, min(100, int(percent)))
        try:
            stored = self._store.update_progress(
                self.job.id, percent, message, stage, expected_attempt=self.attempt
            )
        except StateStoreError as e:
            self.logger.warning(f"Progress {percent}% not persisted: {e}")
            return False

        if stored:
            self.notifier.broadcast(
                self.job.id,
                JobStatus.RUNNING,
                message,
                {"progress": percent, "stage": stage, "attempt": self.attempt},
            )
        return stored

    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        """
        Cancellation checkpoint.

        Raises:
            JobCancelled: If cancellation was requested
        """
        if self.cancel_event.is_set():
            raise JobCancelled(f"Job {self.job.id} was cancelled")


@dataclass
class JobStep:
    """One weighted step of a job."""

    name: str
    description: str
    weight: int
    status: str = "pending"
    error: Optional[str] = None


class StepTracker:
    """Derives job progress from weighted steps.

    Progress is the sum of completed step weights, capped at 95 until the
    job itself completes.
    """

    MAX_PROGRESS = 95

    def __init__(self, context: JobContext, steps: List[Tuple[str, str, int]]):
        self._context = context
        self._steps = [JobStep(name, description, weight) for name, description, weight in steps]
        self._current: Optional[JobStep] = None

    @property
    def progress(self) -> int:
        completed = sum(step.weight for step in self._steps if step.status == "completed")
        return min(self.MAX_PROGRESS, completed)

    @property
    def current(self) -> Optional[JobStep]:
        return self._current

    def start(self, name: str) -> None:
        self._context.check_cancelled()
        step = self._find(name)
        step.status = "running"
        self._current = step
        self._context.report_progress(self.progress, step.description, stage=name)

    def advance(self, name: str, fraction: float, message: Optional[str] = None) -> None:
        """Report partial progress within a running step."""
        step = self._find(name)
        fraction = max(0.0, min(1.0, fraction))
        percent = min(self.MAX_PROGRESS, self.progress + int(step.weight * fraction))
        self._context.report_progress(percent, message or step.description, stage=name)

    def complete(self, name: str) -> None:
        step = self._find(name)
        step.status = "completed"
        self._context.report_progress(self.progress, f"Completed: {step.description}", stage=name)

    def fail(self, name: str, error: str) -> None:
        step = self._find(name)
        step.status = "failed"
        step.error = error

    def _find(self, name: str) -> JobStep:
        for step in self._steps:
            if step.name == name:
                return step
        raise ValueError(f"Step '{name}' not found")


class BaseJobHandler:
    """Base class for all job handlers.

    Subclasses set ``job_type`` and ``params_model`` and implement ``run``.
    """

    job_type: JobType
    params_model: Type[BaseModel]
    required_services: Tuple[str, ...] = ()

    def validate(self, job: JobRecord) -> BaseModel:
        """
        Parse the job metadata into the handler's input model.

        Raises:
            ValueError: If the metadata is invalid
        """
        return self.params_model.model_validate(job.metadata)

    def execute(self, job: JobRecord, context: JobContext) -> Dict[str, Any]:
        """
        Validate the job, then run it.

        Args:
            job: Claimed job record
            context: Execution context of this attempt

        Returns:
            Result payload stored on the completed job

        Raises:
            TerminalFailure: If the metadata is invalid
            JobCancelled: If cancellation was observed at a checkpoint
        """
        try:
            params = self.validate(job)
        except ValueError as e:
            context.logger.error(f"Validation failed: {e}")
            raise TerminalFailure(f"Invalid {job.type.value} job: {e}") from e

        context.logger.info(f"Starting {self.__class__.__name__} (attempt {context.attempt})")
        context.check_cancelled()
        result = self.run(params, context)
        context.logger.info(f"{self.__class__.__name__} finished")
        return result

    def run(self, params: Any, context: JobContext) -> Dict[str, Any]:
        """
        Run the handler logic (to be implemented by subclasses).

        Args:
            params: Validated input
            context: Execution context

        Returns:
            Result payload
        """
        raise NotImplementedError
