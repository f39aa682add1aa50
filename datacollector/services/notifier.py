"""In-process fan-out of job status and progress events."""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from datacollector.schemas.job import JobStatus, utcnow

logger = logging.getLogger(__name__)


class JobUpdate(BaseModel):
    """Event delivered to subscribers."""

    job_id: UUID
    status: JobStatus
    message: Optional[str] = None
    progress: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: utcnow().isoformat())


Subscriber = Callable[[JobUpdate], None]


class StatusNotifier:
    """Delivers job updates to per-job and global subscribers.

    Callbacks run synchronously on the broadcasting thread. A failing
    callback is logged and skipped; it never fails the broadcast.
    """

    def __init__(self):
        """Initialize empty subscriber tables."""
        self._lock = threading.Lock()
        self._subscribers: Dict[UUID, List[Subscriber]] = defaultdict(list)
        self._global_subscribers: List[Subscriber] = []

    def subscribe(self, job_id: UUID, callback: Subscriber) -> None:
        """Receive updates for one job."""
        with self._lock:
            self._subscribers[job_id].append(callback)
        logger.debug(f"Subscription added for job {job_id}")

    def subscribe_all(self, callback: Subscriber) -> None:
        """Receive updates for every job."""
        with self._lock:
            self._global_subscribers.append(callback)

    def unsubscribe(self, job_id: UUID) -> None:
        """Drop all subscriptions for one job."""
        with self._lock:
            self._subscribers.pop(job_id, None)
        logger.debug(f"Subscriptions removed for job {job_id}")

    def subscriber_count(self, job_id: UUID) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, ())) + len(self._global_subscribers)

    def broadcast(
        self,
        job_id: UUID,
        status: JobStatus,
        message: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> JobUpdate:
        """
        Send an update to all subscribers of a job.

        Args:
            job_id: Job the update belongs to
            status: Job status at the time of the update
            message: Optional human-readable message
            data: Optional payload; ``progress`` is lifted onto the update

        Returns:
            The delivered update
        """
        data = dict(data or {})
        update = JobUpdate(
            job_id=job_id,
            status=status,
            message=message,
            progress=data.get("progress"),
            data=data,
        )

        with self._lock:
            callbacks = list(self._subscribers.get(job_id, ())) + list(self._global_subscribers)

        for callback in callbacks:
            try:
                callback(update)
            except Exception as e:
                logger.error(f"Subscriber failed for job {job_id}: {e}", exc_info=True)

        logger.debug(f"Broadcast {status.value} for job {job_id} to {len(callbacks)} subscribers")
        return update
