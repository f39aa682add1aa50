"""Job handlers and their default registration table."""

import logging
from typing import Dict, List, Type

from datacollector.jobs.base import BaseJobHandler, JobContext, StepTracker
from datacollector.jobs.collection import CollectionJobHandler
from datacollector.jobs.indexing import IndexingJobHandler
from datacollector.jobs.processing import ProcessingJobHandler
from datacollector.jobs.search import SearchJobHandler
from datacollector.schemas.job import JobType
from datacollector.services.registry import ServiceRegistry

logger = logging.getLogger(__name__)

DEFAULT_HANDLERS: Dict[JobType, Type[BaseJobHandler]] = {
    JobType.COLLECTION: CollectionJobHandler,
    JobType.PROCESSING: ProcessingJobHandler,
    JobType.INDEXING: IndexingJobHandler,
    JobType.SEARCH: SearchJobHandler,
}


def register_default_handlers(processor, services: ServiceRegistry) -> List[JobType]:
    """
    Register every default handler whose required services are available.

    Args:
        processor: JobProcessor receiving the handlers
        services: Registry checked for each handler's required services

    Returns:
        Job types that were registered
    """
    registered = []
    for job_type, handler_class in DEFAULT_HANDLERS.items():
        missing = [name for name in handler_class.required_services if not services.has(name)]
        if missing:
            logger.info(f"Skipping {job_type.value} handler, missing services: {', '.join(missing)}")
            continue
        processor.register_handler(job_type, handler_class)
        registered.append(job_type)
    return registered


__all__ = [
    "BaseJobHandler",
    "CollectionJobHandler",
    "DEFAULT_HANDLERS",
    "IndexingJobHandler",
    "JobContext",
    "ProcessingJobHandler",
    "SearchJobHandler",
    "StepTracker",
    "register_default_handlers",
]
