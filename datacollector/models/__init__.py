"""SQLAlchemy ORM models."""

from datacollector.models.job import Job, JobEvent

__all__ = [
    "Job",
    "JobEvent",
]
