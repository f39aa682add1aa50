"""Job routes."""

import logging
import uuid
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from datacollector.errors import ConfigurationError, ConflictError, JobNotFoundError
from datacollector.orchestrator import Orchestrator
from datacollector.schemas.job import (
    HealthInfo,
    JobCreate,
    JobEventRecord,
    JobFilters,
    JobRecord,
    JobStatus,
    JobType,
    QueueStats,
    SubmissionResult,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_orchestrator(request: Request) -> Orchestrator:
    """Orchestrator built at application startup."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Job orchestrator not available")
    return orchestrator


@router.post("", response_model=SubmissionResult, status_code=201)
def create_job(
    data: JobCreate,
    x_user_id: Optional[str] = Header(default=None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Submit a new job."""
    try:
        result = orchestrator.submit(
            data.type,
            metadata=data.metadata,
            priority=data.priority,
            owner_id=x_user_id,
            job_id=data.id,
            delay=data.delay,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))

    logger.info(f"Submitted {data.type.value} job {result.id}")
    return result


@router.get("", response_model=List[JobRecord])
def list_jobs(
    type: Optional[JobType] = None,
    status: Optional[JobStatus] = None,
    limit: int = 50,
    offset: int = 0,
    mine: bool = False,
    x_user_id: Optional[str] = Header(default=None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """List jobs, newest first."""
    try:
        filters = JobFilters(
            type=type,
            status=status,
            owner_id=x_user_id if mine else None,
            limit=limit,
            offset=offset,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return orchestrator.list(filters)


@router.get("/stats", response_model=List[QueueStats])
def queue_stats(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Counters of every queue."""
    return orchestrator.stats()


@router.get("/health", response_model=HealthInfo)
def processor_health(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Processor and queue health."""
    return orchestrator.health()


@router.post("/clean")
def clean_jobs(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Dict[str, int]:
    """Remove finished jobs past their retention."""
    return {"removed": orchestrator.clean()}


@router.post("/queues/{job_type}/pause", response_model=List[QueueStats])
def pause_queue(job_type: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Stop dequeuing jobs of a type."""
    try:
        orchestrator.pause(job_type)
        return orchestrator.stats(JobType(job_type.lower()))
    except (ConfigurationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/queues/{job_type}/resume", response_model=List[QueueStats])
def resume_queue(job_type: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Restart dequeuing jobs of a type."""
    try:
        orchestrator.resume(job_type)
        return orchestrator.stats(JobType(job_type.lower()))
    except (ConfigurationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{job_id}", response_model=JobRecord)
def get_job(job_id: uuid.UUID, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Get a job."""
    job = orchestrator.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.get("/{job_id}/events", response_model=List[JobEventRecord])
def get_job_events(job_id: uuid.UUID, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Progress and transition log of a job."""
    try:
        return orchestrator.events(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@router.post("/{job_id}/cancel")
def cancel_job(job_id: uuid.UUID, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Cancel a pending or running job."""
    job = orchestrator.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    if not orchestrator.cancel(job_id):
        raise HTTPException(status_code=409, detail=f"Job cannot be cancelled in status {job.status.value}")

    return {"id": str(job_id), "cancelled": True}


@router.delete("/{job_id}", status_code=204)
def delete_job(job_id: uuid.UUID, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Delete a job and its event log."""
    if not orchestrator.delete(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return Response(status_code=204)
