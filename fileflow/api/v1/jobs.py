"""Job management API: queue processing, poll status, list jobs, queue stats."""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Optional

from fileflow.exceptions import NotFoundError, ServiceUnavailableError
from fileflow.jobs.models import JobPage, JobRecord, JobStatus, QueueStats

router = APIRouter()

# Set by main.py during lifespan
_dispatcher = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def _require_dispatcher():
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")
    return _dispatcher


class ProcessRequest(BaseModel):
    priority: int = 0


class ProcessResponse(BaseModel):
    job_id: str
    file_id: str
    status: str
    message: str


@router.post("/process/{file_id}", response_model=ProcessResponse, status_code=202)
async def process_file(file_id: str, request: Optional[ProcessRequest] = None):
    """Queue a processing job for an uploaded file."""
    dispatcher = _require_dispatcher()
    priority = request.priority if request else 0
    try:
        job = await dispatcher.add_job(file_id, priority)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ServiceUnavailableError as e:
        raise HTTPException(status_code=503, detail=e.message, headers={"Retry-After": "60"})

    return ProcessResponse(
        job_id=job.job_id,
        file_id=job.file_id,
        status=job.status.value,
        message="File processing job queued. Poll GET /api/v1/jobs/{id} for status.",
    )


@router.get("/jobs/{job_id}", response_model=JobRecord)
async def get_job_status(job_id: str):
    dispatcher = _require_dispatcher()
    try:
        return await dispatcher.get_job_status(job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@router.get("/jobs", response_model=JobPage)
async def list_jobs(status: Optional[JobStatus] = None, page: int = 1, limit: int = 20):
    dispatcher = _require_dispatcher()
    if page < 1 or not 1 <= limit <= 100:
        raise HTTPException(status_code=400, detail="page must be >= 1 and limit between 1 and 100")
    return await dispatcher.list_jobs(status=status, page=page, limit=limit)


@router.get("/queue/stats", response_model=QueueStats)
async def get_queue_stats():
    """Job and file counts by status, active executions and degraded flag."""
    dispatcher = _require_dispatcher()
    return await dispatcher.get_stats()
