"""File, job and line record data models."""

import math
import secrets
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

MAX_RESULT_ERRORS = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    """Time-sortable job id: ``job-<epoch millis>-<random>``."""
    return f"job-{int(time.time() * 1000):013d}-{secrets.token_hex(5)}"


class FileStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FileRecord(BaseModel):
    """An uploaded file and where its bytes live in blob storage."""
    file_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    original_name: str
    storage_bucket: str
    storage_key: str
    file_size: int
    mime_type: str
    status: FileStatus = FileStatus.UPLOADED
    uploaded_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class JobResult(BaseModel):
    processed_count: int = 0
    failed_count: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class JobError(BaseModel):
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class JobRecord(BaseModel):
    """Tracks the lifecycle of one file-processing job."""
    job_id: str = Field(default_factory=new_job_id)
    file_id: str
    priority: int = 0
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    result: Optional[JobResult] = None
    error: Optional[JobError] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    # Not eligible for admission before this time (retry backoff).
    retry_at: Optional[datetime] = None


class LineRecord(BaseModel):
    """A parsed line as persisted; unique on (file_id, line_number)."""
    file_id: str
    line_number: int
    content: Optional[str] = None
    data: Optional[Any] = None
    timestamp: datetime = Field(default_factory=utcnow)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if limit else 0)


class JobPage(BaseModel):
    jobs: List[JobRecord]
    pagination: Pagination


class FilePage(BaseModel):
    files: List[FileRecord]
    pagination: Pagination


class LinePage(BaseModel):
    data: List[LineRecord]
    pagination: Pagination


class QueueStats(BaseModel):
    """Point-in-time view of the scheduler."""
    jobs: Dict[str, int]
    files: Dict[str, int]
    active: int
    max_concurrent: int
    degraded: bool
