"""Record store interface and an in-memory implementation.

The store persists three collections: files, jobs and parsed line records.
Documents are rewritten with "load, mutate, save" cycles; the in-memory store
hands out copies so callers see the same semantics as a real database.
"""

import itertools
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from fileflow.exceptions import QuotaExhaustedError
from fileflow.jobs.models import (
    FileRecord,
    FileStatus,
    JobRecord,
    JobStatus,
    LineRecord,
)


class RecordStore(ABC):
    """Persistence for files, jobs and parsed lines."""

    # Files

    @abstractmethod
    async def create_file(self, file: FileRecord) -> FileRecord:
        ...

    @abstractmethod
    async def get_file(self, file_id: str) -> Optional[FileRecord]:
        ...

    @abstractmethod
    async def save_file(self, file: FileRecord) -> FileRecord:
        ...

    @abstractmethod
    async def update_file_status(
        self,
        file_id: str,
        status: FileStatus,
        processed_at: Optional[datetime] = None,
    ) -> None:
        """Atomically set a file's status without loading it first."""
        ...

    @abstractmethod
    async def list_files(
        self, status: Optional[FileStatus] = None, skip: int = 0, limit: int = 20
    ) -> List[FileRecord]:
        """Newest upload first."""
        ...

    @abstractmethod
    async def count_files(self, status: Optional[FileStatus] = None) -> int:
        ...

    @abstractmethod
    async def delete_file(self, file_id: str) -> None:
        ...

    # Jobs

    @abstractmethod
    async def create_job(self, job: JobRecord) -> JobRecord:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def save_job(self, job: JobRecord) -> JobRecord:
        ...

    @abstractmethod
    async def next_pending_job(
        self,
        exclude_file_ids: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> Optional[JobRecord]:
        """Pending job with the highest priority, oldest first within a priority.

        Jobs for files in ``exclude_file_ids`` and jobs whose ``retry_at`` is
        later than ``now`` are not eligible.
        """
        ...

    @abstractmethod
    async def find_jobs(self, status: JobStatus) -> List[JobRecord]:
        ...

    @abstractmethod
    async def list_jobs(
        self, status: Optional[JobStatus] = None, skip: int = 0, limit: int = 20
    ) -> List[JobRecord]:
        """Newest job first."""
        ...

    @abstractmethod
    async def count_jobs(self, status: Optional[JobStatus] = None) -> int:
        ...

    # Parsed lines

    @abstractmethod
    async def insert_lines(self, file_id: str, lines: Iterable[LineRecord]) -> int:
        """Insert line records, ignoring any (file_id, line_number) already stored.

        Returns the number of records newly stored.
        """
        ...

    @abstractmethod
    async def list_lines(self, file_id: str, skip: int = 0, limit: int = 100) -> List[LineRecord]:
        """Ordered by line number."""
        ...

    @abstractmethod
    async def count_lines(self, file_id: str) -> int:
        ...

    @abstractmethod
    async def delete_lines(self, file_id: str) -> int:
        ...


class InMemoryRecordStore(RecordStore):
    """Dict-backed store for local development and tests.

    Set ``quota_exhausted`` to make every write raise ``QuotaExhaustedError``.
    """

    def __init__(self):
        self._files: Dict[str, FileRecord] = {}
        self._jobs: Dict[str, JobRecord] = {}
        self._job_seq: Dict[str, int] = {}
        self._lines: Dict[Tuple[str, int], LineRecord] = {}
        self._seq = itertools.count()
        self.quota_exhausted = False

    def _check_quota(self) -> None:
        if self.quota_exhausted:
            raise QuotaExhaustedError("you are over your space quota")

    async def create_file(self, file: FileRecord) -> FileRecord:
        self._check_quota()
        self._files[file.file_id] = file.model_copy(deep=True)
        return file

    async def get_file(self, file_id: str) -> Optional[FileRecord]:
        file = self._files.get(file_id)
        return file.model_copy(deep=True) if file else None

    async def save_file(self, file: FileRecord) -> FileRecord:
        self._check_quota()
        self._files[file.file_id] = file.model_copy(deep=True)
        return file

    async def update_file_status(
        self,
        file_id: str,
        status: FileStatus,
        processed_at: Optional[datetime] = None,
    ) -> None:
        self._check_quota()
        file = self._files.get(file_id)
        if file is None:
            return
        file.status = status
        if processed_at is not None:
            file.processed_at = processed_at

    async def list_files(
        self, status: Optional[FileStatus] = None, skip: int = 0, limit: int = 20
    ) -> List[FileRecord]:
        files = [f for f in self._files.values() if status is None or f.status == status]
        files.sort(key=lambda f: f.uploaded_at, reverse=True)
        return [f.model_copy(deep=True) for f in files[skip:skip + limit]]

    async def count_files(self, status: Optional[FileStatus] = None) -> int:
        return sum(1 for f in self._files.values() if status is None or f.status == status)

    async def delete_file(self, file_id: str) -> None:
        self._files.pop(file_id, None)

    async def create_job(self, job: JobRecord) -> JobRecord:
        self._check_quota()
        self._jobs[job.job_id] = job.model_copy(deep=True)
        self._job_seq[job.job_id] = next(self._seq)
        return job

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def save_job(self, job: JobRecord) -> JobRecord:
        self._check_quota()
        if job.job_id not in self._job_seq:
            self._job_seq[job.job_id] = next(self._seq)
        self._jobs[job.job_id] = job.model_copy(deep=True)
        return job

    async def next_pending_job(
        self,
        exclude_file_ids: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> Optional[JobRecord]:
        excluded = set(exclude_file_ids)
        pending = [
            j for j in self._jobs.values()
            if j.status == JobStatus.PENDING
            and j.file_id not in excluded
            and (j.retry_at is None or now is None or j.retry_at <= now)
        ]
        if not pending:
            return None
        best = min(
            pending,
            key=lambda j: (-j.priority, j.created_at, self._job_seq[j.job_id]),
        )
        return best.model_copy(deep=True)

    async def find_jobs(self, status: JobStatus) -> List[JobRecord]:
        return [j.model_copy(deep=True) for j in self._jobs.values() if j.status == status]

    async def list_jobs(
        self, status: Optional[JobStatus] = None, skip: int = 0, limit: int = 20
    ) -> List[JobRecord]:
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: (j.created_at, self._job_seq[j.job_id]), reverse=True)
        return [j.model_copy(deep=True) for j in jobs[skip:skip + limit]]

    async def count_jobs(self, status: Optional[JobStatus] = None) -> int:
        return sum(1 for j in self._jobs.values() if status is None or j.status == status)

    async def insert_lines(self, file_id: str, lines: Iterable[LineRecord]) -> int:
        self._check_quota()
        inserted = 0
        for line in lines:
            key = (file_id, line.line_number)
            if key in self._lines:
                continue
            self._lines[key] = line.model_copy(deep=True)
            inserted += 1
        return inserted

    async def list_lines(self, file_id: str, skip: int = 0, limit: int = 100) -> List[LineRecord]:
        lines = sorted(
            (line for (fid, _), line in self._lines.items() if fid == file_id),
            key=lambda line: line.line_number,
        )
        return [line.model_copy(deep=True) for line in lines[skip:skip + limit]]

    async def count_lines(self, file_id: str) -> int:
        return sum(1 for (fid, _) in self._lines if fid == file_id)

    async def delete_lines(self, file_id: str) -> int:
        keys = [key for key in self._lines if key[0] == file_id]
        for key in keys:
            del self._lines[key]
        return len(keys)
