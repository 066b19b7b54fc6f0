"""Job dispatcher interface used by the HTTP layer."""

from abc import ABC, abstractmethod
from typing import Optional

from fileflow.jobs.models import JobPage, JobRecord, JobStatus, QueueStats


class JobDispatcher(ABC):
    """Abstract interface for admitting and inspecting processing jobs."""

    @abstractmethod
    async def add_job(self, file_id: str, priority: int = 0) -> JobRecord:
        """Queue a file for processing. Returns the pending job without waiting for it."""
        ...

    @abstractmethod
    async def get_job_status(self, job_id: str) -> JobRecord:
        """Current state of a job. Raises NotFoundError for unknown ids."""
        ...

    @abstractmethod
    async def list_jobs(
        self, status: Optional[JobStatus] = None, page: int = 1, limit: int = 20
    ) -> JobPage:
        ...

    @abstractmethod
    async def get_stats(self) -> QueueStats:
        ...

    @abstractmethod
    async def initialize(self) -> None:
        """Recover from a previous run and start the worker loop."""
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
