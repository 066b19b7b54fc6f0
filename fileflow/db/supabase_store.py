"""Record store backed by Supabase (PostgREST) tables.

Expected tables: ``files`` keyed by ``file_id``, ``jobs`` keyed by ``job_id``
and ``file_data`` with a unique constraint on ``(file_id, line_number)``.
The supabase client is synchronous, so every call runs in the default
executor to keep the event loop free.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional

from supabase import Client

from fileflow.db.record_store import RecordStore
from fileflow.db.supabase_client import get_supabase
from fileflow.jobs.models import (
    FileRecord,
    FileStatus,
    JobRecord,
    JobStatus,
    LineRecord,
)


class SupabaseRecordStore(RecordStore):

    def __init__(
        self,
        client: Optional[Client] = None,
        files_table: str = "files",
        jobs_table: str = "jobs",
        lines_table: str = "file_data",
    ):
        self._client = client
        self._files_table = files_table
        self._jobs_table = jobs_table
        self._lines_table = lines_table

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase()
        return self._client

    async def _run(self, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    def _table(self, name: str):
        return self.client.table(name)

    # Files

    async def create_file(self, file: FileRecord) -> FileRecord:
        row = file.model_dump(mode="json")
        await self._run(lambda: self._table(self._files_table).insert(row).execute())
        return file

    async def get_file(self, file_id: str) -> Optional[FileRecord]:
        response = await self._run(
            lambda: self._table(self._files_table)
            .select("*")
            .eq("file_id", file_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return FileRecord.model_validate(rows[0]) if rows else None

    async def save_file(self, file: FileRecord) -> FileRecord:
        row = file.model_dump(mode="json")
        await self._run(
            lambda: self._table(self._files_table).upsert(row, on_conflict="file_id").execute()
        )
        return file

    async def update_file_status(
        self,
        file_id: str,
        status: FileStatus,
        processed_at: Optional[datetime] = None,
    ) -> None:
        changes = {"status": status.value}
        if processed_at is not None:
            changes["processed_at"] = processed_at.isoformat()
        await self._run(
            lambda: self._table(self._files_table).update(changes).eq("file_id", file_id).execute()
        )

    async def list_files(
        self, status: Optional[FileStatus] = None, skip: int = 0, limit: int = 20
    ) -> List[FileRecord]:
        def query():
            q = self._table(self._files_table).select("*")
            if status is not None:
                q = q.eq("status", status.value)
            return q.order("uploaded_at", desc=True).range(skip, skip + limit - 1).execute()

        response = await self._run(query)
        return [FileRecord.model_validate(row) for row in response.data or []]

    async def count_files(self, status: Optional[FileStatus] = None) -> int:
        def query():
            q = self._table(self._files_table).select("file_id", count="exact")
            if status is not None:
                q = q.eq("status", status.value)
            return q.execute()

        response = await self._run(query)
        return response.count or 0

    async def delete_file(self, file_id: str) -> None:
        await self._run(
            lambda: self._table(self._files_table).delete().eq("file_id", file_id).execute()
        )

    # Jobs

    async def create_job(self, job: JobRecord) -> JobRecord:
        row = job.model_dump(mode="json")
        await self._run(lambda: self._table(self._jobs_table).insert(row).execute())
        return job

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        response = await self._run(
            lambda: self._table(self._jobs_table)
            .select("*")
            .eq("job_id", job_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return JobRecord.model_validate(rows[0]) if rows else None

    async def save_job(self, job: JobRecord) -> JobRecord:
        row = job.model_dump(mode="json")
        await self._run(
            lambda: self._table(self._jobs_table).upsert(row, on_conflict="job_id").execute()
        )
        return job

    async def next_pending_job(
        self,
        exclude_file_ids: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> Optional[JobRecord]:
        excluded = list(exclude_file_ids)

        def query():
            q = self._table(self._jobs_table).select("*").eq("status", JobStatus.PENDING.value)
            if excluded:
                q = q.not_.in_("file_id", excluded)
            if now is not None:
                q = q.or_(f"retry_at.is.null,retry_at.lte.{now.isoformat()}")
            return q.order("priority", desc=True).order("created_at").order("job_id").limit(1).execute()

        response = await self._run(query)
        rows = response.data or []
        return JobRecord.model_validate(rows[0]) if rows else None

    async def find_jobs(self, status: JobStatus) -> List[JobRecord]:
        response = await self._run(
            lambda: self._table(self._jobs_table).select("*").eq("status", status.value).execute()
        )
        return [JobRecord.model_validate(row) for row in response.data or []]

    async def list_jobs(
        self, status: Optional[JobStatus] = None, skip: int = 0, limit: int = 20
    ) -> List[JobRecord]:
        def query():
            q = self._table(self._jobs_table).select("*")
            if status is not None:
                q = q.eq("status", status.value)
            return q.order("created_at", desc=True).range(skip, skip + limit - 1).execute()

        response = await self._run(query)
        return [JobRecord.model_validate(row) for row in response.data or []]

    async def count_jobs(self, status: Optional[JobStatus] = None) -> int:
        def query():
            q = self._table(self._jobs_table).select("job_id", count="exact")
            if status is not None:
                q = q.eq("status", status.value)
            return q.execute()

        response = await self._run(query)
        return response.count or 0

    # Parsed lines

    async def insert_lines(self, file_id: str, lines: Iterable[LineRecord]) -> int:
        rows = [
            {**line.model_dump(mode="json"), "file_id": file_id}
            for line in lines
        ]
        if not rows:
            return 0
        # Rows already present are skipped by the unique (file_id, line_number) index.
        response = await self._run(
            lambda: self._table(self._lines_table)
            .upsert(rows, on_conflict="file_id,line_number", ignore_duplicates=True)
            .execute()
        )
        return len(response.data or [])

    async def list_lines(self, file_id: str, skip: int = 0, limit: int = 100) -> List[LineRecord]:
        response = await self._run(
            lambda: self._table(self._lines_table)
            .select("*")
            .eq("file_id", file_id)
            .order("line_number")
            .range(skip, skip + limit - 1)
            .execute()
        )
        return [LineRecord.model_validate(row) for row in response.data or []]

    async def count_lines(self, file_id: str) -> int:
        response = await self._run(
            lambda: self._table(self._lines_table)
            .select("line_number", count="exact")
            .eq("file_id", file_id)
            .execute()
        )
        return response.count or 0

    async def delete_lines(self, file_id: str) -> int:
        response = await self._run(
            lambda: self._table(self._lines_table).delete().eq("file_id", file_id).execute()
        )
        return len(response.data or [])
