"""
Pytest configuration and shared fixtures.

Async code is driven with ``asyncio.run`` from plain test functions.
"""
import asyncio
from typing import AsyncIterator, Callable, Iterable, List

import pytest

from fileflow.db.record_store import InMemoryRecordStore
from fileflow.jobs.models import FileRecord, JobRecord, JobStatus
from fileflow.processing.batcher import BatchResult
from fileflow.services.file_service import FileService
from fileflow.storage.blob_storage import LocalBlobStorage


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )


# =======================
# STREAM HELPERS
# =======================

async def byte_stream(*chunks: bytes, delay: float = 0.0) -> AsyncIterator[bytes]:
    for chunk in chunks:
        if delay:
            await asyncio.sleep(delay)
        yield chunk


async def failing_stream(*chunks: bytes, error: Exception = None) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk
    raise error or ConnectionResetError("connection reset by peer")


class RecordingSink:
    """Batch sink that keeps what it was given and can fail on chosen calls."""

    def __init__(self, fail_on: Iterable[int] = ()):
        self.batches: List[list] = []
        self.calls = 0
        self._fail_on = set(fail_on)

    async def __call__(self, batch):
        self.calls += 1
        if self.calls in self._fail_on:
            raise RuntimeError(f"sink failure on call {self.calls}")
        self.batches.append(list(batch))


async def wait_until(predicate: Callable[[], object], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


async def wait_for_job_status(store, job_id: str, *statuses: JobStatus, timeout: float = 5.0) -> JobRecord:
    async def reached():
        job = await store.get_job(job_id)
        return job is not None and job.status in statuses

    await wait_until(reached, timeout=timeout)
    return await store.get_job(job_id)


class ScriptedPipeline:
    """Pipeline stand-in: fails the first ``failures`` executions, then succeeds."""

    def __init__(self, failures: int = 0, delay: float = 0.0, processed: int = 1):
        self.failures = failures
        self.delay = delay
        self.processed = processed
        self.calls = 0
        self.running = 0
        self.max_running = 0

    async def execute(self, job):
        self.calls += 1
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.calls <= self.failures:
                raise RuntimeError(f"pipeline failure {self.calls}")
            return BatchResult(processed=self.processed, failed=0, errors=[])
        finally:
            self.running -= 1


# =======================
# STORE FIXTURES
# =======================

@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def blob_storage(tmp_path) -> LocalBlobStorage:
    return LocalBlobStorage(str(tmp_path / "blobs"), bucket="test-bucket", chunk_size=16)


@pytest.fixture
def file_service(store, blob_storage) -> FileService:
    return FileService(store, blob_storage)


@pytest.fixture
def make_file() -> Callable[..., FileRecord]:
    """File record that was never uploaded; for scheduler tests with fake pipelines."""

    def _make(name: str = "data.txt") -> FileRecord:
        return FileRecord(
            original_name=name,
            storage_bucket="test-bucket",
            storage_key=f"uploads/x/{name}",
            file_size=0,
            mime_type="text/plain",
        )

    return _make
