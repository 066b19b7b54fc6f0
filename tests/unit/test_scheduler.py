"""
Unit tests for the job scheduler: admission, retries, timeouts, recovery, degraded mode.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import ScriptedPipeline, wait_for_job_status, wait_until
from fileflow.db.record_store import InMemoryRecordStore
from fileflow.exceptions import (
    FileAlreadyProcessingError,
    NotFoundError,
    QuotaExhaustedError,
    ServiceUnavailableError,
)
from fileflow.jobs.models import FileStatus, JobRecord, JobStatus, utcnow
from fileflow.jobs.scheduler import INTERRUPTED_JOB_MESSAGE, JobEvent, JobScheduler
from fileflow.processing.batcher import BatchResult


def make_scheduler(store, pipeline, **overrides):
    options = dict(
        max_concurrent_jobs=3,
        max_attempts=3,
        job_timeout_seconds=5.0,
        poll_interval_seconds=0.01,
        shutdown_grace_seconds=1.0,
    )
    options.update(overrides)
    return JobScheduler(store, pipeline, **options)


class EventLog:
    def __init__(self):
        self.events = []

    def __call__(self, event, job):
        self.events.append((event, job))

    def names(self, job_id=None):
        return [e for e, j in self.events if job_id is None or j.job_id == job_id]


@pytest.mark.unit
class TestRetries:

    def test_always_failing_job_fails_after_max_attempts(self, store, make_file):
        events = EventLog()

        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(store, ScriptedPipeline(failures=99), listeners=[events])
            await scheduler.initialize()
            job = await scheduler.add_job(file.file_id)
            final = await wait_for_job_status(store, job.job_id, JobStatus.FAILED)
            await scheduler.shutdown()
            return final, await store.get_file(file.file_id)

        job, file = asyncio.run(scenario())

        assert job.attempts == 3
        assert job.completed_at is not None
        assert job.result is None
        assert job.error.message == "pipeline failure 3"
        assert file.status == FileStatus.FAILED
        assert events.names(job.job_id) == [
            JobEvent.START, JobEvent.RETRY,
            JobEvent.START, JobEvent.RETRY,
            JobEvent.START, JobEvent.FAILED,
        ]

    def test_success_on_second_attempt(self, store, make_file):
        events = EventLog()

        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(
                store, ScriptedPipeline(failures=1, processed=7), listeners=[events]
            )
            await scheduler.initialize()
            job = await scheduler.add_job(file.file_id)
            final = await wait_for_job_status(store, job.job_id, JobStatus.COMPLETED)
            await scheduler.shutdown()
            return final

        job = asyncio.run(scenario())

        assert job.attempts == 2
        assert job.error is None
        assert job.result.processed_count == 7
        assert job.result.failed_count == 0
        assert job.completed_at >= job.started_at
        assert events.names(job.job_id) == [
            JobEvent.START, JobEvent.RETRY, JobEvent.START, JobEvent.COMPLETE,
        ]

    def test_timeout_counts_as_failed_attempt(self, store, make_file):
        pipeline = ScriptedPipeline(delay=5.0)

        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(
                store, pipeline, max_attempts=1, job_timeout_seconds=0.05
            )
            await scheduler.initialize()
            job = await scheduler.add_job(file.file_id)
            final = await wait_for_job_status(store, job.job_id, JobStatus.FAILED)
            await scheduler.shutdown()
            return final

        job = asyncio.run(scenario())

        assert job.attempts == 1
        assert job.error.message == "Job timeout - exceeded maximum processing time"
        # the timed-out execution was cancelled, not left running
        assert pipeline.running == 0

    def test_max_attempts_recorded_on_job(self, store, make_file):
        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(store, ScriptedPipeline(), max_attempts=5)
            job = await scheduler.add_job(file.file_id)
            return await store.get_job(job.job_id)

        job = asyncio.run(scenario())

        assert job.max_attempts == 5
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.job_id.startswith("job-")


@pytest.mark.unit
class TestRetryBackoff:

    def test_attempts_spaced_by_exponential_backoff(self, store, make_file):
        events = EventLog()

        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(
                store, ScriptedPipeline(failures=99), poll_interval_seconds=0.05, listeners=[events]
            )
            await scheduler.initialize()
            job = await scheduler.add_job(file.file_id)
            final = await wait_for_job_status(store, job.job_id, JobStatus.FAILED)
            await scheduler.shutdown()
            return final

        job = asyncio.run(scenario())

        starts = [j.started_at for e, j in events.events if e == JobEvent.START]
        retries = [j for e, j in events.events if e == JobEvent.RETRY]
        assert job.attempts == 3
        assert len(starts) == 3
        assert starts[1] - starts[0] >= timedelta(seconds=0.05)
        assert starts[2] - starts[1] >= timedelta(seconds=0.1)
        assert all(r.retry_at is not None and r.retry_at > r.started_at for r in retries)

    def test_retry_waits_while_other_work_runs(self, store, make_file):
        pipeline = ScriptedPipeline(failures=1)
        events = EventLog()

        async def scenario():
            failing = await store.create_file(make_file("a.txt"))
            other = await store.create_file(make_file("b.txt"))
            scheduler = make_scheduler(
                store, pipeline, max_concurrent_jobs=1, poll_interval_seconds=0.2, listeners=[events]
            )
            first = await scheduler.add_job(failing.file_id, priority=5)
            second = await scheduler.add_job(other.file_id)
            await scheduler.initialize()
            for job in (first, second):
                await wait_for_job_status(store, job.job_id, JobStatus.COMPLETED)
            await scheduler.shutdown()
            return first.job_id, second.job_id

        first, second = asyncio.run(scenario())

        started = [j.job_id for e, j in events.events if e == JobEvent.START]
        # the higher-priority job is not re-admitted before its backoff expires
        assert started == [first, second, first]


@pytest.mark.unit
class TestFileExclusivity:

    def test_one_execution_per_file(self, store, make_file):
        pipeline = ScriptedPipeline(delay=0.1)

        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(store, pipeline, max_concurrent_jobs=2)
            await scheduler.initialize()
            first = await scheduler.add_job(file.file_id)
            second = await scheduler.add_job(file.file_id)
            jobs = [
                await wait_for_job_status(store, job.job_id, JobStatus.COMPLETED, JobStatus.FAILED)
                for job in (first, second)
            ]
            await scheduler.shutdown()
            return jobs

        first, second = asyncio.run(scenario())

        assert pipeline.max_running == 1
        assert first.status == JobStatus.COMPLETED
        assert second.status == JobStatus.COMPLETED
        assert first.attempts == 1
        assert second.attempts == 1
        assert second.started_at >= first.completed_at

    def test_other_files_still_run_concurrently(self, store, make_file):
        pipeline = ScriptedPipeline(delay=0.1)

        async def scenario():
            busy = await store.create_file(make_file("a.txt"))
            free = await store.create_file(make_file("b.txt"))
            scheduler = make_scheduler(store, pipeline, max_concurrent_jobs=2)
            await scheduler.initialize()
            jobs = [
                await scheduler.add_job(busy.file_id),
                await scheduler.add_job(busy.file_id),
                await scheduler.add_job(free.file_id),
            ]
            for job in jobs:
                await wait_for_job_status(store, job.job_id, JobStatus.COMPLETED)
            await scheduler.shutdown()

        asyncio.run(scenario())

        assert pipeline.max_running == 2

    def test_busy_file_defers_without_charging_attempt(self, store, make_file):
        class BusyOncePipeline:
            def __init__(self):
                self.calls = 0

            async def execute(self, job):
                self.calls += 1
                if self.calls == 1:
                    raise FileAlreadyProcessingError(job.file_id)
                return BatchResult(processed=1)

        events = EventLog()

        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(store, BusyOncePipeline(), max_attempts=1, listeners=[events])
            await scheduler.initialize()
            job = await scheduler.add_job(file.file_id)
            final = await wait_for_job_status(store, job.job_id, JobStatus.COMPLETED, JobStatus.FAILED)
            await scheduler.shutdown()
            return final, await store.get_file(file.file_id)

        job, file = asyncio.run(scenario())

        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 1
        assert file.status == FileStatus.UPLOADED
        assert events.names(job.job_id) == [
            JobEvent.START, JobEvent.RETRY, JobEvent.START, JobEvent.COMPLETE,
        ]


@pytest.mark.unit
class TestAdmission:

    def test_concurrency_ceiling_of_one(self, store, make_file):
        pipeline = ScriptedPipeline(delay=0.05)

        async def scenario():
            scheduler = make_scheduler(store, pipeline, max_concurrent_jobs=1)
            await scheduler.initialize()
            job_ids = []
            for i in range(3):
                file = await store.create_file(make_file(f"f{i}.txt"))
                job_ids.append((await scheduler.add_job(file.file_id)).job_id)
            for job_id in job_ids:
                await wait_for_job_status(store, job_id, JobStatus.COMPLETED)
            await scheduler.shutdown()

        asyncio.run(scenario())

        assert pipeline.calls == 3
        assert pipeline.max_running == 1

    def test_concurrency_ceiling_respected(self, store, make_file):
        pipeline = ScriptedPipeline(delay=0.05)

        async def scenario():
            scheduler = make_scheduler(store, pipeline, max_concurrent_jobs=2)
            await scheduler.initialize()
            job_ids = []
            for i in range(6):
                file = await store.create_file(make_file(f"f{i}.txt"))
                job_ids.append((await scheduler.add_job(file.file_id)).job_id)
            for job_id in job_ids:
                await wait_for_job_status(store, job_id, JobStatus.COMPLETED)
            await scheduler.shutdown()

        asyncio.run(scenario())

        assert pipeline.calls == 6
        assert pipeline.max_running == 2

    def test_priority_then_creation_order(self, store, make_file):
        events = EventLog()

        async def scenario():
            scheduler = make_scheduler(
                store, ScriptedPipeline(), max_concurrent_jobs=1, listeners=[events]
            )
            files = [await store.create_file(make_file(f"f{i}.txt")) for i in range(3)]
            # Not started yet, so all three are pending when polling begins.
            low_first = await scheduler.add_job(files[0].file_id, priority=0)
            high = await scheduler.add_job(files[1].file_id, priority=5)
            low_second = await scheduler.add_job(files[2].file_id, priority=0)
            await scheduler.initialize()
            for job in (low_first, high, low_second):
                await wait_for_job_status(store, job.job_id, JobStatus.COMPLETED)
            await scheduler.shutdown()
            return [low_first.job_id, high.job_id, low_second.job_id]

        low_first, high, low_second = asyncio.run(scenario())

        started = [j.job_id for e, j in events.events if e == JobEvent.START]
        assert started == [high, low_first, low_second]

    def test_unknown_file_rejected(self, store):
        async def scenario():
            scheduler = make_scheduler(store, ScriptedPipeline())
            await scheduler.add_job("no-such-file")

        with pytest.raises(NotFoundError):
            asyncio.run(scenario())

        assert asyncio.run(store.count_jobs()) == 0

    def test_process_next_idle_when_not_running(self, store, make_file):
        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(store, ScriptedPipeline())
            await scheduler.add_job(file.file_id)
            return await scheduler.process_next()

        assert asyncio.run(scenario()) is None

    def test_failing_listener_does_not_stop_job(self, store, make_file):
        def broken_listener(event, job):
            raise RuntimeError("listener bug")

        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(store, ScriptedPipeline(), listeners=[broken_listener])
            await scheduler.initialize()
            job = await scheduler.add_job(file.file_id)
            final = await wait_for_job_status(store, job.job_id, JobStatus.COMPLETED)
            await scheduler.shutdown()
            return final

        assert asyncio.run(scenario()).status == JobStatus.COMPLETED

    def test_listener_receives_snapshot(self, store, make_file):
        events = EventLog()

        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(store, ScriptedPipeline(), listeners=[events])
            await scheduler.initialize()
            job = await scheduler.add_job(file.file_id)
            await wait_for_job_status(store, job.job_id, JobStatus.COMPLETED)
            await scheduler.shutdown()

        asyncio.run(scenario())

        start_snapshot = events.events[0][1]
        assert events.events[0][0] == JobEvent.START
        assert start_snapshot.status == JobStatus.PROCESSING
        assert start_snapshot.result is None


@pytest.mark.unit
class TestLifecycle:

    def test_startup_fails_interrupted_jobs(self, store, make_file):
        events = EventLog()

        async def scenario():
            file = make_file()
            file.status = FileStatus.PROCESSING
            await store.create_file(file)
            stuck = JobRecord(
                file_id=file.file_id,
                status=JobStatus.PROCESSING,
                attempts=1,
                started_at=utcnow(),
            )
            await store.create_job(stuck)

            pipeline = ScriptedPipeline()
            scheduler = make_scheduler(store, pipeline, listeners=[events])
            await scheduler.initialize()
            await asyncio.sleep(0.05)
            await scheduler.shutdown()
            return (
                await store.get_job(stuck.job_id),
                await store.get_file(file.file_id),
                pipeline.calls,
            )

        job, file, calls = asyncio.run(scenario())

        assert job.status == JobStatus.FAILED
        assert job.error.message == INTERRUPTED_JOB_MESSAGE
        assert job.completed_at is not None
        assert file.status == FileStatus.FAILED
        assert calls == 0
        assert events.names() == [JobEvent.RECOVERED]

    def test_shutdown_requeues_stranded_job(self, store, make_file):
        pipeline = ScriptedPipeline(delay=10.0)

        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(store, pipeline, shutdown_grace_seconds=0.05)
            await scheduler.initialize()
            job = await scheduler.add_job(file.file_id)
            await wait_for_job_status(store, job.job_id, JobStatus.PROCESSING)
            await scheduler.shutdown()
            return await store.get_job(job.job_id), scheduler

        job, scheduler = asyncio.run(scenario())

        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.started_at is None
        assert scheduler.active_count == 0
        assert not scheduler.running

    def test_shutdown_waits_for_active_jobs(self, store, make_file):
        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(store, ScriptedPipeline(delay=0.1))
            await scheduler.initialize()
            job = await scheduler.add_job(file.file_id)
            await wait_for_job_status(store, job.job_id, JobStatus.PROCESSING)
            await scheduler.shutdown()
            return await store.get_job(job.job_id)

        assert asyncio.run(scenario()).status == JobStatus.COMPLETED

    def test_no_admission_after_shutdown(self, store, make_file):
        pipeline = ScriptedPipeline()

        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(store, pipeline)
            await scheduler.initialize()
            await scheduler.shutdown()
            job = await scheduler.add_job(file.file_id)
            await asyncio.sleep(0.05)
            return await store.get_job(job.job_id)

        job = asyncio.run(scenario())

        assert job.status == JobStatus.PENDING
        assert pipeline.calls == 0


@pytest.mark.unit
class TestDegradedMode:

    def test_quota_error_on_admission(self, store, make_file):
        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(store, ScriptedPipeline())
            await scheduler.initialize()
            store.quota_exhausted = True
            with pytest.raises(ServiceUnavailableError):
                await scheduler.add_job(file.file_id)

            # stays degraded once storage recovers
            store.quota_exhausted = False
            with pytest.raises(ServiceUnavailableError):
                await scheduler.add_job(file.file_id)

            stats = await scheduler.get_stats()
            status = await scheduler.list_jobs()
            await scheduler.shutdown()
            return stats, status

        stats, page = asyncio.run(scenario())

        assert stats.degraded is True
        assert stats.jobs["pending"] == 0
        assert page.pagination.total == 0

    def test_quota_error_during_recovery_starts_degraded(self, make_file):
        store = InMemoryRecordStore()

        async def scenario():
            file = make_file()
            await store.create_file(file)
            await store.create_job(JobRecord(file_id=file.file_id, status=JobStatus.PROCESSING))
            store.quota_exhausted = True
            scheduler = make_scheduler(store, ScriptedPipeline())
            await scheduler.initialize()
            running = scheduler.running
            await scheduler.shutdown()
            return scheduler, running

        scheduler, running = asyncio.run(scenario())

        assert running
        assert scheduler.guard.degraded

    def test_quota_error_during_execution_refunds_attempt(self, store, make_file):
        class QuotaOncePipeline:
            def __init__(self):
                self.calls = 0

            async def execute(self, job):
                self.calls += 1
                if self.calls == 1:
                    raise QuotaExhaustedError("you are over your space quota")
                return BatchResult(processed=2)

        pipeline = QuotaOncePipeline()

        async def scenario():
            file = await store.create_file(make_file())
            scheduler = make_scheduler(store, pipeline, max_attempts=1)
            await scheduler.initialize()
            job = await scheduler.add_job(file.file_id)
            final = await wait_for_job_status(store, job.job_id, JobStatus.COMPLETED)
            await scheduler.shutdown()
            return final, scheduler

        job, scheduler = asyncio.run(scenario())

        assert pipeline.calls == 2
        assert job.attempts == 1
        assert job.result.processed_count == 2
        assert scheduler.guard.degraded


@pytest.mark.unit
class TestQueries:

    def test_get_job_status_unknown(self, store):
        scheduler = make_scheduler(store, ScriptedPipeline())
        with pytest.raises(NotFoundError):
            asyncio.run(scheduler.get_job_status("job-missing"))

    def test_stats_and_listing(self, store, make_file):
        async def scenario():
            scheduler = make_scheduler(store, ScriptedPipeline())
            for i in range(5):
                file = await store.create_file(make_file(f"f{i}.txt"))
                await scheduler.add_job(file.file_id)
            stats = await scheduler.get_stats()
            first = await scheduler.list_jobs(page=1, limit=2)
            last = await scheduler.list_jobs(page=3, limit=2)
            completed = await scheduler.list_jobs(status=JobStatus.COMPLETED)
            return stats, first, last, completed

        stats, first, last, completed = asyncio.run(scenario())

        assert stats.jobs == {"pending": 5, "processing": 0, "completed": 0, "failed": 0}
        assert stats.files["uploaded"] == 5
        assert stats.active == 0
        assert stats.max_concurrent == 3
        assert stats.degraded is False
        assert len(first.jobs) == 2
        assert first.pagination.pages == 3
        assert len(last.jobs) == 1
        assert completed.pagination.total == 0

    def test_active_count_while_running(self, store, make_file):
        async def scenario():
            scheduler = make_scheduler(store, ScriptedPipeline(delay=0.2))
            await scheduler.initialize()
            file = await store.create_file(make_file())
            await scheduler.add_job(file.file_id)
            await wait_until(lambda: scheduler.active_count == 1)
            stats = await scheduler.get_stats()
            await scheduler.shutdown()
            return stats

        stats = asyncio.run(scenario())

        assert stats.active == 1
        assert stats.jobs["processing"] == 1
