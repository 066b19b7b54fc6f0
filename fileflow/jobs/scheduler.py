"""Persistent priority job scheduler driven by a polling asyncio loop.

Jobs live in the record store; this process only keeps a table of the
executions it is currently running. Each tick admits at most one pending job
(highest priority first, oldest first within a priority) while the number of
active executions is below the concurrency ceiling. A file is worked on by at
most one execution at a time, and a failed job waits out an exponential
backoff before it is eligible again. A finished execution frees its slot and
triggers the next admission straight away.
"""

import asyncio
import logging
from datetime import timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

from fileflow.db.record_store import RecordStore
from fileflow.exceptions import (
    FileAlreadyProcessingError,
    JobTimeoutError,
    NotFoundError,
    ServiceUnavailableError,
)
from fileflow.jobs.dispatcher import JobDispatcher
from fileflow.jobs.guard import DegradedModeGuard
from fileflow.jobs.models import (
    MAX_RESULT_ERRORS,
    FileStatus,
    JobError,
    JobPage,
    JobRecord,
    JobResult,
    JobStatus,
    Pagination,
    QueueStats,
    utcnow,
)
from fileflow.processing.batcher import BatchResult
from fileflow.processing.pipeline import ProcessingPipeline

logger = logging.getLogger(__name__)

INTERRUPTED_JOB_MESSAGE = "Job interrupted by unclean shutdown"


class JobEvent(str, Enum):
    START = "job:start"
    COMPLETE = "job:complete"
    RETRY = "job:retry"
    FAILED = "job:failed"
    RECOVERED = "job:recovered"


# Observer callback: fn(event, job_snapshot)
JobListener = Callable[[JobEvent, JobRecord], None]


class JobScheduler(JobDispatcher):
    """Admits, runs, times out and retries file-processing jobs."""

    def __init__(
        self,
        store: RecordStore,
        pipeline: ProcessingPipeline,
        guard: Optional[DegradedModeGuard] = None,
        *,
        max_concurrent_jobs: int = 3,
        max_attempts: int = 3,
        job_timeout_seconds: float = 300.0,
        poll_interval_seconds: float = 2.0,
        shutdown_grace_seconds: float = 30.0,
        listeners: Optional[Iterable[JobListener]] = None,
    ):
        self._store = store
        self._pipeline = pipeline
        self._guard = guard or DegradedModeGuard()
        self._max_concurrent = max_concurrent_jobs
        self._max_attempts = max_attempts
        self._job_timeout = job_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._shutdown_grace = shutdown_grace_seconds
        self._listeners: List[JobListener] = list(listeners or [])

        # job_id -> execution task and job_id -> file_id; written only by
        # process_next and _run_job
        self._active: Dict[str, asyncio.Task] = {}
        self._active_files: Dict[str, str] = {}
        self._admit_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()
        self._running = False

    @property
    def guard(self) -> DegradedModeGuard:
        return self._guard

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def max_concurrent_jobs(self) -> int:
        return self._max_concurrent

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: JobEvent, job: JobRecord) -> None:
        snapshot = job.model_copy(deep=True)
        for listener in list(self._listeners):
            try:
                listener(event, snapshot)
            except Exception:
                logger.exception("Job listener failed for %s", event.value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Fail jobs left in ``processing`` by a previous run, then start polling.

        Interrupted jobs are not resumed: the job itself may be what brought
        the previous process down.
        """
        try:
            await self._recover_interrupted_jobs()
        except Exception as e:
            if not self._guard.check(e):
                logger.error("Job queue initialization error: %s", e, exc_info=True)
                raise
        self.start()
        logger.info("Job queue initialized", extra={"degraded": self._guard.degraded})

    async def _recover_interrupted_jobs(self) -> int:
        stuck = await self._store.find_jobs(JobStatus.PROCESSING)
        for job in stuck:
            job.status = JobStatus.FAILED
            job.completed_at = utcnow()
            job.result = None
            job.error = JobError(message=INTERRUPTED_JOB_MESSAGE)
            await self._store.save_job(job)
            await self._store.update_file_status(job.file_id, FileStatus.FAILED)
            logger.warning(
                "Failed interrupted job: %s", job.job_id,
                extra={"job_id": job.job_id, "file_id": job.file_id},
            )
            self._emit(JobEvent.RECOVERED, job)
        return len(stuck)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._poll_loop())
        logger.info("Job queue processing started")

    async def _poll_loop(self) -> None:
        while self._running:
            await self.process_next()
            await asyncio.sleep(self._poll_interval)

    async def shutdown(self) -> None:
        """Stop admitting, let running jobs drain, then requeue whatever is left."""
        logger.info("Shutting down job queue...")
        self._running = False

        # Any admission already in progress finishes registering first.
        async with self._admit_lock:
            pass
        for task in [self._loop_task, *self._ticks]:
            if task is not None and not task.done():
                task.cancel()
        self._loop_task = None

        executions = dict(self._active)
        if executions:
            logger.info("Waiting for %d active jobs to complete...", len(executions))
            _, pending = await asyncio.wait(
                list(executions.values()), timeout=self._shutdown_grace
            )
            if pending:
                logger.warning("Forcing shutdown with %d active jobs", len(pending))
                stranded = [job_id for job_id, task in executions.items() if task in pending]
                for task in pending:
                    task.cancel()
                await asyncio.wait(pending)
                for job_id in stranded:
                    await self._requeue(job_id)
                return
        logger.info("All jobs completed. Queue shutdown complete.")

    async def _requeue(self, job_id: str) -> None:
        try:
            job = await self._store.get_job(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return
            job.status = JobStatus.PENDING
            job.started_at = None
            job.retry_at = None
            job.attempts = max(0, job.attempts - 1)
            await self._store.save_job(job)
            logger.info("Reset job %s to pending for a later run", job_id, extra={"job_id": job_id})
        except Exception as e:
            logger.error("Could not requeue job %s: %s", job_id, e)

    # ------------------------------------------------------------------
    # Admission and execution
    # ------------------------------------------------------------------

    async def add_job(self, file_id: str, priority: int = 0) -> JobRecord:
        self._guard.ensure_available()
        try:
            file = await self._store.get_file(file_id)
            if file is None:
                raise NotFoundError("File", file_id)
            job = JobRecord(file_id=file_id, priority=priority, max_attempts=self._max_attempts)
            await self._store.create_job(job)
        except NotFoundError:
            raise
        except Exception as e:
            if self._guard.check(e):
                raise ServiceUnavailableError(
                    "Job admission temporarily unavailable: storage quota exhausted"
                ) from e
            logger.error("Add job error: %s", e, exc_info=True)
            raise

        logger.info(
            "Job added to queue: %s for file: %s", job.job_id, file_id,
            extra={"job_id": job.job_id, "file_id": file_id, "priority": priority},
        )
        self._schedule_next()
        return job

    def _schedule_next(self) -> None:
        if not self._running:
            return
        tick = asyncio.create_task(self.process_next())
        self._ticks.add(tick)
        tick.add_done_callback(self._ticks.discard)

    async def process_next(self) -> Optional[JobRecord]:
        """Start at most one pending job if a slot is free. Returns the started job."""
        try:
            async with self._admit_lock:
                if not self._running or len(self._active) >= self._max_concurrent:
                    return None
                # One execution per file at a time.
                job = await self._store.next_pending_job(
                    exclude_file_ids=set(self._active_files.values()), now=utcnow()
                )
                if job is None:
                    return None
                job.status = JobStatus.PROCESSING
                job.started_at = utcnow()
                job.retry_at = None
                job.attempts += 1
                await self._store.save_job(job)
                self._active_files[job.job_id] = job.file_id
                self._active[job.job_id] = asyncio.create_task(
                    self._run_job(job), name=f"fileflow-{job.job_id}"
                )
        except Exception as e:
            # A bad tick must never stop the loop.
            if not self._guard.check(e):
                logger.error("Process next error: %s", e, exc_info=True)
            return None

        logger.info(
            "Processing job: %s for file: %s", job.job_id, job.file_id,
            extra={"job_id": job.job_id, "file_id": job.file_id, "attempt": job.attempts},
        )
        self._emit(JobEvent.START, job)
        return job

    async def _run_job(self, job: JobRecord) -> None:
        try:
            error: Optional[Exception] = None
            result: Optional[BatchResult] = None
            try:
                # On timeout wait_for cancels the pipeline, which releases its stream.
                result = await asyncio.wait_for(
                    self._pipeline.execute(job), timeout=self._job_timeout
                )
            except asyncio.TimeoutError:
                error = JobTimeoutError(self._job_timeout)
            except Exception as e:
                error = e

            try:
                if error is None:
                    await self._complete_job(job, result)
                else:
                    await self._handle_job_error(job, error)
            except Exception as e:
                if not self._guard.check(e):
                    logger.error(
                        "Could not record outcome of job %s: %s", job.job_id, e, exc_info=True
                    )
        finally:
            self._active.pop(job.job_id, None)
            self._active_files.pop(job.job_id, None)
            # While degraded, requeued work waits for the next poll tick.
            if not self._guard.degraded:
                self._schedule_next()

    async def _complete_job(self, job: JobRecord, result: BatchResult) -> None:
        job.status = JobStatus.COMPLETED
        job.completed_at = utcnow()
        job.result = JobResult(
            processed_count=result.processed,
            failed_count=result.failed,
            errors=result.errors[:MAX_RESULT_ERRORS],
        )
        job.error = None
        await self._store.save_job(job)
        logger.info(
            "Job completed: %s - Processed %d records", job.job_id, result.processed,
            extra={"job_id": job.job_id, "file_id": job.file_id, "failed": result.failed},
        )
        self._emit(JobEvent.COMPLETE, job)

    def _retry_delay(self, attempts: int) -> float:
        """Exponential backoff in poll intervals: 1, 2, 4, ..."""
        return self._poll_interval * 2 ** max(0, attempts - 1)

    async def _handle_job_error(self, job: JobRecord, error: Exception) -> None:
        message = str(error) or type(error).__name__
        job.error = JobError(message=message)

        if self._guard.check(error):
            # Storage trouble is not the job's fault; give the attempt back.
            job.attempts = max(0, job.attempts - 1)
            job.status = JobStatus.PENDING
            job.started_at = None
            await self._store.save_job(job)
            logger.warning(
                "Job %s requeued after quota error", job.job_id, extra={"job_id": job.job_id}
            )
            self._emit(JobEvent.RETRY, job)
            return

        if isinstance(error, FileAlreadyProcessingError):
            # Another process holds the file; wait without charging an attempt
            # and leave the file status to its owner.
            job.attempts = max(0, job.attempts - 1)
            job.status = JobStatus.PENDING
            job.started_at = None
            job.retry_at = utcnow() + timedelta(seconds=self._poll_interval)
            await self._store.save_job(job)
            logger.info(
                "Job %s deferred, file %s is busy", job.job_id, job.file_id,
                extra={"job_id": job.job_id, "file_id": job.file_id},
            )
            self._emit(JobEvent.RETRY, job)
            return

        log_extra = {
            "job_id": job.job_id,
            "file_id": job.file_id,
            "attempt": job.attempts,
            "max_attempts": job.max_attempts,
        }

        if job.attempts >= job.max_attempts:
            job.status = JobStatus.FAILED
            job.completed_at = utcnow()
            job.result = None
            await self._store.save_job(job)
            logger.error(
                "Job failed permanently after %d attempts: %s - Error: %s",
                job.attempts, job.job_id, message, extra=log_extra,
            )
            try:
                await self._store.update_file_status(job.file_id, FileStatus.FAILED)
            except Exception as e:
                logger.error("Failed to update file status: %s", e, extra=log_extra)
            self._emit(JobEvent.FAILED, job)
        else:
            delay = self._retry_delay(job.attempts)
            job.status = JobStatus.PENDING
            job.retry_at = utcnow() + timedelta(seconds=delay)
            await self._store.save_job(job)
            logger.warning(
                "Job failed (attempt %d/%d): %s - Will retry in %.1fs. Error: %s",
                job.attempts, job.max_attempts, job.job_id, delay, message, extra=log_extra,
            )
            self._emit(JobEvent.RETRY, job)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_job_status(self, job_id: str) -> JobRecord:
        job = await self._store.get_job(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    async def list_jobs(
        self, status: Optional[JobStatus] = None, page: int = 1, limit: int = 20
    ) -> JobPage:
        page = max(1, page)
        skip = (page - 1) * limit
        jobs, total = await asyncio.gather(
            self._store.list_jobs(status=status, skip=skip, limit=limit),
            self._store.count_jobs(status),
        )
        return JobPage(jobs=jobs, pagination=Pagination.build(page, limit, total))

    async def get_stats(self) -> QueueStats:
        job_counts = await asyncio.gather(*(self._store.count_jobs(s) for s in JobStatus))
        file_counts = await asyncio.gather(*(self._store.count_files(s) for s in FileStatus))
        return QueueStats(
            jobs={s.value: n for s, n in zip(JobStatus, job_counts)},
            files={s.value: n for s, n in zip(FileStatus, file_counts)},
            active=len(self._active),
            max_concurrent=self._max_concurrent,
            degraded=self._guard.degraded,
        )
