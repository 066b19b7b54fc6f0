"""fileflow - upload and line-processing service (FastAPI application)."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from fileflow.config import Settings, settings
from fileflow.api.v1.router import v1_router
from fileflow.api.v1.health import router as health_root_router
from fileflow.api.v1 import health as health_api
from fileflow.api.v1 import jobs as jobs_api
from fileflow.api.v1 import upload as upload_api
from fileflow.db.record_store import InMemoryRecordStore, RecordStore
from fileflow.db.supabase_store import SupabaseRecordStore
from fileflow.jobs.guard import DegradedModeGuard
from fileflow.jobs.scheduler import JobScheduler
from fileflow.logging_config import setup_logging
from fileflow.processing.batcher import StreamBatcher
from fileflow.processing.pipeline import ProcessingPipeline
from fileflow.services.file_service import FileService
from fileflow.storage.blob_storage import BlobStorage, LocalBlobStorage, SupabaseBlobStorage

logger = logging.getLogger(__name__)


def build_record_store(config: Settings) -> RecordStore:
    if config.record_store_backend == "supabase":
        return SupabaseRecordStore()
    return InMemoryRecordStore()


def build_blob_storage(config: Settings) -> BlobStorage:
    if config.storage_backend == "supabase":
        return SupabaseBlobStorage(bucket=config.storage_bucket)
    return LocalBlobStorage(config.local_storage_dir, bucket=config.storage_bucket)


def build_scheduler(
    config: Settings, store: RecordStore, blob_storage: BlobStorage
) -> JobScheduler:
    guard = DegradedModeGuard()
    batcher = StreamBatcher(
        batch_size=config.batch_size,
        batch_timeout_seconds=config.batch_timeout_seconds,
    )
    pipeline = ProcessingPipeline(store, blob_storage, batcher, guard=guard)
    return JobScheduler(
        store,
        pipeline,
        guard,
        max_concurrent_jobs=config.max_concurrent_jobs,
        max_attempts=config.job_retry_attempts,
        job_timeout_seconds=config.job_timeout_seconds,
        poll_interval_seconds=config.poll_interval_seconds,
        shutdown_grace_seconds=config.shutdown_grace_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    setup_logging(settings.log_level, settings.log_format)
    logger.info(
        "Starting fileflow on port %d", settings.port,
        extra={
            "storage_backend": settings.storage_backend,
            "record_store_backend": settings.record_store_backend,
            "max_concurrent_jobs": settings.max_concurrent_jobs,
        },
    )

    store = build_record_store(settings)
    blob_storage = build_blob_storage(settings)
    scheduler = build_scheduler(settings, store, blob_storage)
    await scheduler.initialize()

    # Wire services into API endpoints
    health_api.set_dispatcher(scheduler)
    jobs_api.set_dispatcher(scheduler)
    upload_api.set_dispatcher(scheduler)
    upload_api.set_file_service(
        FileService(
            store,
            blob_storage,
            allowed_extensions=settings.allowed_extensions,
            max_file_size=settings.max_file_size,
        )
    )

    yield

    logger.info("Shutting down fileflow")
    await scheduler.shutdown()
    health_api.set_dispatcher(None)
    jobs_api.set_dispatcher(None)
    upload_api.set_dispatcher(None)
    upload_api.set_file_service(None)


app = FastAPI(
    title="fileflow",
    description="Uploads text files and turns them into structured line records in the background",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints
