"""Health check endpoint."""

from fastapi import APIRouter
import platform
import sys

from fileflow.config import settings

router = APIRouter()

_dispatcher = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


@router.get("/health")
async def health_check():
    """Service health, backend selection and scheduler mode."""
    degraded = bool(_dispatcher is not None and _dispatcher.guard.degraded)
    return {
        "status": "degraded" if degraded else "healthy",
        "scheduler_running": bool(_dispatcher is not None and _dispatcher.running),
        "storage_backend": settings.storage_backend,
        "record_store_backend": settings.record_store_backend,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
