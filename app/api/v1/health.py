"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter

from app.config import settings
from app.models.registry import registry

router = APIRouter()

_dispatcher = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


@router.get("/health")
async def health_check():
    """Service status, active poller count and runtime info."""
    return {
        "status": "healthy",
        "active_pollers": _dispatcher.active if _dispatcher is not None else 0,
        "models": len(registry),
        "job_store": settings.job_store_backend,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
