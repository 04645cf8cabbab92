"""
Health check endpoints.
"""

import os
import shutil
from typing import List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


async def _probe_database() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        return f"down: {e}"


async def _probe_redis() -> str:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
        return "up"
    except Exception as e:
        return f"down: {e}"
    finally:
        await client.aclose()


def _redis_required() -> bool:
    return settings.SESSION_BACKEND == "redis" or settings.SWEEP_VIA_QUEUE


def _missing_requirements() -> List[str]:
    missing = []
    if not settings.MEDIA_SOURCE_BASE_URL:
        missing.append("MEDIA_SOURCE_BASE_URL")
    if settings.STORAGE_BACKEND == "http" and not settings.STORAGE_BASE_URL:
        missing.append("STORAGE_BASE_URL")
    if shutil.which("ffmpeg") is None:
        missing.append("ffmpeg")
    return missing


@router.get("/health")
async def health_check():
    """
    Overall status: database, Redis, transcoder binary and storage backends.
    Redis only degrades the service when sessions or sweeps depend on it.
    """
    database = await _probe_database()
    redis_status = await _probe_redis()
    degraded = database != "up" or (_redis_required() and redis_status != "up")

    storage = settings.STORAGE_BACKEND
    if storage == "filesystem":
        writable = os.access(settings.STORAGE_DIR, os.W_OK) if os.path.isdir(settings.STORAGE_DIR) else None
        storage = f"filesystem ({'writable' if writable else 'not created yet' if writable is None else 'read-only'})"

    return {
        "status": "degraded" if degraded else "healthy",
        "api": "up",
        "database": database,
        "redis": redis_status,
        "ffmpeg": "found" if shutil.which("ffmpeg") else "missing",
        "session_backend": settings.SESSION_BACKEND,
        "storage_backend": storage,
    }


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = _missing_requirements()
    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
