"""
Media Converter API - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    accounts,
    conversions,
    admin,
)
from services.converter import build_converter_service
from services.sweep_queue import enqueue_storage_sweep_job

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


async def _storage_sweep_tick(app: FastAPI) -> None:
    if settings.SWEEP_VIA_QUEUE:
        job = await asyncio.to_thread(enqueue_storage_sweep_job)
        print(f"🧹 Storage sweep queued as {job.id}")
        return
    service = app.state.converter
    reclaimed = await service.run_sweep()
    if reclaimed:
        print(f"🧹 Storage sweep reclaimed {reclaimed} expired artifacts")


async def _periodic_storage_sweep(app: FastAPI) -> None:
    interval_minutes = max(int(settings.SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            await _storage_sweep_tick(app)
        except Exception as exc:
            logger.exception("Storage sweep tick failed")
            print(f"⚠️ Storage sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Media Converter API...")
    validate_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if getattr(app.state, "converter", None) is None:
        app.state.converter = build_converter_service()
    sweep_task = None
    if int(settings.SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_storage_sweep(app))
        print(
            "📅 Storage sweep loop enabled "
            f"(every {int(settings.SWEEP_INTERVAL_MINUTES)} min, queued={settings.SWEEP_VIA_QUEUE})."
        )
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Media Converter API",
    description="Convert uploaded media for a chat front-end, billed in credits",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(accounts.router, prefix="/accounts", tags=["Accounts"])
app.include_router(conversions.router, prefix="/conversions", tags=["Conversions"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Media Converter API",
        "version": "0.1.0",
        "status": "running"
    }
