"""
School Events API - Main Application Entry Point

This module initializes and configures the FastAPI application including:
- Database and Redis connections
- Background job scheduler (payment and event reminder sweeps)
- CORS middleware
- API routing
- Health check endpoints
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from school_events.api import api_router
from school_events.core import redis as redis_store
from school_events.core.config import configure_logging, settings
from school_events.core.database import async_session_maker, close_db, init_db
from school_events.core.redis import close_redis, init_redis
from school_events.core.scheduler import (
    list_registered_jobs,
    pause_job,
    resume_job,
    start_scheduler,
    stop_scheduler,
    trigger_job_manually,
)
from school_events.modules.events import register_event_jobs
from school_events.modules.notifications.service import drain_pending_dispatches
from school_events.modules.payments import register_payment_jobs

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events including:
    - Redis connection
    - Database connection
    - Background job scheduler
    - Waiting for in-flight notification dispatches on shutdown
    """
    logger.info(f"Starting School Events API in {settings.python_env} mode...")

    # Redis is optional: the rate limiter falls back to process memory
    try:
        await init_redis()
        logger.info("[OK] Redis connected")
    except (RedisError, OSError) as e:
        logger.error(f"[FAIL] Redis connection failed: {e}")
        if settings.is_production:
            raise

    try:
        await init_db()
        logger.info("[OK] Database connected")
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"[FAIL] Database connection failed: {e}")
        if settings.is_production:
            raise

    # Register jobs before starting the scheduler
    register_payment_jobs()
    register_event_jobs()
    await start_scheduler()
    logger.info("[OK] Background scheduler started")

    yield  # Application runs here

    logger.info("Shutting down School Events API...")

    # Stop the scheduler first (wait for running jobs)
    await stop_scheduler()
    logger.info("[OK] Background scheduler stopped")

    await drain_pending_dispatches()
    logger.info("[OK] Pending notification dispatches finished")

    await close_redis()
    await close_db()
    logger.info("[OK] Cleanup complete")


app = FastAPI(
    title="School Events API",
    description="School event registration, payments and notifications API",
    version="0.1.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    lifespan=lifespan,
)

app.include_router(api_router, prefix="/api/v1")

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint - API welcome message."""
    return {
        "message": "Welcome to School Events API",
        "status": "running",
        "environment": settings.python_env,
    }


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint for container orchestration."""
    return {"status": "healthy"}


@app.get("/ready", tags=["Health"])
async def readiness_check() -> dict[str, str]:
    """Readiness check: the database must answer; Redis is reported but optional."""
    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Readiness check failed: {e}")
        raise HTTPException(status_code=503, detail={"status": "unavailable"}) from e

    return {
        "status": "ready",
        "redis": "connected" if redis_store.is_redis_available() else "unavailable",
    }


# ============================================
# Background Job Debug Endpoints
# ============================================
# Manual triggering of background jobs for testing. Only mounted in
# development; in other environments jobs run on schedule only.

if settings.is_development:

    @app.get("/debug/jobs", tags=["Debug"])
    async def list_jobs():
        """List all registered background jobs and their status."""
        return {"jobs": list_registered_jobs()}

    @app.post("/debug/jobs/{job_id}/trigger", tags=["Debug"])
    async def trigger_job(job_id: str):
        """
        Run a background job immediately, bypassing the schedule.

        Available jobs:
            - payments_send_overdue_reminders
            - events_send_event_reminders
        """
        try:
            return await trigger_job_manually(job_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

    @app.post("/debug/jobs/{job_id}/pause", tags=["Debug"])
    async def pause_job_endpoint(job_id: str):
        return {"job_id": job_id, "paused": pause_job(job_id)}

    @app.post("/debug/jobs/{job_id}/resume", tags=["Debug"])
    async def resume_job_endpoint(job_id: str):
        return {"job_id": job_id, "resumed": resume_job(job_id)}
