"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.config import get_settings
from src.services.supabase import get_pool, is_initialized

router = APIRouter(tags=["system"])
logger = logging.getLogger("dailysync.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness check. Returns 200 if the API process is up.

    Also performs a lightweight DB connectivity check when the Postgres
    backend is in use, and reports whether the task scheduler is running.
    """
    settings = get_settings()
    db_status = "not used"
    db_ok = True
    if settings.store_backend == "postgres":
        db_ok = False
        try:
            if is_initialized():
                pool = get_pool()
                async with pool.acquire() as conn:
                    await conn.fetchval("SELECT 1")
                db_ok = True
        except Exception as exc:
            logger.warning("Health check DB query failed: %s", exc)
        db_status = "connected" if db_ok else "unreachable"

    task_scheduler = getattr(request.app.state, "task_scheduler", None)
    scheduler_ok = bool(task_scheduler and task_scheduler.running)

    return {
        "status": "healthy" if db_ok and scheduler_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": db_status,
        "scheduler": "running" if scheduler_ok else "stopped",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
