"""DailySync API — FastAPI application entry point.

Hosts the metric sync engine: an in-process task scheduler runs the sync
jobs, and the HTTP routes expose the triggers and the stored rows.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI

from src.config import get_settings
from src.metric_sync.sync.orchestrator import build_orchestrator
from src.metric_sync.sync.scheduler import APSchedulerTaskScheduler
from src.routers import health, sync
from src.services.supabase import close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("dailysync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting DailySync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    if settings.store_backend == "postgres":
        await init_pool(settings)

    http_client = httpx.AsyncClient()
    tasks = APSchedulerTaskScheduler()
    orchestrator = build_orchestrator(settings, tasks=tasks, http_client=http_client)
    app.state.orchestrator = orchestrator
    app.state.task_scheduler = tasks

    if settings.start_scheduler:
        tasks.start()
        users = await orchestrator.active_users()
        logger.info("Scheduling sync jobs for %d connected users", len(users))
        await orchestrator.on_startup(users)

    yield

    tasks.shutdown()
    await http_client.aclose()
    if settings.store_backend == "postgres":
        await close_pool()
    logger.info("DailySync API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="DailySync API",
        description=(
            "Daily metric synchronization — pulls wearable measurements, "
            "assigns them to local days, and keeps per-day rows current."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Health check (outside v1 prefix — always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(sync.router, prefix=v1_prefix)

    return app


app = create_app()
