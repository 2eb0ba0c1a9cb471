"""Sync triggers and the pull-only metric read surface.

Triggers answer with slot and task status only; job errors are visible
through the status endpoint as outcomes, never as raw exceptions.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict
from datetime import date
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.dependencies import Orchestrator
from src.metric_sync.exceptions import UnknownJobError
from src.models.base import ErrorDetail
from src.models.metrics import (
    JobStatusRead,
    MetricDailyRead,
    ReevaluateResult,
    RunQueued,
    SyncStatusRead,
)

router = APIRouter(prefix="/users/{user_id}", tags=["sync"])
logger = logging.getLogger("dailysync.routers.sync")


# ---------- Triggers ----------

@router.post(
    "/sync/{job_name}/run",
    response_model=RunQueued,
    status_code=202,
    responses={404: {"model": ErrorDetail}},
)
async def run_job_now(user_id: uuid.UUID, job_name: str, orchestrator: Orchestrator) -> Any:
    try:
        slot = orchestrator.run_now(user_id, job_name)
    except UnknownJobError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from None
    return RunQueued(job_name=job_name, slot=slot, status=orchestrator.scheduler.status(slot))


@router.post(
    "/sync/reevaluate",
    response_model=ReevaluateResult,
    responses={503: {"model": ErrorDetail}},
)
async def reevaluate(user_id: uuid.UUID, orchestrator: Orchestrator) -> Any:
    try:
        actions = await orchestrator.reevaluate(user_id)
    except Exception as exc:
        logger.error("Re-evaluation failed for %s: %s", user_id, exc)
        raise HTTPException(status_code=503, detail="Metric settings unavailable") from None
    return ReevaluateResult(user_id=user_id, actions=actions)


@router.post("/sync/login", response_model=ReevaluateResult, status_code=202)
async def login_hook(user_id: uuid.UUID, orchestrator: Orchestrator) -> Any:
    try:
        actions = await orchestrator.on_login(user_id)
    except Exception as exc:
        logger.error("Login scheduling failed for %s: %s", user_id, exc)
        raise HTTPException(status_code=503, detail="Metric settings unavailable") from None
    return ReevaluateResult(user_id=user_id, actions=actions)


# ---------- Status ----------

@router.get("/sync/status", response_model=SyncStatusRead)
async def sync_status(user_id: uuid.UUID, orchestrator: Orchestrator) -> Any:
    views = orchestrator.status(user_id)
    return SyncStatusRead(
        user_id=user_id,
        jobs=[JobStatusRead(**asdict(v)) for v in views],
    )


# ---------- Metric rows ----------

@router.get(
    "/metrics/{metric}",
    response_model=list[MetricDailyRead],
    responses={400: {"model": ErrorDetail}},
)
async def list_metric_rows(
    user_id: uuid.UUID,
    metric: str,
    orchestrator: Orchestrator,
    source: str | None = None,
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
) -> Any:
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="start must be on or before end")
    rows = await orchestrator.store.list_rows(user_id, metric, source=source, start=start, end=end)
    return [asdict(r) for r in rows]
