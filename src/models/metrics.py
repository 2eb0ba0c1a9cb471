"""Pydantic models for the sync trigger and metric read endpoints."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any

from pydantic import Field

from src.metric_sync.sync.job import JobOutcome
from src.metric_sync.sync.scheduler import TaskStatus
from src.models.base import DailySyncBase


# ---------- Metric rows ----------

class MetricDailyRead(DailySyncBase):
    user_id: uuid.UUID
    metric: str
    source: str
    date: dt.date
    values: dict[str, Any] = Field(default_factory=dict)
    source_record_id: str | None = None


# ---------- Sync triggers ----------

class RunQueued(DailySyncBase):
    job_name: str
    slot: str
    status: TaskStatus


class ReevaluateResult(DailySyncBase):
    user_id: uuid.UUID
    actions: dict[str, str]


# ---------- Status ----------

class JobStatusRead(DailySyncBase):
    job_name: str
    slot: str
    task_status: TaskStatus
    run_now_status: TaskStatus
    next_fire_at: dt.datetime | None = None
    retry_count: int = 0
    last_outcome: JobOutcome | None = None
    last_run_at: dt.datetime | None = None
    last_rows_written: int | None = None


class SyncStatusRead(DailySyncBase):
    user_id: uuid.UUID
    jobs: list[JobStatusRead]
