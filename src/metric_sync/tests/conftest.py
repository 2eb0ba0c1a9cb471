"""Shared fixtures, fakes and record builders for sync engine tests."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from uuid import UUID
from zoneinfo import ZoneInfo

import pytest

from src.metric_sync.base import OAuthTokens, ProviderClient, RawProviderRecord
from src.metric_sync.config_loader import SyncConfig, load_sync_config
from src.metric_sync.credentials import InMemoryTokenStore
from src.metric_sync.settings_source import MetricEnablement, MetricSetting
from src.metric_sync.sync.scheduler import TaskFunc, TaskScheduler, TaskStatus

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Canonical test user ID
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
OTHER_USER_ID = UUID("87654321-4321-8765-4321-876543218765")
TEST_TODAY = date(2024, 3, 10)
UTC = ZoneInfo("UTC")


def fixed_clock(moment: datetime):
    """Clock returning a fixed aware UTC instant."""
    return lambda: moment


# Noon UTC on TEST_TODAY
TEST_NOW = datetime.combine(TEST_TODAY, time(12, 0), tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def whoop_sleep_payload(
    record_id: str,
    start: datetime,
    end: datetime,
    duration_ms: int | None = 7 * 3_600_000,
    light_ms: int = 4 * 3_600_000,
    sws_ms: int = 90 * 60_000,
    rem_ms: int = 90 * 60_000,
    disturbances: int = 3,
    performance: float | None = 88.0,
    efficiency: float | None = 93.5,
) -> dict:
    score: dict = {
        "stage_summary": {
            "total_light_sleep_time_milli": light_ms,
            "total_slow_wave_sleep_time_milli": sws_ms,
            "total_rem_sleep_time_milli": rem_ms,
            "disturbance_count": disturbances,
        },
    }
    if duration_ms is not None:
        score["sleep_duration_milli"] = duration_ms
    if performance is not None:
        score["sleep_performance_percentage"] = performance
    if efficiency is not None:
        score["sleep_efficiency_percentage"] = efficiency
    return {
        "id": record_id,
        "start": start.isoformat().replace("+00:00", "Z"),
        "end": end.isoformat().replace("+00:00", "Z"),
        "score": score,
    }


def sleep_record(
    wake_day: date,
    offset_minutes: int | None = None,
    record_id: str | None = None,
    **payload_kwargs,
) -> RawProviderRecord:
    """A night from 23:00 the day before to 07:00 on ``wake_day`` (UTC)."""
    start = datetime.combine(wake_day - timedelta(days=1), time(23, 0), tzinfo=timezone.utc)
    end = datetime.combine(wake_day, time(7, 0), tzinfo=timezone.utc)
    rid = record_id or f"sleep-{wake_day.isoformat()}"
    return RawProviderRecord(
        start=start,
        end=end,
        timezone_offset_minutes=offset_minutes,
        record_id=rid,
        payload=whoop_sleep_payload(rid, start, end, **payload_kwargs),
    )


def activity_record(day: date, steps: int = 9000, calories: float = 420.0) -> RawProviderRecord:
    return RawProviderRecord(
        reported_day=day,
        record_id=f"act-{day.isoformat()}",
        payload={"id": f"act-{day.isoformat()}", "day": day.isoformat(),
                 "steps": steps, "active_calories": calories},
    )


def recovery_record(
    day: date,
    recovery_score: float | None = 61.0,
    workouts: list[RawProviderRecord] | None = None,
) -> RawProviderRecord:
    """A WHOOP recovery scored at 08:00 UTC on ``day``."""
    created = datetime.combine(day, time(8, 0), tzinfo=timezone.utc)
    score: dict = {"resting_heart_rate": 52, "hrv_rmssd_milli": 78.5, "skin_temp_celsius": 33.1}
    if recovery_score is not None:
        score["recovery_score"] = recovery_score
    return RawProviderRecord(
        end=created,
        record_id=f"cycle-{day.isoformat()}",
        payload={"cycle_id": f"cycle-{day.isoformat()}", "created_at": created.isoformat(), "score": score},
        companions=list(workouts or []),
    )


def workout_record(end: datetime, zone_three_ms: int, zone_four_ms: int = 0, zone_five_ms: int = 0) -> RawProviderRecord:
    return RawProviderRecord(
        start=end - timedelta(hours=1),
        end=end,
        record_id=f"workout-{end.isoformat()}",
        payload={
            "score": {
                "zone_durations": {
                    "zone_three_milli": zone_three_ms,
                    "zone_four_milli": zone_four_ms,
                    "zone_five_milli": zone_five_ms,
                }
            }
        },
    )


def enablement_for(metrics: list[str], source: str) -> MetricEnablement:
    return MetricEnablement(
        {m: MetricSetting(metric=m, enabled=True, preferred_source=source) for m in metrics}
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeProvider(ProviderClient):
    """Serves canned records; records are returned when they fall in the window.

    ``fail_days`` maps a target day (the window's midpoint date) to the
    exception its fetch raises.
    """

    SOURCE_ID = "whoop"
    DISPLAY_NAME = "Fake WHOOP"

    def __init__(
        self,
        token_store: InMemoryTokenStore,
        records: list[RawProviderRecord] | None = None,
        source_id: str = "whoop",
    ) -> None:
        super().__init__(token_store)
        self.SOURCE_ID = source_id
        self.records = list(records or [])
        self.fail_days: dict[date, Exception] = {}
        self.refresh_error: Exception | None = None
        self.fetch_calls: list[tuple[str, datetime, datetime]] = []
        self.refresh_calls = 0

    async def refresh_credentials(self, user_id: UUID) -> OAuthTokens:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return await super().refresh_credentials(user_id)

    async def fetch_window(
        self, resource: str, start: datetime, end: datetime, access_token: str
    ) -> list[RawProviderRecord]:
        self.fetch_calls.append((resource, start, end))
        target = (start + (end - start) / 2).date()
        if target in self.fail_days:
            raise self.fail_days[target]
        out = []
        for r in self.records:
            if r.end is not None and start <= r.end < end:
                out.append(r)
            elif r.end is None and r.reported_day is not None and start.date() <= r.reported_day < end.date():
                out.append(r)
        return out

    async def _exchange_refresh_token(self, refresh_token: str) -> OAuthTokens:
        raise NotImplementedError


@dataclass
class FakeTask:
    name: str
    func: TaskFunc
    delay: timedelta | None = None
    interval: timedelta | None = None


class FakeTaskScheduler(TaskScheduler):
    """In-memory TaskScheduler; tasks only run when a test fires them."""

    def __init__(self) -> None:
        self.tasks: dict[str, FakeTask] = {}
        self.running: set[str] = set()
        self.enqueued: list[str] = []

    def enqueue_once(self, name, delay, func, replace=True) -> None:
        if not replace and name in self.tasks:
            return
        self.tasks[name] = FakeTask(name=name, func=func, delay=delay)
        self.enqueued.append(name)

    def enqueue_periodic(self, name, interval, func) -> None:
        if name in self.tasks:
            return
        self.tasks[name] = FakeTask(name=name, func=func, interval=interval)
        self.enqueued.append(name)

    def query_status(self, name: str) -> TaskStatus:
        if name in self.running:
            return TaskStatus.RUNNING
        if name in self.tasks:
            return TaskStatus.PENDING
        return TaskStatus.ABSENT

    def cancel(self, name: str) -> None:
        self.tasks.pop(name, None)

    def pending(self, prefix: str = "") -> list[str]:
        return sorted(n for n in self.tasks if n.startswith(prefix))

    async def fire(self, name: str):
        """Run a task the way the runner would: one-shots are consumed first."""
        task = self.tasks[name]
        if task.interval is None:
            del self.tasks[name]
        self.running.add(name)
        try:
            return await task.func()
        finally:
            self.running.discard(name)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the bundled sync config."""
    return load_sync_config()


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore(
        {
            (TEST_USER_ID, "whoop"): OAuthTokens(access_token="whoop-access", refresh_token="r1"),
            (TEST_USER_ID, "oura"): OAuthTokens(access_token="oura-access", refresh_token="r2"),
        }
    )


@pytest.fixture
def fake_tasks() -> FakeTaskScheduler:
    return FakeTaskScheduler()


@pytest.fixture
def whoop_sleep_page1() -> dict:
    return json.loads((FIXTURES_DIR / "whoop_sleep_page1.json").read_text())


@pytest.fixture
def whoop_sleep_page2() -> dict:
    return json.loads((FIXTURES_DIR / "whoop_sleep_page2.json").read_text())


@pytest.fixture
def whoop_recovery_page() -> dict:
    return json.loads((FIXTURES_DIR / "whoop_recovery.json").read_text())


@pytest.fixture
def whoop_workout_page() -> dict:
    return json.loads((FIXTURES_DIR / "whoop_workout.json").read_text())


@pytest.fixture
def oura_sleep_raw() -> dict:
    return json.loads((FIXTURES_DIR / "oura_sleep.json").read_text())


@pytest.fixture
def oura_activity_raw() -> dict:
    return json.loads((FIXTURES_DIR / "oura_daily_activity.json").read_text())
