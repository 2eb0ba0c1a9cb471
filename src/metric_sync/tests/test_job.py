"""Tests for the sync job state machine."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, time, timedelta, timezone

import httpx
import pytest

from src.metric_sync.base import DailyMeasurementRow
from src.metric_sync.config_loader import SyncConfig
from src.metric_sync.day_assignment import get_assigner
from src.metric_sync.exceptions import (
    CredentialsError,
    PermanentSyncError,
    ProviderError,
    RetryableSyncError,
)
from src.metric_sync.extractors import get_extractor
from src.metric_sync.settings_source import MetricEnablement
from src.metric_sync.store import InMemoryMetricStore
from src.metric_sync.sync.backfill import BackfillPolicy
from src.metric_sync.sync.job import JobOutcome, JobState, SyncJob, classify_exception
from src.metric_sync.tests.conftest import (
    TEST_NOW,
    TEST_TODAY,
    TEST_USER_ID,
    UTC,
    FakeProvider,
    activity_record,
    enablement_for,
    fixed_clock,
    recovery_record,
    sleep_record,
    workout_record,
)

ANCHOR = "sleep_duration_daily"


def _days_back(n: int) -> list[date]:
    """Dates from today-n through today, oldest first."""
    return [TEST_TODAY - timedelta(days=i) for i in range(n, -1, -1)]


def _build_job(
    sync_config: SyncConfig,
    provider: FakeProvider,
    store: InMemoryMetricStore,
    job_name: str = "whoop_sleep",
    enablement: MetricEnablement | None = None,
) -> SyncJob:
    cfg = sync_config.job(job_name)
    return SyncJob(
        config=cfg,
        provider=provider,
        assigner=get_assigner(cfg.assignment),
        policy=BackfillPolicy.from_config(sync_config.metric_class(cfg.metric_class)),
        store=store,
        enablement=enablement or enablement_for(cfg.metrics, provider.SOURCE_ID),
        extractor=get_extractor(cfg.provider, cfg.resource),
        zone=UTC,
        clock=fixed_clock(TEST_NOW),
    )


async def _anchor_dates(store: InMemoryMetricStore, metric: str = ANCHOR, source: str = "whoop") -> list[date]:
    return [r.date for r in await store.list_rows(TEST_USER_ID, metric, source=source)]


@pytest.fixture
def store() -> InMemoryMetricStore:
    return InMemoryMetricStore()


@pytest.fixture
def provider(token_store) -> FakeProvider:
    return FakeProvider(token_store, records=[sleep_record(d) for d in _days_back(45)])


# ---------------------------------------------------------------------------
# Happy path and idempotency
# ---------------------------------------------------------------------------


class TestSyncJobHappyPath:
    @pytest.mark.asyncio
    async def test_first_run_fills_baseline_window(self, sync_config, provider, store) -> None:
        result = await _build_job(sync_config, provider, store).run(TEST_USER_ID)

        assert result.outcome is JobOutcome.SUCCESS
        dates = await _anchor_dates(store)
        assert dates[0] == date(2024, 2, 10)
        assert dates[-1] == date(2024, 3, 10)
        assert len(dates) == 30
        assert len(provider.fetch_calls) == 30

    @pytest.mark.asyncio
    async def test_states_in_order(self, sync_config, provider, store) -> None:
        result = await _build_job(sync_config, provider, store).run(TEST_USER_ID)
        assert result.states == [
            JobState.IDLE,
            JobState.CHECKING_CONSENT,
            JobState.REFRESHING_CREDENTIALS,
            JobState.BACKFILLING,
            JobState.SYNCING_TODAY,
            JobState.SUCCESS,
        ]

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, sync_config, provider, store) -> None:
        await _build_job(sync_config, provider, store).run(TEST_USER_ID)
        rows_before = len(store)
        calls_before = len(provider.fetch_calls)

        result = await _build_job(sync_config, provider, store).run(TEST_USER_ID)

        assert result.outcome is JobOutcome.SUCCESS
        assert result.rows_written == 0
        assert len(store) == rows_before
        assert len(provider.fetch_calls) == calls_before

    @pytest.mark.asyncio
    async def test_old_stream_backfill_is_bounded(self, sync_config, provider, store) -> None:
        await store.upsert(
            DailyMeasurementRow(TEST_USER_ID, ANCHOR, "whoop", TEST_TODAY - timedelta(days=40), {"value_hours": 6.0})
        )
        result = await _build_job(sync_config, provider, store).run(TEST_USER_ID)

        assert min(result.dates_written) == TEST_TODAY - timedelta(days=29)
        assert max(result.dates_written) == TEST_TODAY

    @pytest.mark.asyncio
    async def test_writes_all_whoop_sleep_metrics(self, sync_config, provider, store) -> None:
        await _build_job(sync_config, provider, store).run(TEST_USER_ID)
        for metric in sync_config.job("whoop_sleep").metrics:
            rows = await store.list_rows(TEST_USER_ID, metric, start=TEST_TODAY, end=TEST_TODAY)
            assert len(rows) == 1, metric
            assert rows[0].source_record_id == f"sleep-{TEST_TODAY.isoformat()}"

    @pytest.mark.asyncio
    async def test_no_record_for_today_is_success(self, sync_config, token_store, store) -> None:
        provider = FakeProvider(token_store, records=[sleep_record(d) for d in _days_back(29)[:-2]])
        result = await _build_job(sync_config, provider, store).run(TEST_USER_ID)

        assert result.outcome is JobOutcome.SUCCESS
        assert TEST_TODAY not in await _anchor_dates(store)


# ---------------------------------------------------------------------------
# Partial failure and resume
# ---------------------------------------------------------------------------


class TestSyncJobResume:
    @pytest.mark.asyncio
    async def test_resume_writes_only_remaining_dates(self, sync_config, provider, store) -> None:
        # An earlier pass was interrupted after writing today-29 … today-20
        for d in _days_back(29)[:10]:
            await store.upsert(DailyMeasurementRow(TEST_USER_ID, ANCHOR, "whoop", d, {"value_hours": 7.0}))
        store.upsert_calls = 0

        result = await _build_job(sync_config, provider, store).run(TEST_USER_ID)

        assert result.dates_written == _days_back(19)
        assert len(provider.fetch_calls) == 20
        metrics_per_day = len(sync_config.job("whoop_sleep").metrics)
        assert store.upsert_calls == 20 * metrics_per_day

    @pytest.mark.asyncio
    async def test_single_backfill_failure_is_skipped(self, sync_config, provider, store) -> None:
        bad_day = TEST_TODAY - timedelta(days=5)
        provider.fail_days[bad_day] = ProviderError("boom", "whoop", status_code=503)

        result = await _build_job(sync_config, provider, store).run(TEST_USER_ID)

        assert result.outcome is JobOutcome.SUCCESS
        assert result.dates_failed == [bad_day]
        dates = await _anchor_dates(store)
        assert bad_day not in dates
        assert TEST_TODAY in dates

    @pytest.mark.asyncio
    async def test_store_failure_on_backfill_date_is_skipped(self, sync_config, provider, store) -> None:
        bad_day = TEST_TODAY - timedelta(days=3)
        store.fail_on.add(f"{TEST_USER_ID}:{ANCHOR}:whoop:{bad_day.isoformat()}")

        result = await _build_job(sync_config, provider, store).run(TEST_USER_ID)

        assert result.outcome is JobOutcome.SUCCESS
        assert result.dates_failed == [bad_day]

    @pytest.mark.asyncio
    async def test_today_failure_is_retryable(self, sync_config, provider, store) -> None:
        provider.fail_days[TEST_TODAY] = ProviderError("unavailable", "whoop", status_code=503)

        result = await _build_job(sync_config, provider, store).run(TEST_USER_ID)

        assert result.outcome is JobOutcome.RETRYABLE
        assert result.final_state is JobState.RETRYABLE
        # Backfilled days are kept
        assert len(await _anchor_dates(store)) == 29

    @pytest.mark.asyncio
    async def test_today_rejected_request_is_permanent(self, sync_config, provider, store) -> None:
        provider.fail_days[TEST_TODAY] = ProviderError("bad request", "whoop", status_code=400)
        result = await _build_job(sync_config, provider, store).run(TEST_USER_ID)
        assert result.outcome is JobOutcome.PERMANENT


# ---------------------------------------------------------------------------
# Consent, enablement and credentials
# ---------------------------------------------------------------------------


class TestSyncJobConsent:
    @pytest.mark.asyncio
    async def test_revoked_consent_is_noop_without_provider_calls(
        self, sync_config, provider, store, token_store
    ) -> None:
        token_store.revoke(TEST_USER_ID, "whoop")

        result = await _build_job(sync_config, provider, store).run(TEST_USER_ID)

        assert result.outcome is JobOutcome.NOOP
        assert result.final_state is JobState.SUCCESS
        assert provider.fetch_calls == []
        assert provider.refresh_calls == 0
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_disabled_metrics_are_noop(self, sync_config, provider, store) -> None:
        result = await _build_job(
            sync_config, provider, store, enablement=MetricEnablement()
        ).run(TEST_USER_ID)

        assert result.outcome is JobOutcome.NOOP
        assert provider.fetch_calls == []

    @pytest.mark.asyncio
    async def test_metric_enabled_for_another_source_is_noop(self, sync_config, provider, store) -> None:
        enablement = enablement_for(sync_config.job("whoop_sleep").metrics, "oura")
        result = await _build_job(sync_config, provider, store, enablement=enablement).run(TEST_USER_ID)
        assert result.outcome is JobOutcome.NOOP

    @pytest.mark.asyncio
    async def test_refresh_failure_is_retryable(self, sync_config, provider, store) -> None:
        provider.refresh_error = CredentialsError("Token refresh failed", "whoop")

        result = await _build_job(sync_config, provider, store).run(TEST_USER_ID)

        assert result.outcome is JobOutcome.RETRYABLE
        assert JobState.BACKFILLING not in result.states
        assert provider.fetch_calls == []

    @pytest.mark.asyncio
    async def test_only_enabled_metrics_written(self, sync_config, provider, store) -> None:
        enablement = enablement_for([ANCHOR, "sleep_score_daily"], "whoop")
        await _build_job(sync_config, provider, store, enablement=enablement).run(TEST_USER_ID)

        assert len(store) == 2 * 30
        assert await store.list_rows(TEST_USER_ID, "sleep_stages_daily") == []

    @pytest.mark.asyncio
    async def test_cursor_follows_first_enabled_metric_when_anchor_disabled(
        self, sync_config, provider, store
    ) -> None:
        enablement = enablement_for(["sleep_score_daily"], "whoop")
        await _build_job(sync_config, provider, store, enablement=enablement).run(TEST_USER_ID)
        calls = len(provider.fetch_calls)

        await _build_job(sync_config, provider, store, enablement=enablement).run(TEST_USER_ID)

        assert len(provider.fetch_calls) == calls


# ---------------------------------------------------------------------------
# Write order and reported-day jobs
# ---------------------------------------------------------------------------


class _RecordingStore(InMemoryMetricStore):
    def __init__(self) -> None:
        super().__init__()
        self.order: list[tuple[date, str]] = []

    async def upsert(self, row: DailyMeasurementRow) -> None:
        self.order.append((row.date, row.metric))
        await super().upsert(row)


class TestSyncJobWrites:
    @pytest.mark.asyncio
    async def test_anchor_metric_written_last_per_date(self, sync_config, provider) -> None:
        store = _RecordingStore()
        await _build_job(sync_config, provider, store).run(TEST_USER_ID)

        by_date: dict[date, list[str]] = {}
        for d, metric in store.order:
            by_date.setdefault(d, []).append(metric)
        assert all(metrics[-1] == ANCHOR for metrics in by_date.values())

    @pytest.mark.asyncio
    async def test_lagged_reported_day_job(self, sync_config, token_store, store) -> None:
        provider = FakeProvider(
            token_store,
            records=[activity_record(d) for d in _days_back(40)],
            source_id="oura",
        )
        await store.upsert(
            DailyMeasurementRow(TEST_USER_ID, "steps_daily", "oura", TEST_TODAY - timedelta(days=10), {"value_count": 1})
        )

        result = await _build_job(sync_config, provider, store, job_name="oura_activity").run(TEST_USER_ID)

        # Gap of 9 days to yesterday exceeds the 7-day threshold: yesterday only
        assert result.outcome is JobOutcome.SUCCESS
        assert result.dates_written == [TEST_TODAY - timedelta(days=1)]
        rows = await store.list_rows(TEST_USER_ID, "steps_daily", start=TEST_TODAY - timedelta(days=1))
        assert rows[0].values == {"value_count": 9000}
        # Reported-day jobs fetch the calendar day only
        yesterday = TEST_TODAY - timedelta(days=1)
        assert provider.fetch_calls == [
            (
                "daily_activity",
                datetime.combine(yesterday, time(0, 0), tzinfo=timezone.utc),
                datetime.combine(TEST_TODAY, time(0, 0), tzinfo=timezone.utc),
            )
        ]

    @pytest.mark.asyncio
    async def test_interval_job_fetches_noon_to_noon(self, sync_config, token_store, store) -> None:
        provider = FakeProvider(token_store, records=[sleep_record(TEST_TODAY)])
        await store.upsert(
            DailyMeasurementRow(TEST_USER_ID, ANCHOR, "whoop", TEST_TODAY - timedelta(days=1), {"value_hours": 7.0})
        )

        await _build_job(sync_config, provider, store).run(TEST_USER_ID)

        assert provider.fetch_calls == [
            (
                "sleep",
                datetime.combine(TEST_TODAY - timedelta(days=1), time(12, 0), tzinfo=timezone.utc),
                datetime.combine(TEST_TODAY + timedelta(days=1), time(12, 0), tzinfo=timezone.utc),
            )
        ]


    @pytest.mark.asyncio
    async def test_physical_job_writes_recovery_and_zone_minutes(
        self, sync_config, token_store, store
    ) -> None:
        workout = workout_record(datetime.combine(TEST_TODAY, time(6, 30), tzinfo=timezone.utc), 1_200_000, 300_000)
        records = [recovery_record(d) for d in _days_back(45)[:-1]]
        records.append(recovery_record(TEST_TODAY, recovery_score=72.0, workouts=[workout]))
        provider = FakeProvider(token_store, records=records)

        result = await _build_job(sync_config, provider, store, job_name="whoop_physical").run(TEST_USER_ID)

        assert result.outcome is JobOutcome.SUCCESS
        assert {call[0] for call in provider.fetch_calls} == {"physical"}
        anchor = await _anchor_dates(store, metric="recovery_score_daily")
        assert anchor[0] == date(2024, 2, 10)
        assert anchor[-1] == TEST_TODAY
        today = await store.list_rows(TEST_USER_ID, "recovery_score_daily", start=TEST_TODAY)
        assert today[0].values == {"value_pct": 72.0}
        zones = await store.list_rows(TEST_USER_ID, "time_in_high_hr_zones_daily")
        assert [r.date for r in zones] == [TEST_TODAY]
        assert zones[0].values["value_minutes"] == 25.0

# ---------------------------------------------------------------------------
# Exception classification
# ---------------------------------------------------------------------------


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.test")
    return httpx.HTTPStatusError("err", request=request, response=httpx.Response(status, request=request))


class TestClassifyException:
    @pytest.mark.parametrize(
        "exc",
        [
            RetryableSyncError("x"),
            CredentialsError("x"),
            ProviderError("x", status_code=401),
            ProviderError("x", status_code=429),
            ProviderError("x", status_code=502),
            ProviderError("x"),
            httpx.ConnectTimeout("slow"),
            asyncio.TimeoutError(),
            ConnectionResetError(),
            _status_error(503),
            RuntimeError("unexpected"),
        ],
    )
    def test_retryable(self, exc: Exception) -> None:
        assert classify_exception(exc) is JobOutcome.RETRYABLE

    @pytest.mark.parametrize(
        "exc",
        [
            PermanentSyncError("x"),
            ProviderError("x", status_code=404),
            _status_error(400),
            ValueError("bad json"),
            KeyError("id"),
            TypeError("none"),
        ],
    )
    def test_permanent(self, exc: Exception) -> None:
        assert classify_exception(exc) is JobOutcome.PERMANENT
