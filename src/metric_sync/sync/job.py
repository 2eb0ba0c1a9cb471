"""Sync job state machine.

One SyncJob type serves every (provider, metric group) pair; the pieces that
differ per job (provider client, day assigner, backfill policy, extractor)
are injected.  A job instance handles exactly one invocation and holds no
state worth keeping afterwards: everything that must survive lives in the
metric store (the resume cursor) or the scheduler (retry count).

Flow:
    IDLE → CHECKING_CONSENT → REFRESHING_CREDENTIALS → BACKFILLING
         → SYNCING_TODAY → SUCCESS | RETRYABLE | PERMANENT

Missing consent or a fully disabled metric group ends the run as NOOP
without calling the provider.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from enum import Enum
from typing import Callable
from uuid import UUID

import asyncpg
import httpx

from src.metric_sync.base import DailyMeasurementRow, ProviderClient, utc_now
from src.metric_sync.config_loader import JobConfig
from src.metric_sync.day_assignment import DayAssigner, day_window, select_record
from src.metric_sync.exceptions import PermanentSyncError, ProviderError, RetryableSyncError
from src.metric_sync.extractors import Extractor
from src.metric_sync.settings_source import MetricEnablement
from src.metric_sync.store import MetricStore
from src.metric_sync.sync.backfill import BackfillPolicy, missing_dates

logger = logging.getLogger("dailysync.sync.job")

_RETRYABLE_STATUS = frozenset({401, 408, 429})


class JobState(str, Enum):
    IDLE = "idle"
    CHECKING_CONSENT = "checking_consent"
    REFRESHING_CREDENTIALS = "refreshing_credentials"
    BACKFILLING = "backfilling"
    SYNCING_TODAY = "syncing_today"
    SUCCESS = "success"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


class JobOutcome(str, Enum):
    """What the scheduler should do after an invocation.

    NOOP and PERMANENT both resolve to "arm the next fixed time"; only
    RETRYABLE backs off.
    """

    NOOP = "noop"
    SUCCESS = "success"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


_TERMINAL_STATE = {
    JobOutcome.NOOP: JobState.SUCCESS,
    JobOutcome.SUCCESS: JobState.SUCCESS,
    JobOutcome.RETRYABLE: JobState.RETRYABLE,
    JobOutcome.PERMANENT: JobState.PERMANENT,
}


@dataclass
class SyncRunResult:
    """Result of a single job invocation.

    Attributes:
        user_id:       User the job ran for.
        job_name:      Configured job name.
        outcome:       Outcome handed to the scheduler.
        states:        Every state the run passed through, in order.
        dates_written: Dates for which at least one row was upserted.
        dates_failed:  Backfill dates skipped because of an error.
        rows_written:  Total rows upserted.
        error:         Message of the error that decided the outcome.
        started_at:    UTC start of the run.
        finished_at:   UTC end of the run.
    """

    user_id: UUID
    job_name: str
    outcome: JobOutcome = JobOutcome.SUCCESS
    states: list[JobState] = field(default_factory=lambda: [JobState.IDLE])
    dates_written: list[date] = field(default_factory=list)
    dates_failed: list[date] = field(default_factory=list)
    rows_written: int = 0
    error: str | None = None
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None

    @property
    def final_state(self) -> JobState:
        return self.states[-1]

    @property
    def wrote_rows(self) -> bool:
        return self.rows_written > 0


def classify_exception(exc: BaseException) -> JobOutcome:
    """Map an exception onto the outcome taxonomy.

    I/O problems (network, provider throttling, store) are RETRYABLE.
    Undecodable data and malformed local state are PERMANENT.  Anything not
    recognised is treated as I/O and retried.
    """
    if isinstance(exc, ProviderError) and exc.status_code is not None:
        status = exc.status_code
        if status in _RETRYABLE_STATUS or status >= 500:
            return JobOutcome.RETRYABLE
        return JobOutcome.PERMANENT
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in _RETRYABLE_STATUS or status >= 500:
            return JobOutcome.RETRYABLE
        return JobOutcome.PERMANENT
    if isinstance(exc, PermanentSyncError):
        return JobOutcome.PERMANENT
    if isinstance(
        exc,
        (RetryableSyncError, httpx.TransportError, asyncio.TimeoutError, OSError, asyncpg.PostgresError),
    ):
        return JobOutcome.RETRYABLE
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return JobOutcome.PERMANENT
    return JobOutcome.RETRYABLE


class SyncJob:
    """One invocation of a configured sync job.

    Usage::

        job = SyncJob(config, provider, assigner, policy, store, enablement,
                      extractor, zone=ZoneInfo("Europe/London"))
        result = await job.run(user_id)
    """

    def __init__(
        self,
        config: JobConfig,
        provider: ProviderClient,
        assigner: DayAssigner,
        policy: BackfillPolicy,
        store: MetricStore,
        enablement: MetricEnablement,
        extractor: Extractor,
        zone: tzinfo,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._provider = provider
        self._assigner = assigner
        self._policy = policy
        self._store = store
        self._enablement = enablement
        self._extractor = extractor
        self._zone = zone
        self._clock = clock

    @property
    def source(self) -> str:
        return self._provider.SOURCE_ID

    async def run(self, user_id: UUID) -> SyncRunResult:
        result = SyncRunResult(user_id=user_id, job_name=self._config.name)
        try:
            result.outcome = await self._run(user_id, result)
        except Exception as exc:
            result.outcome = classify_exception(exc)
            result.error = str(exc)
            log = logger.warning if result.outcome is JobOutcome.RETRYABLE else logger.error
            log(
                "%s for %s failed in %s (%s): %s",
                self._config.name, user_id, result.final_state.value,
                result.outcome.value, exc,
            )
        result.states.append(_TERMINAL_STATE[result.outcome])
        result.finished_at = utc_now()
        logger.info(
            "%s for %s → %s (%d rows over %d dates, %d dates skipped)",
            self._config.name, user_id, result.outcome.value, result.rows_written,
            len(result.dates_written), len(result.dates_failed),
        )
        return result

    async def _run(self, user_id: UUID, result: SyncRunResult) -> JobOutcome:
        # ── Consent ──
        result.states.append(JobState.CHECKING_CONSENT)
        metrics = self._enablement.enabled_metrics(self._config.metrics, self.source)
        if not metrics:
            logger.debug("%s: no metrics enabled for %s", self._config.name, user_id)
            return JobOutcome.NOOP
        if not await self._provider.has_consent(user_id):
            logger.info("%s: %s not connected for %s", self._config.name, self.source, user_id)
            return JobOutcome.NOOP

        # ── Credentials ──
        result.states.append(JobState.REFRESHING_CREDENTIALS)
        tokens = await self._provider.refresh_credentials(user_id)

        cursor_metric = self._cursor_metric(metrics)
        ordered = [m for m in metrics if m != cursor_metric] + [cursor_metric]
        local_today = self._clock().astimezone(self._zone).date()
        today = self._policy.effective_today(local_today)

        # ── Backfill ──
        result.states.append(JobState.BACKFILLING)
        latest = await self._store.latest_date(user_id, cursor_metric, self.source)
        planned = self._policy.dates_to_sync(latest, local_today)
        backfill = await missing_dates(
            self._store, user_id, cursor_metric, self.source,
            [d for d in planned if d < today],
        )
        if backfill:
            logger.info(
                "%s: backfilling %d dates for %s (%s → %s)",
                self._config.name, len(backfill), user_id, backfill[0], backfill[-1],
            )
        for day in backfill:
            try:
                await self._sync_day(user_id, day, ordered, tokens.access_token, result)
            except Exception as exc:
                # Stale days never block today's data
                result.dates_failed.append(day)
                logger.warning(
                    "%s: skipping %s for %s after error: %s", self._config.name, day, user_id, exc
                )

        # ── Today ──
        result.states.append(JobState.SYNCING_TODAY)
        if await self._store.has_row(user_id, cursor_metric, self.source, today):
            return JobOutcome.SUCCESS
        await self._sync_day(user_id, today, ordered, tokens.access_token, result)
        return JobOutcome.SUCCESS

    def _cursor_metric(self, enabled: list[str]) -> str:
        """The anchor metric, or the first enabled metric when the anchor is off."""
        if self._config.anchor_metric in enabled:
            return self._config.anchor_metric
        return enabled[0]

    async def _sync_day(
        self,
        user_id: UUID,
        day: date,
        metrics: list[str],
        access_token: str,
        result: SyncRunResult,
    ) -> None:
        """Fetch, assign, extract and write one day.  Cursor metric is written last."""
        start, end = day_window(day, self._zone, self._assigner)
        records = await self._provider.fetch_window(self._config.resource, start, end, access_token)
        record = select_record(records, day, self._assigner, self._zone)
        if record is None:
            logger.debug("%s: no record for %s (%d fetched)", self._config.name, day, len(records))
            return

        values = self._extractor(record, self._zone)
        written = 0
        for metric in metrics:
            if metric not in values:
                continue
            await self._store.upsert(
                DailyMeasurementRow(
                    user_id=user_id,
                    metric=metric,
                    source=self.source,
                    date=day,
                    values=values[metric],
                    source_record_id=record.record_id,
                )
            )
            written += 1
        if written:
            result.rows_written += written
            result.dates_written.append(day)
