"""Sync orchestrator: decides which jobs run for a user, and runs them.

Entry points:
    on_login(user)      — kick every enabled job now and arm its daily slot
    on_startup(users)   — same for every connected user after a restart
    reevaluate(user)    — settings changed: arm newly enabled jobs, cancel disabled ones
    run_now(user, job)  — imperative trigger
    execute(user, job)  — the scheduled callable (one bounded job invocation)
    status(user)        — read-only view of each job's slot

All job-specific collaborators are built fresh per invocation; the
orchestrator itself only holds wiring.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from functools import partial
from pathlib import Path
from typing import Callable
from uuid import UUID
from zoneinfo import ZoneInfo

import httpx

from src.config import Settings, get_settings
from src.metric_sync.adapters import get_provider
from src.metric_sync.base import ProviderClient, utc_now
from src.metric_sync.config_loader import (
    JobConfig,
    SyncConfig,
    get_sync_config,
    load_sync_config,
)
from src.metric_sync.credentials import InMemoryTokenStore, PostgresTokenStore, TokenStore
from src.metric_sync.day_assignment import get_assigner
from src.metric_sync.extractors import get_extractor
from src.metric_sync.settings_source import (
    MetricEnablement,
    MetricSettingsSource,
    PostgresMetricSettings,
    StaticMetricSettings,
)
from src.metric_sync.store import InMemoryMetricStore, MetricStore, PostgresMetricStore
from src.metric_sync.sync.backfill import BackfillPolicy
from src.metric_sync.sync.followups import TriggerRecalcTask, recalc_slot
from src.metric_sync.sync.job import (
    JobOutcome,
    JobState,
    SyncJob,
    SyncRunResult,
    classify_exception,
)
from src.metric_sync.sync.scheduler import (
    APSchedulerTaskScheduler,
    SyncScheduler,
    TaskFunc,
    TaskScheduler,
    TaskStatus,
)
from src.metric_sync.sync.watchdog import AuditReport, Watchdog, slot_name
from src.services.edge_functions import EdgeFunctionsClient

logger = logging.getLogger("dailysync.sync.orchestrator")


def watchdog_slot(user_id: UUID) -> str:
    return f"watchdog:{user_id}"


@dataclass
class JobStatusView:
    """Read surface for one job slot."""

    job_name: str
    slot: str
    task_status: TaskStatus
    run_now_status: TaskStatus
    next_fire_at: datetime | None
    retry_count: int
    last_outcome: JobOutcome | None
    last_run_at: datetime | None
    last_rows_written: int | None


class SyncOrchestrator:
    """Wires configuration, providers, store and scheduler together.

    Args:
        config:      Engine configuration.
        scheduler:   SyncScheduler owning all slots.
        store:       Metric store.
        settings:    Enablement snapshot source.
        providers:   Provider clients keyed by source slug.
        token_store: Credential store (for the list of connected users).
        zone:        Device time zone.
        recalc:      Optional downstream recalc follow-up.
        clock:       UTC clock (injectable for tests).
    """

    def __init__(
        self,
        config: SyncConfig,
        scheduler: SyncScheduler,
        store: MetricStore,
        settings: MetricSettingsSource,
        providers: dict[str, ProviderClient],
        token_store: TokenStore,
        zone: tzinfo,
        recalc: TriggerRecalcTask | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._scheduler = scheduler
        self._store = store
        self._settings = settings
        self._providers = providers
        self._token_store = token_store
        self._zone = zone
        self._recalc = recalc
        self._clock = clock
        self._last_results: dict[str, SyncRunResult] = {}
        self._watchdog = Watchdog(scheduler, config, settings, providers, self.job_callable)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def scheduler(self) -> SyncScheduler:
        return self._scheduler

    @property
    def store(self) -> MetricStore:
        return self._store

    @property
    def watchdog(self) -> Watchdog:
        return self._watchdog

    def job_callable(self, user_id: UUID, job_name: str, run_now: bool = False) -> TaskFunc:
        return partial(self.execute, user_id, job_name, run_now=run_now)

    def _recalc_callable(self, user_id: UUID) -> TaskFunc:
        return partial(self.run_recalc, user_id)

    async def active_users(self) -> list[UUID]:
        return await self._token_store.active_user_ids()

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def on_login(self, user_id: UUID) -> dict[str, str]:
        """Kick and arm every enabled job for a user who just signed in.

        Returns:
            Action taken per job name ('armed', 'cancelled', or 'skipped: <reason>').
        """
        logger.info("Login sync for %s", user_id)
        return await self._apply(user_id, kick_all=True)

    async def on_startup(self, user_ids: list[UUID]) -> None:
        for user_id in user_ids:
            try:
                await self._apply(user_id, kick_all=True)
            except Exception as exc:
                # The watchdog for this user is not registered; the next login re-runs this
                logger.error("Startup scheduling failed for %s: %s", user_id, exc)

    async def reevaluate(self, user_id: UUID) -> dict[str, str]:
        """Settings changed: arm newly enabled jobs and cancel disabled ones."""
        logger.info("Re-evaluating enabled metrics for %s", user_id)
        return await self._apply(user_id, kick_all=False)

    async def _apply(self, user_id: UUID, kick_all: bool) -> dict[str, str]:
        enablement = await self._settings.load(user_id)
        actions: dict[str, str] = {}
        for job in self._config.jobs.values():
            slot = slot_name(job.name, user_id)
            decision = await self._decide(job, user_id, enablement)
            if decision == "disabled":
                self._scheduler.cancel(slot)
                actions[job.name] = "cancelled"
                continue
            if decision:
                actions[job.name] = f"skipped: {decision}"
                continue

            already_armed = self._scheduler.status(slot) is not TaskStatus.ABSENT
            if kick_all or not already_armed:
                self._scheduler.run_once_now(slot, self.job_callable(user_id, job.name, run_now=True))
                self._scheduler.arm_next(slot, job.run_at, self.job_callable(user_id, job.name))
                actions[job.name] = "armed"
            else:
                actions[job.name] = "unchanged"

        self._scheduler.ensure_periodic(
            watchdog_slot(user_id),
            timedelta(hours=self._config.watchdog_interval_hours),
            partial(self.audit, user_id),
        )
        return actions

    async def _decide(
        self, job: JobConfig, user_id: UUID, enablement: MetricEnablement
    ) -> str | None:
        """Return None when the job should run, else why not."""
        if not enablement.enabled_metrics(job.metrics, job.provider):
            return "disabled"
        provider = self._providers.get(job.provider)
        if provider is None:
            return "no provider"
        try:
            consented = await provider.has_consent(user_id)
        except Exception as exc:
            logger.warning("Consent check for %s/%s failed: %s", job.name, user_id, exc)
            return "consent unknown"
        # Not connected: keep the daily arm off; a later reevaluate picks it up
        return None if consented else "no consent"

    async def audit(self, user_id: UUID) -> AuditReport:
        return await self._watchdog.audit(user_id)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def run_now(self, user_id: UUID, job_name: str) -> str:
        """Queue an immediate run of ``job_name``.

        Raises:
            UnknownJobError: If the job is not configured.
        """
        self._config.job(job_name)
        slot = slot_name(job_name, user_id)
        return self._scheduler.run_once_now(slot, self.job_callable(user_id, job_name, run_now=True))

    async def execute(self, user_id: UUID, job_name: str, run_now: bool = False) -> SyncRunResult:
        """Run one bounded invocation of a job and re-arm its slot."""
        job_cfg = self._config.job(job_name)
        slot = slot_name(job_name, user_id)
        target_slot = self._scheduler.now_slot(slot) if run_now else slot

        try:
            enablement = await self._settings.load(user_id)
            job = self.build_job(job_cfg, enablement)
            result = await asyncio.wait_for(
                job.run(user_id), timeout=self._config.run_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %ds", target_slot, self._config.run_timeout_seconds)
            result = self._failed_result(user_id, job_name, JobOutcome.RETRYABLE, "timed out")
        except Exception as exc:
            outcome = classify_exception(exc)
            logger.warning("%s could not start (%s): %s", target_slot, outcome.value, exc)
            result = self._failed_result(user_id, job_name, outcome, str(exc))

        self._last_results[slot] = result
        self._scheduler.handle_outcome(
            target_slot,
            result.outcome,
            self.job_callable(user_id, job_name, run_now=run_now),
            target_time=None if run_now else job_cfg.run_at,
        )
        if result.wrote_rows:
            self._enqueue_recalc(user_id)
        return result

    @staticmethod
    def _failed_result(
        user_id: UUID, job_name: str, outcome: JobOutcome, error: str
    ) -> SyncRunResult:
        result = SyncRunResult(user_id=user_id, job_name=job_name, outcome=outcome, error=error)
        result.states.append(
            JobState.PERMANENT if outcome is JobOutcome.PERMANENT else JobState.RETRYABLE
        )
        result.finished_at = utc_now()
        return result

    def build_job(self, job_cfg: JobConfig, enablement: MetricEnablement) -> SyncJob:
        return SyncJob(
            config=job_cfg,
            provider=self._providers[job_cfg.provider],
            assigner=get_assigner(job_cfg.assignment),
            policy=BackfillPolicy.from_config(self._config.metric_class(job_cfg.metric_class)),
            store=self._store,
            enablement=enablement,
            extractor=get_extractor(job_cfg.provider, job_cfg.resource),
            zone=self._zone,
            clock=self._clock,
        )

    # ------------------------------------------------------------------
    # Follow-ups
    # ------------------------------------------------------------------

    def _enqueue_recalc(self, user_id: UUID) -> None:
        if self._recalc is None or not self._recalc.enabled:
            return
        self._scheduler.tasks.enqueue_once(
            recalc_slot(user_id), timedelta(0), self._recalc_callable(user_id), replace=True
        )

    async def run_recalc(self, user_id: UUID) -> JobOutcome:
        if self._recalc is None:
            return JobOutcome.NOOP
        outcome = await self._recalc.run(user_id)
        self._scheduler.handle_outcome(recalc_slot(user_id), outcome, self._recalc_callable(user_id))
        return outcome

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    def status(self, user_id: UUID) -> list[JobStatusView]:
        views: list[JobStatusView] = []
        for job in self._config.jobs.values():
            slot = slot_name(job.name, user_id)
            state = self._scheduler.state(slot)
            last = self._last_results.get(slot)
            views.append(
                JobStatusView(
                    job_name=job.name,
                    slot=slot,
                    task_status=self._scheduler.status(slot),
                    run_now_status=self._scheduler.status(self._scheduler.now_slot(slot)),
                    next_fire_at=state.next_fire_at if state else None,
                    retry_count=state.retry_count if state else 0,
                    last_outcome=state.last_outcome if state else None,
                    last_run_at=last.finished_at if last else None,
                    last_rows_written=last.rows_written if last else None,
                )
            )
        return views


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_providers(
    config: SyncConfig,
    token_store: TokenStore,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, ProviderClient]:
    """Instantiate one client per provider referenced by a configured job."""
    timeout = httpx.Timeout(
        config.http_timeout_seconds, connect=config.http_connect_timeout_seconds
    )
    sources = {job.provider for job in config.jobs.values()}
    return {
        source: get_provider(source)(token_store, http_client=http_client, timeout=timeout)
        for source in sorted(sources)
    }


def build_orchestrator(
    settings: Settings | None = None,
    config: SyncConfig | None = None,
    tasks: TaskScheduler | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> SyncOrchestrator:
    """Assemble the orchestrator for the configured storage backend.

    Args:
        settings:    Environment settings (defaults to get_settings()).
        config:      Engine config (defaults to the bundled or overridden YAML).
        tasks:       Task runner (defaults to a new APSchedulerTaskScheduler).
        http_client: Shared httpx client for providers and edge functions.
    """
    s = settings or get_settings()
    if config is None:
        config = load_sync_config(Path(s.sync_config_path)) if s.sync_config_path else get_sync_config()
    zone = ZoneInfo(s.device_timezone)

    if s.store_backend == "memory":
        store: MetricStore = InMemoryMetricStore()
        metric_settings: MetricSettingsSource = StaticMetricSettings()
        token_store: TokenStore = InMemoryTokenStore()
    else:
        store = PostgresMetricStore()
        metric_settings = PostgresMetricSettings()
        token_store = PostgresTokenStore()

    scheduler = SyncScheduler(tasks or APSchedulerTaskScheduler(), config.retry, zone)
    recalc = TriggerRecalcTask(EdgeFunctionsClient(s, http_client=http_client), config.followup)
    logger.info(
        "Sync engine ready: backend=%s zone=%s jobs=%s",
        s.store_backend, s.device_timezone, ", ".join(config.jobs),
    )
    return SyncOrchestrator(
        config=config,
        scheduler=scheduler,
        store=store,
        settings=metric_settings,
        providers=build_providers(config, token_store, http_client),
        token_store=token_store,
        zone=zone,
        recalc=recalc,
    )
