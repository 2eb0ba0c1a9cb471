"""Watchdog: restores missing schedule arms.

A slot can silently disappear (process restart, a cancelled invocation, an
arm that raced a cancel).  Every few hours the watchdog asks the task runner
whether each enabled job's slot is pending or running and re-arms the ones
that are absent.  It never runs job logic and never touches retry counts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable
from uuid import UUID

from src.metric_sync.base import ProviderClient
from src.metric_sync.config_loader import JobConfig, SyncConfig
from src.metric_sync.settings_source import MetricSettingsSource
from src.metric_sync.sync.scheduler import SyncScheduler, TaskFunc, TaskStatus

logger = logging.getLogger("dailysync.sync.watchdog")


def slot_name(job_name: str, user_id: UUID) -> str:
    """Stable per-user slot name for a job."""
    return f"{job_name}:{user_id}"


@dataclass
class AuditReport:
    """What one audit round found.

    Attributes:
        user_id: User audited.
        checked: Slots inspected (job enabled and provider connected).
        rearmed: Slots found absent and re-armed.
        skipped: Jobs not audited, with the reason.
        aborted: True when the round was skipped entirely.
    """

    user_id: UUID
    checked: list[str] = field(default_factory=list)
    rearmed: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    aborted: bool = False


class Watchdog:
    """Audits slots for one user at a time.

    Args:
        scheduler:     The SyncScheduler owning the slots.
        config:        Engine configuration (job list, run times).
        settings:      Source of enablement snapshots.
        providers:     Provider clients keyed by source, for consent checks.
        job_callable:  Builds the scheduled callable for (user, job name).
    """

    def __init__(
        self,
        scheduler: SyncScheduler,
        config: SyncConfig,
        settings: MetricSettingsSource,
        providers: dict[str, ProviderClient],
        job_callable: Callable[[UUID, str], TaskFunc],
    ) -> None:
        self._scheduler = scheduler
        self._config = config
        self._settings = settings
        self._providers = providers
        self._job_callable = job_callable

    async def audit(self, user_id: UUID) -> AuditReport:
        report = AuditReport(user_id=user_id)
        try:
            enablement = await self._settings.load(user_id)
        except Exception as exc:
            # Unknown enablement: leave every slot as it is until next round
            logger.warning("Watchdog: enablement lookup failed for %s: %s", user_id, exc)
            report.aborted = True
            return report

        for job in self._config.jobs.values():
            reason = await self._skip_reason(job, user_id, enablement)
            if reason:
                report.skipped[job.name] = reason
                continue

            slot = slot_name(job.name, user_id)
            report.checked.append(slot)
            status = self._scheduler.status(slot)
            if status is TaskStatus.ABSENT:
                self._scheduler.arm_next(slot, job.run_at, self._job_callable(user_id, job.name))
                report.rearmed.append(slot)
                logger.warning("Watchdog: %s had no pending arm; re-armed", slot)

        logger.info(
            "Watchdog audit for %s: %d checked, %d re-armed",
            user_id, len(report.checked), len(report.rearmed),
        )
        return report

    async def _skip_reason(self, job: JobConfig, user_id: UUID, enablement) -> str | None:
        if not enablement.enabled_metrics(job.metrics, job.provider):
            return "disabled"
        provider = self._providers.get(job.provider)
        if provider is None:
            return "no provider"
        try:
            if not await provider.has_consent(user_id):
                return "no consent"
        except Exception as exc:
            logger.warning("Watchdog: consent check for %s failed: %s", job.name, exc)
            return "consent unknown"
        return None
