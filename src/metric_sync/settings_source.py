"""Metric enablement: which metrics a user collects, and from which source.

The settings UI owns the ``metric_settings`` table; the engine only reads it.
A snapshot is taken once per decision (login, re-evaluation, watchdog round,
job invocation) so every job in that decision sees the same view.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from uuid import UUID

from src.services import supabase

logger = logging.getLogger("dailysync.settings")


@dataclass(frozen=True)
class MetricSetting:
    """One row of metric_settings.

    Attributes:
        metric:           Metric name, e.g. 'sleep_duration_daily'.
        enabled:          Master toggle for the metric.
        preferred_source: Source the user picked for the metric.
        allowed_sources:  Additional sources the metric may be filled from.
    """

    metric: str
    enabled: bool = True
    preferred_source: str | None = None
    allowed_sources: tuple[str, ...] = ()

    def accepts(self, source: str) -> bool:
        # Neither preferred nor allowed set: any source may fill the metric
        if self.preferred_source is None and not self.allowed_sources:
            return True
        return source == self.preferred_source or source in self.allowed_sources


@dataclass
class MetricEnablement:
    """Immutable enablement snapshot for one user.

    Metrics without a settings row are disabled.
    """

    settings: dict[str, MetricSetting] = field(default_factory=dict)

    def is_enabled(self, metric: str, source: str | None = None) -> bool:
        setting = self.settings.get(metric)
        if setting is None or not setting.enabled:
            return False
        return source is None or setting.accepts(source)

    def preferred_source(self, metric: str) -> str | None:
        setting = self.settings.get(metric)
        return setting.preferred_source if setting else None

    def enabled_metrics(self, metrics: list[str], source: str) -> list[str]:
        """Filter ``metrics`` to those enabled for ``source``, keeping order."""
        return [m for m in metrics if self.is_enabled(m, source)]


class MetricSettingsSource(ABC):
    """Loads enablement snapshots."""

    @abstractmethod
    async def load(self, user_id: UUID) -> MetricEnablement:
        """Return the user's current enablement snapshot."""


class PostgresMetricSettings(MetricSettingsSource):
    """Reads the metric_settings table."""

    async def load(self, user_id: UUID) -> MetricEnablement:
        rows = await supabase.fetch(
            """
            SELECT metric, enabled, preferred_source, allowed_sources
            FROM metric_settings
            WHERE user_id = $1
            """,
            user_id,
            user_id=user_id,
        )
        settings = {
            r["metric"]: MetricSetting(
                metric=r["metric"],
                enabled=bool(r["enabled"]),
                preferred_source=r["preferred_source"],
                allowed_sources=tuple(r["allowed_sources"] or ()),
            )
            for r in rows
        }
        logger.debug("Loaded %d metric settings for %s", len(settings), user_id)
        return MetricEnablement(settings)


class StaticMetricSettings(MetricSettingsSource):
    """Fixed per-user settings for the memory backend and tests."""

    def __init__(self, settings: dict[UUID, list[MetricSetting]] | None = None) -> None:
        self._settings: dict[UUID, list[MetricSetting]] = dict(settings or {})

    def set(self, user_id: UUID, settings: list[MetricSetting]) -> None:
        self._settings[user_id] = list(settings)

    async def load(self, user_id: UUID) -> MetricEnablement:
        return MetricEnablement({s.metric: s for s in self._settings.get(user_id, [])})
