"""Backfill policy: which dates a sync pass is allowed to write.

A brand-new stream fills at most ``baseline_window_days``
back from today; an existing stream resumes the day after its latest stored
date, never reaching further back than that same baseline.  Metric classes
that cannot usefully fill a long gap set ``reasonable_backfill_days``; when the
gap is larger than that only the last day is written.

Usage::

    policy = BackfillPolicy(baseline_window_days=29)
    dates = policy.dates_to_sync(latest=None, today=date(2024, 3, 10))
    # [2024-02-10 … 2024-03-10]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from uuid import UUID

from src.metric_sync.config_loader import MetricClassConfig
from src.metric_sync.store import MetricStore

logger = logging.getLogger("dailysync.sync.backfill")


def compute_backfill_range(
    latest: date | None,
    today: date,
    baseline_window_days: int,
    reasonable_backfill_days: int | None = None,
) -> list[date]:
    """Return the dates a pass should cover, oldest first.

    Args:
        latest:                   Most recent stored date for the anchor metric.
        today:                    Last date the pass may write.
        baseline_window_days:     Maximum look-back from today.
        reasonable_backfill_days: Gap above which only ``today`` is written.

    Returns:
        Ascending list of dates; empty when the stream is already current.
    """
    floor = today - timedelta(days=baseline_window_days)
    if latest is None:
        start = floor
    elif reasonable_backfill_days is not None and (today - latest).days > reasonable_backfill_days:
        logger.info(
            "Gap of %d days exceeds %d; writing %s only",
            (today - latest).days, reasonable_backfill_days, today,
        )
        start = today
    else:
        start = max(latest + timedelta(days=1), floor)

    if start > today:
        return []
    return [start + timedelta(days=i) for i in range((today - start).days + 1)]


@dataclass(frozen=True)
class BackfillPolicy:
    """Backfill bounds for one metric class."""

    baseline_window_days: int = 29
    reasonable_backfill_days: int | None = None
    lag_days: int = 0

    @classmethod
    def from_config(cls, cfg: MetricClassConfig) -> BackfillPolicy:
        return cls(
            baseline_window_days=cfg.baseline_window_days,
            reasonable_backfill_days=cfg.reasonable_backfill_days,
            lag_days=cfg.lag_days,
        )

    def effective_today(self, today: date) -> date:
        """Last writable day for this class (a lagged metric is final later)."""
        return today - timedelta(days=self.lag_days)

    def dates_to_sync(self, latest: date | None, today: date) -> list[date]:
        return compute_backfill_range(
            latest,
            self.effective_today(today),
            self.baseline_window_days,
            self.reasonable_backfill_days,
        )


async def missing_dates(
    store: MetricStore,
    user_id: UUID,
    metric: str,
    source: str,
    dates: list[date],
) -> list[date]:
    """Drop dates that already have a row, preserving order.

    Makes a pass resumable: an interrupted pass skips the dates it already
    completed the next time it runs.
    """
    out: list[date] = []
    for d in dates:
        if not await store.has_row(user_id, metric, source, d):
            out.append(d)
    return out
