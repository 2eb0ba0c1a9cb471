"""Day assignment: which local calendar day owns a provider record.

Sleep-like interval metrics belong to the day the interval *ends* (the wake-up
day), so a night from Day N 23:00 to Day N+1 07:00 is Day N+1's sleep.
Metrics the provider already aggregates per day keep the provider's own day.

Assignment never falls back to "today": a record without a usable end or day
is skipped.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Protocol

from src.metric_sync.base import RawProviderRecord

logger = logging.getLogger("dailysync.day_assignment")


class DayAssigner(Protocol):
    """Maps a raw record to the local calendar day that owns it."""

    #: Whether select_record may fall back to the latest record in the window.
    allows_fallback: bool

    def assign(self, record: RawProviderRecord, zone: tzinfo) -> date | None:
        ...

    def window(self, day: date, zone: tzinfo) -> tuple[datetime, datetime]:
        ...


class IntervalEndAssigner:
    """Owning day = device-zone date of the record's end instant.

    When the provider reported an offset for the record, the end is first
    moved by that offset and then read in the device zone.  Without an
    offset the end is read in the device zone directly.
    """

    name = "interval_end"
    allows_fallback = True

    def assign(self, record: RawProviderRecord, zone: tzinfo) -> date | None:
        end = record.shift_to_offset(record.end)
        if end is None:
            return None
        return end.astimezone(zone).date()

    def window(self, day: date, zone: tzinfo) -> tuple[datetime, datetime]:
        # Noon to noon around the night that ends on ``day``
        start = datetime.combine(day - timedelta(days=1), time(12, 0), tzinfo=zone)
        end = datetime.combine(day + timedelta(days=1), time(12, 0), tzinfo=zone)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


class ReportedDayAssigner:
    """Owning day = the day the provider reported for a daily aggregate."""

    name = "reported_day"
    allows_fallback = False

    def assign(self, record: RawProviderRecord, zone: tzinfo) -> date | None:
        return record.reported_day

    def window(self, day: date, zone: tzinfo) -> tuple[datetime, datetime]:
        start = datetime.combine(day, time(0, 0), tzinfo=zone)
        end = datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=zone)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


ASSIGNER_REGISTRY: dict[str, type] = {
    IntervalEndAssigner.name: IntervalEndAssigner,
    ReportedDayAssigner.name: ReportedDayAssigner,
}


def get_assigner(name: str) -> DayAssigner:
    """Instantiate the day assigner configured under ``name``.

    Raises:
        KeyError: If no assigner is registered under that name.
    """
    if name not in ASSIGNER_REGISTRY:
        raise KeyError(
            f"No day assigner registered as '{name}'. Available: {list(ASSIGNER_REGISTRY)}"
        )
    return ASSIGNER_REGISTRY[name]()


def day_window(day: date, zone: tzinfo, assigner: DayAssigner) -> tuple[datetime, datetime]:
    """Return the UTC fetch window [start, end) for one target day."""
    return assigner.window(day, zone)


def select_record(
    records: list[RawProviderRecord],
    target: date,
    assigner: DayAssigner,
    zone: tzinfo,
) -> RawProviderRecord | None:
    """Pick the record that represents ``target``.

    An exact day match wins; among several exact matches the last one in
    response order is kept.  Without an exact match, assigners that allow it
    fall back to the record with the latest end instant.  Records without a
    parsable end never take part in the fallback.

    Args:
        records:  Decoded records for the target day's fetch window.
        target:   Local calendar day being synced.
        assigner: Day assignment strategy for the metric.
        zone:     Device time zone.

    Returns:
        The chosen record, or None when nothing in the window qualifies.
    """
    exact: RawProviderRecord | None = None
    latest: RawProviderRecord | None = None
    latest_end: datetime | None = None

    for record in records:
        assigned = assigner.assign(record, zone)
        if assigned is None:
            logger.debug("Skipping record %s with no assignable day", record.record_id)
            continue
        if assigned == target:
            exact = record
        end = record.shift_to_offset(record.end)
        if end is not None and (latest_end is None or end > latest_end):
            latest, latest_end = record, end

    if exact is not None:
        return exact
    if assigner.allows_fallback and latest is not None:
        logger.debug(
            "No record assigned to %s; falling back to latest-ending record %s",
            target, latest.record_id,
        )
        return latest
    return None
