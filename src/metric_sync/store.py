"""Remote store client for per-day metric rows.

The store is the only shared mutable state in the engine.  It is also the
sync cursor: ``latest_date`` of a job's anchor metric tells the next
invocation where to resume.  Every write is an upsert on
(user_id, metric, source, date), so concurrent or repeated writes for the
same key converge on the last value.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import date
from uuid import UUID

from src.metric_sync.base import DailyMeasurementRow, MetricStreamKey
from src.metric_sync.sync.dedup import METRIC_DAILY_UPSERT, key_for, row_key
from src.services import supabase

logger = logging.getLogger("dailysync.store")


class MetricStore(ABC):
    """Read/write access to metric_daily."""

    @abstractmethod
    async def latest_date(self, user_id: UUID, metric: str, source: str) -> date | None:
        """Return the most recent date with a row for the stream, or None."""

    @abstractmethod
    async def has_row(self, user_id: UUID, metric: str, source: str, day: date) -> bool:
        """Return True if the stream already has a row for ``day``."""

    @abstractmethod
    async def upsert(self, row: DailyMeasurementRow) -> None:
        """Insert or replace the row for (user_id, metric, source, date)."""

    @abstractmethod
    async def list_rows(
        self,
        user_id: UUID,
        metric: str,
        source: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[DailyMeasurementRow]:
        """Return stored rows ordered by date, optionally bounded [start, end]."""


class PostgresMetricStore(MetricStore):
    """MetricStore backed by the Supabase ``metric_daily`` table."""

    async def latest_date(self, user_id: UUID, metric: str, source: str) -> date | None:
        return await supabase.fetchval(
            """
            SELECT max(date) FROM metric_daily
            WHERE user_id = $1 AND metric = $2 AND source = $3
            """,
            user_id,
            metric,
            source,
            user_id=user_id,
        )

    async def has_row(self, user_id: UUID, metric: str, source: str, day: date) -> bool:
        found = await supabase.fetchval(
            """
            SELECT EXISTS (
                SELECT 1 FROM metric_daily
                WHERE user_id = $1 AND metric = $2 AND source = $3 AND date = $4
            )
            """,
            user_id,
            metric,
            source,
            day,
            user_id=user_id,
        )
        return bool(found)

    async def upsert(self, row: DailyMeasurementRow) -> None:
        await supabase.execute(
            METRIC_DAILY_UPSERT,
            row.user_id,
            row.metric,
            row.source,
            row.date,
            json.dumps(row.values, default=str),
            row.source_record_id,
            user_id=row.user_id,
        )
        logger.debug("Upserted %s", key_for(row))

    async def list_rows(
        self,
        user_id: UUID,
        metric: str,
        source: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[DailyMeasurementRow]:
        conditions = ["user_id = $1", "metric = $2"]
        args: list = [user_id, metric]
        if source is not None:
            args.append(source)
            conditions.append(f"source = ${len(args)}")
        if start is not None:
            args.append(start)
            conditions.append(f"date >= ${len(args)}")
        if end is not None:
            args.append(end)
            conditions.append(f"date <= ${len(args)}")

        rows = await supabase.fetch(
            f"""
            SELECT user_id, metric, source, date, "values", source_record_id
            FROM metric_daily
            WHERE {" AND ".join(conditions)}
            ORDER BY date, source
            """,
            *args,
            user_id=user_id,
        )
        return [
            DailyMeasurementRow(
                user_id=r["user_id"],
                metric=r["metric"],
                source=r["source"],
                date=r["date"],
                values=json.loads(r["values"]) if isinstance(r["values"], str) else dict(r["values"]),
                source_record_id=r["source_record_id"],
            )
            for r in rows
        ]


class InMemoryMetricStore(MetricStore):
    """Process-local MetricStore for the memory backend and tests.

    ``fail_on`` makes upserts for the listed dedup keys raise, so tests can
    interrupt a pass at a chosen date.
    """

    def __init__(self) -> None:
        self._rows: dict[str, DailyMeasurementRow] = {}
        self.fail_on: set[str] = set()
        self.upsert_calls = 0

    async def latest_date(self, user_id: UUID, metric: str, source: str) -> date | None:
        stream = MetricStreamKey(user_id, metric, source)
        dates = [r.date for r in self._rows.values() if r.stream == stream]
        return max(dates) if dates else None

    async def has_row(self, user_id: UUID, metric: str, source: str, day: date) -> bool:
        return row_key(MetricStreamKey(user_id, metric, source), day) in self._rows

    async def upsert(self, row: DailyMeasurementRow) -> None:
        key = key_for(row)
        self.upsert_calls += 1
        if key in self.fail_on:
            raise ConnectionError(f"Simulated store failure for {key}")
        self._rows[key] = row

    async def list_rows(
        self,
        user_id: UUID,
        metric: str,
        source: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[DailyMeasurementRow]:
        rows = [
            r for r in self._rows.values()
            if r.user_id == user_id
            and r.metric == metric
            and (source is None or r.source == source)
            and (start is None or r.date >= start)
            and (end is None or r.date <= end)
        ]
        return sorted(rows, key=lambda r: (r.date, r.source))

    def __len__(self) -> int:
        return len(self._rows)
