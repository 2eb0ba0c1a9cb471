"""Idempotent write helpers for metric_daily.

Dedup key:
    metric_daily: (user_id, metric, source, date) — UNIQUE constraint

Duplicate delivery from a provider, a retried invocation, or a re-run of the
same date all collapse onto that key.  There is no other dedup layer.
"""

from __future__ import annotations

import logging
from datetime import date

from src.metric_sync.base import DailyMeasurementRow, MetricStreamKey

logger = logging.getLogger("dailysync.sync.dedup")

METRIC_DAILY_TABLE = "metric_daily"
METRIC_DAILY_COLUMNS = ["user_id", "metric", "source", "date", "values", "source_record_id"]
METRIC_DAILY_KEY = ["user_id", "metric", "source", "date"]


def row_key(stream: MetricStreamKey, target_date: date) -> str:
    """Generate the dedup key for one daily row.

    Matches the UNIQUE constraint on metric_daily:
    (user_id, metric, source, date).

    Args:
        stream:      Metric stream identity.
        target_date: Local calendar day the row belongs to.

    Returns:
        Colon-separated dedup key string.
    """
    return f"{stream.user_id}:{stream.metric}:{stream.source}:{target_date.isoformat()}"


def key_for(row: DailyMeasurementRow) -> str:
    return row_key(row.stream, row.date)


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    casts: dict[str, str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes — safe to call multiple times with the same
    data.  On conflict, updates the non-key columns.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).
        casts:            Optional column → SQL type casts for placeholders
                          (e.g. {"values": "jsonb"}).

    Returns:
        Parameterized SQL string.
    """
    casts = casts or {}
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(
        f"${i + 1}::{casts[col]}" if col in casts else f"${i + 1}"
        for i, col in enumerate(columns)
    )
    col_list = ", ".join(f'"{c}"' if c == "values" else c for c in columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(
            f'"{col}" = EXCLUDED."{col}"' if col == "values" else f"{col} = EXCLUDED.{col}"
            for col in update_columns
        )
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )


METRIC_DAILY_UPSERT = build_upsert_query(
    METRIC_DAILY_TABLE,
    METRIC_DAILY_COLUMNS,
    METRIC_DAILY_KEY,
    casts={"values": "jsonb"},
)
