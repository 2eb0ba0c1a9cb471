"""Value extraction: one selected provider record → per-metric row values.

An extractor returns ``{metric_name: values}`` for every metric it can derive
from the record.  Metrics whose source field is missing are left out rather
than written as zero, so a missing score never overwrites a stored one.

Durations are always float hours.  When a provider's top-level duration is
absent or zero, the stage fields are summed (light + slow-wave + REM).
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, tzinfo
from typing import Any, Callable

from src.metric_sync.base import RawProviderRecord
from src.metric_sync.day_assignment import IntervalEndAssigner

logger = logging.getLogger("dailysync.extractors")

_MS_PER_HOUR = 3_600_000
_SECONDS_PER_HOUR = 3_600
_MS_PER_MINUTE = 60_000

Extractor = Callable[[RawProviderRecord, tzinfo], dict[str, dict[str, Any]]]


# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------


def _safe_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def duration_hours(
    total: object,
    stages: list[object],
    per_hour: int,
) -> float:
    """Normalize a duration to hours.

    Args:
        total:    Top-level duration in provider units (may be None or 0).
        stages:   Stage durations in the same units, summed when total is unusable.
        per_hour: Provider units per hour (3_600_000 for ms, 3_600 for s).
    """
    total_f = _safe_float(total) or 0.0
    if total_f <= 0:
        total_f = sum(_safe_float(s) or 0.0 for s in stages)
    return round(total_f / per_hour, 4)


def _local_iso(instant: datetime | None, record: RawProviderRecord, zone: tzinfo) -> str | None:
    """Wall-clock time of ``instant`` after the record's offset, read in the device zone."""
    shifted = record.shift_to_offset(instant)
    if shifted is None:
        return None
    return shifted.astimezone(zone).isoformat()


# ---------------------------------------------------------------------------
# WHOOP
# ---------------------------------------------------------------------------


def extract_whoop_sleep(record: RawProviderRecord, zone: tzinfo) -> dict[str, dict[str, Any]]:
    """Fan a WHOOP v2 sleep record out to the daily sleep metrics."""
    score = record.payload.get("score") or {}
    stage = score.get("stage_summary") or {}

    light = stage.get("total_light_sleep_time_milli")
    sws = stage.get("total_slow_wave_sleep_time_milli")
    rem = stage.get("total_rem_sleep_time_milli")

    out: dict[str, dict[str, Any]] = {
        "sleep_duration_daily": {
            "value_hours": duration_hours(
                score.get("sleep_duration_milli"), [light, sws, rem], _MS_PER_HOUR
            ),
        },
        "sleep_disturbances_daily": {
            "value_count": int(_safe_float(stage.get("disturbance_count")) or 0),
        },
        "sleep_stages_daily": {
            "value_sws_hours": duration_hours(sws, [], _MS_PER_HOUR),
            "value_rem_hours": duration_hours(rem, [], _MS_PER_HOUR),
            "value_light_hours": duration_hours(light, [], _MS_PER_HOUR),
        },
    }

    fell = _local_iso(record.start, record, zone)
    if fell:
        out["fell_asleep_time_daily"] = {"value_at": fell}
    woke = _local_iso(record.end, record, zone)
    if woke:
        out["woke_up_time_daily"] = {"value_at": woke}

    perf = _safe_float(score.get("sleep_performance_percentage"))
    if perf is not None:
        out["sleep_score_daily"] = {"value_pct": perf}
    eff = _safe_float(score.get("sleep_efficiency_percentage"))
    if eff is not None:
        out["sleep_efficiency_daily"] = {"value_pct": eff}
    return out


# (metric, column, score fields tried in order)
_WHOOP_RECOVERY_FIELDS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("recovery_score_daily", "value_pct", ("recovery_score",)),
    ("resting_hr_daily", "value_bpm", ("resting_heart_rate",)),
    ("hrv_daily", "value_rmssd_ms", ("hrv_rmssd_milli",)),
    ("skin_temp_daily", "value_celsius", ("skin_temp_celsius",)),
    ("spo2_daily", "value_pct", ("spo2_percentage", "blood_oxygen_pct")),
)
_HIGH_HR_ZONES = ("zone_three_milli", "zone_four_milli", "zone_five_milli")


def extract_whoop_physical(record: RawProviderRecord, zone: tzinfo) -> dict[str, dict[str, Any]]:
    """Fan a WHOOP recovery and its day's workouts out to the physical metrics.

    Time in high heart-rate zones sums zones three to five over the companion
    workouts that end on the recovery's day.  With no scored workout that day
    the metric is left out.
    """
    score = record.payload.get("score") or {}
    out: dict[str, dict[str, Any]] = {}
    for metric, column, fields in _WHOOP_RECOVERY_FIELDS:
        for name in fields:
            value = _safe_float(score.get(name))
            if value is not None:
                out[metric] = {column: value}
                break

    assigner = IntervalEndAssigner()
    day = assigner.assign(record, zone)
    zone_ms = [0.0] * len(_HIGH_HR_ZONES)
    scored = 0
    for workout in record.companions:
        if day is None or assigner.assign(workout, zone) != day:
            continue
        durations = (workout.payload.get("score") or {}).get("zone_durations")
        if not isinstance(durations, dict):
            continue
        scored += 1
        for i, name in enumerate(_HIGH_HR_ZONES):
            zone_ms[i] += _safe_float(durations.get(name)) or 0.0

    if scored:
        z3, z4, z5 = (round(ms / _MS_PER_MINUTE, 2) for ms in zone_ms)
        out["time_in_high_hr_zones_daily"] = {
            "value_minutes": round(sum(zone_ms) / _MS_PER_MINUTE, 2),
            "value_zone_three_minutes": z3,
            "value_zone_four_minutes": z4,
            "value_zone_five_minutes": z5,
        }
    else:
        logger.debug("No scored WHOOP workout on %s for recovery %s", day, record.record_id)
    return out


# ---------------------------------------------------------------------------
# Oura
# ---------------------------------------------------------------------------


def extract_oura_sleep(record: RawProviderRecord, zone: tzinfo) -> dict[str, dict[str, Any]]:
    """Oura v2 sleep periods report durations in seconds."""
    raw = record.payload
    light = raw.get("light_sleep_duration")
    deep = raw.get("deep_sleep_duration")
    rem = raw.get("rem_sleep_duration")

    out: dict[str, dict[str, Any]] = {
        "sleep_duration_daily": {
            "value_hours": duration_hours(
                raw.get("total_sleep_duration"), [light, deep, rem], _SECONDS_PER_HOUR
            ),
        },
        "sleep_stages_daily": {
            "value_sws_hours": duration_hours(deep, [], _SECONDS_PER_HOUR),
            "value_rem_hours": duration_hours(rem, [], _SECONDS_PER_HOUR),
            "value_light_hours": duration_hours(light, [], _SECONDS_PER_HOUR),
        },
    }
    fell = _local_iso(record.start, record, zone)
    if fell:
        out["fell_asleep_time_daily"] = {"value_at": fell}
    woke = _local_iso(record.end, record, zone)
    if woke:
        out["woke_up_time_daily"] = {"value_at": woke}

    eff = _safe_float(raw.get("efficiency"))
    if eff is not None:
        out["sleep_efficiency_daily"] = {"value_pct": eff}
    return out


def extract_oura_activity(record: RawProviderRecord, zone: tzinfo) -> dict[str, dict[str, Any]]:
    raw = record.payload
    out: dict[str, dict[str, Any]] = {}
    steps = _safe_float(raw.get("steps"))
    if steps is not None:
        out["steps_daily"] = {"value_count": int(steps)}
    calories = _safe_float(raw.get("active_calories"))
    if calories is not None:
        out["active_calories_daily"] = {"value_kcal": calories}
    return out


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

EXTRACTOR_REGISTRY: dict[tuple[str, str], Extractor] = {
    ("whoop", "sleep"): extract_whoop_sleep,
    ("whoop", "physical"): extract_whoop_physical,
    ("oura", "sleep"): extract_oura_sleep,
    ("oura", "daily_activity"): extract_oura_activity,
}


def get_extractor(provider: str, resource: str) -> Extractor:
    """Return the extractor for a provider resource.

    Raises:
        KeyError: If no extractor handles (provider, resource).
    """
    try:
        return EXTRACTOR_REGISTRY[(provider, resource)]
    except KeyError:
        raise KeyError(
            f"No extractor registered for {provider}/{resource}. "
            f"Available: {sorted(EXTRACTOR_REGISTRY)}"
        ) from None
