"""Load, validate, and hot-reload the dailysync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an edit — no restart required.

Usage::

    from src.metric_sync.config_loader import get_sync_config

    config = get_sync_config()
    job = config.job("whoop_sleep")
    config.metric_class(job.metric_class).baseline_window_days   # 29
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import time
from pathlib import Path

from src.metric_sync.exceptions import UnknownJobError

logger = logging.getLogger("dailysync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"

_ASSIGNMENTS = frozenset({"interval_end", "reported_day"})


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class MetricClassConfig:
    """Backfill bounds shared by every job of one metric class."""

    name: str
    baseline_window_days: int
    reasonable_backfill_days: int | None = None
    lag_days: int = 0


@dataclass
class JobConfig:
    """One sync job: a (provider, metric group) pair.

    Attributes:
        name:          Stable job name; also the scheduler slot prefix.
        provider:      Provider source slug ('whoop', 'oura').
        resource:      Provider collection fetched per window.
        assignment:    Day assignment strategy name.
        metric_class:  Key into SyncConfig.metric_classes.
        run_at:        Daily fixed wall-clock run time (device time).
        anchor_metric: Metric whose stored rows act as the sync cursor.
        metrics:       Every metric this job can write.
    """

    name: str
    provider: str
    resource: str
    assignment: str
    metric_class: str
    run_at: time
    anchor_metric: str
    metrics: list[str]


@dataclass
class RetryConfig:
    base_delay_seconds: int
    max_delay_seconds: int


@dataclass
class FollowupConfig:
    """Downstream recalculation notified after rows are written."""

    enabled: bool
    function: str


@dataclass
class SyncConfig:
    """Complete, validated engine configuration.

    Attributes:
        version:                 Config schema version string.
        metric_classes:          Backfill bounds per metric class.
        jobs:                    Job definitions keyed by job name.
        retry:                   Backoff for retryable outcomes.
        watchdog_interval_hours: Period of the watchdog audit.
        run_timeout_seconds:     Upper bound on one job invocation.
        http_timeout_seconds:    Per-request provider timeout.
        http_connect_timeout_seconds: Connect timeout for provider requests.
        followup:                Downstream recalc notification settings.
    """

    version: str
    metric_classes: dict[str, MetricClassConfig]
    jobs: dict[str, JobConfig]
    retry: RetryConfig
    watchdog_interval_hours: float
    run_timeout_seconds: int
    http_timeout_seconds: float
    http_connect_timeout_seconds: float
    followup: FollowupConfig
    _raw: dict = field(default_factory=dict, repr=False)

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------

    def job(self, name: str) -> JobConfig:
        """Return the job definition for a job name.

        Raises:
            UnknownJobError: If the job is not configured.
        """
        try:
            return self.jobs[name]
        except KeyError:
            raise UnknownJobError(
                f"No job configured as '{name}'. Available: {sorted(self.jobs)}"
            ) from None

    def metric_class(self, name: str) -> MetricClassConfig:
        return self.metric_classes[name]


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    import yaml  # pyyaml

    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _parse_run_at(value: object) -> time | None:
    if isinstance(value, int):
        # YAML 1.1 reads unquoted 17:35 as sexagesimal minutes
        return time(value // 60, value % 60) if 0 <= value < 24 * 60 else None
    try:
        hour, minute = str(value).split(":")
        return time(int(hour), int(minute))
    except (TypeError, ValueError):
        return None


def _number(section: dict, key: str, default, cast, prefix: str, errors: list[str]):
    """Read a numeric field, collecting a validation error instead of raising."""
    label = f"{prefix}.{key}" if prefix else key
    if not isinstance(section, dict):
        errors.append(f"{prefix} must be a mapping")
        return default
    value = section.get(key, default)
    if isinstance(value, bool):
        errors.append(f"{label} must be a number, got {value!r}")
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        errors.append(f"{label} must be a number, got {value!r}")
        return default


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Performs structural validation and applies defaults for optional fields.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    # ── Metric classes ──
    metric_classes: dict[str, MetricClassConfig] = {}
    for name, cfg in (raw.get("metric_classes") or {}).items():
        if not isinstance(cfg, dict):
            errors.append(f"metric_classes.{name} must be a mapping")
            continue
        try:
            baseline = int(cfg.get("baseline_window_days", 29))
            reasonable = cfg.get("reasonable_backfill_days")
            reasonable = int(reasonable) if reasonable is not None else None
            lag = int(cfg.get("lag_days", 0))
        except (TypeError, ValueError) as exc:
            errors.append(f"metric_classes.{name}: {exc}")
            continue
        if baseline < 0:
            errors.append(f"metric_classes.{name}.baseline_window_days must be >= 0")
        if reasonable is not None and reasonable < 0:
            errors.append(f"metric_classes.{name}.reasonable_backfill_days must be >= 0")
        if lag < 0:
            errors.append(f"metric_classes.{name}.lag_days must be >= 0")
        metric_classes[name] = MetricClassConfig(
            name=name,
            baseline_window_days=baseline,
            reasonable_backfill_days=reasonable,
            lag_days=lag,
        )
    if not metric_classes:
        errors.append("'metric_classes' section is missing or empty")

    # ── Jobs ──
    jobs: dict[str, JobConfig] = {}
    jobs_raw = raw.get("jobs") or {}
    if not jobs_raw:
        errors.append("'jobs' section is missing or empty")
    for name, cfg in jobs_raw.items():
        if not isinstance(cfg, dict):
            errors.append(f"jobs.{name} must be a mapping")
            continue
        missing = [
            k for k in ("provider", "resource", "anchor_metric", "metrics", "run_at")
            if k not in cfg
        ]
        if missing:
            errors.append(f"jobs.{name} is missing {', '.join(missing)}")
            continue

        assignment = cfg.get("assignment", "interval_end")
        if assignment not in _ASSIGNMENTS:
            errors.append(
                f"jobs.{name}.assignment must be one of {sorted(_ASSIGNMENTS)}, got {assignment!r}"
            )
        metric_class = cfg.get("metric_class", "primary")
        if metric_class not in metric_classes:
            errors.append(f"jobs.{name}.metric_class {metric_class!r} is not defined")
        run_at = _parse_run_at(cfg["run_at"])
        if run_at is None:
            errors.append(f"jobs.{name}.run_at must be HH:MM, got {cfg['run_at']!r}")
        metrics = list(cfg["metrics"] or [])
        if cfg["anchor_metric"] not in metrics:
            errors.append(f"jobs.{name}.anchor_metric must be listed in metrics")

        jobs[name] = JobConfig(
            name=name,
            provider=str(cfg["provider"]),
            resource=str(cfg["resource"]),
            assignment=assignment,
            metric_class=metric_class,
            run_at=run_at or time(0, 0),
            anchor_metric=str(cfg["anchor_metric"]),
            metrics=metrics,
        )

    # ── Retry / watchdog / timeouts ──
    retry_raw = raw.get("retry", {}) or {}
    retry = RetryConfig(
        base_delay_seconds=_number(retry_raw, "base_delay_seconds", 30, int, "retry", errors),
        max_delay_seconds=_number(retry_raw, "max_delay_seconds", 5 * 3600, int, "retry", errors),
    )
    if retry.base_delay_seconds <= 0:
        errors.append("retry.base_delay_seconds must be > 0")
    if retry.max_delay_seconds < retry.base_delay_seconds:
        errors.append("retry.max_delay_seconds must be >= retry.base_delay_seconds")

    watchdog_hours = _number(raw.get("watchdog") or {}, "interval_hours", 6.0, float, "watchdog", errors)
    if watchdog_hours <= 0:
        errors.append("watchdog.interval_hours must be > 0")

    run_timeout = _number(raw, "run_timeout_seconds", 300, int, "", errors)
    if run_timeout <= 0:
        errors.append("run_timeout_seconds must be > 0")

    http_raw = raw.get("http", {}) or {}
    http_timeout = _number(http_raw, "timeout_seconds", 30.0, float, "http", errors)
    http_connect_timeout = _number(http_raw, "connect_timeout_seconds", 15.0, float, "http", errors)

    fu_raw = (raw.get("followups") or {}).get("trigger_recalc", {}) or {}
    followup = FollowupConfig(
        enabled=bool(fu_raw.get("enabled", False)),
        function=str(fu_raw.get("function", "recalc-user-triggers")),
    )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        metric_classes=metric_classes,
        jobs=jobs,
        retry=retry,
        watchdog_interval_hours=watchdog_hours,
        run_timeout_seconds=run_timeout,
        http_timeout_seconds=http_timeout,
        http_connect_timeout_seconds=http_connect_timeout,
        followup=followup,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s (%d jobs)", config.version, target, len(config.jobs))
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
