"""dailysync metric synchronization engine.

This package pulls daily health measurements from wearable providers,
assigns each one to the local calendar day it belongs to, and keeps the
per-day metric rows current with bounded backfill and self-healing
schedules.

Subpackages:
    adapters/ — Provider API clients (WHOOP, Oura)
    sync/     — Job state machine, backfill policy, scheduler, watchdog, orchestrator

Core modules:
    base            — ProviderClient ABC and canonical data models
    config_loader   — Load/validate/hot-reload sync_config.yaml
    day_assignment  — Record → local calendar day
    extractors      — Record → per-metric values
    store           — metric_daily read/write
    settings_source — Per-user metric enablement
    credentials     — Provider token storage
"""

from src.metric_sync.base import (
    DailyMeasurementRow,
    MetricStreamKey,
    OAuthTokens,
    ProviderClient,
    RawProviderRecord,
)
from src.metric_sync.config_loader import SyncConfig, get_sync_config

__all__ = [
    "ProviderClient",
    "RawProviderRecord",
    "DailyMeasurementRow",
    "MetricStreamKey",
    "OAuthTokens",
    "SyncConfig",
    "get_sync_config",
]
