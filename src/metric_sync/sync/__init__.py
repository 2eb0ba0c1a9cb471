"""Sync infrastructure for dailysync.

Modules:
    job          — Per-invocation state machine and outcome classification
    backfill     — Bounded backfill range and resumable date filtering
    dedup        — Upsert key and SQL for metric_daily
    scheduler    — Task runner and self-rescheduling slot policy
    watchdog     — Periodic audit that re-arms absent slots
    followups    — Downstream recalc notification
    orchestrator — Login/startup/settings decisions and the scheduled callable
"""
