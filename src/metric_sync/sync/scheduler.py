"""Scheduling for sync jobs: fixed daily arms, backoff retries, run-now kicks.

Two layers:

``TaskScheduler``
    The task runner's own bookkeeping (what is pending, what is running).
    ``APSchedulerTaskScheduler`` backs it with an in-process APScheduler
    ``AsyncIOScheduler``.

``SyncScheduler``
    The self-rescheduling policy on top of it.  Each job owns one slot per
    user.  Arming always replaces whatever is pending for the slot.  A
    retryable outcome re-arms the slot after an exponential backoff instead of
    waiting for tomorrow's fixed time.  ``run_once_now`` uses a sibling
    ``"<slot>:now"`` slot so an imperative kick never disturbs the daily arm.

Slot state (next fire time, retry count, last outcome) is owned here and
nowhere else.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, time, timedelta, tzinfo
from enum import Enum
from typing import Any, Awaitable, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.metric_sync.base import utc_now
from src.metric_sync.config_loader import RetryConfig
from src.metric_sync.sync.job import JobOutcome

logger = logging.getLogger("dailysync.sync.scheduler")

TaskFunc = Callable[[], Awaitable[Any]]

_NOW_SUFFIX = ":now"
# Overlapping runs of one slot; APScheduler skips a fire beyond this
_ONE_SHOT_MAX_INSTANCES = 8


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    ABSENT = "absent"


# ---------------------------------------------------------------------------
# Task runner
# ---------------------------------------------------------------------------


class TaskScheduler(ABC):
    """Named one-shot and periodic tasks."""

    @abstractmethod
    def enqueue_once(
        self, name: str, delay: timedelta, func: TaskFunc, replace: bool = True
    ) -> None:
        """Run ``func`` once after ``delay``.

        With ``replace`` a pending task of the same name is superseded;
        without it an existing task is kept and this request dropped.
        """

    @abstractmethod
    def enqueue_periodic(self, name: str, interval: timedelta, func: TaskFunc) -> None:
        """Run ``func`` every ``interval``; an existing periodic task is kept."""

    @abstractmethod
    def query_status(self, name: str) -> TaskStatus:
        """Report whether ``name`` is pending, running, or absent."""

    @abstractmethod
    def cancel(self, name: str) -> None:
        """Drop a pending task; unknown names are ignored."""


class APSchedulerTaskScheduler(TaskScheduler):
    """TaskScheduler backed by an APScheduler AsyncIOScheduler.

    APScheduler forgets a one-shot job as soon as it fires, so running
    invocations are tracked here by wrapping the callable.  A one-shot task
    enqueued while an older run of the same name is still going starts
    alongside it; the older run is left to finish.

    Usage::

        tasks = APSchedulerTaskScheduler()
        tasks.start()
        tasks.enqueue_once("whoop_sleep:<user>", timedelta(hours=3), func)
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._clock = clock
        self._running: Counter[str] = Counter()

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Task scheduler started")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Task scheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def _wrap(self, name: str, func: TaskFunc) -> TaskFunc:
        async def _tracked() -> Any:
            self._running[name] += 1
            try:
                return await func()
            finally:
                self._running[name] -= 1
                if self._running[name] <= 0:
                    del self._running[name]

        return _tracked

    def enqueue_once(
        self, name: str, delay: timedelta, func: TaskFunc, replace: bool = True
    ) -> None:
        if not replace and self._scheduler.get_job(name) is not None:
            logger.debug("Keeping existing task %s", name)
            return
        run_date = self._clock() + max(delay, timedelta(0))
        self._scheduler.add_job(
            self._wrap(name, func),
            trigger=DateTrigger(run_date=run_date),
            id=name,
            name=name,
            replace_existing=True,
            misfire_grace_time=None,
            coalesce=True,
            max_instances=_ONE_SHOT_MAX_INSTANCES,
        )
        logger.debug("Enqueued %s for %s", name, run_date.isoformat())

    def enqueue_periodic(self, name: str, interval: timedelta, func: TaskFunc) -> None:
        if self._scheduler.get_job(name) is not None:
            return
        self._scheduler.add_job(
            self._wrap(name, func),
            trigger=IntervalTrigger(seconds=int(interval.total_seconds())),
            id=name,
            name=name,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info("Registered periodic task %s every %s", name, interval)

    def query_status(self, name: str) -> TaskStatus:
        if name in self._running:
            return TaskStatus.RUNNING
        if self._scheduler.get_job(name) is not None:
            return TaskStatus.PENDING
        return TaskStatus.ABSENT

    def cancel(self, name: str) -> None:
        try:
            self._scheduler.remove_job(name)
        except JobLookupError:
            return
        logger.debug("Cancelled task %s", name)


# ---------------------------------------------------------------------------
# Self-rescheduling policy
# ---------------------------------------------------------------------------


@dataclass
class JobScheduleState:
    """Scheduling bookkeeping for one slot.

    Attributes:
        slot:         Slot name, e.g. 'whoop_sleep:<user_id>'.
        next_fire_at: UTC time the slot is armed for (None once a one-off ran).
        retry_count:  Consecutive retryable outcomes.
        last_outcome: Outcome of the most recent invocation.
    """

    slot: str
    next_fire_at: datetime | None = None
    retry_count: int = 0
    last_outcome: JobOutcome | None = None


def next_fire_time(now: datetime, target: time, zone: tzinfo) -> datetime:
    """Next occurrence of the local wall-clock ``target`` strictly after ``now``.

    Returns an aware datetime in ``zone``.
    """
    local_now = now.astimezone(zone)
    candidate = datetime.combine(local_now.date(), target, tzinfo=zone)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), target, tzinfo=zone)
    return candidate


def backoff_delay(retry_count: int, base_seconds: int, max_seconds: int) -> timedelta:
    """Exponential backoff: base, 2·base, 4·base, … capped at max_seconds."""
    exponent = max(retry_count - 1, 0)
    # Cap the exponent so huge retry counts don't build huge ints
    seconds = base_seconds * (2 ** min(exponent, 32))
    return timedelta(seconds=min(seconds, max_seconds))


class SyncScheduler:
    """Arms, re-arms and cancels job slots.

    Args:
        tasks: Underlying task runner.
        retry: Backoff configuration for retryable outcomes.
        zone:  Device time zone; fixed run times are wall-clock in this zone.
        clock: UTC clock (injectable for tests).
    """

    def __init__(
        self,
        tasks: TaskScheduler,
        retry: RetryConfig,
        zone: tzinfo,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._tasks = tasks
        self._retry = retry
        self._zone = zone
        self._clock = clock
        self._states: dict[str, JobScheduleState] = {}

    @property
    def tasks(self) -> TaskScheduler:
        return self._tasks

    @staticmethod
    def now_slot(slot: str) -> str:
        return f"{slot}{_NOW_SUFFIX}"

    def _state(self, slot: str) -> JobScheduleState:
        if slot not in self._states:
            self._states[slot] = JobScheduleState(slot=slot)
        return self._states[slot]

    def state(self, slot: str) -> JobScheduleState | None:
        return self._states.get(slot)

    def status(self, slot: str) -> TaskStatus:
        return self._tasks.query_status(slot)

    def arm_next(self, slot: str, target_time: time, func: TaskFunc) -> datetime:
        """Arm ``slot`` for the next occurrence of ``target_time``, replacing any pending arm.

        Never touches the retry count.

        Returns:
            The UTC fire time.
        """
        now = self._clock()
        fire_at = next_fire_time(now, target_time, self._zone)
        self._tasks.enqueue_once(slot, fire_at - now, func, replace=True)
        state = self._state(slot)
        state.next_fire_at = fire_at.astimezone(now.tzinfo)
        logger.info("Armed %s for %s", slot, fire_at.isoformat())
        return state.next_fire_at

    def run_once_now(self, slot: str, func: TaskFunc) -> str:
        """Kick ``slot`` immediately through its run-now sibling.

        Returns:
            The run-now slot name.
        """
        now_slot = self.now_slot(slot)
        self._tasks.enqueue_once(now_slot, timedelta(0), func, replace=True)
        self._state(now_slot).next_fire_at = self._clock()
        logger.info("Queued immediate run %s", now_slot)
        return now_slot

    def handle_outcome(
        self,
        slot: str,
        outcome: JobOutcome,
        func: TaskFunc,
        target_time: time | None = None,
    ) -> datetime | None:
        """Re-arm ``slot`` after an invocation finished with ``outcome``.

        RETRYABLE backs off on the same slot.  Any other outcome arms the next
        fixed ``target_time``; one-off slots (no ``target_time``) are left
        unarmed.  NOOP keeps the retry count as it was.

        Returns:
            The UTC time the slot fires next, or None if it was not re-armed.
        """
        state = self._state(slot)
        state.last_outcome = outcome

        if outcome is JobOutcome.RETRYABLE:
            state.retry_count += 1
            delay = backoff_delay(
                state.retry_count,
                self._retry.base_delay_seconds,
                self._retry.max_delay_seconds,
            )
            self._tasks.enqueue_once(slot, delay, func, replace=True)
            state.next_fire_at = self._clock() + delay
            logger.warning(
                "%s retry #%d in %ds", slot, state.retry_count, int(delay.total_seconds())
            )
            return state.next_fire_at

        if outcome is not JobOutcome.NOOP:
            state.retry_count = 0
        if target_time is None:
            state.next_fire_at = None
            return None
        return self.arm_next(slot, target_time, func)

    def ensure_periodic(self, name: str, interval: timedelta, func: TaskFunc) -> None:
        self._tasks.enqueue_periodic(name, interval, func)

    def cancel(self, slot: str) -> None:
        """Cancel the slot and its run-now sibling and forget their state."""
        for name in (slot, self.now_slot(slot)):
            self._tasks.cancel(name)
            self._states.pop(name, None)
        logger.info("Cancelled %s", slot)
