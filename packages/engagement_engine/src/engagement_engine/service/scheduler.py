"""
Automation Scheduler

Keeps at most one asyncio timer per time-based automation and fires it at
the next daily, weekly or monthly occurrence in the automation's timezone.

A firing runs as its own task: cancelling or replacing a timer (update,
deactivation, delete) only drops the pending fire, while a batch that has
already started runs to completion. Exceptions inside a firing are logged
and the timer keeps going.
"""

import asyncio
import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from uuid import UUID

import pytz

from engagement_engine.contracts.event_types import Recurrence, TriggerType
from engagement_engine.persistence.models import Automation
from engagement_engine.service.automations import FireResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"
DEFAULT_TIME = "09:00"
DEFAULT_DAY_OF_WEEK = 1  # Monday, with 0 = Sunday
DEFAULT_DAY_OF_MONTH = 1

FireCallback = Callable[[UUID, dict[str, Any] | None], Awaitable[FireResult]]


def parse_time(value: str | None) -> tuple[int, int]:
    """Parse "HH:MM" into (hour, minute)."""
    hour, _, minute = (value or DEFAULT_TIME).strip().partition(":")
    hour_i, minute_i = int(hour), int(minute or 0)
    if not (0 <= hour_i <= 23 and 0 <= minute_i <= 59):
        raise ValueError(f"Invalid schedule time: {value!r}")
    return hour_i, minute_i


def _localize(tz, day: date, hour: int, minute: int) -> datetime:
    # normalize() moves wall times inside a DST gap forward
    return tz.normalize(tz.localize(datetime(day.year, day.month, day.day, hour, minute)))


def _add_months(day: date, months: int) -> date:
    index = day.month - 1 + months
    return date(day.year + index // 12, index % 12 + 1, 1)


def next_fire_time(
    schedule: dict[str, Any],
    recurrence: Recurrence,
    after: datetime,
) -> datetime:
    """
    Next occurrence strictly after ``after``.

    Args:
        schedule: {time "HH:MM", timezone, day_of_week 0-6 (0 = Sunday),
            day_of_month 1-31}
        recurrence: DAILY, WEEKLY or MONTHLY
        after: Aware datetime

    Returns:
        Aware UTC datetime. A day_of_month past the end of a month falls on
        that month's last day.
    """
    tz = pytz.timezone(schedule.get("timezone") or DEFAULT_TIMEZONE)
    hour, minute = parse_time(schedule.get("time"))
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    local_day = after.astimezone(tz).date()

    if recurrence == Recurrence.MONTHLY:
        wanted = int(schedule.get("day_of_month") or DEFAULT_DAY_OF_MONTH)
        month_start = local_day.replace(day=1)
        for offset in range(3):
            first = _add_months(month_start, offset)
            last_day = calendar.monthrange(first.year, first.month)[1]
            candidate = _localize(tz, first.replace(day=min(max(wanted, 1), last_day)), hour, minute)
            if candidate > after:
                return candidate.astimezone(timezone.utc)
        raise AssertionError("unreachable")

    if recurrence == Recurrence.WEEKLY:
        dow = schedule.get("day_of_week")
        wanted = DEFAULT_DAY_OF_WEEK if dow is None else int(dow) % 7
        for offset in range(9):
            day = local_day + timedelta(days=offset)
            # date.weekday(): Monday = 0; schedules use Sunday = 0
            if (day.weekday() + 1) % 7 != wanted:
                continue
            candidate = _localize(tz, day, hour, minute)
            if candidate > after:
                return candidate.astimezone(timezone.utc)
        raise AssertionError("unreachable")

    for offset in range(3):
        candidate = _localize(tz, local_day + timedelta(days=offset), hour, minute)
        if candidate > after:
            return candidate.astimezone(timezone.utc)
    raise AssertionError("unreachable")


@dataclass
class ScheduledJob:
    automation_id: UUID
    name: str
    trigger_type: TriggerType
    schedule: dict[str, Any]
    task: asyncio.Task
    next_run: datetime | None = None


class AutomationScheduler:
    """
    Timer registry for time-based automations.

    ``fire`` is called with (automation_id, context) for every firing; it
    loads the automation afresh and runs it.
    """

    def __init__(
        self,
        fire: FireCallback,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._fire = fire
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self.jobs: dict[UUID, ScheduledJob] = {}
        self._inflight: set[asyncio.Task] = set()

    # =========================================================================
    # Timers
    # =========================================================================

    def schedule(self, automation: Automation) -> datetime | None:
        """
        (Re)arm the timer for an automation.

        Any existing timer for the id is cancelled first. Inactive and
        event-based automations end up with no timer.

        Returns:
            The next fire time, or None when nothing was scheduled
        """
        self.unschedule(automation.id)

        if not automation.is_active:
            return None
        try:
            trigger = TriggerType(automation.trigger_type)
        except ValueError:
            logger.warning(f"Unknown trigger type {automation.trigger_type!r} for automation {automation.id}")
            return None
        if not trigger.is_time_based:
            return None

        schedule = dict(automation.schedule or {})
        try:
            next_run = next_fire_time(schedule, trigger.recurrence, self._clock())
        except (ValueError, pytz.UnknownTimeZoneError) as e:
            logger.error(f"Invalid schedule for automation {automation.id}: {e}")
            return None

        task = asyncio.get_running_loop().create_task(
            self._timer(automation.id, trigger, schedule),
            name=f"automation-timer-{automation.id}",
        )
        self.jobs[automation.id] = ScheduledJob(
            automation_id=automation.id,
            name=automation.name,
            trigger_type=trigger,
            schedule=schedule,
            task=task,
            next_run=next_run,
        )
        logger.info(
            f"Scheduled automation: {automation.name}",
            extra={"automation_id": str(automation.id), "trigger": trigger.value, "next_run": next_run.isoformat()},
        )
        return next_run

    def reschedule(self, automation: Automation) -> datetime | None:
        """Apply an update to an automation's schedule or active flag."""
        return self.schedule(automation)

    def unschedule(self, automation_id: UUID) -> bool:
        """Cancel the pending fire for an automation (deactivate or delete)."""
        job = self.jobs.pop(automation_id, None)
        if job is None:
            return False
        job.task.cancel()
        return True

    def start(self, automations: list[Automation]) -> int:
        """Arm timers for all active automations. Returns how many were armed."""
        armed = sum(1 for a in automations if a.is_active and self.schedule(a) is not None)
        logger.info(f"Initialized {armed} email automations")
        return armed

    async def stop(self, wait: bool = True) -> None:
        """Cancel every timer; optionally wait for in-flight firings."""
        for automation_id in list(self.jobs):
            self.unschedule(automation_id)
        if wait and self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("Stopped all email automations")

    def next_run(self, automation_id: UUID) -> datetime | None:
        job = self.jobs.get(automation_id)
        return job.next_run if job else None

    async def _timer(self, automation_id: UUID, trigger: TriggerType, schedule: dict[str, Any]) -> None:
        last_run: datetime | None = None
        while True:
            now = self._clock()
            # Strictly after the previous occurrence even if the wakeup came early
            after = now if last_run is None else max(now, last_run)
            next_run = next_fire_time(schedule, trigger.recurrence, after)
            job = self.jobs.get(automation_id)
            if job is not None:
                job.next_run = next_run

            await self._sleep(max(0.0, (next_run - now).total_seconds()))

            firing = asyncio.get_running_loop().create_task(self._run_isolated(automation_id, None))
            self._inflight.add(firing)
            firing.add_done_callback(self._inflight.discard)
            last_run = next_run

    # =========================================================================
    # Firing
    # =========================================================================

    async def fire_now(self, automation_id: UUID, context: dict[str, Any] | None = None) -> FireResult:
        """Event entry point: run an automation immediately."""
        return await self._run_isolated(automation_id, context)

    async def _run_isolated(self, automation_id: UUID, context: dict[str, Any] | None) -> FireResult:
        try:
            return await self._fire(automation_id, context)
        except Exception as e:
            logger.exception(f"Error executing automation {automation_id}")
            return FireResult(automation_id=automation_id, status="failed", error=str(e) or type(e).__name__)
