"""
Tests for schedule computation and the automation scheduler.
"""

import asyncio
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from engagement_engine.contracts.event_types import Recurrence
from engagement_engine.persistence.models import Automation
from engagement_engine.service.automations import FireResult
from engagement_engine.service.scheduler import AutomationScheduler, next_fire_time, parse_time

NY = "America/New_York"
# Sunday 13:00 in New York (EDT)
SUNDAY_AFTERNOON = datetime(2026, 3, 15, 17, 0, tzinfo=timezone.utc)


def make_automation(trigger_type="daily_winner", is_active=True, schedule=None):
    return Automation(
        id=uuid4(),
        name=f"{trigger_type} automation",
        trigger_type=trigger_type,
        is_active=is_active,
        subject="s",
        html_content="h",
        schedule=schedule if schedule is not None else {"time": "09:00", "timezone": NY},
    )


async def settle(rounds=25):
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestNextFireTime:
    """Tests for next_fire_time."""

    def test_daily_next_morning(self):
        """Test daily fires at the next local 09:00."""
        result = next_fire_time({"time": "09:00", "timezone": NY}, Recurrence.DAILY, SUNDAY_AFTERNOON)
        assert result == datetime(2026, 3, 16, 13, 0, tzinfo=timezone.utc)

    def test_daily_same_day_if_still_ahead(self):
        """Test a later time the same day is used."""
        result = next_fire_time({"time": "18:30", "timezone": NY}, Recurrence.DAILY, SUNDAY_AFTERNOON)
        assert result == datetime(2026, 3, 15, 22, 30, tzinfo=timezone.utc)

    def test_strictly_after(self):
        """Test an occurrence equal to `after` is skipped."""
        at_nine = datetime(2026, 3, 16, 13, 0, tzinfo=timezone.utc)
        result = next_fire_time({"time": "09:00", "timezone": NY}, Recurrence.DAILY, at_nine)
        assert result == datetime(2026, 3, 17, 13, 0, tzinfo=timezone.utc)

    def test_weekly_defaults_to_monday(self):
        """Test weekly without day_of_week fires on Monday."""
        result = next_fire_time({"time": "09:00", "timezone": NY}, Recurrence.WEEKLY, SUNDAY_AFTERNOON)
        assert result == datetime(2026, 3, 16, 13, 0, tzinfo=timezone.utc)

    def test_weekly_sunday_is_zero(self):
        """Test day_of_week 0 means Sunday."""
        schedule = {"time": "09:00", "timezone": NY, "day_of_week": 0}
        result = next_fire_time(schedule, Recurrence.WEEKLY, SUNDAY_AFTERNOON)
        assert result == datetime(2026, 3, 22, 13, 0, tzinfo=timezone.utc)

    def test_monthly_default_first_day(self):
        """Test monthly defaults to day 1."""
        result = next_fire_time({"time": "09:00", "timezone": NY}, Recurrence.MONTHLY, SUNDAY_AFTERNOON)
        assert result == datetime(2026, 4, 1, 13, 0, tzinfo=timezone.utc)

    def test_monthly_day_clamped_to_month_end(self):
        """Test day 31 falls on Feb 28."""
        schedule = {"time": "09:00", "timezone": NY, "day_of_month": 31}
        after = datetime(2026, 2, 1, 0, 0, tzinfo=timezone.utc)
        result = next_fire_time(schedule, Recurrence.MONTHLY, after)
        assert result == datetime(2026, 2, 28, 14, 0, tzinfo=timezone.utc)

    def test_dst_gap_moves_forward(self):
        """Test a wall time inside the spring-forward gap still fires once."""
        after = datetime(2026, 3, 8, 5, 0, tzinfo=timezone.utc)
        result = next_fire_time({"time": "02:30", "timezone": NY}, Recurrence.DAILY, after)
        assert result == datetime(2026, 3, 8, 7, 30, tzinfo=timezone.utc)

    def test_other_timezone(self):
        """Test the automation's own timezone is used."""
        schedule = {"time": "09:00", "timezone": "Europe/London"}
        result = next_fire_time(schedule, Recurrence.DAILY, SUNDAY_AFTERNOON)
        assert result == datetime(2026, 3, 16, 9, 0, tzinfo=timezone.utc)

    def test_parse_time_rejects_garbage(self):
        """Test invalid times raise ValueError."""
        assert parse_time("7:05") == (7, 5)
        with pytest.raises(ValueError):
            parse_time("25:00")


class TestAutomationScheduler:
    """Tests for scheduler timers and firing."""

    def test_inactive_and_event_based_get_no_timer(self):
        """Test only active time-based automations are armed."""

        async def scenario():
            scheduler = AutomationScheduler(fire=None)
            assert scheduler.schedule(make_automation(is_active=False)) is None
            assert scheduler.schedule(make_automation(trigger_type="welcome")) is None
            return len(scheduler.jobs)

        assert asyncio.run(scenario()) == 0

    def test_reschedule_keeps_single_timer(self):
        """Test scheduling the same automation twice leaves one live timer."""

        async def scenario():
            scheduler = AutomationScheduler(fire=None, clock=lambda: SUNDAY_AFTERNOON)
            automation = make_automation()
            scheduler.schedule(automation)
            first = scheduler.jobs[automation.id].task
            automation.schedule = {"time": "10:00", "timezone": NY}
            next_run = scheduler.reschedule(automation)
            await settle()
            jobs = len(scheduler.jobs)
            first_done = first.done()
            await scheduler.stop()
            return jobs, first_done, next_run

        jobs, first_done, next_run = asyncio.run(scenario())
        assert jobs == 1
        assert first_done is True
        assert next_run == datetime(2026, 3, 16, 14, 0, tzinfo=timezone.utc)

    def test_timer_fires_repeatedly(self):
        """Test the timer fires once per occurrence and keeps going."""
        fired = []
        delays = []

        async def scenario():
            gate = asyncio.Event()

            async def fire(automation_id, context):
                fired.append(automation_id)
                return FireResult(automation_id=automation_id, status="completed")

            async def fake_sleep(delay):
                delays.append(delay)
                if len(delays) > 3:
                    await gate.wait()
                await asyncio.sleep(0)

            scheduler = AutomationScheduler(fire, clock=lambda: SUNDAY_AFTERNOON, sleep=fake_sleep)
            scheduler.start([make_automation()])
            await settle()
            await scheduler.stop()

        asyncio.run(scenario())
        assert len(fired) == 3
        # One day apart, first one 20 hours out
        assert delays[:3] == [20 * 3600.0, 44 * 3600.0, 68 * 3600.0]

    def test_raising_firing_does_not_stop_timer(self):
        """Test an exception inside a firing is contained."""
        attempts = []

        async def scenario():
            gate = asyncio.Event()

            async def fire(automation_id, context):
                attempts.append(automation_id)
                raise RuntimeError("boom")

            async def fake_sleep(delay):
                if len(attempts) >= 3:
                    await gate.wait()
                await asyncio.sleep(0)

            scheduler = AutomationScheduler(fire, clock=lambda: SUNDAY_AFTERNOON, sleep=fake_sleep)
            automation = make_automation()
            scheduler.schedule(automation)
            await settle(50)
            alive = not scheduler.jobs[automation.id].task.done()
            await scheduler.stop()
            return alive

        assert asyncio.run(scenario()) is True
        assert len(attempts) >= 3

    def test_fire_now_reports_failure(self):
        """Test fire_now turns an exception into a failed FireResult."""

        async def fire(automation_id, context):
            raise RuntimeError("broken template")

        scheduler = AutomationScheduler(fire)
        automation_id = uuid4()
        result = asyncio.run(scheduler.fire_now(automation_id, {"user_id": "u1"}))
        assert result.status == "failed"
        assert result.error == "broken template"
        assert result.automation_id == automation_id

    def test_unschedule_lets_inflight_firing_finish(self):
        """Test deactivation drops the pending fire but not the running batch."""
        finished = []

        async def scenario():
            release = asyncio.Event()
            started = asyncio.Event()
            hold = asyncio.Event()

            async def fire(automation_id, context):
                started.set()
                await release.wait()
                finished.append(automation_id)
                return FireResult(automation_id=automation_id, status="completed")

            sleeps = []

            async def fake_sleep(delay):
                sleeps.append(delay)
                if len(sleeps) > 1:
                    await hold.wait()
                await asyncio.sleep(0)

            scheduler = AutomationScheduler(fire, clock=lambda: SUNDAY_AFTERNOON, sleep=fake_sleep)
            automation = make_automation()
            scheduler.schedule(automation)
            await started.wait()

            assert scheduler.unschedule(automation.id) is True
            release.set()
            await scheduler.stop(wait=True)

        asyncio.run(scenario())
        assert len(finished) == 1
