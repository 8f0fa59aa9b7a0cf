"""Tests for the after-close schedulers and the scheduled pipelines."""

from __future__ import annotations

import asyncio
import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from Market_Sweep.models.enums import JobType, RunStatus, ScanTrigger
from Market_Sweep.models.scan import RunSummary
from Market_Sweep.services import scheduler as scheduler_module
from Market_Sweep.services.calendar import ET_TIMEZONE, WeekdayTradingCalendar
from Market_Sweep.services.scheduler import (
    FRIDAY,
    MIN_DELAY_SECONDS,
    Scheduler,
    build_schedulers,
    delay_until,
    next_run_at,
    run_daily_pipeline,
    run_weekly_pipeline,
)

# 2025-01-15 is a Wednesday
WEDNESDAY = datetime.date(2025, 1, 15)


def _et(day: datetime.date, hour: int, minute: int = 0) -> datetime.datetime:
    return datetime.datetime.combine(day, datetime.time(hour, minute), tzinfo=ET_TIMEZONE)


@pytest.fixture()
def calendar() -> WeekdayTradingCalendar:
    return WeekdayTradingCalendar(holidays=[datetime.date(2025, 1, 20)])


def _just_before_run(day: datetime.date) -> datetime.datetime:
    return _et(day, 16, 20) - datetime.timedelta(milliseconds=20)


class _StepClock:
    """Returns ``first`` on the first call and ``then`` afterwards."""

    def __init__(self, first: datetime.datetime, then: datetime.datetime) -> None:
        self._first: datetime.datetime | None = first
        self._then = then

    def __call__(self) -> datetime.datetime:
        if self._first is not None:
            value, self._first = self._first, None
            return value
        return self._then


def _summary(job_type: JobType, status: RunStatus) -> RunSummary:
    return RunSummary(job_type=job_type, status=status)


def _runner(statuses: dict[JobType, RunStatus]) -> MagicMock:
    runner = MagicMock()

    async def _run(job_type: JobType, **_: object) -> RunSummary:
        return _summary(job_type, statuses.get(job_type, RunStatus.COMPLETED))

    runner.run = AsyncMock(side_effect=_run)
    return runner


class TestNextRunAt:
    """Tests for next_run_at and delay_until."""

    def test_same_day_before_run_time(self, calendar: WeekdayTradingCalendar) -> None:
        assert next_run_at(_et(WEDNESDAY, 15, 0), calendar) == _et(WEDNESDAY, 16, 20)

    def test_after_run_time_moves_to_next_day(self, calendar: WeekdayTradingCalendar) -> None:
        expected = _et(datetime.date(2025, 1, 16), 16, 20)
        assert next_run_at(_et(WEDNESDAY, 17, 0), calendar) == expected

    def test_exactly_at_run_time_is_not_now(self, calendar: WeekdayTradingCalendar) -> None:
        """The next firing is strictly after now."""
        expected = _et(datetime.date(2025, 1, 16), 16, 20)
        assert next_run_at(_et(WEDNESDAY, 16, 20), calendar) == expected

    def test_skips_weekend_and_holiday(self, calendar: WeekdayTradingCalendar) -> None:
        """Friday evening rolls past the weekend and a Monday holiday."""
        friday_evening = _et(datetime.date(2025, 1, 17), 18, 0)
        assert next_run_at(friday_evening, calendar) == _et(datetime.date(2025, 1, 21), 16, 20)

    def test_weekday_filter(self, calendar: WeekdayTradingCalendar) -> None:
        result = next_run_at(_et(WEDNESDAY, 9, 0), calendar, weekday=FRIDAY)
        assert result == _et(datetime.date(2025, 1, 17), 16, 20)

    def test_accepts_utc_input(self, calendar: WeekdayTradingCalendar) -> None:
        now = datetime.datetime(2025, 1, 15, 20, 0, tzinfo=datetime.UTC)  # 15:00 ET
        assert next_run_at(now, calendar) == _et(WEDNESDAY, 16, 20)

    def test_delay_until(self) -> None:
        now = _et(WEDNESDAY, 16, 0)
        assert delay_until(_et(WEDNESDAY, 16, 20), now) == 1200.0
        assert delay_until(now, now) == MIN_DELAY_SECONDS
        assert delay_until(_et(WEDNESDAY, 15, 0), now) == MIN_DELAY_SECONDS


class TestScheduler:
    """Tests for the Scheduler timer lifecycle."""

    @pytest.mark.asyncio()
    async def test_start_and_stop(self, calendar: WeekdayTradingCalendar) -> None:
        pipeline = AsyncMock()
        scheduler = Scheduler(
            "daily", pipeline, calendar, clock=lambda: _et(WEDNESDAY, 10, 0)
        )

        scheduler.start()
        assert scheduler.is_active
        assert scheduler.next_run == _et(WEDNESDAY, 16, 20)

        scheduler.stop()
        assert not scheduler.is_active
        assert scheduler.next_run is None
        await asyncio.sleep(0)
        pipeline.assert_not_called()

    @pytest.mark.asyncio()
    async def test_firing_runs_pipeline_and_rearms(
        self, calendar: WeekdayTradingCalendar, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """The timer fires at the run time, then arms for the next trading day."""
        monkeypatch.setattr(scheduler_module, "MIN_DELAY_SECONDS", 0.0)
        fired = asyncio.Event()
        pipeline = AsyncMock(side_effect=lambda: fired.set())
        clock = _StepClock(_just_before_run(WEDNESDAY), _et(WEDNESDAY, 17, 0))
        scheduler = Scheduler("daily", pipeline, calendar, clock=clock)

        scheduler.start()
        await asyncio.wait_for(fired.wait(), timeout=2.0)
        await asyncio.sleep(0)

        pipeline.assert_awaited_once()
        assert scheduler.is_active
        assert scheduler.next_run == _et(datetime.date(2025, 1, 16), 16, 20)
        scheduler.stop()

    @pytest.mark.asyncio()
    async def test_pipeline_error_still_rearms(
        self, calendar: WeekdayTradingCalendar, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(scheduler_module, "MIN_DELAY_SECONDS", 0.0)
        fired = asyncio.Event()

        def _explode() -> None:
            fired.set()
            msg = "boom"
            raise RuntimeError(msg)

        friday = datetime.date(2025, 1, 17)
        clock = _StepClock(_just_before_run(friday), _et(friday, 17, 0))
        scheduler = Scheduler(
            "weekly", AsyncMock(side_effect=_explode), calendar, weekday=FRIDAY, clock=clock
        )

        scheduler.start()
        await asyncio.wait_for(fired.wait(), timeout=2.0)
        await asyncio.sleep(0)

        assert scheduler.is_active
        assert scheduler.next_run == _et(datetime.date(2025, 1, 24), 16, 20)
        scheduler.stop()

    @pytest.mark.parametrize("status", [RunStatus.RUNNING, RunStatus.DISABLED])
    @pytest.mark.asyncio()
    async def test_guard_result_rearms_normally(
        self,
        calendar: WeekdayTradingCalendar,
        monkeypatch: pytest.MonkeyPatch,
        status: RunStatus,
    ) -> None:
        """A pipeline whose runs come back running or disabled is rescheduled as usual."""
        monkeypatch.setattr(scheduler_module, "MIN_DELAY_SECONDS", 0.0)
        runner = _runner(dict.fromkeys(JobType, status))
        fired = asyncio.Event()
        outcomes: list[dict[JobType, RunSummary]] = []

        async def _pipeline() -> None:
            outcomes.append(await run_daily_pipeline(runner))
            fired.set()

        clock = _StepClock(_just_before_run(WEDNESDAY), _et(WEDNESDAY, 17, 0))
        scheduler = Scheduler("daily", _pipeline, calendar, clock=clock)

        scheduler.start()
        await asyncio.wait_for(fired.wait(), timeout=2.0)
        await asyncio.sleep(0)

        assert outcomes[0][JobType.DETECTOR_SCAN].status == status
        assert JobType.TABLE_BUILD not in outcomes[0]
        assert scheduler.is_active
        assert scheduler.next_run == _et(datetime.date(2025, 1, 16), 16, 20)
        scheduler.stop()

    @pytest.mark.asyncio()
    async def test_stopped_scheduler_does_not_rearm(
        self, calendar: WeekdayTradingCalendar
    ) -> None:
        scheduler = Scheduler("daily", AsyncMock(), calendar, clock=lambda: _et(WEDNESDAY, 9, 0))

        await scheduler._fire_after(0)  # noqa: SLF001

        assert scheduler.next_run is None


class TestPipelines:
    """Tests for the daily and weekly pipelines."""

    @pytest.mark.asyncio()
    async def test_daily_runs_all_three_in_order(self) -> None:
        runner = _runner({})

        results = await run_daily_pipeline(runner)

        called = [c.args[0] for c in runner.run.await_args_list]
        assert called == [JobType.FETCH_DAILY, JobType.DETECTOR_SCAN, JobType.TABLE_BUILD]
        assert set(results) == set(called)
        for call in runner.run.await_args_list:
            assert call.kwargs["trigger"] == ScanTrigger.SCHEDULED

    @pytest.mark.asyncio()
    async def test_table_build_after_detector_errors(self) -> None:
        runner = _runner({JobType.DETECTOR_SCAN: RunStatus.COMPLETED_WITH_ERRORS})

        results = await run_daily_pipeline(runner)

        assert JobType.TABLE_BUILD in results

    @pytest.mark.parametrize(
        "status", [RunStatus.RUNNING, RunStatus.STOPPED, RunStatus.FAILED, RunStatus.DISABLED]
    )
    @pytest.mark.asyncio()
    async def test_table_build_skipped_unless_detector_finished(self, status: RunStatus) -> None:
        runner = _runner({JobType.DETECTOR_SCAN: status})

        results = await run_daily_pipeline(runner)

        assert JobType.TABLE_BUILD not in results
        assert runner.run.await_count == 2

    @pytest.mark.asyncio()
    async def test_detector_runs_even_if_fetch_failed(self) -> None:
        runner = _runner({JobType.FETCH_DAILY: RunStatus.FAILED})

        results = await run_daily_pipeline(runner)

        assert results[JobType.DETECTOR_SCAN].status == RunStatus.COMPLETED

    @pytest.mark.asyncio()
    async def test_weekly(self) -> None:
        runner = _runner({})

        results = await run_weekly_pipeline(runner)

        assert list(results) == [JobType.FETCH_WEEKLY]
        runner.run.assert_awaited_once_with(JobType.FETCH_WEEKLY, trigger=ScanTrigger.SCHEDULED)

    def test_build_schedulers(self, calendar: WeekdayTradingCalendar) -> None:
        schedulers = build_schedulers(_runner({}), calendar)

        assert [s.name for s in schedulers] == ["daily", "weekly"]
        assert not any(s.is_active for s in schedulers)
