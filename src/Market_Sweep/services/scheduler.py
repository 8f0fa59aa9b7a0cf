"""Recurring timers that fire scan pipelines after the US market close.

Each ``Scheduler`` owns one pending ``asyncio`` timer task. On every firing
it runs its pipeline and, whatever the outcome, computes the next boundary
and arms itself again. A ``running`` or ``disabled`` result is not an error
here; the next firing is scheduled as usual.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
from collections.abc import Awaitable, Callable
from typing import Final

from Market_Sweep.models.enums import JobType, RunStatus, ScanTrigger
from Market_Sweep.models.scan import RunSummary
from Market_Sweep.services.calendar import ET_TIMEZONE, TradingCalendar
from Market_Sweep.services.scan_runner import ScanRunner

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SCHEDULED_RUN_TIME: Final[datetime.time] = datetime.time(16, 20)
MAX_SEARCH_DAYS: Final[int] = 15
MIN_DELAY_SECONDS: Final[float] = 1.0
FRIDAY: Final[int] = 4

_TABLE_BUILD_AFTER: Final[frozenset[RunStatus]] = frozenset(
    {RunStatus.COMPLETED, RunStatus.COMPLETED_WITH_ERRORS}
)


def next_run_at(
    now: datetime.datetime,
    calendar: TradingCalendar,
    *,
    run_time: datetime.time = SCHEDULED_RUN_TIME,
    weekday: int | None = None,
) -> datetime.datetime:
    """Next ``run_time`` (US/Eastern) on a trading day strictly after ``now``.

    Today qualifies while it is still before ``run_time``. With ``weekday``
    set only that weekday counts. The search gives up after
    ``MAX_SEARCH_DAYS`` and returns the last candidate it looked at.
    """
    now_et = now.astimezone(ET_TIMEZONE)
    day = now_et.date()
    candidate = datetime.datetime.combine(day, run_time, tzinfo=ET_TIMEZONE)
    for _ in range(MAX_SEARCH_DAYS + 1):
        eligible = calendar.is_trading_day(day) and (weekday is None or day.weekday() == weekday)
        if eligible and candidate > now_et:
            return candidate
        day += datetime.timedelta(days=1)
        candidate = datetime.datetime.combine(day, run_time, tzinfo=ET_TIMEZONE)
    return candidate


def delay_until(target: datetime.datetime, now: datetime.datetime) -> float:
    """Seconds to sleep before ``target``, never less than one second."""
    return max(MIN_DELAY_SECONDS, (target - now).total_seconds())


class Scheduler:
    """One recurring timer for a job family.

    Args:
        name: Label used in logs and the timer task name.
        pipeline: Coroutine function run on every firing.
        calendar: Decides which days are trading days.
        weekday: Restrict firings to one weekday (``4`` for Fridays).
        clock: Returns the current aware datetime; injectable for tests.
    """

    def __init__(
        self,
        name: str,
        pipeline: Callable[[], Awaitable[object]],
        calendar: TradingCalendar,
        *,
        weekday: int | None = None,
        clock: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        self.name = name
        self._pipeline = pipeline
        self._calendar = calendar
        self._weekday = weekday
        self._clock = clock or (lambda: datetime.datetime.now(datetime.UTC))
        self._timer: asyncio.Task[None] | None = None
        self._next_run: datetime.datetime | None = None
        self._stopped = True

    @property
    def next_run(self) -> datetime.datetime | None:
        return self._next_run

    @property
    def is_active(self) -> bool:
        return not self._stopped

    def start(self) -> None:
        """Arm the timer. Calling ``start`` again re-arms it."""
        self._stopped = False
        self._schedule_next()

    def stop(self) -> None:
        """Cancel the pending timer. A firing already in progress is cancelled too."""
        self._stopped = True
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        self._next_run = None

    def _schedule_next(self) -> None:
        if self._stopped:
            return
        now = self._clock()
        target = next_run_at(now, self._calendar, weekday=self._weekday)
        delay = delay_until(target, now)
        self._next_run = target
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.create_task(self._fire_after(delay), name=f"scheduler-{self.name}")
        logger.info("Next %s run scheduled in %ds (%s)", self.name, round(delay), target)

    async def _fire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self._pipeline()
        except Exception:  # noqa: BLE001
            logger.exception("Scheduled %s run failed", self.name)
        finally:
            # The task re-arming itself must not cancel itself
            self._timer = None
            self._schedule_next()


# ---------------------------------------------------------------------------
# Pipelines
# ---------------------------------------------------------------------------


async def run_daily_pipeline(runner: ScanRunner) -> dict[JobType, RunSummary]:
    """Fetch daily bars, run the detector, then rebuild the summary table.

    The table build only runs when the detector pass finished (with or
    without item errors).
    """
    results: dict[JobType, RunSummary] = {}
    results[JobType.FETCH_DAILY] = await runner.run(
        JobType.FETCH_DAILY, trigger=ScanTrigger.SCHEDULED
    )
    detector = await runner.run(JobType.DETECTOR_SCAN, trigger=ScanTrigger.SCHEDULED)
    results[JobType.DETECTOR_SCAN] = detector
    if detector.status not in _TABLE_BUILD_AFTER:
        logger.info(
            "Scheduled detector scan status=%s; skipping scheduled table build", detector.status
        )
        return results
    results[JobType.TABLE_BUILD] = await runner.run(
        JobType.TABLE_BUILD, trigger=ScanTrigger.SCHEDULED
    )
    return results


async def run_weekly_pipeline(runner: ScanRunner) -> dict[JobType, RunSummary]:
    """Fetch weekly bars."""
    summary = await runner.run(JobType.FETCH_WEEKLY, trigger=ScanTrigger.SCHEDULED)
    return {JobType.FETCH_WEEKLY: summary}


def build_schedulers(runner: ScanRunner, calendar: TradingCalendar) -> list[Scheduler]:
    """The daily after-close scheduler and the Friday weekly scheduler."""
    return [
        Scheduler("daily", lambda: run_daily_pipeline(runner), calendar),
        Scheduler("weekly", lambda: run_weekly_pipeline(runner), calendar, weekday=FRIDAY),
    ]
