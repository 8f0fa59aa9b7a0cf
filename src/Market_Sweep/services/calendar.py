"""Trading-calendar helpers for US equities.

``TradingCalendar`` is the interface the scheduler and jobs depend on. The
bundled ``WeekdayTradingCalendar`` treats Monday-Friday as trading days minus
an optional holiday set, which is enough for scheduling; a data-vendor backed
calendar can be dropped in through the same interface.
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable
from typing import Final, Protocol
from zoneinfo import ZoneInfo

ET_TIMEZONE: Final[ZoneInfo] = ZoneInfo("America/New_York")

# Daily candles are final a few minutes after the close
DAILY_CANDLE_READY: Final[datetime.time] = datetime.time(16, 16)
EARLY_CLOSE_CANDLE_READY: Final[datetime.time] = datetime.time(13, 16)

_MAX_LOOKBACK_DAYS: Final[int] = 30


class TradingCalendar(Protocol):
    """Answers whether a US/Eastern calendar date is a trading session."""

    def is_trading_day(self, day: datetime.date) -> bool: ...

    def is_early_close(self, day: datetime.date) -> bool: ...


class WeekdayTradingCalendar:
    """Monday-Friday sessions, minus the given holidays."""

    def __init__(
        self,
        holidays: Iterable[datetime.date] = (),
        early_closes: Iterable[datetime.date] = (),
    ) -> None:
        self._holidays = frozenset(holidays)
        self._early_closes = frozenset(early_closes)

    def is_trading_day(self, day: datetime.date) -> bool:
        return day.weekday() < 5 and day not in self._holidays  # noqa: PLR2004

    def is_early_close(self, day: datetime.date) -> bool:
        return day in self._early_closes


def previous_trading_day(calendar: TradingCalendar, day: datetime.date) -> datetime.date:
    """The last trading day strictly before ``day``."""
    candidate = day - datetime.timedelta(days=1)
    for _ in range(_MAX_LOOKBACK_DAYS):
        if calendar.is_trading_day(candidate):
            return candidate
        candidate -= datetime.timedelta(days=1)
    return candidate


def last_closed_daily_candle(
    calendar: TradingCalendar,
    now: datetime.datetime | None = None,
) -> datetime.date:
    """Date of the most recent daily candle that is final.

    Today's candle counts once it is past 4:16 PM ET (1:16 PM on early-close
    days); otherwise the previous trading day's candle is the latest.
    """
    now_et = (now or datetime.datetime.now(datetime.UTC)).astimezone(ET_TIMEZONE)
    today = now_et.date()
    if calendar.is_trading_day(today):
        ready = EARLY_CLOSE_CANDLE_READY if calendar.is_early_close(today) else DAILY_CANDLE_READY
        if now_et.time() >= ready:
            return today
    return previous_trading_day(calendar, today)


def last_closed_weekly_candle(
    calendar: TradingCalendar,
    now: datetime.datetime | None = None,
) -> datetime.date:
    """Friday of the most recent completed trading week.

    This week's Friday counts once it is past 4:16 PM ET and Friday is a
    trading day; otherwise walk back to the last trading Friday.
    """
    now_et = (now or datetime.datetime.now(datetime.UTC)).astimezone(ET_TIMEZONE)
    today = now_et.date()
    if (
        today.weekday() == 4  # noqa: PLR2004
        and now_et.time() >= DAILY_CANDLE_READY
        and calendar.is_trading_day(today)
    ):
        return today
    candidate = today - datetime.timedelta(days=1)
    for _ in range(_MAX_LOOKBACK_DAYS):
        if candidate.weekday() == 4 and calendar.is_trading_day(candidate):  # noqa: PLR2004
            return candidate
        candidate -= datetime.timedelta(days=1)
    return candidate
