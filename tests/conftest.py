"""Shared test fixtures for the Market Sweep test suite.

Provides an in-memory database, a scriptable ``ScanJob`` test double and
OHLCV bar builders so tests don't need to inline large construction blocks.
"""

from __future__ import annotations

import asyncio
import collections
import datetime
from collections.abc import AsyncGenerator, Callable, Iterable, Mapping
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio

from Market_Sweep.data.database import Database
from Market_Sweep.data.repository import Repository
from Market_Sweep.engine.cancellation import CancellationToken
from Market_Sweep.engine.dependencies import ScanJob
from Market_Sweep.models.enums import JobType
from Market_Sweep.models.market_data import OHLCV
from Market_Sweep.models.scan import ItemOutcome
from Market_Sweep.services.metrics import RunMetricsTracker


class FakeJob(ScanJob):
    """Scriptable ``ScanDependencies`` double that records every call.

    Args:
        tickers: Universe returned by ``get_tickers``.
        detect: Tickers whose outcome is flagged as detected.
        fail_once: Tickers that raise on their first attempt only.
        fail_always: Tickers that raise on every attempt.
        errors: Tickers mapped to the exception they raise on every attempt.
        configured: Value of ``is_configured``.
        with_tracker: Return a real ``RunMetricsTracker`` instead of None.
        universe_error: Raised from ``get_tickers`` when set.
        gate: When set, every item waits on this event before finishing.
        after_item: Called with (ticker, completed_count) after each success.
    """

    def __init__(
        self,
        tickers: Iterable[str] = (),
        *,
        job_type: JobType = JobType.DETECTOR_SCAN,
        detect: Iterable[str] = (),
        fail_once: Iterable[str] = (),
        fail_always: Iterable[str] = (),
        errors: Mapping[str, Exception] | None = None,
        configured: bool = True,
        with_tracker: bool = False,
        universe_error: Exception | None = None,
        gate: asyncio.Event | None = None,
        after_item: Callable[[str, int], None] | None = None,
    ) -> None:
        super().__init__()
        self.job_type = job_type
        self.tickers = list(tickers)
        self.detect = set(detect)
        self.fail_once = set(fail_once)
        self.fail_always = set(fail_always)
        self.errors = dict(errors or {})
        self.configured = configured
        self.with_tracker = with_tracker
        self.universe_error = universe_error
        self.gate = gate
        self.after_item = after_item

        self.get_tickers_calls = 0
        self.sweeps = 0
        self.attempts: collections.Counter[str] = collections.Counter()
        self.completed: list[str] = []
        self.tracker: RunMetricsTracker | None = None

    def is_configured(self) -> bool:
        return self.configured

    async def get_tickers(self) -> list[str]:
        self.get_tickers_calls += 1
        await asyncio.sleep(0)
        if self.universe_error is not None:
            raise self.universe_error
        return list(self.tickers)

    async def process_item(self, ticker: str, token: CancellationToken) -> ItemOutcome:
        self.attempts[ticker] += 1
        await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        if ticker in self.errors:
            raise self.errors[ticker]
        if ticker in self.fail_always or (ticker in self.fail_once and self.attempts[ticker] == 1):
            msg = f"simulated failure for {ticker}"
            raise RuntimeError(msg)
        self.completed.append(ticker)
        if self.after_item is not None:
            self.after_item(ticker, len(self.completed))
        return ItemOutcome(ticker=ticker, detected=ticker in self.detect)

    def sweep_cache(self) -> None:
        self.sweeps += 1

    def create_metrics_tracker(self) -> RunMetricsTracker | None:
        if not self.with_tracker:
            return None
        self.tracker = RunMetricsTracker(self.job_type)
        return self.tracker


@pytest.fixture()
def make_job() -> Callable[..., FakeJob]:
    """Factory for ``FakeJob`` instances."""

    def _make(*args: Any, **kwargs: Any) -> FakeJob:
        return FakeJob(*args, **kwargs)

    return _make


@pytest.fixture()
def tickers_20() -> list[str]:
    """Twenty valid, distinct ticker symbols."""
    return [f"T{i:02d}" for i in range(20)]


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def db() -> AsyncGenerator[Database]:
    """Provide a connected in-memory Database for each test, with cleanup."""
    database = Database(db_path=":memory:")
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture()
async def repo(db: Database) -> Repository:
    """Provide a Repository backed by the in-memory Database."""
    return Repository(db)


# ---------------------------------------------------------------------------
# Bar builders
# ---------------------------------------------------------------------------


def build_bars(
    closes: list[float],
    *,
    start: datetime.date = datetime.date(2025, 1, 2),
    volume: int = 1_000_000,
    up_volume: int | None = None,
    down_volume: int | None = None,
) -> list[OHLCV]:
    """Daily bars with the given closes, one per calendar day, oldest first.

    Each bar opens at the previous close, so a rising close is an up bar.
    ``up_volume``/``down_volume`` override the volume of up and down bars.
    """
    bars: list[OHLCV] = []
    previous = closes[0]
    for offset, close in enumerate(closes):
        open_ = previous
        if close > open_:
            vol = up_volume if up_volume is not None else volume
        elif close < open_:
            vol = down_volume if down_volume is not None else volume
        else:
            vol = volume
        high = max(open_, close) + 1
        low = min(open_, close) - 1
        bars.append(
            OHLCV(
                date=start + datetime.timedelta(days=offset),
                open=Decimal(str(open_)),
                high=Decimal(str(high)),
                low=Decimal(str(low)),
                close=Decimal(str(close)),
                volume=vol,
            )
        )
        previous = close
    return bars


@pytest.fixture()
def make_bars() -> Callable[..., list[OHLCV]]:
    """Factory wrapping ``build_bars``."""
    return build_bars


@pytest.fixture()
def sample_ohlcv() -> OHLCV:
    """A valid OHLCV bar with realistic daily data."""
    return OHLCV(
        date=datetime.date(2025, 1, 15),
        open=Decimal("185.50"),
        high=Decimal("187.25"),
        low=Decimal("184.10"),
        close=Decimal("186.75"),
        volume=52_340_000,
    )
