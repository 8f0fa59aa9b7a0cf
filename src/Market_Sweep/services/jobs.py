"""Production job implementations driven by ``ScanDriver``.

Every job pulls its universe from the tracked-ticker table and writes its
results back through the ``Repository``:

- ``FetchBarsJob``: downloads daily or weekly bars from the data API.
- ``DetectorScanJob``: runs the divergence detector over stored daily bars.
- ``TableBuildJob``: rebuilds the per-ticker summary table.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Final

import aiosqlite

from Market_Sweep.config import Settings
from Market_Sweep.data.repository import Repository
from Market_Sweep.engine.cancellation import CancellationToken
from Market_Sweep.engine.dependencies import ScanJob
from Market_Sweep.models.enums import JobType, ScanTrigger
from Market_Sweep.models.market_data import OHLCV
from Market_Sweep.models.resume import (
    MIN_TABLE_LOOKBACK_DAYS,
    DetectorScanResume,
    FetchDailyResume,
    FetchWeeklyResume,
    ResumeSnapshot,
    TableBuildResume,
)
from Market_Sweep.models.scan import ItemOutcome
from Market_Sweep.services.cache import TTL_STORED_BARS, ResultCache
from Market_Sweep.services.calendar import (
    TradingCalendar,
    WeekdayTradingCalendar,
    last_closed_daily_candle,
    last_closed_weekly_candle,
)
from Market_Sweep.services.data_api import DataApiClient, Timespan
from Market_Sweep.services.detector import DEFAULT_LOOKBACK_BARS, build_summary, detect_divergence
from Market_Sweep.services.metrics import RunMetricsTracker
from Market_Sweep.utils.exceptions import InsufficientDataError, UniverseFetchError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

WEEKLY_LOOKBACK_WEEKS: Final[int] = 52
TABLE_LOOKBACK_DAYS: Final[int] = 60
DETECTOR_BAR_LIMIT: Final[int] = DEFAULT_LOOKBACK_BARS * 3


def bars_cache_key(ticker: str, interval: str, end_date: str = "") -> str:
    return f"bars:{ticker}:{interval}:{end_date}"


class RepositoryJob(ScanJob):
    """Shared plumbing: universe, cache sweeping, metrics tracker."""

    job_type: JobType

    def __init__(
        self,
        *,
        settings: Settings,
        repository: Repository,
        cache: ResultCache,
        calendar: TradingCalendar | None = None,
    ) -> None:
        super().__init__()
        self._settings = settings
        self._repository = repository
        self._cache = cache
        self._calendar = calendar or WeekdayTradingCalendar()
        self._tracker: RunMetricsTracker | None = None
        self.last_published_date = ""

    @property
    def tracker(self) -> RunMetricsTracker | None:
        """Tracker of the run in progress (or the most recent one)."""
        return self._tracker

    def is_configured(self) -> bool:
        return self._settings.scanner_enabled

    async def get_tickers(self) -> list[str]:
        """Active tracked symbols.

        Raises:
            UniverseFetchError: If the ticker table cannot be read.
        """
        try:
            return await self._repository.list_active_symbols()
        except (aiosqlite.Error, RuntimeError) as exc:
            msg = f"Could not load the {self.job_type} universe: {exc}"
            raise UniverseFetchError(msg, ticker="*", source="universe") from exc

    def sweep_cache(self) -> None:
        self._cache.sweep_expired()

    def create_metrics_tracker(self) -> RunMetricsTracker:
        self._tracker = RunMetricsTracker(
            self.job_type, sample_cap=self._settings.run_metrics_sample_cap
        )
        return self._tracker

    def resolve_as_of_date(self) -> str:
        return last_closed_daily_candle(self._calendar).isoformat()

    def mark_published(self) -> None:
        """Remember the current anchor as the last fully published date."""
        self.last_published_date = self.as_of_date

    def apply_resume(self, snapshot: ResumeSnapshot) -> None:
        super().apply_resume(snapshot)
        published = getattr(snapshot, "last_published_date", "")
        if published:
            self.last_published_date = published

    def _record_flush(self, rows: int) -> None:
        if self._tracker is not None:
            self._tracker.record_db_flush(rows)

    async def _stored_bars(self, ticker: str, interval: str, *, limit: int) -> list[OHLCV]:
        """Stored bars up to the run's anchor date, read through the cache."""
        key = bars_cache_key(ticker, interval, self.as_of_date)
        cached = self._cache.get(key)
        if isinstance(cached, list):
            return cached
        bars = await self._repository.get_bars(
            ticker,
            interval,
            end_date=datetime.date.fromisoformat(self.as_of_date),
            limit=limit,
        )
        self._cache.set(key, bars, TTL_STORED_BARS)
        return bars


# ---------------------------------------------------------------------------
# Bar refresh
# ---------------------------------------------------------------------------


class FetchBarsJob(RepositoryJob):
    """Refresh daily or weekly bars for every tracked ticker.

    Args:
        job_type: ``FETCH_DAILY`` or ``FETCH_WEEKLY``.
        api: Shared data API client.
    """

    def __init__(
        self,
        job_type: JobType,
        *,
        settings: Settings,
        repository: Repository,
        cache: ResultCache,
        api: DataApiClient,
        calendar: TradingCalendar | None = None,
    ) -> None:
        if job_type not in (JobType.FETCH_DAILY, JobType.FETCH_WEEKLY):
            msg = f"FetchBarsJob cannot run {job_type}"
            raise ValueError(msg)
        super().__init__(settings=settings, repository=repository, cache=cache, calendar=calendar)
        self.job_type = job_type
        self._api = api
        self.lookback_days = settings.fetch_lookback_days
        self._weekly_trade_date: str | None = None

    @property
    def timespan(self) -> Timespan:
        return "week" if self.job_type == JobType.FETCH_WEEKLY else "day"

    @property
    def weekly_trade_date(self) -> str:
        if self._weekly_trade_date is None:
            self._weekly_trade_date = last_closed_weekly_candle(self._calendar).isoformat()
        return self._weekly_trade_date

    def is_configured(self) -> bool:
        return self._settings.data_api_configured and self._api.configured

    def begin_fresh(self) -> None:
        super().begin_fresh()
        self._weekly_trade_date = None
        self.lookback_days = self._settings.fetch_lookback_days

    def resume_fields(self) -> dict[str, Any]:
        fields = super().resume_fields()
        fields["lookback_days"] = self.lookback_days
        fields["last_published_date"] = self.last_published_date
        if self.job_type == JobType.FETCH_WEEKLY:
            fields["weekly_trade_date"] = self.weekly_trade_date
        return fields

    def apply_resume(self, snapshot: ResumeSnapshot) -> None:
        super().apply_resume(snapshot)
        if isinstance(snapshot, FetchDailyResume):
            self.lookback_days = snapshot.lookback_days
        if isinstance(snapshot, FetchWeeklyResume) and snapshot.weekly_trade_date:
            self._weekly_trade_date = snapshot.weekly_trade_date

    def _date_range(self) -> tuple[datetime.date, datetime.date]:
        if self.job_type == JobType.FETCH_WEEKLY:
            end = datetime.date.fromisoformat(self.weekly_trade_date)
            return end - datetime.timedelta(weeks=WEEKLY_LOOKBACK_WEEKS), end
        end = datetime.date.fromisoformat(self.as_of_date)
        return end - datetime.timedelta(days=self.lookback_days), end

    async def process_item(self, ticker: str, token: CancellationToken) -> ItemOutcome:
        start, end = self._date_range()
        tracker = self._tracker
        bars = await self._api.fetch_bars(
            ticker,
            timespan=self.timespan,
            start=start,
            end=end,
            token=token,
            on_call=tracker.record_api_call if tracker is not None else None,
        )
        if not bars:
            msg = f"No {self.timespan} bars returned between {start} and {end}"
            raise InsufficientDataError(msg, ticker=ticker, source="data_api")

        rows = await self._repository.upsert_bars(ticker, self.timespan, bars)
        self._record_flush(rows)
        self._cache.invalidate_prefix(bars_cache_key(ticker, self.timespan))
        return ItemOutcome(ticker=ticker, rows_written=rows)


# ---------------------------------------------------------------------------
# Detector pass
# ---------------------------------------------------------------------------


class DetectorScanJob(RepositoryJob):
    """Run the divergence detector over stored daily bars."""

    job_type = JobType.DETECTOR_SCAN

    def __init__(
        self,
        *,
        settings: Settings,
        repository: Repository,
        cache: ResultCache,
        calendar: TradingCalendar | None = None,
    ) -> None:
        super().__init__(settings=settings, repository=repository, cache=cache, calendar=calendar)
        self.trigger = ScanTrigger.MANUAL

    def resume_fields(self) -> dict[str, Any]:
        fields = super().resume_fields()
        fields["trigger"] = self.trigger
        return fields

    def apply_resume(self, snapshot: ResumeSnapshot) -> None:
        super().apply_resume(snapshot)
        if isinstance(snapshot, DetectorScanResume):
            self.trigger = snapshot.trigger

    async def process_item(self, ticker: str, token: CancellationToken) -> ItemOutcome:
        token.raise_if_set(ticker)
        bars = await self._stored_bars(ticker, "day", limit=DETECTOR_BAR_LIMIT)
        signal = detect_divergence(ticker, bars)
        await self._repository.upsert_detection(signal)
        self._record_flush(1)
        if signal.detected:
            logger.debug(
                "%s: %s divergence (price %.2f%%, volume lean %.2f)",
                ticker,
                signal.direction,
                signal.price_change_pct,
                signal.volume_delta,
            )
        return ItemOutcome(ticker=ticker, detected=signal.detected, rows_written=1)


# ---------------------------------------------------------------------------
# Summary table rebuild
# ---------------------------------------------------------------------------


class TableBuildJob(RepositoryJob):
    """Recompute every tracked ticker's summary row."""

    job_type = JobType.TABLE_BUILD

    def __init__(
        self,
        *,
        settings: Settings,
        repository: Repository,
        cache: ResultCache,
        calendar: TradingCalendar | None = None,
    ) -> None:
        super().__init__(settings=settings, repository=repository, cache=cache, calendar=calendar)
        self.lookback_days = max(MIN_TABLE_LOOKBACK_DAYS, TABLE_LOOKBACK_DAYS)

    def resume_fields(self) -> dict[str, Any]:
        fields = super().resume_fields()
        fields["lookback_days"] = self.lookback_days
        fields["last_published_date"] = self.last_published_date
        return fields

    def apply_resume(self, snapshot: ResumeSnapshot) -> None:
        super().apply_resume(snapshot)
        if isinstance(snapshot, TableBuildResume):
            self.lookback_days = snapshot.lookback_days

    async def process_item(self, ticker: str, token: CancellationToken) -> ItemOutcome:
        token.raise_if_set(ticker)
        bars = await self._stored_bars(ticker, "day", limit=self.lookback_days)
        direction = await self._repository.get_latest_detection_direction(ticker)
        summary = build_summary(ticker, bars, direction=direction)
        await self._repository.upsert_summary(summary)
        self._record_flush(1)
        return ItemOutcome(ticker=ticker, detected=direction != "none", rows_written=1)


def build_jobs(
    settings: Settings,
    *,
    repository: Repository,
    cache: ResultCache,
    api: DataApiClient,
    calendar: TradingCalendar | None = None,
) -> dict[JobType, RepositoryJob]:
    """One job instance per job type, sharing the repository, cache and client."""
    calendar = calendar or WeekdayTradingCalendar()
    shared: dict[str, Any] = {
        "settings": settings,
        "repository": repository,
        "cache": cache,
        "calendar": calendar,
    }
    return {
        JobType.FETCH_DAILY: FetchBarsJob(JobType.FETCH_DAILY, api=api, **shared),
        JobType.FETCH_WEEKLY: FetchBarsJob(JobType.FETCH_WEEKLY, api=api, **shared),
        JobType.DETECTOR_SCAN: DetectorScanJob(**shared),
        JobType.TABLE_BUILD: TableBuildJob(**shared),
    }
