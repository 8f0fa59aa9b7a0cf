"""HTTP client for the upstream market-data API.

Fetches aggregate bars from ``/v2/aggs/ticker/{T}/range/1/{timespan}/{from}/{to}``
through a shared ``RateLimiter``. Every HTTP attempt is reported to an
optional ``on_call`` hook so the active run's metrics tracker can count API
calls, rate limits, timeouts and latency.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import time
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from typing import Any, Final, Literal

import httpx

from Market_Sweep.engine.cancellation import CancellationToken
from Market_Sweep.models.market_data import OHLCV
from Market_Sweep.services.rate_limiter import RateLimiter
from Market_Sweep.utils.exceptions import (
    DataSourceUnavailableError,
    RateLimitExceededError,
    TickerNotFoundError,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SOURCE: Final[str] = "data_api"
REQUEST_TIMEOUT_SECONDS: Final[float] = 30.0
MAX_BARS_PER_REQUEST: Final[int] = 50_000

Timespan = Literal["day", "week"]


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _to_decimal(value: object) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def parse_aggregates(payload: dict[str, Any]) -> list[OHLCV]:
    """Convert an aggregates response body into bars, oldest first.

    Rows without a timestamp are skipped. Timestamps are epoch milliseconds
    at the start of the bar, interpreted in UTC.
    """
    results = payload.get("results")
    if not isinstance(results, list):
        return []
    bars: list[OHLCV] = []
    for row in results:
        if not isinstance(row, dict) or "t" not in row:
            continue
        bar_date = datetime.datetime.fromtimestamp(int(row["t"]) / 1000, tz=datetime.UTC).date()
        bars.append(
            OHLCV(
                date=bar_date,
                open=_to_decimal(row.get("o")),
                high=_to_decimal(row.get("h")),
                low=_to_decimal(row.get("l")),
                close=_to_decimal(row.get("c")),
                volume=int(float(row.get("v") or 0)),
            )
        )
    bars.sort(key=lambda bar: bar.date)
    return bars


class DataApiClient:
    """Thin async client around one shared ``httpx.AsyncClient``.

    Usage::

        async with DataApiClient(base_url, api_key, rate_limiter=limiter) as api:
            bars = await api.fetch_bars("AAPL", timespan="day", start=..., end=...)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        rate_limiter: RateLimiter,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._rate_limiter = rate_limiter
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(connect=5.0, read=REQUEST_TIMEOUT_SECONDS, write=10.0, pool=10.0),
            limits=httpx.Limits(max_connections=64, max_keepalive_connections=32),
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> DataApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def fetch_bars(
        self,
        ticker: str,
        *,
        timespan: Timespan,
        start: datetime.date,
        end: datetime.date,
        token: CancellationToken | None = None,
        on_call: Callable[..., None] | None = None,
    ) -> list[OHLCV]:
        """Fetch bars for ``ticker`` between ``start`` and ``end`` inclusive.

        Raises:
            TickerNotFoundError: The API does not know the symbol (HTTP 404).
            RateLimitExceededError: Still throttled after the limiter's retries.
            DataSourceUnavailableError: Network error, timeout or HTTP 5xx.
            ScanCancelledError: ``token`` was set before the request went out.
        """
        path = f"/v2/aggs/ticker/{ticker}/range/1/{timespan}/{start.isoformat()}/{end.isoformat()}"
        params = {
            "adjusted": "true",
            "sort": "asc",
            "limit": str(MAX_BARS_PER_REQUEST),
            "apiKey": self._api_key,
        }

        async def _attempt() -> list[OHLCV]:
            if token is not None:
                token.raise_if_set(ticker)
            return await self._get_bars(ticker, path, params, on_call)

        return await self._rate_limiter.execute(_attempt, ticker=ticker)

    async def _get_bars(
        self,
        ticker: str,
        path: str,
        params: dict[str, str],
        on_call: Callable[..., None] | None,
    ) -> list[OHLCV]:
        started = time.monotonic()

        def _report(**flags: bool) -> None:
            if on_call is not None:
                on_call((time.monotonic() - started) * 1000, **flags)

        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as exc:
            _report(ok=False, timed_out=True)
            msg = f"Data API request for {ticker} timed out"
            raise DataSourceUnavailableError(msg, ticker=ticker, source=SOURCE) from exc
        except httpx.HTTPError as exc:
            _report(ok=False)
            msg = f"Data API request for {ticker} failed: {exc}"
            raise DataSourceUnavailableError(msg, ticker=ticker, source=SOURCE) from exc
        except asyncio.CancelledError:
            _report(ok=False, aborted=True)
            raise

        status = response.status_code
        if status == 429:  # noqa: PLR2004
            _report(ok=False, rate_limited=True)
            raise RateLimitExceededError(
                f"Data API rate limited {ticker}",
                ticker=ticker,
                source=SOURCE,
                http_status=status,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if status == 404:  # noqa: PLR2004
            _report(ok=False)
            raise TickerNotFoundError(
                f"Data API has no data for {ticker}",
                ticker=ticker,
                source=SOURCE,
                http_status=status,
            )
        if status >= 400:  # noqa: PLR2004
            _report(ok=False)
            raise DataSourceUnavailableError(
                f"Data API returned HTTP {status} for {ticker}",
                ticker=ticker,
                source=SOURCE,
                http_status=status,
            )

        _report(ok=True)
        try:
            payload = response.json()
        except ValueError as exc:
            msg = f"Data API returned invalid JSON for {ticker}"
            raise DataSourceUnavailableError(msg, ticker=ticker, source=SOURCE) from exc
        return parse_aggregates(payload if isinstance(payload, dict) else {})
