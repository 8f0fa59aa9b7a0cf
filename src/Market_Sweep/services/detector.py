"""Price/volume divergence detector and per-ticker summary builder.

A divergence is a sustained price move that the signed volume flow does not
confirm: price up over the window while volume leans to down bars (bearish),
or price down while volume leans to up bars (bullish).

Bars are turned into a float DataFrame (oldest first) and all series math is
done with pandas. Decimal prices only survive where they are copied straight
into a model field.
"""

from __future__ import annotations

import logging
from typing import Final

import numpy as np
import pandas as pd

from Market_Sweep.models.market_data import OHLCV, DivergenceSignal, TickerSummary
from Market_Sweep.utils.exceptions import InsufficientDataError

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_BARS: Final[int] = 20
MIN_PRICE_MOVE_PCT: Final[float] = 2.0
MIN_VOLUME_LEAN: Final[float] = 0.1
AVG_VOLUME_BARS: Final[int] = 20
SHORT_CHANGE_BARS: Final[int] = 5


def bars_to_frame(bars: list[OHLCV]) -> pd.DataFrame:
    """Float ``open``/``close``/``volume`` columns indexed by bar date."""
    return pd.DataFrame(
        {
            "open": [float(bar.open) for bar in bars],
            "close": [float(bar.close) for bar in bars],
            "volume": [float(bar.volume) for bar in bars],
        },
        index=pd.Index([bar.date for bar in bars], name="date"),
        dtype=float,
    )


def _last_pct_change(close: pd.Series, periods: int) -> float:
    """Percent change of the last value over ``periods`` bars; 0.0 when undefined."""
    change = close.pct_change(periods=periods).iloc[-1]
    if not np.isfinite(change):
        return 0.0
    return float(change) * 100


def volume_lean(frame: pd.DataFrame) -> float:
    """Signed volume over total volume, in [-1, 1].

    Up bars (close above open) add their volume, down bars subtract it and
    flat bars count for nothing.
    """
    total = frame["volume"].sum()
    if total == 0:
        return 0.0
    signed = np.sign(frame["close"] - frame["open"]) * frame["volume"]
    return float(signed.sum() / total)


def detect_divergence(
    ticker: str,
    bars: list[OHLCV],
    *,
    lookback: int = DEFAULT_LOOKBACK_BARS,
) -> DivergenceSignal:
    """Evaluate the last ``lookback`` bars of ``bars`` (oldest first).

    Raises:
        InsufficientDataError: If fewer than ``lookback`` bars are available.
    """
    if len(bars) < lookback:
        msg = f"Need {lookback} bars for divergence detection, got {len(bars)}"
        raise InsufficientDataError(msg, ticker=ticker, source="detector")

    window = bars_to_frame(bars[-lookback:])
    price_change = _last_pct_change(window["close"], periods=len(window) - 1)
    volume_delta = volume_lean(window)

    if price_change >= MIN_PRICE_MOVE_PCT and volume_delta <= -MIN_VOLUME_LEAN:
        direction = "bearish"
    elif price_change <= -MIN_PRICE_MOVE_PCT and volume_delta >= MIN_VOLUME_LEAN:
        direction = "bullish"
    else:
        direction = "none"

    return DivergenceSignal(
        ticker=ticker,
        trade_date=bars[-1].date,
        detected=direction != "none",
        direction=direction,
        price_change_pct=round(price_change, 4),
        volume_delta=round(volume_delta, 4),
    )


def build_summary(ticker: str, bars: list[OHLCV], *, direction: str = "none") -> TickerSummary:
    """Summarize the latest bars of a ticker for the summary table.

    The 5-day change falls back to the oldest bar when history is shorter.

    Raises:
        InsufficientDataError: If fewer than two bars are available.
    """
    if len(bars) < 2:  # noqa: PLR2004
        msg = f"Need at least 2 bars to summarize, got {len(bars)}"
        raise InsufficientDataError(msg, ticker=ticker, source="detector")

    frame = bars_to_frame(bars)
    close = frame["close"]
    avg_volume = frame["volume"].rolling(window=AVG_VOLUME_BARS, min_periods=1).mean()
    return TickerSummary(
        ticker=ticker,
        as_of_date=bars[-1].date,
        last_close=bars[-1].close,
        change_pct_1d=round(_last_pct_change(close, periods=1), 4),
        change_pct_5d=round(
            _last_pct_change(close, periods=min(SHORT_CHANGE_BARS, len(close) - 1)), 4
        ),
        avg_volume_20d=int(avg_volume.iloc[-1]),
        divergence_direction=direction,
    )
