"""Market data models: OHLCV bars, tracked tickers, and derived per-ticker rows.

All price fields use Decimal (constructed from strings) with custom
serializers to prevent silent float conversion in JSON roundtrips.
"""

import datetime
import re
from decimal import Decimal
from typing import Final

from pydantic import BaseModel, ConfigDict, field_serializer

# 1-10 chars, letters first; dots and dashes allow class shares (BRK.B, BF-B)
TICKER_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Z][A-Z0-9.\-]{0,9}$")


def normalize_tickers(raw: object) -> list[str]:
    """Strip, upper-case and validate user-supplied symbols, dropping bad entries.

    Only admin input goes through this. Universes returned by a job are
    processed exactly as given.
    """
    if not isinstance(raw, list | tuple):
        return []
    symbols: list[str] = []
    for item in raw:
        symbol = str(item or "").strip().upper()
        if symbol and TICKER_PATTERN.match(symbol):
            symbols.append(symbol)
    return symbols


class OHLCV(BaseModel):
    """A single OHLCV (open-high-low-close-volume) price bar.

    Frozen because historical price data should never be mutated after creation.
    """

    model_config = ConfigDict(frozen=True)

    date: datetime.date
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int

    @field_serializer("open", "high", "low", "close")
    def serialize_decimal(self, value: Decimal) -> str:
        """Serialize Decimal fields as strings to preserve precision."""
        return str(value)


class TrackedTicker(BaseModel):
    """A symbol in the scan universe."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    name: str = ""
    active: bool = True
    added_at: datetime.datetime


class DivergenceSignal(BaseModel):
    """Output of the price/volume divergence detector for one ticker."""

    model_config = ConfigDict(frozen=True)

    ticker: str
    trade_date: datetime.date
    detected: bool
    direction: str  # "bearish", "bullish" or "none"
    price_change_pct: float
    volume_delta: float


class TickerSummary(BaseModel):
    """Derived per-ticker row rebuilt by the table-build job."""

    model_config = ConfigDict(frozen=True)

    ticker: str
    as_of_date: datetime.date
    last_close: Decimal
    change_pct_1d: float
    change_pct_5d: float
    avg_volume_20d: int
    divergence_direction: str

    @field_serializer("last_close")
    def serialize_decimal(self, value: Decimal) -> str:
        """Serialize Decimal fields as strings to preserve precision."""
        return str(value)
