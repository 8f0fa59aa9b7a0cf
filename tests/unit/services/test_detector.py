"""Tests for the divergence detector and summary builder."""

from collections.abc import Callable
from decimal import Decimal

import pytest

from Market_Sweep.models.market_data import OHLCV
from Market_Sweep.services.detector import (
    bars_to_frame,
    build_summary,
    detect_divergence,
    volume_lean,
)
from Market_Sweep.utils.exceptions import InsufficientDataError

BarFactory = Callable[..., list[OHLCV]]


def _rising(n: int = 20) -> list[float]:
    return [100.0 + i for i in range(n)]


def _falling(n: int = 20) -> list[float]:
    return [200.0 - i for i in range(n)]


class TestFrame:
    """Tests for the bar DataFrame and the signed volume lean."""

    def test_bars_to_frame(self, make_bars: BarFactory) -> None:
        bars = make_bars([100.0, 101.0, 99.5], volume=2_000)

        frame = bars_to_frame(bars)

        assert list(frame.columns) == ["open", "close", "volume"]
        assert list(frame.index) == [bar.date for bar in bars]
        assert frame["close"].tolist() == [100.0, 101.0, 99.5]
        assert frame["open"].iloc[1] == 100.0
        assert frame["volume"].sum() == 6_000.0

    def test_lean_bounds(self, make_bars: BarFactory) -> None:
        """All volume on up bars is +1, all on down bars is -1."""
        up = bars_to_frame(make_bars(_rising(5), up_volume=1_000)[1:])
        down = bars_to_frame(make_bars(_falling(5), down_volume=1_000)[1:])

        assert volume_lean(up) == 1.0
        assert volume_lean(down) == -1.0

    def test_lean_zero_volume(self, make_bars: BarFactory) -> None:
        assert volume_lean(bars_to_frame(make_bars(_rising(5), volume=0))) == 0.0


class TestDetectDivergence:
    """Tests for detect_divergence."""

    def test_bearish_when_rally_lacks_volume(self, make_bars: BarFactory) -> None:
        """Price rises but a few heavy down bars dominate the volume flow."""
        closes = _rising()
        # Insert three sharp down bars that carry most of the volume
        closes[5] -= 3
        closes[10] -= 3
        closes[15] -= 3
        bars = make_bars(closes, up_volume=100_000, down_volume=5_000_000)

        signal = detect_divergence("AAPL", bars)

        assert signal.detected
        assert signal.direction == "bearish"
        assert signal.price_change_pct > 0
        assert signal.volume_delta < 0
        assert signal.trade_date == bars[-1].date

    def test_bullish_when_selloff_lacks_volume(self, make_bars: BarFactory) -> None:
        closes = _falling()
        closes[5] += 3
        closes[10] += 3
        closes[15] += 3
        bars = make_bars(closes, up_volume=5_000_000, down_volume=100_000)

        signal = detect_divergence("MSFT", bars)

        assert signal.direction == "bullish"
        assert signal.detected

    def test_confirmed_trend_is_not_divergence(self, make_bars: BarFactory) -> None:
        """Rising price on rising-bar volume is a confirmed move."""
        bars = make_bars(_rising(), up_volume=2_000_000, down_volume=100_000)

        signal = detect_divergence("NVDA", bars)

        assert not signal.detected
        assert signal.direction == "none"

    def test_flat_price_is_not_divergence(self, make_bars: BarFactory) -> None:
        bars = make_bars([100.0] * 20)
        assert detect_divergence("SPY", bars).direction == "none"

    def test_uses_only_last_window(self, make_bars: BarFactory) -> None:
        """Older bars beyond the lookback do not affect the result."""
        bars = make_bars([50.0] * 10 + [100.0] * 20)
        signal = detect_divergence("SPY", bars)
        assert signal.price_change_pct == 0.0

    def test_insufficient_bars(self, make_bars: BarFactory) -> None:
        with pytest.raises(InsufficientDataError, match="Need 20 bars"):
            detect_divergence("AAPL", make_bars(_rising(5)))


class TestBuildSummary:
    """Tests for build_summary."""

    def test_summary_fields(self, make_bars: BarFactory) -> None:
        closes = [100.0, 101.0, 102.0, 103.0, 104.0, 105.0, 110.0]
        bars = make_bars(closes, volume=1_000)

        summary = build_summary("AAPL", bars, direction="bearish")

        assert summary.ticker == "AAPL"
        assert summary.as_of_date == bars[-1].date
        assert summary.last_close == Decimal("110.0")
        assert summary.change_pct_1d == pytest.approx(4.7619, abs=1e-3)
        assert summary.change_pct_5d == pytest.approx(8.9109, abs=1e-3)
        assert summary.avg_volume_20d == 1_000
        assert summary.divergence_direction == "bearish"

    def test_short_history_uses_first_bar_for_5d(self, make_bars: BarFactory) -> None:
        bars = make_bars([100.0, 102.0, 104.0])
        summary = build_summary("AAPL", bars)
        assert summary.change_pct_5d == pytest.approx(4.0)
        assert summary.divergence_direction == "none"

    def test_needs_two_bars(self, make_bars: BarFactory) -> None:
        with pytest.raises(InsufficientDataError):
            build_summary("AAPL", make_bars([100.0]))

    def test_zero_close_change_is_zero(self, make_bars: BarFactory) -> None:
        """A change measured from a zero close is reported as 0.0, not infinity."""
        summary = build_summary("ZERO", make_bars([0.0, 5.0]))
        assert summary.change_pct_1d == 0.0
        assert summary.change_pct_5d == 0.0
