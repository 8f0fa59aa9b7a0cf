"""Tests for environment-driven settings and adaptive pool sizing."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from Market_Sweep.config import (
    DEFAULT_DB_PATH,
    DEFAULT_FETCH_CONCURRENCY,
    Settings,
    adaptive_concurrency,
)


class TestSettingsFromEnv:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("MARKET_SWEEP_DB_PATH", "DATA_API_KEY", "FETCH_CONCURRENCY"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.db_path == DEFAULT_DB_PATH
        assert settings.fetch_concurrency == DEFAULT_FETCH_CONCURRENCY
        assert not settings.data_api_configured

    def test_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MARKET_SWEEP_DB_PATH", " /tmp/sweep.db ")
        monkeypatch.setenv("DATA_API_KEY", "secret")
        monkeypatch.setenv("FETCH_CONCURRENCY", "12")
        monkeypatch.setenv("DATA_API_MAX_RPS", "7.5")
        monkeypatch.setenv("SCHEDULER_ENABLED", "off")

        settings = Settings.from_env()

        assert settings.db_path == "/tmp/sweep.db"
        assert settings.fetch_concurrency == 12
        assert settings.data_api_max_rps == 7.5
        assert settings.scheduler_enabled is False
        assert settings.data_api_configured

    def test_invalid_numbers_fall_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FETCH_CONCURRENCY", "lots")
        monkeypatch.setenv("DATA_API_MAX_RPS", "fast")

        settings = Settings.from_env()

        assert settings.fetch_concurrency == DEFAULT_FETCH_CONCURRENCY
        assert settings.data_api_max_rps == 50.0

    def test_scanner_switch_disables_api(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATA_API_KEY", "secret")
        monkeypatch.setenv("SCANNER_ENABLED", "0")

        assert not Settings.from_env().data_api_configured

    def test_out_of_range_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(fetch_lookback_days=10)

    def test_frozen(self) -> None:
        settings = Settings()
        with pytest.raises(ValidationError):
            settings.db_path = "other.db"  # type: ignore[misc]


class TestAdaptiveConcurrency:
    @pytest.mark.parametrize(
        ("configured", "max_rps", "calls", "expected"),
        [
            (32, 50.0, 1, 32),
            (32, 2.0, 1, 8),
            (32, 0.5, 1, 4),
            (2, 0.5, 1, 2),
            (32, 10.0, 2, 20),
            (128, 1.0, 0, 128),
        ],
    )
    def test_sizing(self, configured: int, max_rps: float, calls: int, expected: int) -> None:
        assert adaptive_concurrency(configured, max_rps=max_rps, calls_per_ticker=calls) == expected
