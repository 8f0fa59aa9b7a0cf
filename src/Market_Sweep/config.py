"""Runtime settings loaded from environment variables.

A single frozen ``Settings`` instance is built at startup (CLI command or web
lifespan) and handed to everything that needs it. Nothing else reads
``os.environ`` directly, apart from ``logging_config``.
"""

from __future__ import annotations

import logging
import math
import os
from typing import Final

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_DB_PATH: Final[str] = "data/market_sweep.db"
DEFAULT_DATA_API_BASE_URL: Final[str] = "https://api.massive.com"
DEFAULT_FETCH_CONCURRENCY: Final[int] = 32
DEFAULT_DETECTOR_SCAN_CONCURRENCY: Final[int] = 128
DEFAULT_TABLE_BUILD_CONCURRENCY: Final[int] = 24
DEFAULT_DATA_API_MAX_RPS: Final[float] = 50.0
DEFAULT_RUN_METRICS_HISTORY_LIMIT: Final[int] = 40
DEFAULT_RUN_METRICS_DB_RETAIN: Final[int] = 200
DEFAULT_RUN_METRICS_SAMPLE_CAP: Final[int] = 1200
DEFAULT_FETCH_LOOKBACK_DAYS: Final[int] = 60

# Minimum pool size the adaptive sizing will ever pick
MIN_ADAPTIVE_CONCURRENCY: Final[int] = 4

_TRUE_VALUES: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})


def _env_str(name: str, default: str) -> str:
    value = os.environ.get(name)
    return value.strip() if value is not None and value.strip() else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using default %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s=%r, using default %.1f", name, raw, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


class Settings(BaseModel):
    """Application configuration.

    Frozen so a settings object can be shared between the scheduler, the
    web layer and running jobs without anyone mutating it mid-run.
    """

    model_config = ConfigDict(frozen=True)

    db_path: str = DEFAULT_DB_PATH
    data_api_base_url: str = DEFAULT_DATA_API_BASE_URL
    data_api_key: str = ""
    scanner_enabled: bool = True
    scheduler_enabled: bool = True
    fetch_concurrency: int = Field(default=DEFAULT_FETCH_CONCURRENCY, ge=1)
    detector_scan_concurrency: int = Field(default=DEFAULT_DETECTOR_SCAN_CONCURRENCY, ge=1)
    table_build_concurrency: int = Field(default=DEFAULT_TABLE_BUILD_CONCURRENCY, ge=1)
    data_api_max_rps: float = Field(default=DEFAULT_DATA_API_MAX_RPS, gt=0)
    run_metrics_history_limit: int = Field(default=DEFAULT_RUN_METRICS_HISTORY_LIMIT, ge=1)
    run_metrics_db_retain: int = Field(default=DEFAULT_RUN_METRICS_DB_RETAIN, ge=1)
    run_metrics_sample_cap: int = Field(default=DEFAULT_RUN_METRICS_SAMPLE_CAP, ge=1)
    fetch_lookback_days: int = Field(default=DEFAULT_FETCH_LOOKBACK_DAYS, ge=28)

    @property
    def data_api_configured(self) -> bool:
        """True when the upstream data API can be called at all."""
        return self.scanner_enabled and bool(self.data_api_key)

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from environment variables, falling back to defaults."""
        return cls(
            db_path=_env_str("MARKET_SWEEP_DB_PATH", DEFAULT_DB_PATH),
            data_api_base_url=_env_str("DATA_API_BASE_URL", DEFAULT_DATA_API_BASE_URL),
            data_api_key=_env_str("DATA_API_KEY", ""),
            scanner_enabled=_env_bool("SCANNER_ENABLED", True),
            scheduler_enabled=_env_bool("SCHEDULER_ENABLED", True),
            fetch_concurrency=_env_int("FETCH_CONCURRENCY", DEFAULT_FETCH_CONCURRENCY),
            detector_scan_concurrency=_env_int(
                "DETECTOR_SCAN_CONCURRENCY", DEFAULT_DETECTOR_SCAN_CONCURRENCY
            ),
            table_build_concurrency=_env_int(
                "TABLE_BUILD_CONCURRENCY", DEFAULT_TABLE_BUILD_CONCURRENCY
            ),
            data_api_max_rps=_env_float("DATA_API_MAX_RPS", DEFAULT_DATA_API_MAX_RPS),
            run_metrics_history_limit=_env_int(
                "RUN_METRICS_HISTORY_LIMIT", DEFAULT_RUN_METRICS_HISTORY_LIMIT
            ),
            run_metrics_db_retain=_env_int("RUN_METRICS_DB_RETAIN", DEFAULT_RUN_METRICS_DB_RETAIN),
            run_metrics_sample_cap=_env_int(
                "RUN_METRICS_SAMPLE_CAP", DEFAULT_RUN_METRICS_SAMPLE_CAP
            ),
            fetch_lookback_days=_env_int("FETCH_LOOKBACK_DAYS", DEFAULT_FETCH_LOOKBACK_DAYS),
        )


def adaptive_concurrency(
    configured: int,
    *,
    max_rps: float,
    calls_per_ticker: int = 1,
) -> int:
    """Size a worker pool so it roughly saturates, but does not swamp, the API.

    Returns ``min(configured, max(4, floor(max_rps / calls_per_ticker) * 4))``.
    Jobs that make no API calls pass ``calls_per_ticker=0`` and get
    ``configured`` back unchanged.
    """
    if calls_per_ticker <= 0:
        return max(1, configured)
    rate_bound = math.floor(max_rps / calls_per_ticker) * 4
    return max(1, min(configured, max(MIN_ADAPTIVE_CONCURRENCY, rate_bound)))
