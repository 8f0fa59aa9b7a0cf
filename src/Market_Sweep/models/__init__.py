"""Pydantic v2 models, enums, and type definitions.

Re-exports all public models so consumers can import directly:
    from Market_Sweep.models import RunSummary, JobType, FetchDailyResume
"""

from Market_Sweep.models.enums import JobType, RunStatus, ScanPhase, ScanTrigger
from Market_Sweep.models.market_data import OHLCV, DivergenceSignal, TickerSummary, TrackedTicker
from Market_Sweep.models.metrics import (
    ApiCallStats,
    DbStats,
    LatencySummary,
    RunMetricsSnapshot,
    TickerStats,
)
from Market_Sweep.models.resume import (
    DetectorScanResume,
    FetchDailyResume,
    FetchWeeklyResume,
    ResumeSnapshot,
    ResumeState,
    TableBuildResume,
    normalize_resume,
)
from Market_Sweep.models.scan import ItemOutcome, RunSummary, ScanStatusReport

__all__ = [
    # Enums
    "JobType",
    "RunStatus",
    "ScanPhase",
    "ScanTrigger",
    # Market data
    "DivergenceSignal",
    "OHLCV",
    "TickerSummary",
    "TrackedTicker",
    # Metrics
    "ApiCallStats",
    "DbStats",
    "LatencySummary",
    "RunMetricsSnapshot",
    "TickerStats",
    # Resume state
    "DetectorScanResume",
    "FetchDailyResume",
    "FetchWeeklyResume",
    "ResumeSnapshot",
    "ResumeState",
    "TableBuildResume",
    "normalize_resume",
    # Scan
    "ItemOutcome",
    "RunSummary",
    "ScanStatusReport",
]
