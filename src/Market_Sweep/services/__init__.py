"""Data API access, caching, metrics, jobs and scheduling services.

Re-exports the public service classes so consumers can import directly:
    from Market_Sweep.services import ScanRunner, Scheduler, open_runtime
"""

from Market_Sweep.services.cache import CacheEntry, ResultCache
from Market_Sweep.services.calendar import TradingCalendar, WeekdayTradingCalendar
from Market_Sweep.services.data_api import DataApiClient
from Market_Sweep.services.jobs import (
    DetectorScanJob,
    FetchBarsJob,
    RepositoryJob,
    TableBuildJob,
    build_jobs,
)
from Market_Sweep.services.metrics import MetricsHistory, RunMetricsTracker
from Market_Sweep.services.rate_limiter import RateLimiter
from Market_Sweep.services.resume_store import ResumeStateStore
from Market_Sweep.services.scan_runner import Runtime, ScanRunner, open_runtime
from Market_Sweep.services.scheduler import Scheduler, build_schedulers

__all__ = [
    # Infrastructure
    "CacheEntry",
    "DataApiClient",
    "RateLimiter",
    "ResultCache",
    "ResumeStateStore",
    "TradingCalendar",
    "WeekdayTradingCalendar",
    # Metrics
    "MetricsHistory",
    "RunMetricsTracker",
    # Jobs
    "DetectorScanJob",
    "FetchBarsJob",
    "RepositoryJob",
    "TableBuildJob",
    "build_jobs",
    # Orchestration
    "Runtime",
    "ScanRunner",
    "Scheduler",
    "build_schedulers",
    "open_runtime",
]
