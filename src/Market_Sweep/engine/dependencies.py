"""The interface a job type implements to be driven by ``ScanDriver``."""

from __future__ import annotations

import abc
import datetime
from typing import TYPE_CHECKING, Any, Protocol
from zoneinfo import ZoneInfo

from Market_Sweep.engine.cancellation import CancellationToken
from Market_Sweep.models.enums import JobType
from Market_Sweep.models.resume import ResumeSnapshot
from Market_Sweep.models.scan import ItemOutcome

if TYPE_CHECKING:
    from Market_Sweep.services.metrics import RunMetricsTracker

ET_TIMEZONE = ZoneInfo("America/New_York")


class ScanDependencies(Protocol):
    """Collaborators the driver needs for one run of one job type."""

    job_type: JobType

    def is_configured(self) -> bool: ...

    async def get_tickers(self) -> list[str]: ...

    async def process_item(self, ticker: str, token: CancellationToken) -> ItemOutcome: ...

    def sweep_cache(self) -> None: ...

    def create_metrics_tracker(self) -> RunMetricsTracker | None: ...

    def begin_fresh(self) -> None: ...

    def resume_fields(self) -> dict[str, Any]: ...

    def apply_resume(self, snapshot: ResumeSnapshot) -> None: ...


class ScanJob(abc.ABC):
    """Convenience base for ``ScanDependencies`` implementations.

    Subclasses supply the universe and the item worker. The defaults here
    make a job always configured, cache-less and metrics-free, and date its
    resume snapshots with the current US/Eastern calendar day.
    """

    job_type: JobType

    def __init__(self) -> None:
        self._as_of_date: str | None = None

    def is_configured(self) -> bool:
        return True

    @abc.abstractmethod
    async def get_tickers(self) -> list[str]:
        """Return the ordered universe for a fresh run."""

    @abc.abstractmethod
    async def process_item(self, ticker: str, token: CancellationToken) -> ItemOutcome:
        """Do the work for one ticker. Raise to report a failure."""

    def sweep_cache(self) -> None:
        return None

    def create_metrics_tracker(self) -> RunMetricsTracker | None:
        return None

    @property
    def as_of_date(self) -> str:
        """Date the current run's data is anchored to (ISO format)."""
        if self._as_of_date is None:
            self._as_of_date = self.resolve_as_of_date()
        return self._as_of_date

    def resolve_as_of_date(self) -> str:
        """Anchor date for a fresh run. Jobs override with a candle-aware rule."""
        return datetime.datetime.now(ET_TIMEZONE).date().isoformat()

    def begin_fresh(self) -> None:
        """Forget any anchor carried over from a previous run."""
        self._as_of_date = None

    def resume_fields(self) -> dict[str, Any]:
        """Job-specific fields stored alongside the positional resume data."""
        return {"as_of_date": self.as_of_date}

    def apply_resume(self, snapshot: ResumeSnapshot) -> None:
        """Re-anchor this job to the snapshot it is resuming."""
        self._as_of_date = snapshot.as_of_date
