"""Run facade shared by the scheduler, the admin API and the CLI.

``ScanRunner`` pairs each job with a ``ScanDriver`` sized for that job and
the job's ``ScanState`` from the registry. ``open_runtime`` wires the whole
object graph (database, cache, API client, jobs, registry, history, runner)
from a ``Settings`` instance and tears it down again.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Final

from Market_Sweep.config import Settings, adaptive_concurrency
from Market_Sweep.data.database import Database
from Market_Sweep.data.repository import Repository
from Market_Sweep.engine.dependencies import ScanDependencies
from Market_Sweep.engine.driver import ScanDriver
from Market_Sweep.engine.registry import ScanRegistry
from Market_Sweep.models.enums import JobType, RunStatus, ScanTrigger
from Market_Sweep.models.scan import RunSummary
from Market_Sweep.services.cache import ResultCache
from Market_Sweep.services.calendar import TradingCalendar, WeekdayTradingCalendar
from Market_Sweep.services.data_api import DataApiClient
from Market_Sweep.services.jobs import DetectorScanJob, RepositoryJob, build_jobs
from Market_Sweep.services.metrics import MetricsHistory
from Market_Sweep.services.rate_limiter import RateLimiter
from Market_Sweep.services.resume_store import ResumeStateStore
from Market_Sweep.utils.exceptions import ScanConflictError

logger = logging.getLogger(__name__)

_PUBLISHED_STATUSES: Final[frozenset[RunStatus]] = frozenset(
    {RunStatus.COMPLETED, RunStatus.COMPLETED_WITH_ERRORS}
)

# Upstream calls one item makes, used to size each job's pool
_CALLS_PER_TICKER: Final[dict[JobType, int]] = {
    JobType.FETCH_DAILY: 1,
    JobType.FETCH_WEEKLY: 1,
    JobType.DETECTOR_SCAN: 0,
    JobType.TABLE_BUILD: 0,
}


def concurrency_for(job_type: JobType, settings: Settings) -> int:
    """Pool size for ``job_type`` under the configured API rate."""
    configured = {
        JobType.FETCH_DAILY: settings.fetch_concurrency,
        JobType.FETCH_WEEKLY: settings.fetch_concurrency,
        JobType.DETECTOR_SCAN: settings.detector_scan_concurrency,
        JobType.TABLE_BUILD: settings.table_build_concurrency,
    }[job_type]
    return adaptive_concurrency(
        configured,
        max_rps=settings.data_api_max_rps,
        calls_per_ticker=_CALLS_PER_TICKER[job_type],
    )


class ScanRunner:
    """Starts runs in the foreground or as background tasks.

    Args:
        registry: Holds the ``ScanState`` of every job type.
        jobs: The ``ScanDependencies`` implementation per job type.
        settings: Used to size each job's pool.
        history: Receives the metrics snapshot of every finished run.
        drivers: Pre-built drivers, mainly for tests.
    """

    def __init__(
        self,
        registry: ScanRegistry,
        jobs: Mapping[JobType, ScanDependencies],
        *,
        settings: Settings | None = None,
        history: MetricsHistory | None = None,
        drivers: Mapping[JobType, ScanDriver] | None = None,
    ) -> None:
        settings = settings or Settings()
        self._registry = registry
        self._jobs = dict(jobs)
        self._drivers: dict[JobType, ScanDriver] = dict(drivers or {})
        for job_type in self._jobs:
            if job_type not in self._drivers:
                self._drivers[job_type] = ScanDriver(
                    concurrency=concurrency_for(job_type, settings),
                    resume_store=registry.store,
                    history=history,
                )
        # Strong references keep fire-and-forget tasks alive until they finish
        self._tasks: dict[JobType, asyncio.Task[RunSummary]] = {}

    @property
    def registry(self) -> ScanRegistry:
        return self._registry

    def job(self, job_type: JobType) -> ScanDependencies:
        return self._jobs[job_type]

    def task_for(self, job_type: JobType) -> asyncio.Task[RunSummary] | None:
        return self._tasks.get(job_type)

    async def run(
        self,
        job_type: JobType,
        *,
        force_fresh: bool = False,
        trigger: ScanTrigger = ScanTrigger.MANUAL,
    ) -> RunSummary:
        """Run ``job_type`` to completion and return its summary."""
        job = self._jobs[job_type]
        state = self._registry.get(job_type)
        if isinstance(job, DetectorScanJob) and not state.is_running:
            job.trigger = trigger

        summary = await self._drivers[job_type].run(
            state,
            job,
            force_fresh=force_fresh,
            blockers=self._registry.blockers_for(job_type),
        )

        if summary.run_id is not None:
            state.set_extra_status({"last_run_id": summary.run_id})
        if summary.status in _PUBLISHED_STATUSES and isinstance(job, RepositoryJob):
            job.mark_published()
            state.set_extra_status({"last_published_date": job.last_published_date})
        return summary

    def start_background(
        self,
        job_type: JobType,
        *,
        force_fresh: bool = False,
        trigger: ScanTrigger = ScanTrigger.MANUAL,
    ) -> asyncio.Task[RunSummary]:
        """Schedule a run on the event loop and return its task.

        Raises:
            ScanConflictError: If the job, or a job that blocks it, is running.
        """
        state = self._registry.get(job_type)
        pending = self._tasks.get(job_type)
        if state.is_running or (pending is not None and not pending.done()):
            msg = f"{job_type} is already running"
            raise ScanConflictError(msg, job_type=job_type)
        busy = [b.job_type for b in self._registry.blockers_for(job_type) if b.is_running]
        if busy:
            msg = f"{job_type} is blocked by {', '.join(busy)}"
            raise ScanConflictError(msg, job_type=job_type)

        task = asyncio.create_task(
            self.run(job_type, force_fresh=force_fresh, trigger=trigger),
            name=f"scan-{job_type}",
        )
        self._tasks[job_type] = task
        task.add_done_callback(functools.partial(self._on_task_done, job_type))
        logger.info("Started background run of %s (force_fresh=%s)", job_type, force_fresh)
        return task

    def request_stop(self, job_type: JobType) -> bool:
        return self._registry.get(job_type).request_stop()

    def request_pause(self, job_type: JobType) -> bool:
        return self._registry.get(job_type).request_pause()

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Ask every active run to stop and wait for background tasks to settle."""
        for state in self._registry.running():
            state.request_pause()
        pending = [task for task in self._tasks.values() if not task.done()]
        if not pending:
            return
        logger.info("Waiting for %d active run(s) to stop", len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            logger.warning("Cancelling run %s after %.0fs", task.get_name(), timeout)
            task.cancel()

    def _on_task_done(self, job_type: JobType, task: asyncio.Task[RunSummary]) -> None:
        if self._tasks.get(job_type) is task:
            del self._tasks[job_type]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background run of %s crashed: %s", job_type, exc, exc_info=exc)


# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------


@dataclass
class Runtime:
    """Everything a process needs to run and inspect scans."""

    settings: Settings
    database: Database
    repository: Repository
    cache: ResultCache
    rate_limiter: RateLimiter
    api: DataApiClient
    registry: ScanRegistry
    history: MetricsHistory
    runner: ScanRunner
    calendar: TradingCalendar


@contextlib.asynccontextmanager
async def open_runtime(
    settings: Settings,
    *,
    calendar: TradingCalendar | None = None,
) -> AsyncIterator[Runtime]:
    """Connect the database, restore resume state and history, build the runner.

    Usage::

        async with open_runtime(Settings.from_env()) as runtime:
            summary = await runtime.runner.run(JobType.FETCH_DAILY)
    """
    calendar = calendar or WeekdayTradingCalendar()
    database = Database(settings.db_path)
    await database.connect()
    try:
        repository = Repository(database)
        cache = ResultCache()
        rate_limiter = RateLimiter(
            max_concurrent=settings.fetch_concurrency,
            requests_per_second=settings.data_api_max_rps,
        )
        api = DataApiClient(
            settings.data_api_base_url,
            settings.data_api_key,
            rate_limiter=rate_limiter,
        )
        try:
            registry = ScanRegistry(store=ResumeStateStore(repository))
            await registry.load_resume_states()
            history = MetricsHistory(
                repository,
                limit=settings.run_metrics_history_limit,
                retain=settings.run_metrics_db_retain,
            )
            await history.load()
            jobs = build_jobs(
                settings,
                repository=repository,
                cache=cache,
                api=api,
                calendar=calendar,
            )
            runner = ScanRunner(registry, jobs, settings=settings, history=history)
            runtime = Runtime(
                settings=settings,
                database=database,
                repository=repository,
                cache=cache,
                rate_limiter=rate_limiter,
                api=api,
                registry=registry,
                history=history,
                runner=runner,
                calendar=calendar,
            )
            try:
                yield runtime
            finally:
                await runner.shutdown()
        finally:
            await api.aclose()
    finally:
        await database.close()
