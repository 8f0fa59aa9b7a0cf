"""Per-run metrics tracking and the bounded run-history.

A ``RunMetricsTracker`` accumulates counters while one run executes and
produces an immutable ``RunMetricsSnapshot`` when it finishes.
``MetricsHistory`` keeps the most recent snapshots in memory for dashboards
and appends every snapshot to the ``run_metrics_history`` table.
"""

from __future__ import annotations

import collections
import datetime
import logging
import math
import secrets
import time
from typing import Final

from Market_Sweep.data.repository import Repository
from Market_Sweep.models.enums import JobType, RunStatus, ScanPhase
from Market_Sweep.models.metrics import (
    ApiCallStats,
    DbStats,
    LatencySummary,
    RunMetricsSnapshot,
    TickerStats,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RUN_METRICS_SAMPLE_CAP: Final[int] = 1200
RUN_METRICS_HISTORY_LIMIT: Final[int] = 40
RUN_METRICS_DB_RETAIN: Final[int] = 200
FAILED_TICKER_CAP: Final[int] = 500


def new_run_id(run_type: JobType) -> str:
    """Return a unique id of the form ``{run_type}-{epoch_ms}-{random}``."""
    return f"{run_type}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def percentile(sorted_values: list[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list. Returns 0.0 when empty."""
    if not sorted_values:
        return 0.0
    rank = math.ceil(pct / 100.0 * len(sorted_values))
    index = min(len(sorted_values) - 1, max(0, rank - 1))
    return sorted_values[index]


def summarize_latency(samples: list[float]) -> LatencySummary:
    """Aggregate latency samples (milliseconds) into avg / p50 / p95."""
    if not samples:
        return LatencySummary()
    ordered = sorted(samples)
    return LatencySummary(
        samples=len(ordered),
        avg_ms=round(sum(ordered) / len(ordered), 2),
        p50_ms=round(percentile(ordered, 50), 2),
        p95_ms=round(percentile(ordered, 95), 2),
    )


class RunMetricsTracker:
    """Mutable counters for one run.

    Usage::

        tracker = RunMetricsTracker(JobType.FETCH_DAILY)
        tracker.set_totals(500)
        tracker.record_api_call(82.0, ok=True)
        snapshot = tracker.finish(RunStatus.COMPLETED)
    """

    def __init__(
        self,
        run_type: JobType,
        *,
        sample_cap: int = RUN_METRICS_SAMPLE_CAP,
    ) -> None:
        self.run_id = new_run_id(run_type)
        self.run_type = run_type
        self._status = RunStatus.RUNNING
        self._phase = ScanPhase.STARTING
        self._started_at = datetime.datetime.now(datetime.UTC)
        self._started_monotonic = time.monotonic()
        self._finished: RunMetricsSnapshot | None = None
        self._meta: dict[str, str] = {}

        self._latencies: collections.deque[float] = collections.deque(maxlen=sample_cap)
        self._api_calls = 0
        self._api_ok = 0
        self._api_failed = 0
        self._rate_limited = 0
        self._timed_out = 0
        self._aborted = 0

        self._db_flushes = 0
        self._rows_written = 0

        self._total = 0
        self._processed = 0
        self._detected = 0
        self._errors = 0
        self._failed: list[str] = []
        self._retry_recovered: list[str] = []

    @property
    def finished(self) -> bool:
        return self._finished is not None

    def set_meta(self, **fields: str) -> None:
        self._meta.update(fields)

    def set_phase(self, phase: ScanPhase) -> None:
        self._phase = phase

    def set_totals(self, total: int) -> None:
        self._total = max(0, total)

    def set_progress(self, *, processed: int, detected: int, errors: int) -> None:
        self._processed = processed
        self._detected = detected
        self._errors = errors

    def record_api_call(
        self,
        latency_ms: float,
        *,
        ok: bool,
        rate_limited: bool = False,
        timed_out: bool = False,
        aborted: bool = False,
    ) -> None:
        """Count one upstream call and keep its latency as a sample."""
        self._api_calls += 1
        if ok:
            self._api_ok += 1
        else:
            self._api_failed += 1
        if rate_limited:
            self._rate_limited += 1
        if timed_out:
            self._timed_out += 1
        if aborted:
            self._aborted += 1
        if latency_ms >= 0:
            self._latencies.append(latency_ms)

    def record_db_flush(self, rows: int) -> None:
        self._db_flushes += 1
        self._rows_written += max(0, rows)

    def record_failed_ticker(self, ticker: str) -> None:
        if ticker not in self._failed and len(self._failed) < FAILED_TICKER_CAP:
            self._failed.append(ticker)

    def record_retry_recovered(self, ticker: str) -> None:
        """Move a ticker from the failed list to the recovered list."""
        if ticker in self._failed:
            self._failed.remove(ticker)
        if ticker not in self._retry_recovered:
            self._retry_recovered.append(ticker)

    def snapshot(self) -> RunMetricsSnapshot:
        """Current counters as a snapshot; the final one once finished."""
        if self._finished is not None:
            return self._finished
        return self._build(finished_at=None)

    def finish(self, status: RunStatus) -> RunMetricsSnapshot:
        """Freeze the counters with a terminal status. Later calls are no-ops."""
        if self._finished is None:
            self._status = status
            self._phase = ScanPhase.FINALIZING
            self._finished = self._build(finished_at=datetime.datetime.now(datetime.UTC))
        return self._finished

    def _build(self, *, finished_at: datetime.datetime | None) -> RunMetricsSnapshot:
        duration = time.monotonic() - self._started_monotonic
        per_second = self._processed / duration if duration > 0 else 0.0
        return RunMetricsSnapshot(
            run_id=self.run_id,
            run_type=self.run_type,
            status=self._status,
            phase=self._phase,
            started_at=self._started_at,
            finished_at=finished_at,
            duration_seconds=round(duration, 3),
            processed_per_second=round(per_second, 3),
            api=ApiCallStats(
                calls=self._api_calls,
                ok=self._api_ok,
                failed=self._api_failed,
                rate_limited=self._rate_limited,
                timed_out=self._timed_out,
                aborted=self._aborted,
                latency=summarize_latency(list(self._latencies)),
            ),
            db=DbStats(flush_count=self._db_flushes, rows_written=self._rows_written),
            tickers=TickerStats(
                total=self._total,
                processed=self._processed,
                detected=self._detected,
                errors=self._errors,
                failed=list(self._failed),
                retry_recovered=list(self._retry_recovered),
            ),
            meta=dict(self._meta),
        )


class MetricsHistory:
    """Recent run snapshots in memory, with append-only persistence.

    The in-memory list holds at most ``limit`` snapshots (newest first). When
    a repository is configured each snapshot is also inserted into
    ``run_metrics_history`` and the table is pruned to ``retain`` rows.
    """

    def __init__(
        self,
        repository: Repository | None = None,
        *,
        limit: int = RUN_METRICS_HISTORY_LIMIT,
        retain: int = RUN_METRICS_DB_RETAIN,
    ) -> None:
        self._repository = repository
        self._limit = limit
        self._retain = retain
        self._recent: collections.deque[RunMetricsSnapshot] = collections.deque(maxlen=limit)

    async def load(self) -> int:
        """Warm the in-memory list from the database. Returns rows loaded."""
        if self._repository is None:
            return 0
        rows = await self._repository.list_run_metrics(limit=self._limit)
        self._recent.clear()
        # rows are newest first; appendleft oldest-first keeps that order
        for snapshot in reversed(rows):
            self._recent.appendleft(snapshot)
        logger.info("Loaded %d run metrics snapshots", len(rows))
        return len(rows)

    async def record(self, snapshot: RunMetricsSnapshot) -> None:
        """Append a finished run's snapshot to memory and storage."""
        self._recent.appendleft(snapshot)
        if self._repository is None:
            return
        await self._repository.insert_run_metrics(snapshot)
        pruned = await self._repository.prune_run_metrics(retain=self._retain)
        if pruned:
            logger.debug("Pruned %d old run metrics rows", pruned)

    def recent(self, limit: int | None = None) -> list[RunMetricsSnapshot]:
        """Most recent snapshots first."""
        items = list(self._recent)
        return items if limit is None else items[:limit]

    async def get(self, run_id: str) -> RunMetricsSnapshot | None:
        """Look up a run in memory, then in storage."""
        for snapshot in self._recent:
            if snapshot.run_id == run_id:
                return snapshot
        if self._repository is None:
            return None
        return await self._repository.get_run_metrics(run_id)
