"""The generic run algorithm shared by every job type.

``ScanDriver.run`` claims a ``ScanState``, works out which tickers to
process (a fresh universe or the remainder of a resume snapshot), fans them
out across a bounded pool, retries failures once, and finalizes the state,
resume slot and metrics. It always returns a ``RunSummary``; nothing raised
by a job escapes it.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final

from Market_Sweep.engine.cancellation import CancellationToken
from Market_Sweep.engine.dependencies import ScanDependencies
from Market_Sweep.engine.pool import PoolResult, map_with_concurrency
from Market_Sweep.engine.scan_state import ScanState
from Market_Sweep.models.enums import RunStatus, ScanPhase
from Market_Sweep.models.resume import ResumeSnapshot
from Market_Sweep.models.scan import ItemOutcome, RunSummary
from Market_Sweep.utils.exceptions import ScanCancelledError

if TYPE_CHECKING:
    from Market_Sweep.services.metrics import MetricsHistory, RunMetricsTracker
    from Market_Sweep.services.resume_store import ResumeStateStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SWEEP_EVERY_N_TICKERS: Final[int] = 100
DEFAULT_CONCURRENCY: Final[int] = 8


@dataclass
class _RunContext:
    """Mutable bookkeeping for one run. Lives only inside ``ScanDriver.run``."""

    state: ScanState
    deps: ScanDependencies
    token: CancellationToken
    tracker: RunMetricsTracker | None
    started_at: datetime.datetime
    resumed: bool = False
    # Resumed from a stop in the retry pass; the remainder only needs its retry
    retry_only: bool = False
    resume_dirty: bool = False
    # Full ticker list the positional resume data refers to
    ticker_list: list[str] = field(default_factory=list)
    offset: int = 0
    base_processed: int = 0
    base_detected: int = 0
    base_failed: list[str] = field(default_factory=list)
    total: int = 0
    processed: int = 0
    detected: int = 0
    failed: list[str] = field(default_factory=list)
    retry_recovered: list[str] = field(default_factory=list)
    settled_since_sweep: int = 0
    # First-pass positions that bailed out through the token when they settled
    aborted: set[int] = field(default_factory=set)

    @property
    def label(self) -> str:
        run_id = self.tracker.run_id if self.tracker is not None else str(self.state.job_type)
        return f"Run {run_id}"

    def summary(self, status: RunStatus, *, error: str | None = None) -> RunSummary:
        return RunSummary(
            job_type=self.state.job_type,
            status=status,
            run_id=self.tracker.run_id if self.tracker is not None else None,
            total_tickers=self.total,
            processed_tickers=self.processed,
            detected_tickers=self.detected,
            error_tickers=len(self.failed),
            failed_tickers=list(self.failed),
            retry_recovered=list(self.retry_recovered),
            resumed=self.resumed,
            started_at=self.started_at,
            finished_at=datetime.datetime.now(datetime.UTC),
            error=error,
        )


class ScanDriver:
    """Runs one job type through its lifecycle.

    Args:
        concurrency: Maximum items in flight during the main pass.
        retry_concurrency: Pool size for the retry pass (defaults to half).
        resume_store: Where resume snapshots are persisted, if anywhere.
        history: Where finished metrics snapshots go, if anywhere.
        sweep_every: Sweep the cache again after this many settled items.
    """

    def __init__(
        self,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        retry_concurrency: int | None = None,
        resume_store: ResumeStateStore | None = None,
        history: MetricsHistory | None = None,
        sweep_every: int = SWEEP_EVERY_N_TICKERS,
    ) -> None:
        self._concurrency = max(1, concurrency)
        self._retry_concurrency = max(1, retry_concurrency or self._concurrency // 2)
        self._resume_store = resume_store
        self._history = history
        self._sweep_every = max(1, sweep_every)

    @property
    def concurrency(self) -> int:
        return self._concurrency

    async def run(
        self,
        state: ScanState,
        deps: ScanDependencies,
        *,
        force_fresh: bool = False,
        blockers: Sequence[ScanState] = (),
    ) -> RunSummary:
        """Execute one run and return its summary.

        Returns ``disabled`` without claiming when the job is not configured,
        and ``running`` without side effects when this job (or a blocking job)
        already has an active run.
        """
        job_type = state.job_type
        if not deps.is_configured():
            state.mark_disabled()
            logger.info("%s is not configured, skipping run", job_type)
            return RunSummary(job_type=job_type, status=RunStatus.DISABLED)

        busy = [b.job_type for b in blockers if b.is_running]
        if busy:
            logger.info("%s blocked by active run of %s", job_type, ", ".join(busy))
            return RunSummary(job_type=job_type, status=RunStatus.RUNNING)

        # Claim synchronously, before the first await, so a concurrent caller
        # always sees this run.
        token = state.try_claim()
        if token is None:
            logger.info("%s is already running", job_type)
            return RunSummary(job_type=job_type, status=RunStatus.RUNNING)

        ctx = _RunContext(
            state=state,
            deps=deps,
            token=token,
            tracker=None,
            started_at=datetime.datetime.now(datetime.UTC),
        )
        try:
            try:
                ctx.tracker = deps.create_metrics_tracker()
                self._sweep(ctx)
                summary = await self._execute(ctx, force_fresh=force_fresh)
            except Exception as exc:  # noqa: BLE001
                logger.exception("%s | FAILED   | Unexpected error", ctx.label)
                summary = ctx.summary(RunStatus.FAILED, error=str(exc))
            await self._finalize(ctx, summary)
        finally:
            # Only reached with the claim still held if the task was cancelled
            if state.is_running and state.cancellation_token is token:
                state.release(RunStatus.FAILED)
        return summary

    # ------------------------------------------------------------------
    # Run body
    # ------------------------------------------------------------------

    async def _execute(self, ctx: _RunContext, *, force_fresh: bool) -> RunSummary:
        state = ctx.state

        snapshot = None if force_fresh else state.resume_state
        if snapshot is not None and not state.can_resume():
            logger.info("%s | discarding unusable resume state", ctx.label)
            snapshot = None

        if snapshot is not None:
            work = self._load_resume(ctx, snapshot)
        else:
            loaded = await self._load_universe(ctx)
            if loaded is None:
                return ctx.summary(RunStatus.FAILED, error="universe fetch failed")
            work = loaded

        ctx.total = ctx.base_processed + len(work)
        ctx.processed = ctx.base_processed
        ctx.detected = ctx.base_detected
        ctx.failed = list(ctx.base_failed)
        if ctx.retry_only:
            ctx.processed = ctx.total
            ctx.failed.extend(work)
        self._publish_progress(ctx)
        if ctx.tracker is not None:
            ctx.tracker.set_totals(ctx.total)
            ctx.tracker.set_phase(ScanPhase.PROCESSING)
            for ticker in ctx.failed:
                ctx.tracker.record_failed_ticker(ticker)

        logger.info(
            "%s | STARTED  | %d tickers (%s, concurrency=%d)",
            ctx.label,
            len(work),
            _describe_start(ctx),
            self._concurrency,
        )

        if ctx.retry_only:
            return await self._retry_and_finish(ctx, list(work))

        results = await self._first_pass(ctx, work)

        if state.is_stopping:
            first_unsettled = _first_unsettled_index(results, len(work), ctx.aborted)
            if first_unsettled < len(work):
                return self._stop_mid_pass(ctx, results, first_unsettled)

        return await self._retry_and_finish(ctx, list(ctx.failed))

    async def _load_universe(self, ctx: _RunContext) -> list[str] | None:
        ctx.deps.begin_fresh()
        try:
            raw = await ctx.deps.get_tickers()
        except Exception as exc:  # noqa: BLE001
            logger.error("%s | FAILED   | Universe fetch failed: %s", ctx.label, exc)
            return None
        tickers = list(raw)
        ctx.ticker_list = tickers
        if ctx.state.resume_state is not None:
            ctx.state.set_resume_state(None)
            ctx.resume_dirty = True
        return tickers

    def _load_resume(self, ctx: _RunContext, snapshot: ResumeSnapshot) -> list[str]:
        ctx.deps.apply_resume(snapshot)
        ctx.resumed = True
        ctx.retry_only = snapshot.retry_only
        ctx.ticker_list = list(snapshot.tickers)
        ctx.offset = snapshot.next_index
        ctx.base_processed = snapshot.processed_tickers
        ctx.base_detected = snapshot.detected_tickers
        ctx.base_failed = list(snapshot.failed_tickers)
        return snapshot.remaining_tickers

    async def _first_pass(
        self, ctx: _RunContext, work: list[str]
    ) -> list[PoolResult[str, ItemOutcome]]:
        def _on_settled(result: PoolResult[str, ItemOutcome]) -> None:
            if _was_aborted(result, ctx.token):
                ctx.aborted.add(result.index)
                return
            ctx.processed += 1
            if result.ok and result.value is not None and result.value.detected:
                ctx.detected += 1
            elif not result.ok:
                logger.warning("%s | %s failed: %s", ctx.label, result.item, result.error)
                ctx.failed.append(result.item)
                if ctx.tracker is not None:
                    ctx.tracker.record_failed_ticker(result.item)
            self._after_settle(ctx)

        return await map_with_concurrency(
            work,
            lambda ticker: ctx.deps.process_item(ticker, ctx.token),
            concurrency=self._concurrency,
            should_stop=ctx.state.should_stop,
            on_settled=_on_settled,
        )

    async def _retry_and_finish(self, ctx: _RunContext, to_retry: list[str]) -> RunSummary:
        """Retry ``to_retry`` once, then pick the terminal status."""
        state = ctx.state

        if to_retry and not state.is_stopping:
            state.enter_retry_phase()
            if ctx.tracker is not None:
                ctx.tracker.set_phase(ScanPhase.RETRY)
            logger.info(
                "%s | RETRY    | %d failed tickers (concurrency=%d)",
                ctx.label,
                len(to_retry),
                self._retry_concurrency,
            )

            retry_aborted: set[int] = set()

            def _on_retry_settled(result: PoolResult[str, ItemOutcome]) -> None:
                if _was_aborted(result, ctx.token):
                    retry_aborted.add(result.index)
                    return
                if result.ok:
                    ctx.failed.remove(result.item)
                    ctx.retry_recovered.append(result.item)
                    if result.value is not None and result.value.detected:
                        ctx.detected += 1
                    if ctx.tracker is not None:
                        ctx.tracker.record_retry_recovered(result.item)
                    logger.info("%s | %s recovered on retry", ctx.label, result.item)
                self._after_settle(ctx)

            results = await map_with_concurrency(
                to_retry,
                lambda ticker: ctx.deps.process_item(ticker, ctx.token),
                concurrency=self._retry_concurrency,
                should_stop=state.should_stop,
                on_settled=_on_retry_settled,
            )
            retried = {r.index for r in results if r.index not in retry_aborted}
            unretried = [t for i, t in enumerate(to_retry) if i not in retried]
        else:
            unretried = to_retry if state.is_stopping else []

        if unretried:
            return self._stop_in_retry(ctx, unretried)

        status = RunStatus.COMPLETED if not ctx.failed else RunStatus.COMPLETED_WITH_ERRORS
        if state.resume_state is not None:
            state.set_resume_state(None)
            ctx.resume_dirty = True
        return ctx.summary(status)

    # ------------------------------------------------------------------
    # Stop handling
    # ------------------------------------------------------------------

    def _stop_mid_pass(
        self,
        ctx: _RunContext,
        results: list[PoolResult[str, ItemOutcome]],
        first_unsettled: int,
    ) -> RunSummary:
        """Snapshot everything before the first unsettled position and stop."""
        durable = [r for r in results if r.index < first_unsettled]
        ctx.processed = ctx.base_processed + len(durable)
        ctx.detected = ctx.base_detected + sum(
            1 for r in durable if r.ok and r.value is not None and r.value.detected
        )
        ctx.failed = list(ctx.base_failed) + [r.item for r in durable if not r.ok]
        self._save_stop_snapshot(
            ctx,
            tickers=ctx.ticker_list,
            next_index=ctx.offset + first_unsettled,
        )
        return ctx.summary(RunStatus.STOPPED)

    def _stop_in_retry(self, ctx: _RunContext, unretried: list[str]) -> RunSummary:
        """Stop during (or right before) the retry pass.

        The snapshot's ticker list becomes the failures nobody retried yet.
        It is marked ``retry_only``, so a resumed run gives each of them its
        single retry and nothing more.
        """
        ctx.failed = [t for t in ctx.failed if t not in unretried]
        ctx.processed = ctx.total - len(unretried)
        self._save_stop_snapshot(ctx, tickers=unretried, next_index=0, retry_only=True)
        return ctx.summary(RunStatus.STOPPED)

    def _save_stop_snapshot(
        self,
        ctx: _RunContext,
        *,
        tickers: list[str],
        next_index: int,
        retry_only: bool = False,
    ) -> None:
        fields = dict(ctx.deps.resume_fields())
        fields.update(
            tickers=tickers,
            next_index=next_index,
            processed_tickers=ctx.processed,
            detected_tickers=ctx.detected,
            error_tickers=len(ctx.failed),
            failed_tickers=ctx.failed,
            retry_only=retry_only,
        )
        ctx.state.set_resume_state(fields)
        ctx.resume_dirty = True
        logger.info(
            "%s | STOPPED  | %d/%d processed, resume at %d of %d",
            ctx.label,
            ctx.processed,
            ctx.total,
            next_index,
            len(tickers),
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _after_settle(self, ctx: _RunContext) -> None:
        self._publish_progress(ctx)
        ctx.settled_since_sweep += 1
        if ctx.settled_since_sweep >= self._sweep_every:
            ctx.settled_since_sweep = 0
            self._sweep(ctx)

    def _publish_progress(self, ctx: _RunContext) -> None:
        ctx.state.update_progress(total=ctx.total, processed=ctx.processed, errors=len(ctx.failed))
        if ctx.tracker is not None:
            ctx.tracker.set_progress(
                processed=ctx.processed,
                detected=ctx.detected,
                errors=len(ctx.failed),
            )

    def _sweep(self, ctx: _RunContext) -> None:
        try:
            ctx.deps.sweep_cache()
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s | cache sweep failed: %s", ctx.label, exc)

    async def _finalize(self, ctx: _RunContext, summary: RunSummary) -> None:
        """Persist metrics and resume state, then release the claim."""
        state = ctx.state
        if ctx.tracker is not None:
            snapshot = ctx.tracker.finish(summary.status)
            if self._history is not None:
                try:
                    await self._history.record(snapshot)
                except Exception:  # noqa: BLE001
                    logger.exception("%s | could not persist run metrics", ctx.label)

        if ctx.resume_dirty and self._resume_store is not None:
            try:
                await self._resume_store.save(state.job_type, state.resume_state)
            except Exception:  # noqa: BLE001
                logger.exception("%s | could not persist resume state", ctx.label)

        logger.info(
            "%s | %-8s | processed=%d detected=%d errors=%d recovered=%d",
            ctx.label,
            summary.status.upper(),
            summary.processed_tickers,
            summary.detected_tickers,
            summary.error_tickers,
            len(summary.retry_recovered),
        )
        state.release(summary.status)


def _was_aborted(result: PoolResult[str, ItemOutcome], token: CancellationToken) -> bool:
    """An item that bailed out through the cancellation token did not run."""
    return token.is_set and isinstance(result.error, ScanCancelledError)


def _first_unsettled_index(
    results: list[PoolResult[str, ItemOutcome]],
    size: int,
    aborted: set[int],
) -> int:
    """Lowest position that was never admitted or was aborted by cancellation.

    ``aborted`` is decided when each item settles, so the stop index agrees
    with the counters even if the token is set later.
    """
    settled = {r.index for r in results if r.index not in aborted}
    for index in range(size):
        if index not in settled:
            return index
    return size


def _describe_start(ctx: _RunContext) -> str:
    if ctx.retry_only:
        return "resumed in retry pass"
    if ctx.resumed:
        return f"resumed at {ctx.offset}"
    return "fresh"
