"""Control handle for one job type: run state, stop/pause requests, resume slot.

One ``ScanState`` lives for the whole process per job type (see
``ScanRegistry``). Only the driver moves it through a run; operators talk to
it through ``request_stop``, ``request_pause``, ``set_resume_state`` and
``set_extra_status``. Every method is synchronous, so no two callers can
interleave inside one of them on the event loop.
"""

from __future__ import annotations

import datetime
import functools
import logging
from collections.abc import Callable, Mapping
from typing import Any

from Market_Sweep.engine.cancellation import CancellationToken
from Market_Sweep.models.enums import JobType, RunStatus
from Market_Sweep.models.resume import ResumeSnapshot, normalize_resume
from Market_Sweep.models.scan import ScanStatusReport

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = frozenset({RunStatus.RUNNING, RunStatus.STOPPING, RunStatus.RUNNING_RETRY})

# Fields of ScanStatusReport that extra status may not shadow
_RESERVED_STATUS_FIELDS = frozenset(ScanStatusReport.model_fields)


def _default_validator(snapshot: ResumeSnapshot) -> bool:
    return snapshot.can_resume()


class ScanState:
    """State machine and command surface for a single job type.

    States: ``idle`` until claimed, ``running`` while a driver owns it,
    ``stopping`` once a stop or pause is requested, and back to ``idle`` on
    release. ``disabled`` is shown after the driver found the upstream
    unconfigured, until the next successful claim.

    Args:
        job_type: The job family this handle controls.
        normalize: Turns a raw mapping into the canonical resume snapshot.
        can_resume_validator: Decides whether a canonical snapshot is usable.
    """

    def __init__(
        self,
        job_type: JobType,
        *,
        normalize: Callable[[dict[str, Any]], ResumeSnapshot] | None = None,
        can_resume_validator: Callable[[ResumeSnapshot], bool] | None = None,
    ) -> None:
        self.job_type = job_type
        self._normalize = normalize or functools.partial(normalize_resume, job_type)
        self._can_resume_validator = can_resume_validator or _default_validator

        self._status: RunStatus = RunStatus.IDLE
        self._last_outcome: RunStatus | None = None
        self._stop_requested = False
        self._pause_requested = False
        self._token: CancellationToken | None = None
        self._resume_state: ResumeSnapshot | None = None
        self._extra_status: dict[str, Any] = {}

        self._total_tickers = 0
        self._processed_tickers = 0
        self._error_tickers = 0
        self._started_at: datetime.datetime | None = None
        self._finished_at: datetime.datetime | None = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._status in _ACTIVE_STATUSES

    @property
    def is_stopping(self) -> bool:
        return self.is_running and self._stop_requested

    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def last_outcome(self) -> RunStatus | None:
        """Terminal status of the most recent run, or None before the first."""
        return self._last_outcome

    @property
    def resume_state(self) -> ResumeSnapshot | None:
        return self._resume_state

    @property
    def cancellation_token(self) -> CancellationToken | None:
        """Token of the active run, or None when idle."""
        return self._token

    def should_stop(self) -> bool:
        """Polled by the driver before admitting each new item."""
        return self._stop_requested

    def can_resume(self) -> bool:
        """True iff a resume snapshot is stored and the job validator accepts it."""
        if self._resume_state is None:
            return False
        return self._can_resume_validator(self._resume_state)

    def get_status(self) -> ScanStatusReport:
        """Return the current status merged with any extra status fields."""
        return ScanStatusReport(
            job_type=self.job_type,
            status=self._status,
            running=self.is_running,
            stop_requested=self.is_stopping,
            pause_requested=self.is_running and self._pause_requested,
            can_resume=self.can_resume(),
            total_tickers=self._total_tickers,
            processed_tickers=self._processed_tickers,
            error_tickers=self._error_tickers,
            started_at=self._started_at,
            finished_at=self._finished_at,
            last_outcome=self._last_outcome,
            **self._extra_status,
        )

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    def request_stop(self) -> bool:
        """Ask the active run to stop admitting work.

        Idempotent. Returns False (and changes nothing) when no run is active.
        """
        if not self.is_running:
            return False
        if not self._stop_requested:
            logger.info("Stop requested for %s", self.job_type)
        self._stop_requested = True
        self._status = RunStatus.STOPPING
        if self._token is not None:
            self._token.set()
        return True

    def request_pause(self) -> bool:
        """Same cooperative signal as ``request_stop``, flagged as a pause.

        The run still ends as ``stopped`` with a resume snapshot; the pause
        flag only records that the operator means to resume it.
        """
        if not self.is_running:
            return False
        self._pause_requested = True
        return self.request_stop()

    def set_resume_state(self, state: ResumeSnapshot | Mapping[str, Any] | None) -> None:
        """Overwrite or clear the resume snapshot.

        Raw mappings are normalized into this job's snapshot shape first.

        Raises:
            ResumeStateError: If a raw mapping cannot be normalized.
        """
        if state is None:
            self._resume_state = None
            return
        if isinstance(state, ResumeSnapshot):
            self._resume_state = self._normalize(state.model_dump())
        else:
            self._resume_state = self._normalize(dict(state))

    def set_extra_status(self, fields: Mapping[str, Any]) -> None:
        """Merge reporting-only fields into status reports.

        A ``None`` value removes the key. Keys that collide with core status
        fields are ignored.
        """
        for key, value in fields.items():
            if key in _RESERVED_STATUS_FIELDS:
                logger.debug("Ignoring reserved extra status field %r on %s", key, self.job_type)
                continue
            if value is None:
                self._extra_status.pop(key, None)
            else:
                self._extra_status[key] = value

    # ------------------------------------------------------------------
    # Driver lifecycle
    # ------------------------------------------------------------------

    def try_claim(self) -> CancellationToken | None:
        """Claim the handle for a new run.

        Must be called before the driver's first ``await``. Returns the run's
        cancellation token, or None if another run already holds the handle.
        """
        if self.is_running:
            return None
        self._status = RunStatus.RUNNING
        self._stop_requested = False
        self._pause_requested = False
        self._token = CancellationToken(self.job_type)
        self._total_tickers = 0
        self._processed_tickers = 0
        self._error_tickers = 0
        self._started_at = datetime.datetime.now(datetime.UTC)
        self._finished_at = None
        return self._token

    def mark_disabled(self) -> None:
        """Record that the upstream is not configured. Never touches a live run."""
        if self.is_running:
            return
        self._status = RunStatus.DISABLED
        self._last_outcome = RunStatus.DISABLED

    def enter_retry_phase(self) -> None:
        """Label the active run as retrying, unless a stop is already pending."""
        if self.is_running and not self._stop_requested:
            self._status = RunStatus.RUNNING_RETRY

    def update_progress(self, *, total: int, processed: int, errors: int) -> None:
        self._total_tickers = total
        self._processed_tickers = processed
        self._error_tickers = errors

    def release(self, outcome: RunStatus) -> None:
        """End the run: record its outcome and return the handle to ``idle``."""
        self._last_outcome = outcome
        self._status = RunStatus.IDLE
        self._stop_requested = False
        self._pause_requested = False
        self._token = None
        self._finished_at = datetime.datetime.now(datetime.UTC)
