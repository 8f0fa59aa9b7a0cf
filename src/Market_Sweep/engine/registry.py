"""Application-wide registry holding one ``ScanState`` per job type."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Final

from Market_Sweep.engine.scan_state import ScanState
from Market_Sweep.models.enums import JobType
from Market_Sweep.models.scan import ScanStatusReport
from Market_Sweep.utils.exceptions import ResumeStateError, ScanConflictError

if TYPE_CHECKING:
    from Market_Sweep.services.resume_store import ResumeStateStore

logger = logging.getLogger(__name__)

# Jobs that write price bars or rebuild tables from them must not overlap
_EXCLUSIVE_JOBS: Final[frozenset[JobType]] = frozenset(
    {JobType.FETCH_DAILY, JobType.FETCH_WEEKLY, JobType.TABLE_BUILD}
)


class ScanRegistry:
    """Owns the control handles and their persisted resume slots.

    Usage::

        registry = ScanRegistry(store=ResumeStateStore(repository))
        await registry.load_resume_states()
        state = registry.get(JobType.FETCH_DAILY)
    """

    def __init__(self, *, store: ResumeStateStore | None = None) -> None:
        self._store = store
        self._states: dict[JobType, ScanState] = {job: ScanState(job) for job in JobType}

    @property
    def store(self) -> ResumeStateStore | None:
        return self._store

    def get(self, job_type: JobType) -> ScanState:
        return self._states[job_type]

    def all(self) -> list[ScanState]:
        return list(self._states.values())

    def statuses(self) -> list[ScanStatusReport]:
        return [state.get_status() for state in self._states.values()]

    def blockers_for(self, job_type: JobType) -> list[ScanState]:
        """Handles whose active run must keep ``job_type`` from starting."""
        if job_type not in _EXCLUSIVE_JOBS:
            return []
        return [self._states[other] for other in _EXCLUSIVE_JOBS if other != job_type]

    def running(self) -> list[ScanState]:
        return [state for state in self._states.values() if state.is_running]

    async def load_resume_states(self) -> int:
        """Restore persisted snapshots into the handles. Returns how many loaded.

        A snapshot that no longer decodes is logged and cleared.
        """
        if self._store is None:
            return 0
        loaded = 0
        for job_type, state in self._states.items():
            raw = await self._store.load(job_type)
            if raw is None:
                continue
            try:
                state.set_resume_state(raw)
            except ResumeStateError as exc:
                logger.warning("Dropping undecodable resume state for %s: %s", job_type, exc)
                await self._store.save(job_type, None)
                continue
            loaded += 1
            logger.info(
                "Restored resume state for %s (can_resume=%s)", job_type, state.can_resume()
            )
        return loaded

    async def reset_resume(self, job_type: JobType) -> None:
        """Clear a job's resume snapshot so its next run starts fresh.

        Raises:
            ScanConflictError: If the job is currently running.
        """
        state = self._states[job_type]
        if state.is_running:
            msg = f"Cannot reset resume state while {job_type} is running"
            raise ScanConflictError(msg, job_type=job_type)
        state.set_resume_state(None)
        if self._store is not None:
            await self._store.save(job_type, None)
        logger.info("Resume state for %s reset", job_type)
