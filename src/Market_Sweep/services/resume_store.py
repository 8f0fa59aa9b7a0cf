"""SQLite-backed slot for each job type's resume snapshot."""

from __future__ import annotations

import logging
from typing import Any

from Market_Sweep.data.repository import Repository
from Market_Sweep.models.enums import JobType
from Market_Sweep.models.resume import ResumeSnapshot

logger = logging.getLogger(__name__)


class ResumeStateStore:
    """One nullable snapshot per job type, stored as JSON.

    Snapshots are written as plain mappings and handed back the same way;
    ``ScanState.set_resume_state`` normalizes them on load.
    """

    def __init__(self, repository: Repository) -> None:
        self._repository = repository

    async def save(self, job_type: JobType, snapshot: ResumeSnapshot | None) -> None:
        """Overwrite (or clear, with None) the slot for ``job_type``."""
        payload = snapshot.model_dump(mode="json") if snapshot is not None else None
        await self._repository.save_resume_state(job_type, payload)
        logger.debug(
            "Resume state for %s %s",
            job_type,
            "saved" if payload is not None else "cleared",
        )

    async def load(self, job_type: JobType) -> dict[str, Any] | None:
        """Return the stored mapping for ``job_type``, or None if the slot is empty."""
        return await self._repository.load_resume_state(job_type)
