"""Scan control routes.

GET    /api/scans               - Status of every job type.
GET    /api/scans/{job}         - Status of one job type.
POST   /api/scans/{job}/run     - Start a background run (202 Accepted).
POST   /api/scans/{job}/stop    - Request a cooperative stop.
POST   /api/scans/{job}/pause   - Request a pause (a stop meant to be resumed).
DELETE /api/scans/{job}/resume  - Discard the resume snapshot.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict

from Market_Sweep.engine.registry import ScanRegistry
from Market_Sweep.models.enums import JobType
from Market_Sweep.models.scan import ScanStatusReport
from Market_Sweep.services.scan_runner import ScanRunner
from Market_Sweep.web.deps import get_registry, get_runner, validate_job_type

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scans", tags=["scans"])

# ---------------------------------------------------------------------------
# Request / response models (web-layer schemas)
# ---------------------------------------------------------------------------


class RunRequest(BaseModel):
    """Input schema for starting a run."""

    model_config = ConfigDict(frozen=True)

    force_fresh: bool = False


class RunAccepted(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_type: JobType
    force_fresh: bool
    status: ScanStatusReport


class CommandResult(BaseModel):
    """Outcome of a stop/pause request. ``accepted`` is False when idle."""

    model_config = ConfigDict(frozen=True)

    job_type: JobType
    accepted: bool
    status: ScanStatusReport


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("", response_model=list[ScanStatusReport])
async def list_scans(
    registry: Annotated[ScanRegistry, Depends(get_registry)],
) -> list[ScanStatusReport]:
    return registry.statuses()


@router.get("/{job}", response_model=ScanStatusReport)
async def get_scan(
    job_type: Annotated[JobType, Depends(validate_job_type)],
    registry: Annotated[ScanRegistry, Depends(get_registry)],
) -> ScanStatusReport:
    return registry.get(job_type).get_status()


@router.post("/{job}/run", status_code=202, response_model=RunAccepted)
async def start_scan(
    job_type: Annotated[JobType, Depends(validate_job_type)],
    runner: Annotated[ScanRunner, Depends(get_runner)],
    request: RunRequest | None = None,
) -> RunAccepted:
    """Start a run in the background.

    Raises ScanConflictError (HTTP 409) when the job or one of its blockers
    is already running.
    """
    force_fresh = request.force_fresh if request is not None else False
    runner.start_background(job_type, force_fresh=force_fresh)
    return RunAccepted(
        job_type=job_type,
        force_fresh=force_fresh,
        status=runner.registry.get(job_type).get_status(),
    )


@router.post("/{job}/stop", response_model=CommandResult)
async def stop_scan(
    job_type: Annotated[JobType, Depends(validate_job_type)],
    runner: Annotated[ScanRunner, Depends(get_runner)],
) -> CommandResult:
    accepted = runner.request_stop(job_type)
    return CommandResult(
        job_type=job_type,
        accepted=accepted,
        status=runner.registry.get(job_type).get_status(),
    )


@router.post("/{job}/pause", response_model=CommandResult)
async def pause_scan(
    job_type: Annotated[JobType, Depends(validate_job_type)],
    runner: Annotated[ScanRunner, Depends(get_runner)],
) -> CommandResult:
    accepted = runner.request_pause(job_type)
    return CommandResult(
        job_type=job_type,
        accepted=accepted,
        status=runner.registry.get(job_type).get_status(),
    )


@router.delete("/{job}/resume", response_model=ScanStatusReport)
async def reset_resume(
    job_type: Annotated[JobType, Depends(validate_job_type)],
    registry: Annotated[ScanRegistry, Depends(get_registry)],
) -> ScanStatusReport:
    """Drop the stored resume snapshot so the next run starts fresh (409 while running)."""
    await registry.reset_resume(job_type)
    return registry.get(job_type).get_status()
