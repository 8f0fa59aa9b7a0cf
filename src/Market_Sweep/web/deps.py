"""Dependency injection providers for FastAPI route handlers.

Everything shared lives on ``app.state`` and is created by the lifespan in
``web.app``. Route handlers declare these providers with ``Depends()`` and
never construct the objects themselves.
"""

import logging
from typing import Annotated

from fastapi import HTTPException, Path, Request

from Market_Sweep.data.repository import Repository
from Market_Sweep.engine.registry import ScanRegistry
from Market_Sweep.models.enums import JobType
from Market_Sweep.services.metrics import MetricsHistory
from Market_Sweep.services.scan_runner import ScanRunner

logger = logging.getLogger(__name__)


async def get_registry(request: Request) -> ScanRegistry:
    return request.app.state.registry


async def get_runner(request: Request) -> ScanRunner:
    return request.app.state.runner


async def get_history(request: Request) -> MetricsHistory:
    return request.app.state.history


async def get_repository(request: Request) -> Repository:
    return request.app.state.repository


async def validate_job_type(
    job: Annotated[str, Path(description="Job type, e.g. fetch_daily")],
) -> JobType:
    """Resolve the ``{job}`` path parameter to a ``JobType``.

    Accepts dashes in place of underscores. Raises HTTP 404 for unknown jobs.
    """
    normalized = job.strip().lower().replace("-", "_")
    try:
        return JobType(normalized)
    except ValueError:
        valid = ", ".join(str(j) for j in JobType)
        raise HTTPException(
            status_code=404,
            detail=f"Unknown job type: '{job}'. Expected one of: {valid}.",
        ) from None
