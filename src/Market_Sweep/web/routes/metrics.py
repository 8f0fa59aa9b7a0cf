"""Run metrics routes.

GET /api/metrics/runs           - Most recent run snapshots, newest first.
GET /api/metrics/runs/{run_id}  - One run snapshot.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from Market_Sweep.models.metrics import RunMetricsSnapshot
from Market_Sweep.services.metrics import MetricsHistory
from Market_Sweep.web.deps import get_history

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("/runs", response_model=list[RunMetricsSnapshot])
async def list_runs(
    history: Annotated[MetricsHistory, Depends(get_history)],
    limit: Annotated[int, Query(ge=1, le=200)] = 20,
) -> list[RunMetricsSnapshot]:
    return history.recent(limit)


@router.get("/runs/{run_id}", response_model=RunMetricsSnapshot)
async def get_run(
    run_id: str,
    history: Annotated[MetricsHistory, Depends(get_history)],
) -> RunMetricsSnapshot:
    snapshot = await history.get(run_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return snapshot
