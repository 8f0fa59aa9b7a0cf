"""Scan models: run summaries, per-item outcomes, and status reports."""

import datetime

from pydantic import BaseModel, ConfigDict, Field

from Market_Sweep.models.enums import JobType, RunStatus


class ItemOutcome(BaseModel):
    """What one item worker call produced for a single ticker."""

    model_config = ConfigDict(frozen=True)

    ticker: str
    detected: bool = False
    rows_written: int = 0


class RunSummary(BaseModel):
    """Final result of one driver invocation.

    Returned to the caller (scheduler, CLI, route handler) and never mutated
    afterward. Guard results (``running``, ``disabled``) carry zero counts.
    """

    model_config = ConfigDict(frozen=True)

    job_type: JobType
    status: RunStatus
    run_id: str | None = None
    total_tickers: int = 0
    processed_tickers: int = 0
    detected_tickers: int = 0
    error_tickers: int = 0
    failed_tickers: list[str] = Field(default_factory=list)
    retry_recovered: list[str] = Field(default_factory=list)
    resumed: bool = False
    started_at: datetime.datetime | None = None
    finished_at: datetime.datetime | None = None
    error: str | None = None


class ScanStatusReport(BaseModel):
    """Point-in-time view of one job's control handle.

    ``extra="allow"`` lets job-specific fields set through
    ``ScanState.set_extra_status`` ride along in the same JSON object.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    job_type: JobType
    status: RunStatus
    running: bool
    stop_requested: bool
    pause_requested: bool
    can_resume: bool
    total_tickers: int = 0
    processed_tickers: int = 0
    error_tickers: int = 0
    started_at: datetime.datetime | None = None
    finished_at: datetime.datetime | None = None
    last_outcome: RunStatus | None = None
