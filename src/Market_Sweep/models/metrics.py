"""Run metrics models: the JSON-serializable snapshot persisted per run."""

import datetime

from pydantic import BaseModel, ConfigDict, Field

from Market_Sweep.models.enums import JobType, RunStatus, ScanPhase


class LatencySummary(BaseModel):
    """Latency aggregates over the sampled API calls of one run, in ms."""

    model_config = ConfigDict(frozen=True)

    samples: int = 0
    avg_ms: float = 0.0
    p50_ms: float = 0.0
    p95_ms: float = 0.0


class ApiCallStats(BaseModel):
    """Upstream API call counters."""

    model_config = ConfigDict(frozen=True)

    calls: int = 0
    ok: int = 0
    failed: int = 0
    rate_limited: int = 0
    timed_out: int = 0
    aborted: int = 0
    latency: LatencySummary = Field(default_factory=LatencySummary)


class DbStats(BaseModel):
    """Database write counters."""

    model_config = ConfigDict(frozen=True)

    flush_count: int = 0
    rows_written: int = 0


class TickerStats(BaseModel):
    """Ticker progress counters and the (capped) failure lists."""

    model_config = ConfigDict(frozen=True)

    total: int = 0
    processed: int = 0
    detected: int = 0
    errors: int = 0
    failed: list[str] = Field(default_factory=list)
    retry_recovered: list[str] = Field(default_factory=list)


class RunMetricsSnapshot(BaseModel):
    """Counters and timings for a single run.

    Written once, at run completion, to the append-only run history.
    ``run_id`` is unique across all runs of all job types.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    run_type: JobType
    status: RunStatus
    phase: ScanPhase
    started_at: datetime.datetime
    finished_at: datetime.datetime | None = None
    duration_seconds: float = 0.0
    processed_per_second: float = 0.0
    api: ApiCallStats = Field(default_factory=ApiCallStats)
    db: DbStats = Field(default_factory=DbStats)
    tickers: TickerStats = Field(default_factory=TickerStats)
    meta: dict[str, str] = Field(default_factory=dict)
