"""Resume snapshots: where an interrupted run stopped, one shape per job type.

Every variant shares the same positional core (ticker list, next index,
counters carried over from before the stop) and adds the fields its job needs.
Construction normalizes raw input, so a snapshot decoded from a stale or
hand-edited row never carries an out-of-range index or a malformed
ticker list. Identifiers themselves are opaque and kept as stored.
"""

from __future__ import annotations

from typing import Annotated, Any, Final, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from Market_Sweep.models.enums import JobType, ScanTrigger
from Market_Sweep.utils.exceptions import ResumeStateError

MIN_FETCH_LOOKBACK_DAYS: Final[int] = 28
MIN_TABLE_LOOKBACK_DAYS: Final[int] = 45

_COUNTER_FIELDS: Final[tuple[str, ...]] = (
    "processed_tickers",
    "detected_tickers",
    "error_tickers",
)


def _ticker_ids(raw: object) -> list[str]:
    """Strip each identifier, keeping order and duplicates.

    ``next_index`` is positional, so entries are never dropped one by one.
    A list holding anything but strings is rejected as a whole.
    """
    if not isinstance(raw, list | tuple) or not all(isinstance(item, str) for item in raw):
        return []
    return [item.strip() for item in raw]


def _as_int(value: object) -> int:
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return 0


class ResumeSnapshot(BaseModel):
    """Fields common to every resume variant."""

    model_config = ConfigDict(frozen=True)

    as_of_date: str = ""
    tickers: list[str] = Field(default_factory=list)
    total_tickers: int = 0
    next_index: int = 0
    processed_tickers: int = 0
    detected_tickers: int = 0
    error_tickers: int = 0
    failed_tickers: list[str] = Field(default_factory=list)
    # Every ticker left already had its first attempt and only awaits the retry
    retry_only: bool = False

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        values = dict(data)
        tickers = _ticker_ids(values.get("tickers"))
        total = len(tickers)
        values["tickers"] = tickers
        values["total_tickers"] = total
        values["next_index"] = max(0, min(total, _as_int(values.get("next_index"))))
        for key in _COUNTER_FIELDS:
            values[key] = max(0, _as_int(values.get(key)))
        values["failed_tickers"] = _ticker_ids(values.get("failed_tickers"))
        values["as_of_date"] = str(values.get("as_of_date") or "").strip()
        values["retry_only"] = values.get("retry_only") is True
        return values

    def can_resume(self) -> bool:
        """A snapshot is usable when it is dated and has tickers left to process."""
        return (
            bool(self.as_of_date)
            and self.total_tickers > 0
            and self.next_index < self.total_tickers
        )

    @property
    def remaining_tickers(self) -> list[str]:
        return self.tickers[self.next_index :]

    @property
    def universe_size(self) -> int:
        """Size of the original universe this snapshot belongs to."""
        return self.processed_tickers + len(self.remaining_tickers)


class FetchDailyResume(ResumeSnapshot):
    """Interrupted daily bar refresh."""

    kind: Literal["fetch_daily"] = "fetch_daily"
    lookback_days: int = MIN_FETCH_LOOKBACK_DAYS
    last_published_date: str = ""

    @field_validator("lookback_days", mode="before")
    @classmethod
    def _clamp_lookback(cls, value: object) -> int:
        return max(MIN_FETCH_LOOKBACK_DAYS, _as_int(value))


class FetchWeeklyResume(FetchDailyResume):
    """Interrupted weekly bar refresh; ``as_of_date`` is the daily anchor."""

    kind: Literal["fetch_weekly"] = "fetch_weekly"  # type: ignore[assignment]
    weekly_trade_date: str = ""


class DetectorScanResume(ResumeSnapshot):
    """Interrupted divergence detector pass."""

    kind: Literal["detector_scan"] = "detector_scan"
    trigger: ScanTrigger = ScanTrigger.MANUAL


class TableBuildResume(ResumeSnapshot):
    """Interrupted summary-table rebuild."""

    kind: Literal["table_build"] = "table_build"
    lookback_days: int = MIN_TABLE_LOOKBACK_DAYS
    last_published_date: str = ""

    @field_validator("lookback_days", mode="before")
    @classmethod
    def _clamp_lookback(cls, value: object) -> int:
        return max(MIN_TABLE_LOOKBACK_DAYS, _as_int(value))


ResumeState = Annotated[
    FetchDailyResume | FetchWeeklyResume | DetectorScanResume | TableBuildResume,
    Field(discriminator="kind"),
]

_RESUME_ADAPTER: TypeAdapter[ResumeState] = TypeAdapter(ResumeState)

RESUME_MODELS: Final[dict[JobType, type[ResumeSnapshot]]] = {
    JobType.FETCH_DAILY: FetchDailyResume,
    JobType.FETCH_WEEKLY: FetchWeeklyResume,
    JobType.DETECTOR_SCAN: DetectorScanResume,
    JobType.TABLE_BUILD: TableBuildResume,
}


def normalize_resume(job_type: JobType, raw: dict[str, Any]) -> ResumeSnapshot:
    """Coerce a raw mapping into the canonical snapshot for ``job_type``.

    The ``kind`` key is forced to match the job type, so a payload saved by
    one job can never be resumed by another.

    Raises:
        ResumeStateError: If the payload cannot be validated at all.
    """
    payload = dict(raw)
    payload["kind"] = job_type.value
    try:
        return _RESUME_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        msg = f"Invalid resume state for {job_type}: {exc.error_count()} error(s)"
        raise ResumeStateError(msg, job_type=job_type) from exc
