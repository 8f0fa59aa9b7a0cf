"""StrEnum types for scan orchestration.

All enums use Python 3.13+ StrEnum. Use enum members in business logic,
never raw strings.
"""

from enum import StrEnum


class JobType(StrEnum):
    """The long-running job families driven by the scan engine."""

    FETCH_DAILY = "fetch_daily"
    FETCH_WEEKLY = "fetch_weekly"
    DETECTOR_SCAN = "detector_scan"
    TABLE_BUILD = "table_build"


class RunStatus(StrEnum):
    """Lifecycle and terminal statuses of a scan run.

    ``RUNNING_RETRY`` is a phase label shown while the retry pass is active;
    the state machine still treats it as running.
    """

    DISABLED = "disabled"
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    RUNNING_RETRY = "running-retry"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed-with-errors"
    STOPPED = "stopped"
    FAILED = "failed"


class ScanPhase(StrEnum):
    """Coarse phase of an active run, reported through the metrics tracker."""

    STARTING = "starting"
    PROCESSING = "processing"
    RETRY = "retry"
    FINALIZING = "finalizing"


class ScanTrigger(StrEnum):
    """Who started a run."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
