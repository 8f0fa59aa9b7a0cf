"""Custom exception hierarchy for the Market Sweep application.

Two families live here. ``DataFetchError`` and its subclasses describe
failures talking to the upstream market-data API or the universe source.
``ScanError`` and its subclasses describe failures of the scan orchestration
itself (cancellation, unusable resume snapshots, conflicting runs).
"""


class DataFetchError(Exception):
    """Base exception for all data-fetching failures.

    Attributes:
        ticker: The ticker symbol involved in the failure ("*" for universe-wide).
        source: The data source that failed (e.g., "data_api", "universe").
        http_status: The HTTP status code, if the failure was HTTP-related.
    """

    def __init__(
        self,
        message: str,
        *,
        ticker: str,
        source: str,
        http_status: int | None = None,
    ) -> None:
        self.ticker = ticker
        self.source = source
        self.http_status = http_status
        super().__init__(message)


class TickerNotFoundError(DataFetchError):
    """Raised when a ticker symbol does not exist in the data source."""


class DataSourceUnavailableError(DataFetchError):
    """Raised when a data source is unreachable or returning errors."""


class InsufficientDataError(DataFetchError):
    """Raised when available data is too sparse for the requested operation."""


class RateLimitExceededError(DataFetchError):
    """Raised when the data source rate limit has been hit.

    ``retry_after`` carries the server's Retry-After hint in seconds, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        ticker: str,
        source: str,
        http_status: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, ticker=ticker, source=source, http_status=http_status)
        self.retry_after = retry_after


class UniverseFetchError(DataFetchError):
    """Raised when the ticker universe for a run cannot be loaded."""


class ScanError(Exception):
    """Base exception for scan orchestration failures.

    Attributes:
        job_type: The job type whose run or state was involved.
    """

    def __init__(self, message: str, *, job_type: str) -> None:
        self.job_type = job_type
        super().__init__(message)


class ScanCancelledError(ScanError):
    """Raised by a cancellation token when an item worker checks it after stop."""


class ScanConflictError(ScanError):
    """Raised when an operator command is not allowed while a run is active."""


class ResumeStateError(ScanError):
    """Raised when a persisted resume snapshot cannot be decoded."""
