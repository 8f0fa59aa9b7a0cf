"""Exception handlers and request logging middleware.

Maps domain exceptions from ``Market_Sweep.utils.exceptions`` to HTTP status
codes and logs every request with its method, path, status and duration.
"""

import logging
import time

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from Market_Sweep.utils.exceptions import (
    DataFetchError,
    DataSourceUnavailableError,
    InsufficientDataError,
    RateLimitExceededError,
    ResumeStateError,
    ScanConflictError,
    ScanError,
    TickerNotFoundError,
)

logger = logging.getLogger(__name__)

access_logger = logging.getLogger("Market_Sweep.web.access")


# ---------------------------------------------------------------------------
# Domain exception -> HTTP status handlers
# ---------------------------------------------------------------------------


async def _scan_conflict_handler(request: Request, exc: ScanConflictError) -> JSONResponse:
    """Map ScanConflictError to HTTP 409."""
    logger.info("Scan conflict: %s", exc)
    return JSONResponse(status_code=409, content={"detail": str(exc), "job_type": exc.job_type})


async def _resume_state_handler(request: Request, exc: ResumeStateError) -> JSONResponse:
    """Map ResumeStateError to HTTP 422."""
    logger.warning("Invalid resume state: %s", exc)
    return JSONResponse(status_code=422, content={"detail": str(exc), "job_type": exc.job_type})


async def _scan_error_handler(request: Request, exc: ScanError) -> JSONResponse:
    """Map any other ScanError to HTTP 500."""
    logger.error("Scan error: %s", exc)
    return JSONResponse(status_code=500, content={"detail": str(exc), "job_type": exc.job_type})


# Most specific first; anything else in the family is a 502
_DATA_ERROR_STATUS: tuple[tuple[type[DataFetchError], int], ...] = (
    (TickerNotFoundError, 404),
    (InsufficientDataError, 422),
    (RateLimitExceededError, 429),
    (DataSourceUnavailableError, 503),
)


async def _data_fetch_error_handler(request: Request, exc: DataFetchError) -> JSONResponse:
    """Map DataFetchError and its subclasses to 404/422/429/503, else 502."""
    status_code = next(
        (status for exc_type, status in _DATA_ERROR_STATUS if isinstance(exc, exc_type)),
        502,
    )
    if status_code >= 500:
        logger.error("Data fetch error (%s): %s", exc.source, exc)
    else:
        logger.warning("Data fetch error (%s): %s", exc.source, exc)

    headers: dict[str, str] | None = None
    if isinstance(exc, RateLimitExceededError) and exc.retry_after is not None:
        headers = {"Retry-After": str(max(1, round(exc.retry_after)))}
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "ticker": exc.ticker},
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all domain exception handlers on the FastAPI application.

    More specific exception types must be registered before their base classes
    so FastAPI matches them correctly.
    """
    app.add_exception_handler(ScanConflictError, _scan_conflict_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ResumeStateError, _resume_state_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ScanError, _scan_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(DataFetchError, _data_fetch_error_handler)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request; health checks go to DEBUG."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.monotonic()
        response = await call_next(request)
        duration_ms = (time.monotonic() - start_time) * 1000

        path = request.url.path
        level = logging.DEBUG if path == "/api/health" else logging.INFO
        access_logger.log(
            level,
            "%s %s -> %d (%.1fms)",
            request.method,
            path,
            response.status_code,
            duration_ms,
        )
        return response
