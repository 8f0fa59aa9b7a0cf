"""FastAPI app factory and application lifespan."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from Market_Sweep.config import Settings
from Market_Sweep.logging_config import configure_logging
from Market_Sweep.services.calendar import TradingCalendar
from Market_Sweep.services.scan_runner import open_runtime
from Market_Sweep.services.scheduler import build_schedulers
from Market_Sweep.web.middleware import RequestLoggingMiddleware, register_exception_handlers

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    calendar: TradingCalendar | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    The lifespan opens the runtime (database, registry, runner), starts the
    schedulers when enabled, and stores everything on ``app.state`` for the
    dependency providers in ``web.deps``.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        async with open_runtime(settings, calendar=calendar) as runtime:
            app.state.runtime = runtime
            app.state.settings = settings
            app.state.registry = runtime.registry
            app.state.runner = runtime.runner
            app.state.history = runtime.history
            app.state.repository = runtime.repository

            schedulers = build_schedulers(runtime.runner, runtime.calendar)
            if settings.scheduler_enabled and settings.data_api_configured:
                for scheduler in schedulers:
                    scheduler.start()
            else:
                logger.info("Schedulers disabled")
            app.state.schedulers = schedulers
            try:
                yield
            finally:
                for scheduler in schedulers:
                    scheduler.stop()

    configure_logging()

    app = FastAPI(title="Market Sweep", docs_url=None, redoc_url=None, lifespan=lifespan)

    register_exception_handlers(app)
    app.add_middleware(RequestLoggingMiddleware)

    from Market_Sweep.web.routes import metrics_router, scans_router, tickers_router

    app.include_router(scans_router, prefix="/api")
    app.include_router(metrics_router, prefix="/api")
    app.include_router(tickers_router, prefix="/api")

    @app.get("/api/health")
    async def health_check() -> JSONResponse:
        running = [str(state.job_type) for state in app.state.registry.running()]
        return JSONResponse({"status": "ok", "running": running})

    logger.info("Market Sweep web app created")
    return app
