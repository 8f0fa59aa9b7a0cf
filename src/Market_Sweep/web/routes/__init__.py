"""FastAPI route modules for Market Sweep.

Re-exports all routers so the application factory can import them:
    from Market_Sweep.web.routes import metrics_router, scans_router, tickers_router
"""

from Market_Sweep.web.routes.metrics import router as metrics_router
from Market_Sweep.web.routes.scans import router as scans_router
from Market_Sweep.web.routes.tickers import router as tickers_router

__all__ = [
    "metrics_router",
    "scans_router",
    "tickers_router",
]
