"""FastAPI admin API for Market Sweep.

Re-exports the application factory so consumers can import directly:
    from Market_Sweep.web import create_app
"""

from Market_Sweep.web.app import create_app

__all__ = ["create_app"]
