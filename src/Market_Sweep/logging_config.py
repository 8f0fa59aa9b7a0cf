"""Centralized logging configuration for CLI and web entry points.

Everything logs through stdlib ``logging``. Entry points call
``configure_logging`` once; library modules only ever do
``logger = logging.getLogger(__name__)``.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Final

LOG_FORMAT: Final[str] = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

LOG_FILE_MAX_BYTES: Final[int] = 10 * 1024 * 1024
LOG_FILE_BACKUPS: Final[int] = 5

# LOG_LEVEL_{AREA} -> package logger it adjusts
_AREA_LOGGERS: Final[dict[str, str]] = {
    "ENGINE": "Market_Sweep.engine",
    "SERVICES": "Market_Sweep.services",
    "WEB": "Market_Sweep.web",
    "DATA": "Market_Sweep.data",
}

# Third-party loggers that are too chatty for scans of thousands of tickers
_QUIET_LIBRARIES: Final[dict[str, int]] = {
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.INFO,
}


def _level_from_name(name: str | None) -> int | None:
    if not name:
        return None
    return logging.getLevelNamesMapping().get(name.strip().upper())


def configure_logging(
    *,
    level: str = "",
    verbose: bool = False,
    quiet: bool = False,
) -> int:
    """Configure the root logger and return the level it was set to.

    Priority: verbose > quiet > level param > LOG_LEVEL env > INFO default.
    Uses force=True to override uvicorn's prior root logger config.

    ``LOG_LEVEL_{AREA}`` (ENGINE, SERVICES, WEB, DATA) overrides one package,
    and ``MARKET_SWEEP_LOG_FILE`` adds a size-rotated file next to stderr.
    """
    if verbose:
        effective = logging.DEBUG
    elif quiet:
        effective = logging.WARNING
    else:
        effective = (
            _level_from_name(level)
            or _level_from_name(os.environ.get("LOG_LEVEL"))
            or logging.INFO
        )

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file = os.environ.get("MARKET_SWEEP_LOG_FILE", "").strip()
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=LOG_FILE_MAX_BYTES,
                backupCount=LOG_FILE_BACKUPS,
                encoding="utf-8",
            )
        )
    logging.basicConfig(level=effective, format=LOG_FORMAT, handlers=handlers, force=True)

    for name, library_level in _QUIET_LIBRARIES.items():
        logging.getLogger(name).setLevel(max(library_level, effective))

    for area, logger_name in _AREA_LOGGERS.items():
        override = _level_from_name(os.environ.get(f"LOG_LEVEL_{area}"))
        if override is not None:
            logging.getLogger(logger_name).setLevel(override)

    return effective
