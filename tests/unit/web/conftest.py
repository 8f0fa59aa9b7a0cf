"""Shared fixtures for web route tests.

The app runs its real lifespan against a SQLite file under ``tmp_path`` with
the schedulers switched off and no data API key, so route tests never reach
external services.
"""

from __future__ import annotations

import logging
import pathlib
import time
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from Market_Sweep.config import Settings
from Market_Sweep.web.app import create_app


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    """create_app() reconfigures the root logger; restore it afterwards."""
    root = logging.getLogger()
    original_level = root.level
    original_handlers = root.handlers[:]
    yield
    root.setLevel(original_level)
    root.handlers = original_handlers


@pytest.fixture()
def settings(tmp_path: pathlib.Path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "web.db"),
        data_api_key="",
        scheduler_enabled=False,
    )


@pytest.fixture()
def app(settings: Settings) -> FastAPI:
    return create_app(settings)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    """TestClient with the lifespan running for the duration of the test."""
    with TestClient(app) as test_client:
        yield test_client


def wait_for(predicate: Callable[[], Any], timeout: float = 5.0) -> Any:
    """Poll ``predicate`` until it returns something truthy, or fail."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(0.01)
    msg = "condition not met before timeout"
    raise AssertionError(msg)


@pytest.fixture()
def wait() -> Callable[..., Any]:
    return wait_for
