"""Tests for run metrics routes."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from fastapi.testclient import TestClient


def _run_and_wait(client: TestClient, wait: Callable[..., Any], job: str) -> str:
    client.post(f"/api/scans/{job}/run")
    return wait(lambda: client.get(f"/api/scans/{job}").json().get("last_run_id"))


class TestMetricsRoutes:
    def test_empty_history(self, client: TestClient) -> None:
        response = client.get("/api/metrics/runs")

        assert response.status_code == 200
        assert response.json() == []

    def test_finished_run_listed_and_fetchable(
        self, client: TestClient, wait: Callable[..., Any]
    ) -> None:
        run_id = _run_and_wait(client, wait, "detector_scan")

        runs = client.get("/api/metrics/runs").json()
        assert [r["run_id"] for r in runs] == [run_id]
        assert runs[0]["run_type"] == "detector_scan"
        assert runs[0]["status"] == "completed"

        single = client.get(f"/api/metrics/runs/{run_id}")
        assert single.status_code == 200
        assert single.json()["run_id"] == run_id

    def test_newest_first_with_limit(self, client: TestClient, wait: Callable[..., Any]) -> None:
        _run_and_wait(client, wait, "detector_scan")
        newest = _run_and_wait(client, wait, "table_build")

        runs = client.get("/api/metrics/runs", params={"limit": 1}).json()
        assert [r["run_id"] for r in runs] == [newest]

    def test_unknown_run_is_404(self, client: TestClient) -> None:
        response = client.get("/api/metrics/runs/detector_scan-0-abcdef")

        assert response.status_code == 404
        assert "Run not found" in response.json()["detail"]

    def test_limit_validated(self, client: TestClient) -> None:
        assert client.get("/api/metrics/runs", params={"limit": 0}).status_code == 422
