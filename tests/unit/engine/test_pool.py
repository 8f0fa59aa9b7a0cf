"""Tests for map_with_concurrency."""

import asyncio

import pytest

from Market_Sweep.engine.pool import PoolResult, map_with_concurrency


class TestMapWithConcurrency:
    """Tests for the bounded worker pool."""

    @pytest.mark.asyncio()
    async def test_results_in_item_order(self) -> None:
        """Results come back ordered by index even when items finish out of order."""

        async def _worker(n: int) -> int:
            await asyncio.sleep(0.001 * (5 - n))
            return n * 10

        results = await map_with_concurrency([1, 2, 3, 4], _worker, concurrency=4)

        assert [r.index for r in results] == [0, 1, 2, 3]
        assert [r.value for r in results] == [10, 20, 30, 40]
        assert all(r.ok for r in results)

    @pytest.mark.asyncio()
    async def test_concurrency_bound(self) -> None:
        """Never more than ``concurrency`` workers are in flight."""
        in_flight = 0
        peak = 0

        async def _worker(n: int) -> int:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.001)
            in_flight -= 1
            return n

        await map_with_concurrency(list(range(20)), _worker, concurrency=3)

        assert peak == 3

    @pytest.mark.asyncio()
    async def test_errors_captured_per_item(self) -> None:
        """A raising worker produces an error result without aborting the pool."""

        async def _worker(n: int) -> int:
            if n == 2:
                msg = "bad item"
                raise ValueError(msg)
            return n

        results = await map_with_concurrency([1, 2, 3], _worker, concurrency=2)

        assert len(results) == 3
        failed = [r for r in results if not r.ok]
        assert len(failed) == 1
        assert failed[0].item == 2
        assert isinstance(failed[0].error, ValueError)

    @pytest.mark.asyncio()
    async def test_stop_prevents_new_admissions(self) -> None:
        """Once should_stop is True no further item starts."""
        started: list[int] = []
        stop = False

        async def _worker(n: int) -> int:
            nonlocal stop
            started.append(n)
            await asyncio.sleep(0)
            if n == 3:
                stop = True
            return n

        results = await map_with_concurrency(
            list(range(10)), _worker, concurrency=1, should_stop=lambda: stop
        )

        assert started == [0, 1, 2, 3]
        assert [r.item for r in results] == [0, 1, 2, 3]

    @pytest.mark.asyncio()
    async def test_in_flight_items_finish_after_stop(self) -> None:
        """Items already running complete even when a stop arrives mid-flight."""
        stop = False
        gate = asyncio.Event()
        started: list[int] = []

        async def _worker(n: int) -> int:
            started.append(n)
            await gate.wait()
            return n

        task = asyncio.create_task(
            map_with_concurrency(list(range(6)), _worker, concurrency=2, should_stop=lambda: stop)
        )
        while len(started) < 2:
            await asyncio.sleep(0)
        stop = True
        gate.set()
        results = await task

        assert [r.item for r in results] == [0, 1]
        assert all(r.ok for r in results)

    @pytest.mark.asyncio()
    async def test_on_settled_fires_once_per_item(self) -> None:
        settled: list[PoolResult[int, int]] = []

        async def _worker(n: int) -> int:
            return n

        await map_with_concurrency([5, 6, 7], _worker, concurrency=2, on_settled=settled.append)

        assert sorted(r.item for r in settled) == [5, 6, 7]

    @pytest.mark.asyncio()
    async def test_empty_input(self) -> None:
        async def _worker(n: int) -> int:
            return n

        assert await map_with_concurrency([], _worker, concurrency=4) == []
