"""Bounded-concurrency worker pool with cooperative stop between admissions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolResult[T, R]:
    """Settlement of one item: either a value or the exception it raised."""

    index: int
    item: T
    value: R | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def map_with_concurrency[T, R](
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    concurrency: int,
    should_stop: Callable[[], bool] | None = None,
    on_settled: Callable[[PoolResult[T, R]], None] | None = None,
) -> list[PoolResult[T, R]]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` calls in flight.

    Items are admitted in order from a shared cursor. ``should_stop`` is
    checked before every admission; once it returns True no new item starts,
    but items already in flight run to completion. Worker exceptions are
    captured per item and never abort the pool. ``on_settled`` fires once per
    item as soon as it settles.

    Returns:
        Settled results ordered by item index. Items never admitted (because
        of a stop) are absent.
    """
    results: list[PoolResult[T, R]] = []
    cursor = 0

    async def _lane() -> None:
        nonlocal cursor
        while cursor < len(items):
            if should_stop is not None and should_stop():
                return
            index = cursor
            cursor += 1
            item = items[index]
            try:
                value = await worker(item)
                result: PoolResult[T, R] = PoolResult(index=index, item=item, value=value)
            except Exception as exc:  # noqa: BLE001
                result = PoolResult(index=index, item=item, error=exc)
            results.append(result)
            if on_settled is not None:
                on_settled(result)

    lanes = max(1, min(concurrency, len(items)))
    if items:
        await asyncio.gather(*(_lane() for _ in range(lanes)))

    results.sort(key=lambda r: r.index)
    return results
