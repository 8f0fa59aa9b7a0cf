"""Cooperative cancellation token shared by a run and its item workers."""

from __future__ import annotations

import asyncio

from Market_Sweep.utils.exceptions import ScanCancelledError


class CancellationToken:
    """Cancellation signal for one run.

    The driver never interrupts an in-flight item. Workers that want to bail
    out early check ``is_set`` (or call ``raise_if_set``) between their own
    sub-operations, or race ``wait()`` against a slow call.
    """

    def __init__(self, job_type: str = "") -> None:
        self._job_type = job_type
        self._event = asyncio.Event()

    @property
    def is_set(self) -> bool:
        """Return True if cancellation has been requested."""
        return self._event.is_set()

    def set(self) -> None:
        """Request cancellation."""
        self._event.set()

    def reset(self) -> None:
        """Clear the cancellation flag."""
        self._event.clear()

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()

    def raise_if_set(self, ticker: str = "") -> None:
        """Raise ScanCancelledError if cancellation has been requested."""
        if self._event.is_set():
            suffix = f" while processing {ticker}" if ticker else ""
            msg = f"{self._job_type or 'scan'} cancelled{suffix}"
            raise ScanCancelledError(msg, job_type=self._job_type)
