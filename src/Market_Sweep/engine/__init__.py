"""Resumable batch-scan engine.

Re-exports the control handle, the driver and the job interface:
    from Market_Sweep.engine import ScanDriver, ScanRegistry, ScanState
"""

from Market_Sweep.engine.cancellation import CancellationToken
from Market_Sweep.engine.dependencies import ScanDependencies, ScanJob
from Market_Sweep.engine.driver import ScanDriver
from Market_Sweep.engine.pool import PoolResult, map_with_concurrency
from Market_Sweep.engine.registry import ScanRegistry
from Market_Sweep.engine.scan_state import ScanState

__all__ = [
    "CancellationToken",
    "PoolResult",
    "ScanDependencies",
    "ScanDriver",
    "ScanJob",
    "ScanRegistry",
    "ScanState",
    "map_with_concurrency",
]
