"""Repository layer for all database query operations.

Provides typed CRUD operations backed by a Database instance. All queries use
parameterized SQL (no string interpolation). JSON columns are serialized with
json.dumps() and deserialized with json.loads(). Writes from scan workers are
upserts, so re-processing a ticker after a resume is harmless.
"""

import datetime
import json
import logging
import sqlite3
from decimal import Decimal
from typing import Any

from Market_Sweep.data.database import Database
from Market_Sweep.models.enums import JobType
from Market_Sweep.models.market_data import OHLCV, DivergenceSignal, TickerSummary, TrackedTicker
from Market_Sweep.models.metrics import RunMetricsSnapshot

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.datetime.now(datetime.UTC).isoformat()


class Repository:
    """Query interface for the Market Sweep persistence layer.

    All methods operate through the provided Database instance's connection.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Tracked tickers (the scan universe)
    # ------------------------------------------------------------------

    async def add_tickers(self, symbols: list[str], *, names: dict[str, str] | None = None) -> int:
        """Insert or reactivate symbols. Returns the number of rows touched."""
        names = names or {}
        now = _now_iso()
        rows = [(symbol, names.get(symbol, ""), now) for symbol in symbols]
        async with self._db.transaction() as conn:
            await conn.executemany(
                "INSERT INTO tracked_tickers (symbol, name, active, added_at) "
                "VALUES (?, ?, 1, ?) "
                "ON CONFLICT(symbol) DO UPDATE SET active = 1, "
                "name = CASE WHEN excluded.name != '' THEN excluded.name ELSE name END",
                rows,
            )
        return len(rows)

    async def deactivate_ticker(self, symbol: str) -> bool:
        """Drop a symbol from future universes. Returns False if it was unknown."""
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE tracked_tickers SET active = 0 WHERE symbol = ?",
                (symbol,),
            )
        return cursor.rowcount > 0

    async def list_active_symbols(self) -> list[str]:
        """Active symbols in alphabetical order (the order scans process them)."""
        conn = self._db.connection
        cursor = await conn.execute(
            "SELECT symbol FROM tracked_tickers WHERE active = 1 ORDER BY symbol"
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def list_tracked_tickers(self, *, include_inactive: bool = False) -> list[TrackedTicker]:
        conn = self._db.connection
        sql = "SELECT symbol, name, active, added_at FROM tracked_tickers"
        if not include_inactive:
            sql += " WHERE active = 1"
        cursor = await conn.execute(sql + " ORDER BY symbol")
        rows = await cursor.fetchall()
        return [
            TrackedTicker(
                symbol=row[0],
                name=row[1],
                active=bool(row[2]),
                added_at=datetime.datetime.fromisoformat(row[3]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Price bars
    # ------------------------------------------------------------------

    async def upsert_bars(self, ticker: str, interval: str, bars: list[OHLCV]) -> int:
        """Insert or overwrite bars for a ticker. Returns the number of rows written."""
        if not bars:
            return 0
        now = _now_iso()
        rows = [
            (
                ticker,
                interval,
                bar.date.isoformat(),
                str(bar.open),
                str(bar.high),
                str(bar.low),
                str(bar.close),
                bar.volume,
                now,
            )
            for bar in bars
        ]
        async with self._db.transaction() as conn:
            await conn.executemany(
                "INSERT INTO price_bars "
                "(ticker, interval, bar_date, open, high, low, close, volume, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(ticker, interval, bar_date) DO UPDATE SET "
                "open = excluded.open, high = excluded.high, low = excluded.low, "
                "close = excluded.close, volume = excluded.volume, "
                "updated_at = excluded.updated_at",
                rows,
            )
        return len(rows)

    async def get_bars(
        self,
        ticker: str,
        interval: str,
        *,
        end_date: datetime.date | None = None,
        limit: int = 120,
    ) -> list[OHLCV]:
        """Return up to ``limit`` most recent bars, oldest first."""
        conn = self._db.connection
        end = (end_date or datetime.date.max).isoformat()
        cursor = await conn.execute(
            "SELECT bar_date, open, high, low, close, volume FROM price_bars "
            "WHERE ticker = ? AND interval = ? AND bar_date <= ? "
            "ORDER BY bar_date DESC LIMIT ?",
            (ticker, interval, end, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_ohlcv(row) for row in reversed(rows)]

    # ------------------------------------------------------------------
    # Detector results and summaries
    # ------------------------------------------------------------------

    async def upsert_detection(self, signal: DivergenceSignal) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO detection_results "
                "(ticker, trade_date, detected, direction, price_change_pct, "
                "volume_delta, scanned_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    signal.ticker,
                    signal.trade_date.isoformat(),
                    int(signal.detected),
                    signal.direction,
                    signal.price_change_pct,
                    signal.volume_delta,
                    _now_iso(),
                ),
            )

    async def list_detections(self, trade_date: datetime.date) -> list[DivergenceSignal]:
        """Detected signals for a trade date, strongest price move first."""
        conn = self._db.connection
        cursor = await conn.execute(
            "SELECT ticker, trade_date, detected, direction, price_change_pct, volume_delta "
            "FROM detection_results WHERE trade_date = ? AND detected = 1 "
            "ORDER BY ABS(price_change_pct) DESC",
            (trade_date.isoformat(),),
        )
        rows = await cursor.fetchall()
        return [
            DivergenceSignal(
                ticker=row[0],
                trade_date=datetime.date.fromisoformat(row[1]),
                detected=bool(row[2]),
                direction=row[3],
                price_change_pct=row[4],
                volume_delta=row[5],
            )
            for row in rows
        ]

    async def upsert_summary(self, summary: TickerSummary) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO ticker_summaries "
                "(ticker, as_of_date, last_close, change_pct_1d, change_pct_5d, "
                "avg_volume_20d, divergence_direction, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    summary.ticker,
                    summary.as_of_date.isoformat(),
                    str(summary.last_close),
                    summary.change_pct_1d,
                    summary.change_pct_5d,
                    summary.avg_volume_20d,
                    summary.divergence_direction,
                    _now_iso(),
                ),
            )

    async def list_summaries(self) -> list[TickerSummary]:
        conn = self._db.connection
        cursor = await conn.execute(
            "SELECT ticker, as_of_date, last_close, change_pct_1d, change_pct_5d, "
            "avg_volume_20d, divergence_direction FROM ticker_summaries ORDER BY ticker"
        )
        rows = await cursor.fetchall()
        return [
            TickerSummary(
                ticker=row[0],
                as_of_date=datetime.date.fromisoformat(row[1]),
                last_close=Decimal(row[2]),
                change_pct_1d=row[3],
                change_pct_5d=row[4],
                avg_volume_20d=row[5],
                divergence_direction=row[6],
            )
            for row in rows
        ]

    async def get_latest_detection_direction(self, ticker: str) -> str:
        """Direction of the ticker's most recent detector row, ``"none"`` if absent."""
        conn = self._db.connection
        cursor = await conn.execute(
            "SELECT direction FROM detection_results WHERE ticker = ? "
            "ORDER BY trade_date DESC LIMIT 1",
            (ticker,),
        )
        row = await cursor.fetchone()
        return row[0] if row is not None else "none"

    # ------------------------------------------------------------------
    # Resume state slots
    # ------------------------------------------------------------------

    async def save_resume_state(self, job_type: JobType, payload: dict[str, Any] | None) -> None:
        """Overwrite a job's resume slot. ``None`` clears it."""
        async with self._db.transaction() as conn:
            await conn.execute(
                "INSERT INTO scan_resume_state (job_type, payload, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(job_type) DO UPDATE SET payload = excluded.payload, "
                "updated_at = excluded.updated_at",
                (
                    str(job_type),
                    json.dumps(payload) if payload is not None else None,
                    _now_iso(),
                ),
            )

    async def load_resume_state(self, job_type: JobType) -> dict[str, Any] | None:
        conn = self._db.connection
        cursor = await conn.execute(
            "SELECT payload FROM scan_resume_state WHERE job_type = ?",
            (str(job_type),),
        )
        row = await cursor.fetchone()
        if row is None or row[0] is None:
            return None
        try:
            payload = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("Corrupt resume payload for %s, ignoring", job_type)
            return None
        return payload if isinstance(payload, dict) else None

    # ------------------------------------------------------------------
    # Run metrics history
    # ------------------------------------------------------------------

    async def insert_run_metrics(self, snapshot: RunMetricsSnapshot) -> None:
        """Append a run snapshot.

        Raises:
            sqlite3.IntegrityError: If ``run_id`` was already recorded.
        """
        async with self._db.transaction() as conn:
            await conn.execute(
                "INSERT INTO run_metrics_history "
                "(run_id, run_type, status, snapshot, started_at, finished_at, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    snapshot.run_id,
                    str(snapshot.run_type),
                    str(snapshot.status),
                    snapshot.model_dump_json(),
                    snapshot.started_at.isoformat(),
                    snapshot.finished_at.isoformat() if snapshot.finished_at else None,
                    _now_iso(),
                ),
            )

    async def prune_run_metrics(self, *, retain: int) -> int:
        """Delete all but the newest ``retain`` rows. Returns rows deleted."""
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM run_metrics_history WHERE id NOT IN "
                "(SELECT id FROM run_metrics_history ORDER BY id DESC LIMIT ?)",
                (retain,),
            )
        return max(0, cursor.rowcount)

    async def list_run_metrics(
        self,
        *,
        limit: int = 40,
        run_type: JobType | None = None,
    ) -> list[RunMetricsSnapshot]:
        """Newest snapshots first, optionally for a single job type."""
        conn = self._db.connection
        if run_type is None:
            cursor = await conn.execute(
                "SELECT snapshot FROM run_metrics_history ORDER BY id DESC LIMIT ?",
                (limit,),
            )
        else:
            cursor = await conn.execute(
                "SELECT snapshot FROM run_metrics_history WHERE run_type = ? "
                "ORDER BY id DESC LIMIT ?",
                (str(run_type), limit),
            )
        rows = await cursor.fetchall()
        return [RunMetricsSnapshot.model_validate_json(row[0]) for row in rows]

    async def get_run_metrics(self, run_id: str) -> RunMetricsSnapshot | None:
        conn = self._db.connection
        cursor = await conn.execute(
            "SELECT snapshot FROM run_metrics_history WHERE run_id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return RunMetricsSnapshot.model_validate_json(row[0])

    async def count_run_metrics(self) -> int:
        conn = self._db.connection
        cursor = await conn.execute("SELECT COUNT(*) FROM run_metrics_history")
        row = await cursor.fetchone()
        return int(row[0]) if row is not None else 0


# ------------------------------------------------------------------
# Row-to-model helpers
# ------------------------------------------------------------------


def _row_to_ohlcv(row: sqlite3.Row | tuple[Any, ...]) -> OHLCV:
    return OHLCV(
        date=datetime.date.fromisoformat(row[0]),
        open=Decimal(row[1]),
        high=Decimal(row[2]),
        low=Decimal(row[3]),
        close=Decimal(row[4]),
        volume=row[5],
    )
