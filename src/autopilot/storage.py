from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from .strategies import PerformanceSnapshot


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS bot_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL UNIQUE,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    config_json TEXT NOT NULL,
    started_at TEXT NOT NULL,
    stopped_at TEXT,
    scan_count INTEGER DEFAULT 0,
    error_count INTEGER DEFAULT 0,
    last_error TEXT
);

CREATE TABLE IF NOT EXISTS bot_activity (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT,
    type TEXT NOT NULL,
    symbol TEXT,
    message TEXT NOT NULL,
    status TEXT NOT NULL,
    details TEXT,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bot_metrics (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    session_id TEXT,
    is_running INTEGER NOT NULL DEFAULT 0,
    uptime_seconds REAL DEFAULT 0,
    trades_executed INTEGER DEFAULT 0,
    success_rate REAL DEFAULT 0,
    total_pnl REAL DEFAULT 0,
    daily_pnl REAL DEFAULT 0,
    risk_score REAL DEFAULT 0,
    last_activity TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT,
    broker_order_id TEXT,
    symbol TEXT NOT NULL,
    mode TEXT NOT NULL,
    side TEXT NOT NULL,
    quantity REAL,
    price REAL,
    status TEXT NOT NULL,
    confidence REAL,
    strategies TEXT,
    realized_pnl REAL,
    rationale TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS recommendations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT,
    symbol TEXT NOT NULL,
    action TEXT NOT NULL,
    quantity REAL,
    price REAL,
    stop_loss REAL,
    target_price REAL,
    confidence REAL,
    reasoning TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS risk_assessments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT,
    symbol TEXT NOT NULL,
    action TEXT NOT NULL,
    approved INTEGER NOT NULL,
    risk_score REAL,
    risk_level TEXT,
    rejections TEXT,
    assessment_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS strategy_performance (
    strategy_id TEXT PRIMARY KEY,
    total_trades INTEGER NOT NULL DEFAULT 0,
    winning_trades INTEGER NOT NULL DEFAULT 0,
    total_pnl REAL NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS equity_marks (
    trading_day TEXT PRIMARY KEY,
    day_start_equity REAL NOT NULL,
    peak_equity REAL NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_orders_created ON orders(created_at);
CREATE INDEX IF NOT EXISTS idx_recommendations_created ON recommendations(created_at);
CREATE INDEX IF NOT EXISTS idx_activity_timestamp ON bot_activity(timestamp);
"""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def to_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


class BotStorage:
    """SQLite persistence for sessions, activity, metrics, orders and strategy results.

    Every call opens its own connection, so the store can be shared between
    the scan thread and API request threads.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        with self.connect() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.execute(
                "INSERT OR IGNORE INTO bot_metrics (id, is_running, updated_at) VALUES (1, 0, ?)",
                (now_iso(),),
            )

    # ── Sessions ──────────────────────────────────────────────────

    def record_session_start(self, session_id: str, mode: str, config: dict[str, Any], started_at: datetime) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO bot_sessions (session_id, mode, status, config_json, started_at)
                VALUES (?, ?, 'running', ?, ?)
                """,
                (session_id, mode, json.dumps(config, default=str), to_iso(started_at)),
            )

    def record_session_stop(
        self,
        session_id: str,
        scan_count: int,
        error_count: int,
        last_error: str | None,
        status: str = "stopped",
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE bot_sessions
                SET status = ?, stopped_at = ?, scan_count = ?, error_count = ?, last_error = ?
                WHERE session_id = ?
                """,
                (status, now_iso(), scan_count, error_count, last_error, session_id),
            )

    def abort_stale_sessions(self) -> int:
        """Mark sessions left running by a process that died as aborted."""
        with self.connect() as conn:
            cursor = conn.execute(
                "UPDATE bot_sessions SET status = 'aborted', stopped_at = ? WHERE status = 'running'",
                (now_iso(),),
            )
            conn.execute("UPDATE bot_metrics SET is_running = 0, updated_at = ? WHERE id = 1", (now_iso(),))
            return cursor.rowcount

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM bot_sessions WHERE session_id = ?", (session_id,)).fetchone()
        return dict(row) if row else None

    # ── Activity & metrics ────────────────────────────────────────

    def log_activity(
        self,
        type: str,
        message: str,
        status: str,
        details: dict[str, Any] | str | None = None,
        session_id: str | None = None,
        symbol: str | None = None,
    ) -> None:
        if isinstance(details, dict):
            details = json.dumps(details, default=str)
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO bot_activity (session_id, type, symbol, message, status, details, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (session_id, type, symbol, message, status, details, now_iso()),
            )

    def recent_activity(self, limit: int = 50) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM bot_activity ORDER BY id DESC LIMIT ?", (max(1, limit),)
            ).fetchall()
        return [dict(r) for r in rows]

    def update_metrics(
        self,
        session_id: str | None,
        is_running: bool,
        uptime_seconds: float,
        risk_score: float | None = None,
        day_start: datetime | None = None,
    ) -> dict[str, Any]:
        stats = self.trade_stats(day_start)
        timestamp = now_iso()
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE bot_metrics
                SET session_id = ?, is_running = ?, uptime_seconds = ?,
                    trades_executed = ?, success_rate = ?, total_pnl = ?, daily_pnl = ?,
                    risk_score = COALESCE(?, risk_score), last_activity = ?, updated_at = ?
                WHERE id = 1
                """,
                (
                    session_id, int(is_running), uptime_seconds,
                    stats["tradesExecuted"], stats["successRate"], stats["totalPnL"], stats["dailyPnL"],
                    risk_score, timestamp, timestamp,
                ),
            )
        return self.get_metrics()

    def get_metrics(self) -> dict[str, Any]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM bot_metrics WHERE id = 1").fetchone()
        if not row:
            return {}
        return {
            "sessionId": row["session_id"],
            "isRunning": bool(row["is_running"]),
            "uptime": row["uptime_seconds"],
            "tradesExecuted": row["trades_executed"],
            "successRate": row["success_rate"],
            "totalPnL": row["total_pnl"],
            "dailyPnL": row["daily_pnl"],
            "riskScore": row["risk_score"],
            "lastActivity": row["last_activity"],
        }

    def trade_stats(self, day_start: datetime | None = None) -> dict[str, Any]:
        since = to_iso(day_start) if day_start else "0000"
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT
                  COUNT(1) AS executed,
                  COALESCE(SUM(CASE WHEN realized_pnl IS NOT NULL THEN 1 ELSE 0 END), 0) AS closed,
                  COALESCE(SUM(CASE WHEN realized_pnl > 0 THEN 1 ELSE 0 END), 0) AS wins,
                  COALESCE(SUM(realized_pnl), 0.0) AS total_pnl,
                  COALESCE(SUM(CASE WHEN created_at >= ? THEN realized_pnl ELSE 0 END), 0.0) AS daily_pnl
                FROM orders
                WHERE status NOT IN ('failed', 'rejected')
                """,
                (since,),
            ).fetchone()
        closed = int(row["closed"])
        return {
            "tradesExecuted": int(row["executed"]),
            "successRate": round(int(row["wins"]) / closed, 4) if closed else 0.0,
            "totalPnL": round(float(row["total_pnl"]), 2),
            "dailyPnL": round(float(row["daily_pnl"] or 0.0), 2),
        }

    # ── Orders & recommendations ──────────────────────────────────

    def record_order(
        self,
        session_id: str | None,
        symbol: str,
        mode: str,
        side: str,
        quantity: float,
        price: float,
        status: str,
        confidence: float | None = None,
        strategies: Iterable[str] = (),
        realized_pnl: float | None = None,
        rationale: str = "",
        broker_order_id: str | None = None,
        created_at: datetime | None = None,
    ) -> int:
        with self.connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO orders (
                    session_id, broker_order_id, symbol, mode, side, quantity, price, status,
                    confidence, strategies, realized_pnl, rationale, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id, broker_order_id, symbol, mode, side, quantity, price, status,
                    confidence, ",".join(strategies), realized_pnl, rationale,
                    to_iso(created_at) if created_at else now_iso(),
                ),
            )
            return int(cursor.lastrowid)

    def last_entry_strategies(self, symbol: str) -> list[str]:
        """Strategies behind the most recent filled BUY of *symbol*."""
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT strategies FROM orders
                WHERE symbol = ? AND side = 'BUY' AND status NOT IN ('failed', 'rejected')
                ORDER BY id DESC LIMIT 1
                """,
                (symbol,),
            ).fetchone()
        if not row or not row["strategies"]:
            return []
        return [s for s in str(row["strategies"]).split(",") if s]

    def record_recommendation(
        self,
        session_id: str | None,
        symbol: str,
        action: str,
        quantity: float,
        price: float,
        stop_loss: float,
        target_price: float,
        confidence: float,
        reasoning: str,
        status: str = "pending",
        created_at: datetime | None = None,
    ) -> int:
        with self.connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO recommendations (
                    session_id, symbol, action, quantity, price, stop_loss, target_price,
                    confidence, reasoning, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id, symbol, action, quantity, price, stop_loss, target_price,
                    confidence, reasoning, status, to_iso(created_at) if created_at else now_iso(),
                ),
            )
            return int(cursor.lastrowid)

    def count_dispatched_since(self, since: datetime) -> int:
        """Orders plus pending recommendations created at or after *since*."""
        stamp = to_iso(since)
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT
                  (SELECT COUNT(1) FROM orders WHERE created_at >= ? AND status NOT IN ('failed', 'rejected'))
                  + (SELECT COUNT(1) FROM recommendations WHERE created_at >= ?) AS total
                """,
                (stamp, stamp),
            ).fetchone()
        return int(row["total"] or 0)

    def last_dispatch_at(self, symbol: str) -> datetime | None:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT MAX(created_at) AS last FROM (
                    SELECT created_at FROM orders WHERE symbol = ? AND status NOT IN ('failed', 'rejected')
                    UNION ALL
                    SELECT created_at FROM recommendations WHERE symbol = ?
                )
                """,
                (symbol, symbol),
            ).fetchone()
        if not row or not row["last"]:
            return None
        return datetime.fromisoformat(row["last"])

    def pending_recommendations(self, limit: int = 50) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM recommendations WHERE status = 'pending' ORDER BY id DESC LIMIT ?",
                (max(1, limit),),
            ).fetchall()
        return [dict(r) for r in rows]

    def record_risk_assessment(
        self,
        session_id: str | None,
        assessment: dict[str, Any],
        approved: bool,
        rejections: Iterable[str],
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO risk_assessments (
                    session_id, symbol, action, approved, risk_score, risk_level,
                    rejections, assessment_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    assessment.get("symbol"),
                    assessment.get("action"),
                    int(approved),
                    assessment.get("overallRiskScore"),
                    assessment.get("riskLevel"),
                    json.dumps(list(rejections)),
                    json.dumps(assessment, default=str),
                    now_iso(),
                ),
            )

    # ── Equity marks ──────────────────────────────────────────────

    def save_equity_marks(self, trading_day: date, day_start_equity: float, peak_equity: float) -> None:
        """Keep the first day-start equity seen for *trading_day* and the highest peak."""
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO equity_marks (trading_day, day_start_equity, peak_equity, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(trading_day) DO UPDATE SET
                    peak_equity = MAX(peak_equity, excluded.peak_equity),
                    updated_at = excluded.updated_at
                """,
                (trading_day.isoformat(), day_start_equity, peak_equity, now_iso()),
            )

    def load_equity_marks(self, trading_day: date) -> tuple[float | None, float | None]:
        """Return ``(day_start_equity for trading_day, all-time peak equity)``."""
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT
                  (SELECT day_start_equity FROM equity_marks WHERE trading_day = ?) AS day_start,
                  (SELECT MAX(peak_equity) FROM equity_marks) AS peak
                """,
                (trading_day.isoformat(),),
            ).fetchone()
        return row["day_start"], row["peak"]

    # ── Strategy performance ──────────────────────────────────────

    def get_strategy_performance(self, strategy_id: str) -> PerformanceSnapshot | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM strategy_performance WHERE strategy_id = ?", (strategy_id,)
            ).fetchone()
        if not row or int(row["total_trades"]) == 0:
            return None
        total = int(row["total_trades"])
        return PerformanceSnapshot(
            win_rate=int(row["winning_trades"]) / total,
            total_trades=total,
            total_pnl=float(row["total_pnl"]),
        )

    def record_strategy_outcome(self, strategy_ids: Iterable[str], pnl: float) -> None:
        win = 1 if pnl > 0 else 0
        timestamp = now_iso()
        with self.connect() as conn:
            for strategy_id in strategy_ids:
                conn.execute(
                    """
                    INSERT INTO strategy_performance (strategy_id, total_trades, winning_trades, total_pnl, updated_at)
                    VALUES (?, 1, ?, ?, ?)
                    ON CONFLICT(strategy_id) DO UPDATE SET
                        total_trades = total_trades + 1,
                        winning_trades = winning_trades + excluded.winning_trades,
                        total_pnl = total_pnl + excluded.total_pnl,
                        updated_at = excluded.updated_at
                    """,
                    (strategy_id, win, pnl, timestamp),
                )
