from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from .config import BotConfiguration
from .risk import AccountState


@dataclass
class BotSession:
    """Counters and bookkeeping for one RUNNING session.

    Owned by the session controller and mutated by the scan thread; every
    mutation goes through the instance lock.
    """

    session_id: str
    config: BotConfiguration
    started_at: datetime
    status: str = "RUNNING"
    scan_count: int = 0
    skipped_scans: int = 0
    error_count: int = 0
    last_error: str | None = None
    last_scan_at: datetime | None = None
    last_tick_at: datetime | None = None
    orders_submitted: int = 0
    recommendations: int = 0
    risk_rejections: int = 0
    trading_day: date | None = None
    day_start_equity: float = 0.0
    peak_equity: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def begin_scan(self, now: datetime) -> int:
        with self._lock:
            self.scan_count += 1
            self.last_scan_at = now
            self.last_tick_at = now
            return self.scan_count

    def mark_skipped(self, now: datetime) -> None:
        with self._lock:
            self.skipped_scans += 1
            self.last_tick_at = now

    def record_error(self, message: str) -> None:
        with self._lock:
            self.error_count += 1
            self.last_error = message

    def record_order(self) -> None:
        with self._lock:
            self.orders_submitted += 1

    def record_recommendation(self) -> None:
        with self._lock:
            self.recommendations += 1

    def record_rejection(self) -> None:
        with self._lock:
            self.risk_rejections += 1

    def seed_equity(self, trading_day: date, day_start_equity: float | None, peak_equity: float | None) -> None:
        """Carry equity marks persisted by earlier sessions into this one."""
        with self._lock:
            if day_start_equity and day_start_equity > 0:
                self.trading_day = trading_day
                self.day_start_equity = day_start_equity
            if peak_equity and peak_equity > 0:
                self.peak_equity = max(self.peak_equity, peak_equity)

    def update_equity(self, equity: float, trading_day: date) -> AccountState:
        with self._lock:
            if self.trading_day != trading_day or self.day_start_equity <= 0:
                self.trading_day = trading_day
                self.day_start_equity = equity
            self.peak_equity = max(self.peak_equity, equity)
            return AccountState(
                equity=equity,
                day_start_equity=self.day_start_equity,
                peak_equity=self.peak_equity,
            )

    def uptime_seconds(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        return max(0.0, (now - self.started_at).total_seconds())

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "sessionId": self.session_id,
                "status": self.status,
                "startTime": self.started_at.isoformat(),
                "scanCount": self.scan_count,
                "skippedScans": self.skipped_scans,
                "errorCount": self.error_count,
                "lastError": self.last_error,
                "lastScanAt": self.last_scan_at.isoformat() if self.last_scan_at else None,
                "lastTickAt": self.last_tick_at.isoformat() if self.last_tick_at else None,
                "ordersSubmitted": self.orders_submitted,
                "recommendations": self.recommendations,
                "riskRejections": self.risk_rejections,
            }
