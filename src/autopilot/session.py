from __future__ import annotations

import secrets
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Mapping
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from loguru import logger

from .broker import BrokerClient
from .config import BotConfiguration, default_bot_config, parse_bot_config
from .consensus import ConsensusEngine, PerformanceLookup
from .gateway import RateLimitedGateway
from .health import HealthThresholds, evaluate_health
from .scan import ScanScheduler
from .state import BotSession
from .storage import BotStorage
from .strategies import ProducerFactory, build_producers


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_uptime(seconds: float) -> str:
    seconds = int(max(0, seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class SessionController:
    """Owns the STOPPED/RUNNING lifecycle of the autonomous bot.

    At most one session runs per controller.  Every transition happens under
    one re-entrant lock, so concurrent ``start`` calls cannot both win and
    ``restart`` never leaves a window with two sessions.
    """

    def __init__(
        self,
        storage: BotStorage,
        broker: BrokerClient,
        gateway: RateLimitedGateway,
        registry: Mapping[str, ProducerFactory] | None = None,
        default_config: BotConfiguration | None = None,
        performance_lookup: PerformanceLookup | None = None,
        health_thresholds: HealthThresholds | None = None,
        scan_interval_seconds: int = 60,
        max_symbols_per_scan: int = 10,
        consensus_max_workers: int = 4,
        producer_timeout_seconds: float = 10.0,
        candle_interval: str = "day",
        candle_span: str = "3month",
        timezone_name: str = "America/New_York",
        clock: Callable[[], datetime] = _utcnow,
        scheduler_factory: Callable[..., Any] = BackgroundScheduler,
    ) -> None:
        self.storage = storage
        self.broker = broker
        self.gateway = gateway
        self.registry = registry
        self.default_config = default_config or default_bot_config()
        self.performance_lookup = performance_lookup or storage.get_strategy_performance
        self.health_thresholds = health_thresholds or HealthThresholds()
        self.scan_interval_seconds = scan_interval_seconds
        self.max_symbols_per_scan = max_symbols_per_scan
        self.consensus_max_workers = consensus_max_workers
        self.producer_timeout_seconds = producer_timeout_seconds
        self.candle_interval = candle_interval
        self.candle_span = candle_span
        self.timezone_name = timezone_name
        self.clock = clock
        self.scheduler_factory = scheduler_factory

        self._lock = threading.RLock()
        self._session: BotSession | None = None
        self._scanner: ScanScheduler | None = None

        aborted = self._safe("abort stale sessions", self.storage.abort_stale_sessions)
        if aborted:
            logger.warning("Marked {} session(s) left running by a previous process as aborted", aborted)

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._session is not None

    # ── Lifecycle ─────────────────────────────────────────────────

    def resolve_config(self, config: BotConfiguration | Mapping[str, Any] | None) -> BotConfiguration:
        """Validate *config*; ``ConfigurationError`` propagates to the caller."""
        if config is None:
            return self.default_config
        if isinstance(config, BotConfiguration):
            return config
        return parse_bot_config(config)

    def start(
        self,
        config: BotConfiguration | Mapping[str, Any] | None = None,
        schedule: bool = True,
    ) -> dict[str, Any]:
        with self._lock:
            if self._session is not None:
                logger.info("Start ignored, session {} already running", self._session.session_id)
                return {"started": False, "message": "Bot is already running", "session": self._summary()}

            bot_config = self.resolve_config(config)
            producers = build_producers(bot_config.enabled_strategies, self.registry)
            consensus = ConsensusEngine(
                bot_config.strategies,
                producers,
                performance_lookup=self.performance_lookup,
                timeout_seconds=self.producer_timeout_seconds,
            )

            now = self.clock()
            session = BotSession(
                session_id=f"session_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}",
                config=bot_config,
                started_at=now,
            )
            trading_day = now.astimezone(ZoneInfo(self.timezone_name)).date()
            marks = self._safe("load equity marks", self.storage.load_equity_marks, trading_day)
            if marks:
                session.seed_equity(trading_day, *marks)
            scanner = ScanScheduler(
                session=session,
                broker=self.broker,
                gateway=self.gateway,
                consensus=consensus,
                storage=self.storage,
                interval_seconds=self.scan_interval_seconds,
                max_symbols_per_scan=self.max_symbols_per_scan,
                max_workers=self.consensus_max_workers,
                candle_interval=self.candle_interval,
                candle_span=self.candle_span,
                timezone_name=self.timezone_name,
                clock=self.clock,
                scheduler_factory=self.scheduler_factory,
            )

            self._safe(
                "record session start",
                self.storage.record_session_start,
                session.session_id, self.broker.mode, bot_config.summary(), now,
            )
            self._safe(
                "log activity",
                self.storage.log_activity,
                "system",
                f"Autonomous bot started in {bot_config.mode} mode",
                "completed",
                bot_config.summary(),
                session_id=session.session_id,
            )
            self._safe("update metrics", self.storage.update_metrics, session.session_id, True, 0.0)

            self._session, self._scanner = session, scanner
            if schedule:
                scanner.start()

            logger.info(
                "Session {} started: mode={} strategies={} autoExecute={}",
                session.session_id, bot_config.mode, [s.id for s in bot_config.enabled_strategies],
                bot_config.execution_settings.auto_execute,
            )
            return {
                "started": True,
                "sessionId": session.session_id,
                "startTime": now.isoformat(),
                "config": bot_config.summary(),
            }

    def stop(self) -> dict[str, Any]:
        with self._lock:
            session, scanner = self._session, self._scanner
            now = self.clock()
            if session is None or scanner is None:
                return {
                    "stopped": True,
                    "wasRunning": False,
                    "sessionId": None,
                    "uptimeMinutes": 0,
                    "scansCompleted": 0,
                    "errorCount": 0,
                    "stoppedAt": now.isoformat(),
                }

            scanner.stop()
            session.status = "STOPPED"
            uptime = session.uptime_seconds(now)
            snapshot = session.snapshot()
            self._session, self._scanner = None, None

            self._safe(
                "record session stop",
                self.storage.record_session_stop,
                session.session_id, snapshot["scanCount"], snapshot["errorCount"], snapshot["lastError"],
            )
            self._safe(
                "log activity",
                self.storage.log_activity,
                "system",
                f"Autonomous bot stopped after {snapshot['scanCount']} scans",
                "completed",
                {"uptimeSeconds": round(uptime, 1), "errorCount": snapshot["errorCount"]},
                session_id=session.session_id,
            )
            self._safe("update metrics", self.storage.update_metrics, session.session_id, False, uptime)

            logger.info(
                "Session {} stopped after {} ({} scans, {} errors)",
                session.session_id, format_uptime(uptime), snapshot["scanCount"], snapshot["errorCount"],
            )
            return {
                "stopped": True,
                "wasRunning": True,
                "sessionId": session.session_id,
                "uptimeMinutes": round(uptime / 60, 2),
                "scansCompleted": snapshot["scanCount"],
                "errorCount": snapshot["errorCount"],
                "stoppedAt": now.isoformat(),
            }

    def restart(self, config: BotConfiguration | Mapping[str, Any] | None = None) -> dict[str, Any]:
        with self._lock:
            bot_config = self.resolve_config(config)
            build_producers(bot_config.enabled_strategies, self.registry)
            stopped = self.stop()
            started = self.start(bot_config)
            return {**started, "previous": stopped}

    def tick(self) -> dict[str, Any]:
        """Run one scan now, outside the recurring schedule."""
        with self._lock:
            scanner = self._scanner
        if scanner is None:
            return {"status": "stopped", "reason": "Bot is not running"}
        return scanner.tick().to_dict()

    # ── Status ────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        with self._lock:
            return self._summary()

    def _summary(self) -> dict[str, Any]:
        now = self.clock()
        session = self._session
        if session is None:
            return {
                "isRunning": False,
                "status": "STOPPED",
                "sessionId": None,
                "startTime": None,
                "uptime": 0,
                "uptimeFormatted": format_uptime(0),
                "lastScanAt": None,
                "scanCount": 0,
                "skippedScans": 0,
                "errorCount": 0,
                "lastError": None,
                "ordersSubmitted": 0,
                "recommendations": 0,
                "health": evaluate_health(False, 0, 0, None, None, self.health_thresholds, now),
                "config": None,
            }

        snapshot = session.snapshot()
        uptime = session.uptime_seconds(now)
        health = evaluate_health(
            True,
            snapshot["scanCount"],
            snapshot["errorCount"],
            session.last_tick_at,
            session.started_at,
            self.health_thresholds,
            now,
        )
        return {
            "isRunning": True,
            **snapshot,
            "uptime": round(uptime, 1),
            "uptimeFormatted": format_uptime(uptime),
            "health": health,
            "config": session.config.summary(),
        }

    @staticmethod
    def _safe(what: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except Exception as exc:
            logger.warning("Failed to {}: {}", what, exc)
            return None
