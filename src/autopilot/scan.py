"""Recurring watchlist scan.

Each tick:

  1. skips (no brokerage or producer calls) when the market is closed and
     ``marketHoursOnly`` is set;
  2. reads the account and the next watchlist batch's candles through the
     gateway;
  3. runs the consensus engine per symbol with bounded parallelism;
  4. keeps non-HOLD weighted signals at or above ``minConfidenceForOrder``;
  5. sizes, assesses and risk-gates each candidate;
  6. submits approved candidates through the gateway when ``autoExecute`` is
     on, otherwise records them as pending recommendations, subject to the
     daily order cap and the per-symbol cooldown.

Ticks never overlap: a tick that fires while another is still running is
skipped.  Anything a tick throws is caught at the tick boundary and counted
on the session; the session keeps running.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .broker import AccountSnapshot, BrokerClient, OrderTicket
from .consensus import ConsensusEngine, ConsensusResult
from .gateway import RateLimitedGateway
from .market_data import MarketData
from .market_hours import market_status
from .risk import AccountState, RiskEngine, assess_trade, default_exit_levels, max_correlation, size_position
from .state import BotSession
from .storage import BotStorage


@dataclass
class CandidateOutcome:
    symbol: str
    action: str
    confidence: float
    outcome: str           # submitted / recommended / rejected / capped / cooldown / skipped / failed
    detail: str = ""
    quantity: float = 0.0
    price: float = 0.0
    risk_score: float | None = None

    @property
    def dispatched(self) -> bool:
        return self.outcome in {"submitted", "recommended"}


@dataclass
class TickResult:
    status: str            # completed / skipped / busy / failed
    scan_number: int = 0
    reason: str = ""
    symbols: list[str] = field(default_factory=list)
    analyzed: int = 0
    candidates: list[CandidateOutcome] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "scanNumber": self.scan_number,
            "reason": self.reason,
            "symbols": self.symbols,
            "analyzed": self.analyzed,
            "candidates": [
                {
                    "symbol": c.symbol,
                    "action": c.action,
                    "confidence": round(c.confidence, 4),
                    "outcome": c.outcome,
                    "detail": c.detail,
                    "quantity": c.quantity,
                    "price": c.price,
                }
                for c in self.candidates
            ],
            "error": self.error,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScanScheduler:
    def __init__(
        self,
        session: BotSession,
        broker: BrokerClient,
        gateway: RateLimitedGateway,
        consensus: ConsensusEngine,
        storage: BotStorage,
        interval_seconds: int = 60,
        max_symbols_per_scan: int = 10,
        max_workers: int = 4,
        candle_interval: str = "day",
        candle_span: str = "3month",
        timezone_name: str = "America/New_York",
        clock: Callable[[], datetime] = _utcnow,
        scheduler_factory: Callable[..., Any] = BackgroundScheduler,
    ) -> None:
        self.session = session
        self.config = session.config
        self.broker = broker
        self.gateway = gateway
        self.consensus = consensus
        self.storage = storage
        self.risk_engine = RiskEngine(self.config.risk_management)
        self.interval_seconds = interval_seconds
        self.max_symbols_per_scan = max_symbols_per_scan
        self.max_workers = max_workers
        self.candle_interval = candle_interval
        self.candle_span = candle_span
        self.tz = ZoneInfo(timezone_name)
        self.clock = clock
        self._scheduler_factory = scheduler_factory
        self._scheduler: Any = None
        self._busy = threading.Lock()
        self._stop_requested = threading.Event()
        self._cursor = 0
        self._returns_cache: dict[str, list[float]] = {}

    # ── Lifecycle ─────────────────────────────────────────────────

    def start(self) -> None:
        self._scheduler = self._scheduler_factory(timezone=self.tz)
        self._scheduler.add_job(
            self._run_scheduled_tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds, timezone=self.tz),
            id=f"scan_{self.session.session_id}",
            next_run_time=datetime.now(self.tz),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "Scan scheduler started for {} every {}s ({} symbols, batch {})",
            self.session.session_id, self.interval_seconds, len(self.config.watchlist), self.max_symbols_per_scan,
        )

    def stop(self) -> None:
        """Cancel future ticks; a tick already running is left to finish."""
        self._stop_requested.set()
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        logger.info("Scan scheduler stopped for {}", self.session.session_id)

    @property
    def is_busy(self) -> bool:
        return self._busy.locked()

    def _run_scheduled_tick(self) -> None:
        if self._stop_requested.is_set():
            return
        self.tick()

    # ── Tick ──────────────────────────────────────────────────────

    def tick(self) -> TickResult:
        if not self._busy.acquire(blocking=False):
            logger.warning("Scan still in progress for {}; skipping tick", self.session.session_id)
            return TickResult(status="busy", reason="previous scan still running")
        try:
            return self._guarded_tick()
        finally:
            self._busy.release()

    def _guarded_tick(self) -> TickResult:
        now = self.clock()
        if self.config.execution_settings.market_hours_only:
            status = market_status(now)
            if not status.is_open:
                self.session.mark_skipped(now)
                logger.info("Market closed ({}), skipping scan", status.reason)
                self._persist_metrics(now, None)
                return TickResult(status="skipped", reason=status.reason)

        scan_number = self.session.begin_scan(now)
        try:
            result = self._scan(scan_number, now)
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            self.session.record_error(message)
            logger.error("Scan #{} failed: {}", scan_number, message)
            self._log_activity("error", f"Scan #{scan_number} failed", "failed", {"error": message})
            result = TickResult(status="failed", scan_number=scan_number, error=message)

        scores = [c.risk_score for c in result.candidates if c.risk_score is not None]
        self._persist_metrics(now, sum(scores) / len(scores) if scores else None)
        return result

    def _scan(self, scan_number: int, now: datetime) -> TickResult:
        execution = self.config.execution_settings

        account: AccountSnapshot = self.gateway.submit(self.broker.get_account, endpoint="account")
        trading_day = now.astimezone(self.tz).date()
        account_state = self.session.update_equity(account.equity, trading_day)
        self._safe(
            "save equity marks",
            self.storage.save_equity_marks,
            trading_day, account_state.day_start_equity, account_state.peak_equity,
        )

        batch = self._next_batch()
        logger.info("Scan #{}: analyzing {} symbols", scan_number, len(batch))
        market = self._fetch_market_data(batch)
        results = self._run_consensus(market)

        candidates = [
            r for r in results
            if r.weighted_signal.action != "HOLD"
            and r.weighted_signal.confidence >= execution.min_confidence_for_order
        ]
        # equal confidence keeps watchlist order, whatever order consensus finished in
        rank = {symbol: idx for idx, symbol in enumerate(batch)}
        candidates.sort(key=lambda r: (-r.weighted_signal.confidence, rank.get(r.symbol, len(batch))))

        day_start = self._day_start(now)
        dispatched_today = self._dispatched_since(day_start)

        outcomes: list[CandidateOutcome] = []
        for result in candidates:
            outcome = self._process_candidate(result, market[result.symbol], account, account_state, dispatched_today, now)
            outcomes.append(outcome)
            if outcome.dispatched:
                dispatched_today += 1

        summary = {
            "scanNumber": scan_number,
            "symbolsAnalyzed": len(results),
            "symbolsRequested": len(batch),
            "candidates": len(candidates),
            "dispatched": sum(1 for o in outcomes if o.dispatched),
            "rejected": sum(1 for o in outcomes if o.outcome == "rejected"),
        }
        self._log_activity(
            "scan",
            f"Scan #{scan_number}: analyzed {len(results)} symbols, {len(candidates)} actionable",
            "completed",
            summary,
        )
        logger.info(
            "Scan #{} done: {} analyzed, {} actionable, {} dispatched",
            scan_number, len(results), len(candidates), summary["dispatched"],
        )
        return TickResult(
            status="completed",
            scan_number=scan_number,
            symbols=batch,
            analyzed=len(results),
            candidates=outcomes,
        )

    def _next_batch(self) -> list[str]:
        watchlist = list(self.config.watchlist)
        if not watchlist:
            return []
        size = min(len(watchlist), self.max_symbols_per_scan)
        batch = [watchlist[(self._cursor + i) % len(watchlist)] for i in range(size)]
        self._cursor = (self._cursor + size) % len(watchlist)
        return batch

    def _fetch_market_data(self, symbols: list[str]) -> dict[str, MarketData]:
        futures: dict[str, Future] = {
            symbol: self.gateway.submit_async(
                self.broker.get_candles,
                symbol,
                interval=self.candle_interval,
                span=self.candle_span,
                endpoint=f"candles:{symbol}",
            )
            for symbol in symbols
        }
        market: dict[str, MarketData] = {}
        for symbol, future in futures.items():
            try:
                candles = future.result()
            except Exception as exc:
                logger.warning("Market data unavailable for {}: {}", symbol, exc)
                continue
            data = MarketData(symbol=symbol, candles=tuple(candles))
            market[symbol] = data
            self._returns_cache[symbol] = data.returns()
        return market

    def _run_consensus(self, market: dict[str, MarketData]) -> list[ConsensusResult]:
        if not market:
            return []
        results: list[ConsensusResult] = []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(market)), thread_name_prefix="consensus") as pool:
            futures = {pool.submit(self.consensus.evaluate, symbol, data): symbol for symbol, data in market.items()}
            for future in as_completed(futures):
                symbol = futures[future]
                try:
                    results.append(future.result())
                except Exception as exc:
                    logger.warning("Consensus failed for {}: {}", symbol, exc)
        return results

    # ── Candidates ────────────────────────────────────────────────

    def _process_candidate(
        self,
        result: ConsensusResult,
        data: MarketData,
        account: AccountSnapshot,
        account_state: AccountState,
        dispatched_today: int,
        now: datetime,
    ) -> CandidateOutcome:
        symbol = result.symbol
        signal = result.weighted_signal
        action = signal.action
        execution = self.config.execution_settings
        limits = self.config.risk_management
        outcome = CandidateOutcome(symbol=symbol, action=action, confidence=signal.confidence, outcome="skipped")

        try:
            quote = self.gateway.submit(self.broker.get_quote, symbol, endpoint=f"quote:{symbol}")
            price = quote.price
        except Exception as exc:
            logger.warning("Quote unavailable for {}: {}", symbol, exc)
            price = data.price
        if price <= 0:
            outcome.detail = "No usable price"
            return outcome

        if action == "SELL":
            quantity = account.held_quantity(symbol)
            if quantity <= 0:
                outcome.detail = "SELL signal without an open position"
                logger.debug("{}: SELL signal ignored, no position held", symbol)
                return outcome
        else:
            quantity = size_position(account.equity, price, execution.order_size_percent)
            if quantity <= 0:
                outcome.outcome = "rejected"
                outcome.detail = f"Order size {execution.order_size_percent}% of equity is less than one share"
                self.session.record_rejection()
                self._log_activity("risk_rejection", f"{symbol}: {outcome.detail}", "rejected", symbol=symbol)
                return outcome
        outcome.quantity = quantity
        outcome.price = price

        stop_loss, target = default_exit_levels(action, price, limits.stop_loss_percent, limits.take_profit_percent)
        assessment = assess_trade(symbol, action, quantity, price, stop_loss, target, account.equity)
        outcome.risk_score = assessment.overall_risk_score

        correlation = None
        if action == "BUY":
            held = {
                s: self._returns_cache[s]
                for s in account.positions
                if s != symbol and s in self._returns_cache
            }
            correlation = max_correlation(data.returns(), held)

        decision = self.risk_engine.evaluate(
            assessment,
            signal.confidence,
            account_state,
            correlation=correlation,
            reduces_exposure=action == "SELL",
        )
        self._safe(
            "record risk assessment",
            self.storage.record_risk_assessment,
            self.session.session_id, assessment.to_dict(), decision.approved, decision.rejections,
        )
        if not decision.approved:
            outcome.outcome = "rejected"
            outcome.detail = "; ".join(decision.rejections)
            self.session.record_rejection()
            self._log_activity(
                "risk_rejection",
                f"{action} {symbol} rejected: {outcome.detail}",
                "rejected",
                decision.to_dict(),
                symbol=symbol,
            )
            return outcome

        if dispatched_today >= execution.max_orders_per_day:
            outcome.outcome = "capped"
            outcome.detail = f"Daily order cap {execution.max_orders_per_day} reached"
            self._log_activity("limit", f"{symbol}: {outcome.detail}", "skipped", symbol=symbol)
            return outcome

        last = self._safe("read last dispatch", self.storage.last_dispatch_at, symbol)
        if last is not None and now - last < timedelta(minutes=execution.cooldown_minutes):
            outcome.outcome = "cooldown"
            outcome.detail = f"Cooldown {execution.cooldown_minutes} min since {last.isoformat()}"
            logger.debug("{}: {}", symbol, outcome.detail)
            return outcome

        if self._stop_requested.is_set():
            outcome.detail = "Session stopped before dispatch"
            logger.info("{}: {} not dispatched, session {} stopped", symbol, action, self.session.session_id)
            return outcome

        strategies = [s.strategy_id for s in result.signals if s.action == action]
        if execution.auto_execute:
            return self._execute(outcome, account, strategies, signal.reasoning, now)

        self._safe(
            "record recommendation",
            self.storage.record_recommendation,
            self.session.session_id, symbol, action, quantity, price, stop_loss, target,
            signal.confidence, signal.reasoning, created_at=now,
        )
        self.session.record_recommendation()
        outcome.outcome = "recommended"
        self._log_activity(
            "recommendation",
            f"{action} {quantity} {symbol} @ {price:.2f} ({signal.confidence:.0%})",
            "pending",
            {"assessment": assessment.to_dict(), "reasoning": signal.reasoning},
            symbol=symbol,
        )
        return outcome

    def _execute(
        self,
        outcome: CandidateOutcome,
        account: AccountSnapshot,
        strategies: list[str],
        reasoning: str,
        now: datetime,
    ) -> CandidateOutcome:
        execution = self.config.execution_settings
        slip = execution.slippage_tolerance / 100
        limit = outcome.price * (1 + slip) if outcome.action == "BUY" else outcome.price * (1 - slip)
        ticket = OrderTicket(
            symbol=outcome.symbol,
            side=outcome.action,
            quantity=outcome.quantity,
            limit_price=round(limit, 2),
            rationale=reasoning,
        )

        try:
            receipt = self.gateway.submit(self.broker.place_order, ticket, endpoint=f"order:{outcome.symbol}")
        except Exception as exc:
            message = f"Order {outcome.action} {outcome.symbol} failed: {exc}"
            self.session.record_error(message)
            logger.error(message)
            self._safe(
                "record failed order",
                self.storage.record_order,
                self.session.session_id, outcome.symbol, self.broker.mode, outcome.action,
                outcome.quantity, outcome.price, "failed",
                confidence=outcome.confidence, strategies=strategies, rationale=str(exc), created_at=now,
            )
            self._log_activity("error", message, "failed", symbol=outcome.symbol)
            outcome.outcome = "failed"
            outcome.detail = str(exc)
            return outcome

        realized_pnl = None
        position = account.positions.get(outcome.symbol)
        if outcome.action == "SELL" and position is not None:
            realized_pnl = round((receipt.price - position.average_price) * receipt.quantity, 2)

        self._safe(
            "record order",
            self.storage.record_order,
            self.session.session_id, outcome.symbol, self.broker.mode, outcome.action,
            receipt.quantity, receipt.price, receipt.status,
            confidence=outcome.confidence, strategies=strategies, realized_pnl=realized_pnl,
            rationale=reasoning, broker_order_id=receipt.order_id, created_at=now,
        )
        if realized_pnl is not None:
            entry_strategies = self._safe("read entry strategies", self.storage.last_entry_strategies, outcome.symbol)
            if entry_strategies:
                self._safe("record strategy outcome", self.storage.record_strategy_outcome, entry_strategies, realized_pnl)

        self.session.record_order()
        outcome.outcome = "submitted"
        outcome.price = receipt.price
        outcome.detail = receipt.order_id
        self._log_activity(
            "trade",
            f"{outcome.action} {receipt.quantity} {outcome.symbol} @ {receipt.price:.2f} [{receipt.status}]",
            "completed",
            {"orderId": receipt.order_id, "realizedPnL": realized_pnl, "confidence": outcome.confidence},
            symbol=outcome.symbol,
        )
        return outcome

    # ── Persistence helpers ───────────────────────────────────────

    def _day_start(self, now: datetime) -> datetime:
        local = now.astimezone(self.tz)
        return local.replace(hour=0, minute=0, second=0, microsecond=0)

    def _dispatched_since(self, day_start: datetime) -> int:
        count = self._safe("count daily orders", self.storage.count_dispatched_since, day_start)
        if count is None:
            snapshot = self.session.snapshot()
            return snapshot["ordersSubmitted"] + snapshot["recommendations"]
        return count

    def _persist_metrics(self, now: datetime, risk_score: float | None) -> None:
        # the metrics row belongs to whichever session is running now
        if self._stop_requested.is_set():
            return
        self._safe(
            "update metrics",
            self.storage.update_metrics,
            self.session.session_id,
            True,
            self.session.uptime_seconds(now),
            risk_score,
            self._day_start(now),
        )

    def _log_activity(
        self,
        type: str,
        message: str,
        status: str,
        details: dict[str, Any] | None = None,
        symbol: str | None = None,
    ) -> None:
        if self._stop_requested.is_set():
            return
        self._safe(
            "log activity",
            self.storage.log_activity,
            type, message, status, details, session_id=self.session.session_id, symbol=symbol,
        )

    @staticmethod
    def _safe(what: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except Exception as exc:
            logger.warning("Failed to {}: {}", what, exc)
            return None
