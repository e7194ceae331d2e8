"""Multi-strategy consensus.

For one symbol, every enabled producer is asked for a signal in parallel.
Producers that raise, time out or return an invalid signal are dropped from
the vote for that symbol; they are not retried within the scan.

Two views of the surviving signals are returned:

  * a plain majority vote (ties resolve HOLD > SELL > BUY), with the share
    of votes behind the winning action;
  * a performance-weighted recommendation where each strategy's configured
    weight is scaled by its track record (win rate, once it has at least
    ``MIN_TRADES_FOR_PERFORMANCE`` trades) and normalised.

The engine never decides whether to trade; that is the scan's job.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping, Sequence

from loguru import logger

from .config import StrategyConfig
from .market_data import MarketData
from .strategies import ACTIONS, PerformanceSnapshot, ProducerError, SignalProducer, StrategySignal


# Earlier entries win ties.
TIE_PRECEDENCE = ("HOLD", "SELL", "BUY")
MIN_TRADES_FOR_PERFORMANCE = 10

PerformanceLookup = Callable[[str], PerformanceSnapshot | None]


@dataclass(frozen=True)
class WeightedSignal:
    action: str
    confidence: float
    reasoning: str
    agreement: float = 0.0   # normalised weight behind ``action``


@dataclass(frozen=True)
class ConsensusResult:
    symbol: str
    majority_action: str
    agreement_ratio: float
    vote_counts: dict[str, int]
    weighted_signal: WeightedSignal
    average_confidence: float
    signals: tuple[StrategySignal, ...] = field(default_factory=tuple)
    failed_strategies: tuple[str, ...] = field(default_factory=tuple)
    latency_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "majorityAction": self.majority_action,
            "agreementRatio": round(self.agreement_ratio, 4),
            "voteCounts": dict(self.vote_counts),
            "averageConfidence": round(self.average_confidence, 4),
            "weightedSignal": {
                "action": self.weighted_signal.action,
                "confidence": round(self.weighted_signal.confidence, 4),
                "reasoning": self.weighted_signal.reasoning,
            },
            "signals": [
                {
                    "strategyId": s.strategy_id,
                    "action": s.action,
                    "confidence": s.confidence,
                    "reasoning": s.reasoning,
                }
                for s in self.signals
            ],
            "failedStrategies": list(self.failed_strategies),
        }


def _pick_winner(scores: Mapping[str, float]) -> str:
    best = max(scores.values())
    for action in TIE_PRECEDENCE:
        if scores[action] == best:
            return action
    return "HOLD"


def majority_vote(signals: Sequence[StrategySignal]) -> tuple[str, float, dict[str, int]]:
    """Return ``(action, agreement_ratio, vote_counts)``."""
    counts = {action: 0 for action in ACTIONS}
    for signal in signals:
        counts[signal.action] += 1
    vote_counts = {"buy": counts["BUY"], "sell": counts["SELL"], "hold": counts["HOLD"]}
    if not signals:
        return "HOLD", 0.0, vote_counts
    winner = _pick_winner(counts)
    return winner, counts[winner] / len(signals), vote_counts


def performance_factor(snapshot: PerformanceSnapshot | None) -> float:
    """Neutral 1.0 without enough history; otherwise 0.5 (never wins) to 1.5."""
    if snapshot is None or snapshot.total_trades < MIN_TRADES_FOR_PERFORMANCE:
        return 1.0
    win_rate = max(0.0, min(1.0, snapshot.win_rate))
    return 0.5 + win_rate


def weighted_recommendation(
    signals: Sequence[StrategySignal],
    weights: Mapping[str, float],
    names: Mapping[str, str] | None = None,
) -> WeightedSignal:
    if not signals:
        return WeightedSignal("HOLD", 0.0, "No strategy signals available", 0.0)

    names = names or {}
    effective = {
        s.strategy_id: max(0.0, weights.get(s.strategy_id, 1.0)) * performance_factor(s.performance)
        for s in signals
    }
    total = sum(effective.values())
    if total > 0:
        normalized = {sid: w / total for sid, w in effective.items()}
    else:
        normalized = {s.strategy_id: 1 / len(signals) for s in signals}

    scores = {action: 0.0 for action in ACTIONS}
    mass = {action: 0.0 for action in ACTIONS}
    for signal in signals:
        scores[signal.action] += normalized[signal.strategy_id] * signal.confidence
        mass[signal.action] += normalized[signal.strategy_id]

    action = _pick_winner(scores)
    confidence = max(0.0, min(1.0, scores[action]))

    top = sorted(signals, key=lambda s: normalized[s.strategy_id], reverse=True)[:3]
    reasoning = "Performance-weighted analysis: {} ({:.0f}% agreement). Top strategies: {}".format(
        action,
        mass[action] * 100,
        ", ".join(
            f"{names.get(s.strategy_id, s.strategy_id)} ({s.action}, {s.confidence * 100:.0f}%)" for s in top
        ),
    )
    return WeightedSignal(action, confidence, reasoning, mass[action])


class ConsensusEngine:
    """Queries every enabled producer for a symbol and reconciles the answers."""

    def __init__(
        self,
        strategies: Sequence[StrategyConfig],
        producers: Mapping[str, SignalProducer],
        performance_lookup: PerformanceLookup | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.strategies = tuple(s for s in strategies if s.enabled and s.id in producers)
        self.producers = dict(producers)
        self.performance_lookup = performance_lookup
        self.timeout_seconds = timeout_seconds
        self._weights = {s.id: s.weight for s in self.strategies}
        self._names = {s.id: s.name for s in self.strategies}

    def evaluate(self, symbol: str, market_data: MarketData) -> ConsensusResult:
        t0 = time.time()
        signals, failed = self._collect_signals(symbol, market_data)

        majority, agreement, counts = majority_vote(signals)
        weighted = weighted_recommendation(signals, self._weights, self._names)
        avg_conf = sum(s.confidence for s in signals) / len(signals) if signals else 0.0
        elapsed = time.time() - t0

        logger.info(
            "Consensus {} | majority={} ({:.0%}) | weighted={} conf={:.0%} | BUY:{} SELL:{} HOLD:{} | failed={}",
            symbol, majority, agreement, weighted.action, weighted.confidence,
            counts["buy"], counts["sell"], counts["hold"], len(failed),
        )
        for s in signals:
            logger.debug("  {} → {} (conf={:.0%}) {}", s.strategy_id, s.action, s.confidence, s.reasoning[:80])

        return ConsensusResult(
            symbol=symbol,
            majority_action=majority,
            agreement_ratio=agreement,
            vote_counts=counts,
            weighted_signal=weighted,
            average_confidence=avg_conf,
            signals=tuple(signals),
            failed_strategies=tuple(failed),
            latency_seconds=round(elapsed, 3),
        )

    def _collect_signals(self, symbol: str, market_data: MarketData) -> tuple[list[StrategySignal], list[str]]:
        if not self.strategies:
            return [], []

        results: dict[str, StrategySignal] = {}
        failed: list[str] = []
        pool = ThreadPoolExecutor(max_workers=len(self.strategies), thread_name_prefix=f"producer-{symbol}")
        try:
            futures = {
                pool.submit(self.producers[s.id].evaluate, symbol, market_data): s.id
                for s in self.strategies
            }
            done, pending = wait(futures, timeout=self.timeout_seconds)
            for future in pending:
                future.cancel()
                strategy_id = futures[future]
                failed.append(strategy_id)
                logger.warning("Producer {} timed out for {} after {:.1f}s", strategy_id, symbol, self.timeout_seconds)
            for future in done:
                strategy_id = futures[future]
                try:
                    results[strategy_id] = self._accept(strategy_id, symbol, future.result())
                except Exception as exc:
                    failed.append(strategy_id)
                    logger.warning("Producer {} failed for {}: {}", strategy_id, symbol, exc)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        # Keep configuration order so results do not depend on thread timing
        ordered = [results[s.id] for s in self.strategies if s.id in results]
        return ordered, failed

    def _accept(self, strategy_id: str, symbol: str, signal: Any) -> StrategySignal:
        if not isinstance(signal, StrategySignal):
            raise ProducerError(strategy_id, f"returned {type(signal).__name__}, expected StrategySignal")
        if signal.symbol != symbol:
            raise ProducerError(strategy_id, f"returned a signal for {signal.symbol}, expected {symbol}")
        performance = signal.performance
        if performance is None and self.performance_lookup is not None:
            try:
                performance = self.performance_lookup(strategy_id)
            except Exception as exc:
                logger.warning("Performance lookup failed for {}: {}", strategy_id, exc)
        return replace(signal, strategy_id=strategy_id, performance=performance)
