"""Strategy signal producers.

Every producer answers one question: given a symbol and its market data,
what action (BUY / SELL / HOLD) does this strategy recommend, and how sure is
it?  The orchestration core only relies on ``SignalProducer.evaluate``, so any
model (indicator rules, ML, sentiment) can sit behind it.

The built-in producers are plain indicator rules over daily candles:

  rsi                      oversold / overbought RSI with trend confirmation
  macd                     MACD line crossing its signal line
  bollinger                close outside the Bollinger bands
  ma_crossover             fast/slow SMA crossover
  mean_reversion           z-score of close versus its 20-bar mean
  enhanced_mean_reversion  mean reversion confirmed by RSI and volume
  momentum                 rate of change above/below a threshold, EMA-aligned
  breakout                 close beyond the recent range on rising volume
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Protocol

from . import indicators as ind
from .config import ConfigurationError, StrategyConfig
from .market_data import MarketData


ACTIONS = ("BUY", "SELL", "HOLD")


class ProducerError(RuntimeError):
    """A producer failed, timed out or returned an unusable signal."""

    def __init__(self, strategy_id: str, message: str) -> None:
        super().__init__(f"{strategy_id}: {message}")
        self.strategy_id = strategy_id


@dataclass(frozen=True)
class PerformanceSnapshot:
    win_rate: float          # 0.0 - 1.0
    total_trades: int
    total_pnl: float = 0.0


@dataclass(frozen=True)
class StrategySignal:
    strategy_id: str
    symbol: str
    action: str
    confidence: float
    reasoning: str = ""
    performance: PerformanceSnapshot | None = None

    def __post_init__(self) -> None:
        if self.action not in ACTIONS:
            raise ValueError(f"Invalid action '{self.action}' from {self.strategy_id}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence {self.confidence} from {self.strategy_id} is outside [0, 1]")


class SignalProducer(Protocol):
    strategy_id: str

    def evaluate(self, symbol: str, market_data: MarketData) -> StrategySignal:
        ...


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


# ── Indicator producers ───────────────────────────────────────────

class IndicatorStrategy:
    strategy_id = ""
    defaults: dict[str, Any] = {}
    min_bars = 30

    def __init__(self, parameters: Mapping[str, Any] | None = None) -> None:
        self.params = {**self.defaults, **dict(parameters or {})}

    def evaluate(self, symbol: str, market_data: MarketData) -> StrategySignal:
        if len(market_data.candles) < self.min_bars:
            return self._signal(
                symbol, "HOLD", 0.5,
                f"Insufficient data: {len(market_data.candles)}/{self.min_bars} bars",
            )
        action, confidence, reasoning = self.decide(market_data)
        return self._signal(symbol, action, round(_clamp(confidence), 4), reasoning)

    def decide(self, data: MarketData) -> tuple[str, float, str]:
        raise NotImplementedError

    def _signal(self, symbol: str, action: str, confidence: float, reasoning: str) -> StrategySignal:
        return StrategySignal(
            strategy_id=self.strategy_id,
            symbol=symbol,
            action=action,
            confidence=confidence,
            reasoning=reasoning,
        )


class RSIStrategy(IndicatorStrategy):
    strategy_id = "rsi"
    defaults = {"period": 14, "oversold": 30, "overbought": 70, "trend_period": 50}

    def decide(self, data: MarketData) -> tuple[str, float, str]:
        closes = data.closes
        value = ind.rsi(closes, int(self.params["period"]))
        oversold = float(self.params["oversold"])
        overbought = float(self.params["overbought"])
        trend = ind.sma(closes, int(self.params["trend_period"]))

        if value <= oversold:
            confidence = (oversold - value) / 15 + 0.3
            if data.price > trend:
                confidence += 0.1
            return "BUY", confidence, f"RSI oversold: {value:.1f} <= {oversold:.1f}"
        if value >= overbought:
            confidence = (value - overbought) / 15 + 0.3
            if data.price < trend:
                confidence += 0.1
            return "SELL", confidence, f"RSI overbought: {value:.1f} >= {overbought:.1f}"
        return "HOLD", 0.5, f"RSI neutral: {value:.1f} ({oversold:.0f}-{overbought:.0f})"


class MACDStrategy(IndicatorStrategy):
    strategy_id = "macd"
    defaults = {"fast": 12, "slow": 26, "signal": 9}
    min_bars = 35

    def decide(self, data: MarketData) -> tuple[str, float, str]:
        fast, slow, sig = int(self.params["fast"]), int(self.params["slow"]), int(self.params["signal"])
        closes = data.closes
        line, signal, hist = ind.macd(closes, fast, slow, sig)
        _, _, prev_hist = ind.macd(closes[:-1], fast, slow, sig)
        strength = _clamp(abs(hist) / (data.price * 0.01)) if data.price > 0 else 0.0

        if hist > 0 and prev_hist <= 0:
            return "BUY", 0.6 + 0.35 * strength, f"MACD bullish crossover ({line:.3f} > {signal:.3f})"
        if hist < 0 and prev_hist >= 0:
            return "SELL", 0.6 + 0.35 * strength, f"MACD bearish crossover ({line:.3f} < {signal:.3f})"
        return "HOLD", 0.5, f"No MACD crossover (histogram {hist:+.3f})"


class BollingerStrategy(IndicatorStrategy):
    strategy_id = "bollinger"
    defaults = {"period": 20, "num_std": 2.0}
    min_bars = 20

    def decide(self, data: MarketData) -> tuple[str, float, str]:
        bands = ind.bollinger(data.closes, int(self.params["period"]), float(self.params["num_std"]))
        position = ind.band_position(data.price, bands)
        if position <= 0.05:
            return "BUY", 0.6 + (0.05 - position) * 2, f"Price at lower band ({position:.0%} of band)"
        if position >= 0.95:
            return "SELL", 0.6 + (position - 0.95) * 2, f"Price at upper band ({position:.0%} of band)"
        return "HOLD", 0.5, f"Price inside bands ({position:.0%} of band)"


class MovingAverageCrossoverStrategy(IndicatorStrategy):
    strategy_id = "ma_crossover"
    defaults = {"fast": 10, "slow": 30}
    min_bars = 31

    def decide(self, data: MarketData) -> tuple[str, float, str]:
        fast_n, slow_n = int(self.params["fast"]), int(self.params["slow"])
        closes = data.closes
        fast, slow = ind.sma(closes, fast_n), ind.sma(closes, slow_n)
        prev_fast, prev_slow = ind.sma(closes[:-1], fast_n), ind.sma(closes[:-1], slow_n)
        spread = abs(fast - slow) / slow if slow > 0 else 0.0

        if fast > slow and prev_fast <= prev_slow:
            return "BUY", 0.7 + min(0.25, spread * 10), f"SMA{fast_n} crossed above SMA{slow_n}"
        if fast < slow and prev_fast >= prev_slow:
            return "SELL", 0.7 + min(0.25, spread * 10), f"SMA{fast_n} crossed below SMA{slow_n}"
        trend = "above" if fast > slow else "below"
        return "HOLD", 0.5, f"SMA{fast_n} {trend} SMA{slow_n}, no crossover"


class MeanReversionStrategy(IndicatorStrategy):
    strategy_id = "mean_reversion"
    defaults = {"period": 20, "entry_z": 2.0}
    min_bars = 20

    def zscore(self, data: MarketData) -> float:
        period = int(self.params["period"])
        deviation = ind.std(data.closes, period)
        if deviation == 0:
            return 0.0
        return (data.price - ind.sma(data.closes, period)) / deviation

    def decide(self, data: MarketData) -> tuple[str, float, str]:
        z = self.zscore(data)
        entry = float(self.params["entry_z"])
        if z <= -entry:
            return "BUY", 0.6 + (abs(z) - entry) * 0.2, f"Price {abs(z):.2f} std below mean"
        if z >= entry:
            return "SELL", 0.6 + (z - entry) * 0.2, f"Price {z:.2f} std above mean"
        return "HOLD", 0.5, f"Price within {entry:.1f} std of mean (z={z:+.2f})"


class EnhancedMeanReversionStrategy(MeanReversionStrategy):
    strategy_id = "enhanced_mean_reversion"
    defaults = {"period": 20, "entry_z": 1.5, "rsi_period": 14, "volume_ratio": 1.2}

    def decide(self, data: MarketData) -> tuple[str, float, str]:
        z = self.zscore(data)
        entry = float(self.params["entry_z"])
        if abs(z) < entry:
            return "HOLD", 0.5, f"Price within {entry:.1f} std of mean (z={z:+.2f})"

        action = "BUY" if z < 0 else "SELL"
        confidence = 0.55 + (abs(z) - entry) * 0.15
        reasons = [f"z-score {z:+.2f}"]

        rsi_value = ind.rsi(data.closes, int(self.params["rsi_period"]))
        if (action == "BUY" and rsi_value < 35) or (action == "SELL" and rsi_value > 65):
            confidence += 0.15
            reasons.append(f"RSI confirms ({rsi_value:.0f})")

        avg_volume = ind.sma(data.volumes[:-1], 20)
        if avg_volume > 0 and data.volumes[-1] / avg_volume >= float(self.params["volume_ratio"]):
            confidence += 0.1
            reasons.append("volume expansion")

        return action, confidence, "Mean reversion: " + ", ".join(reasons)


class MomentumStrategy(IndicatorStrategy):
    strategy_id = "momentum"
    defaults = {"lookback": 10, "threshold_pct": 3.0, "ema_period": 20}
    min_bars = 21

    def decide(self, data: MarketData) -> tuple[str, float, str]:
        change = ind.momentum_pct(data.closes, int(self.params["lookback"]))
        trend = ind.ema(data.closes, int(self.params["ema_period"]))
        threshold = float(self.params["threshold_pct"])

        if change >= threshold and data.price > trend:
            return "BUY", 0.55 + min(0.4, (change - threshold) / 20), f"Momentum {change:+.2f}% above EMA"
        if change <= -threshold and data.price < trend:
            return "SELL", 0.55 + min(0.4, (abs(change) - threshold) / 20), f"Momentum {change:+.2f}% below EMA"
        return "HOLD", 0.5, f"Momentum {change:+.2f}% not decisive"


class BreakoutStrategy(IndicatorStrategy):
    strategy_id = "breakout"
    defaults = {"lookback": 20, "volume_ratio": 1.5}
    min_bars = 22

    def decide(self, data: MarketData) -> tuple[str, float, str]:
        lookback = int(self.params["lookback"])
        prior_high = max(data.highs[-lookback - 1:-1])
        prior_low = min(data.lows[-lookback - 1:-1])
        avg_volume = ind.sma(data.volumes[:-1], lookback)
        volume_ratio = data.volumes[-1] / avg_volume if avg_volume > 0 else 1.0
        confirmed = volume_ratio >= float(self.params["volume_ratio"])

        if data.price > prior_high:
            confidence = 0.6 + min(0.2, (data.price / prior_high - 1) * 10) + (0.15 if confirmed else -0.1)
            return "BUY", confidence, f"Close {data.price:.2f} broke {lookback}-bar high {prior_high:.2f} (vol {volume_ratio:.1f}x)"
        if data.price < prior_low:
            confidence = 0.6 + min(0.2, (1 - data.price / prior_low) * 10) + (0.15 if confirmed else -0.1)
            return "SELL", confidence, f"Close {data.price:.2f} broke {lookback}-bar low {prior_low:.2f} (vol {volume_ratio:.1f}x)"
        return "HOLD", 0.5, f"Inside {lookback}-bar range {prior_low:.2f}-{prior_high:.2f}"


ProducerFactory = Callable[[Mapping[str, Any]], SignalProducer]

STRATEGY_REGISTRY: dict[str, ProducerFactory] = {
    cls.strategy_id: cls
    for cls in (
        RSIStrategy,
        MACDStrategy,
        BollingerStrategy,
        MovingAverageCrossoverStrategy,
        MeanReversionStrategy,
        EnhancedMeanReversionStrategy,
        MomentumStrategy,
        BreakoutStrategy,
    )
}


def build_producers(
    strategies: Iterable[StrategyConfig],
    registry: Mapping[str, ProducerFactory] | None = None,
) -> dict[str, SignalProducer]:
    """Instantiate a producer for every enabled strategy config.

    *registry* maps strategy ids to factories taking the strategy parameters;
    it defaults to the built-in indicator producers.
    """
    registry = STRATEGY_REGISTRY if registry is None else registry
    producers: dict[str, SignalProducer] = {}
    for strategy in strategies:
        if not strategy.enabled:
            continue
        factory = registry.get(strategy.id)
        if factory is None:
            raise ConfigurationError(
                f"Unknown strategy '{strategy.id}'. Available: {', '.join(sorted(registry))}"
            )
        producers[strategy.id] = factory(strategy.parameters)
    return producers
