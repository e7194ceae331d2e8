"""Indicator math over plain float series (oldest first)."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BollingerBands:
    middle: float
    upper: float
    lower: float


def sma(values: list[float], period: int) -> float:
    if not values:
        return 0.0
    if len(values) < period:
        return sum(values) / len(values)
    return sum(values[-period:]) / period


def ema_series(values: list[float], period: int) -> list[float]:
    if not values:
        return []
    k = 2 / (period + 1)
    out = [values[0]]
    for v in values[1:]:
        out.append(out[-1] + k * (v - out[-1]))
    return out


def ema(values: list[float], period: int) -> float:
    series = ema_series(values, period)
    return series[-1] if series else 0.0


def std(values: list[float], period: int) -> float:
    window = values[-period:] if len(values) >= period else values
    if len(window) < 2:
        return 0.0
    mean = sum(window) / len(window)
    return (sum((v - mean) ** 2 for v in window) / len(window)) ** 0.5


def rsi(closes: list[float], period: int = 14) -> float:
    if len(closes) < period + 1:
        return 50.0  # neutral when insufficient data
    deltas = [closes[i] - closes[i - 1] for i in range(len(closes) - period, len(closes))]
    avg_gain = sum(d for d in deltas if d > 0) / period
    avg_loss = sum(-d for d in deltas if d < 0) / period
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    return 100 - (100 / (1 + avg_gain / avg_loss))


def atr(highs: list[float], lows: list[float], closes: list[float], period: int = 14) -> float:
    if len(highs) < 2:
        return 0.0
    ranges = [
        max(highs[i] - lows[i], abs(highs[i] - closes[i - 1]), abs(lows[i] - closes[i - 1]))
        for i in range(1, len(highs))
    ]
    return sma(ranges, period)


def momentum_pct(values: list[float], period: int) -> float:
    if len(values) <= period:
        return 0.0
    old = values[-period - 1]
    if old == 0:
        return 0.0
    return (values[-1] - old) / old * 100


def bollinger(closes: list[float], period: int = 20, num_std: float = 2.0) -> BollingerBands:
    middle = sma(closes, period)
    spread = std(closes, period) * num_std
    return BollingerBands(middle=middle, upper=middle + spread, lower=middle - spread)


def band_position(price: float, bands: BollingerBands) -> float:
    """0 at the lower band, 1 at the upper band."""
    width = bands.upper - bands.lower
    if width <= 0:
        return 0.5
    return (price - bands.lower) / width


def macd(closes: list[float], fast: int = 12, slow: int = 26, signal: int = 9) -> tuple[float, float, float]:
    """Return ``(macd, signal, histogram)`` for the latest bar."""
    if len(closes) < 2:
        return 0.0, 0.0, 0.0
    fast_series = ema_series(closes, fast)
    slow_series = ema_series(closes, slow)
    line = [f - s for f, s in zip(fast_series, slow_series)]
    signal_series = ema_series(line, signal)
    return line[-1], signal_series[-1], line[-1] - signal_series[-1]
