"""Candle containers and market-data sources.

Producers receive a ``MarketData`` snapshot: the symbol, its latest price and
an oldest-first list of ``Candle`` bars.  Bars come from Robinhood
historicals when a brokerage session is available, otherwise from Yahoo
Finance via **yfinance**.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

import yfinance as yf
from loguru import logger


class MarketDataError(RuntimeError):
    pass

@dataclass(frozen=True)
class Candle:
    """Single OHLCV bar."""
    timestamp: str
    open: float
    high: float
    low: float
    close: float
    volume: float

@dataclass(frozen=True)
class MarketData:
    symbol: str
    candles: tuple[Candle, ...] = field(default_factory=tuple)

    @property
    def price(self) -> float:
        return self.candles[-1].close if self.candles else 0.0

    @property
    def closes(self) -> list[float]:
        return [c.close for c in self.candles]

    @property
    def highs(self) -> list[float]:
        return [c.high for c in self.candles]

    @property
    def lows(self) -> list[float]:
        return [c.low for c in self.candles]

    @property
    def volumes(self) -> list[float]:
        return [c.volume for c in self.candles]

    def returns(self) -> list[float]:
        closes = self.closes
        return [
            (closes[i] - closes[i - 1]) / closes[i - 1]
            for i in range(1, len(closes))
            if closes[i - 1] > 0
        ]

@dataclass(frozen=True)
class Quote:
    symbol: str
    price: float
    bid: float = 0.0
    ask: float = 0.0

def candles_from_robinhood(rows: Iterable[Any]) -> list[Candle]:
    """Convert ``rh.stocks.get_stock_historicals`` rows into candles."""
    candles: list[Candle] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        close = float(row.get("close_price") or 0.0)
        if close <= 0:
            continue
        candles.append(
            Candle(
                timestamp=str(row.get("begins_at") or ""),
                open=float(row.get("open_price") or close),
                high=float(row.get("high_price") or close),
                low=float(row.get("low_price") or close),
                close=close,
                volume=float(row.get("volume") or 0.0),
            )
        )
    return candles

# Robinhood interval/span names mapped onto yfinance period/interval strings
_YF_INTERVALS = {"5minute": "5m", "10minute": "15m", "hour": "1h", "day": "1d", "week": "1wk"}
_YF_PERIODS = {"day": "1d", "week": "5d", "month": "1mo", "3month": "3mo", "year": "1y", "5year": "5y"}

def fetch_yahoo_candles(symbol: str, interval: str = "day", span: str = "3month") -> list[Candle]:
    """Download candles for *symbol* from Yahoo Finance.

    *interval* and *span* use Robinhood's vocabulary so both sources can be
    driven by the same settings.
    """
    yf_interval = _YF_INTERVALS.get(interval, "1d")
    yf_period = _YF_PERIODS.get(span, "3mo")
    try:
        df = yf.Ticker(symbol).history(period=yf_period, interval=yf_interval, auto_adjust=True)
    except Exception as exc:
        raise MarketDataError(f"Yahoo Finance download failed for {symbol}: {exc}") from exc

    if df is None or df.empty:
        raise MarketDataError(f"No data returned for {symbol} period={yf_period} interval={yf_interval}")

    candles: list[Candle] = []
    for ts, row in df.iterrows():
        candles.append(
            Candle(
                timestamp=str(ts.isoformat()) if hasattr(ts, "isoformat") else str(ts),
                open=float(row.get("Open", 0.0)),
                high=float(row.get("High", 0.0)),
                low=float(row.get("Low", 0.0)),
                close=float(row.get("Close", 0.0)),
                volume=float(row.get("Volume", 0.0)),
            )
        )
    logger.debug("Fetched {} candles for {} period={} interval={}", len(candles), symbol, yf_period, yf_interval)
    return candles

class YahooMarketData:
    """Unauthenticated quotes and candles, used when no brokerage session exists."""

    def get_candles(self, symbol: str, interval: str = "day", span: str = "3month") -> list[Candle]:
        return fetch_yahoo_candles(symbol, interval=interval, span=span)

    def get_quote(self, symbol: str) -> Quote:
        candles = fetch_yahoo_candles(symbol, interval="5minute", span="day")
        price = candles[-1].close
        return Quote(symbol=symbol, price=price, bid=price, ask=price)
