from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import robin_stocks.robinhood as rh
from loguru import logger

from .market_data import Candle, Quote, YahooMarketData, candles_from_robinhood


class BrokerApiError(RuntimeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class BrokerRateLimitError(BrokerApiError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status=429)


@dataclass
class Position:
    symbol: str
    quantity: float
    average_price: float
    last_price: float = 0.0

    @property
    def market_value(self) -> float:
        return self.quantity * (self.last_price or self.average_price)


@dataclass
class AccountSnapshot:
    equity: float
    cash: float
    buying_power: float
    mode: str
    session_authenticated: bool
    positions: dict[str, Position] = field(default_factory=dict)

    def held_quantity(self, symbol: str) -> float:
        position = self.positions.get(symbol.upper())
        return position.quantity if position else 0.0


@dataclass(frozen=True)
class OrderTicket:
    symbol: str
    side: str                       # "BUY" / "SELL"
    quantity: float
    limit_price: float | None = None
    rationale: str = ""


@dataclass(frozen=True)
class OrderReceipt:
    order_id: str
    symbol: str
    side: str
    quantity: float
    price: float
    status: str
    submitted_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    raw: dict[str, Any] = field(default_factory=dict)


class MarketDataSource(Protocol):
    def get_candles(self, symbol: str, interval: str = "day", span: str = "3month") -> list[Candle]:
        ...

    def get_quote(self, symbol: str) -> Quote:
        ...


class BrokerClient(MarketDataSource, Protocol):
    mode: str

    def get_account(self) -> AccountSnapshot:
        ...

    def place_order(self, ticket: OrderTicket) -> OrderReceipt:
        ...


# ── Robinhood ─────────────────────────────────────────────────────

class RobinhoodBroker:
    """Live brokerage adapter over ``robin_stocks``.

    Each call is issued once; pacing and rate-limit retries belong to the
    gateway, so failures are only classified here.
    """

    mode = "live"

    def __init__(self, username: str, password: str, mfa_code: str = "") -> None:
        self._username = username
        self._password = password
        self._mfa_code = mfa_code
        self._authenticated = False
        self._lock = threading.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self._username and self._password)

    def ensure_session(self) -> None:
        with self._lock:
            if self._authenticated:
                return
            if not self.has_credentials:
                raise BrokerApiError("Robinhood credentials are not configured", status=401)

            login_kwargs: dict[str, Any] = {
                "username": self._username,
                "password": self._password,
                "store_session": True,
            }
            if self._mfa_code:
                login_kwargs["mfa_code"] = self._mfa_code

            response = self._call(rh.login, **login_kwargs)
            if not (isinstance(response, dict) and response.get("access_token")):
                raise BrokerApiError(f"Robinhood login failed: {response}", status=401)
            self._authenticated = True
            logger.info("Robinhood session established")

    def get_account(self) -> AccountSnapshot:
        self.ensure_session()
        account = self._call(rh.profiles.load_account_profile) or {}
        portfolio = self._call(rh.profiles.load_portfolio_profile) or {}
        holdings = self._call(rh.account.build_holdings) or {}

        positions: dict[str, Position] = {}
        for symbol, row in holdings.items():
            if not isinstance(row, dict):
                continue
            quantity = float(row.get("quantity") or 0.0)
            if quantity <= 0:
                continue
            positions[str(symbol).upper()] = Position(
                symbol=str(symbol).upper(),
                quantity=quantity,
                average_price=float(row.get("average_buy_price") or 0.0),
                last_price=float(row.get("price") or 0.0),
            )

        cash = float(account.get("cash") or 0.0)
        equity = float(portfolio.get("equity") or portfolio.get("extended_hours_equity") or 0.0)
        if equity <= 0:
            equity = cash + sum(p.market_value for p in positions.values())
        return AccountSnapshot(
            equity=equity,
            cash=cash,
            buying_power=float(account.get("buying_power") or 0.0),
            mode=self.mode,
            session_authenticated=True,
            positions=positions,
        )

    def get_quote(self, symbol: str) -> Quote:
        self.ensure_session()
        prices = self._call(rh.stocks.get_latest_price, symbol)
        price = float(prices[0] or 0.0) if isinstance(prices, list) and prices else 0.0
        if price <= 0:
            raise BrokerApiError(f"No quote available for {symbol}", status=404)
        return Quote(symbol=symbol, price=price, bid=price, ask=price)

    def get_candles(self, symbol: str, interval: str = "day", span: str = "3month") -> list[Candle]:
        self.ensure_session()
        rows = self._call(rh.stocks.get_stock_historicals, symbol, interval=interval, span=span, bounds="regular")
        candles = candles_from_robinhood(rows if isinstance(rows, list) else [])
        if not candles:
            raise BrokerApiError(f"No historicals returned for {symbol}", status=404)
        return candles

    def place_order(self, ticket: OrderTicket) -> OrderReceipt:
        if ticket.quantity <= 0:
            raise BrokerApiError(f"Quantity must be > 0 for {ticket.side} order")
        self.ensure_session()

        if ticket.limit_price is not None:
            func = rh.orders.order_buy_limit if ticket.side == "BUY" else rh.orders.order_sell_limit
            response = self._call(func, ticket.symbol, ticket.quantity, round(ticket.limit_price, 2))
        else:
            func = (
                rh.orders.order_buy_fractional_by_quantity
                if ticket.side == "BUY"
                else rh.orders.order_sell_fractional_by_quantity
            )
            response = self._call(func, ticket.symbol, ticket.quantity)

        if not isinstance(response, dict) or not response.get("id"):
            detail = response.get("detail") if isinstance(response, dict) else response
            raise self._classify(Exception(f"Order rejected for {ticket.symbol}: {detail}"))

        return OrderReceipt(
            order_id=str(response["id"]),
            symbol=ticket.symbol,
            side=ticket.side,
            quantity=ticket.quantity,
            price=float(response.get("price") or ticket.limit_price or 0.0),
            status=str(response.get("state") or "submitted"),
            raw=response,
        )

    def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except BrokerApiError:
            raise
        except Exception as exc:
            raise self._classify(exc) from exc

    @staticmethod
    def _classify(exc: Exception) -> BrokerApiError:
        text = str(exc).lower()
        if "429" in text or "rate limit" in text or "throttled" in text:
            return BrokerRateLimitError(f"Robinhood rate limit: {exc}")
        if "401" in text or "403" in text or "unauthorized" in text:
            return BrokerApiError(f"Robinhood auth error: {exc}", status=401)
        if "timeout" in text:
            return BrokerApiError(f"Robinhood timeout: {exc}", status=504)
        return BrokerApiError(f"Robinhood call failed: {exc}")


# ── Paper ─────────────────────────────────────────────────────────

class PaperBroker:
    """Simulated account that fills orders at the current quote."""

    mode = "paper"

    def __init__(self, starting_equity: float, market_data: MarketDataSource | None = None) -> None:
        self.market_data = market_data or YahooMarketData()
        self.starting_equity = starting_equity
        self._cash = starting_equity
        self._positions: dict[str, Position] = {}
        self._lock = threading.Lock()

    def get_candles(self, symbol: str, interval: str = "day", span: str = "3month") -> list[Candle]:
        candles = self.market_data.get_candles(symbol, interval=interval, span=span)
        if candles:
            self._mark(symbol, candles[-1].close)
        return candles

    def get_quote(self, symbol: str) -> Quote:
        quote = self.market_data.get_quote(symbol)
        self._mark(symbol, quote.price)
        return quote

    def get_account(self) -> AccountSnapshot:
        with self._lock:
            positions = {
                s: Position(p.symbol, p.quantity, p.average_price, p.last_price)
                for s, p in self._positions.items()
            }
            cash = self._cash
        equity = cash + sum(p.market_value for p in positions.values())
        return AccountSnapshot(
            equity=equity,
            cash=cash,
            buying_power=cash,
            mode=self.mode,
            session_authenticated=False,
            positions=positions,
        )

    def place_order(self, ticket: OrderTicket) -> OrderReceipt:
        if ticket.quantity <= 0:
            raise BrokerApiError(f"Quantity must be > 0 for {ticket.side} order")
        price = self.get_quote(ticket.symbol).price
        if ticket.limit_price is not None:
            if ticket.side == "BUY" and price > ticket.limit_price:
                raise BrokerApiError(f"{ticket.symbol} ask {price:.2f} above limit {ticket.limit_price:.2f}")
            if ticket.side == "SELL" and price < ticket.limit_price:
                raise BrokerApiError(f"{ticket.symbol} bid {price:.2f} below limit {ticket.limit_price:.2f}")

        symbol = ticket.symbol.upper()
        with self._lock:
            if ticket.side == "BUY":
                cost = price * ticket.quantity
                if cost > self._cash:
                    raise BrokerApiError(f"Insufficient buying power: need {cost:.2f}, have {self._cash:.2f}")
                self._cash -= cost
                held = self._positions.get(symbol)
                if held:
                    total = held.quantity + ticket.quantity
                    held.average_price = (held.average_price * held.quantity + cost) / total
                    held.quantity = total
                    held.last_price = price
                else:
                    self._positions[symbol] = Position(symbol, ticket.quantity, price, price)
            else:
                held = self._positions.get(symbol)
                if held is None or held.quantity < ticket.quantity:
                    raise BrokerApiError(f"Cannot sell {ticket.quantity} {symbol}: position too small")
                self._cash += price * ticket.quantity
                held.quantity -= ticket.quantity
                if held.quantity <= 0:
                    del self._positions[symbol]

        logger.info("Paper {} {} x{} @ {:.2f}", ticket.side, symbol, ticket.quantity, price)
        return OrderReceipt(
            order_id=f"paper-{uuid.uuid4().hex[:12]}",
            symbol=symbol,
            side=ticket.side,
            quantity=ticket.quantity,
            price=price,
            status="filled",
        )

    def _mark(self, symbol: str, price: float) -> None:
        with self._lock:
            held = self._positions.get(symbol.upper())
            if held and price > 0:
                held.last_price = price
