"""Shared fakes for the autopilot test suite. Nothing here touches the network."""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from autopilot.broker import AccountSnapshot, BrokerApiError, OrderReceipt, Position
from autopilot.market_data import Candle, Quote
from autopilot.strategies import StrategySignal


OPEN_MARKET = datetime(2024, 6, 12, 15, 0, tzinfo=timezone.utc)     # Wednesday 11:00 ET
CLOSED_MARKET = datetime(2024, 6, 15, 15, 0, tzinfo=timezone.utc)   # Saturday


def make_candles(closes, volume=1_000_000.0, volumes=None):
    candles = []
    for idx, close in enumerate(closes):
        candles.append(
            Candle(
                timestamp=f"2024-01-{idx % 28 + 1:02d}T00:00:00Z",
                open=close,
                high=close * 1.01,
                low=close * 0.99,
                close=close,
                volume=volumes[idx] if volumes else volume,
            )
        )
    return candles


def trending_closes(start=100.0, step=0.5, bars=60):
    return [start + step * i for i in range(bars)]


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeBroker:
    """In-memory broker that records every call it receives."""

    mode = "paper"

    def __init__(self, equity=10_000.0, price=100.0, positions=None, fail_candles=()):
        self.equity = equity
        self.price = price
        self.prices = {}
        self.positions = dict(positions or {})
        self.fail_candles = set(fail_candles)
        self.account_error = None
        self.order_errors = []
        self.calls = []
        self.orders = []
        self._lock = threading.Lock()

    def _record(self, name, *args):
        with self._lock:
            self.calls.append((name, args))

    def get_account(self):
        self._record("get_account")
        if self.account_error is not None:
            raise self.account_error
        return AccountSnapshot(
            equity=self.equity,
            cash=self.equity,
            buying_power=self.equity,
            mode=self.mode,
            session_authenticated=False,
            positions={s: Position(p.symbol, p.quantity, p.average_price, p.last_price) for s, p in self.positions.items()},
        )

    def get_quote(self, symbol):
        self._record("get_quote", symbol)
        price = self.prices.get(symbol, self.price)
        return Quote(symbol=symbol, price=price, bid=price, ask=price)

    def get_candles(self, symbol, interval="day", span="3month"):
        self._record("get_candles", symbol)
        if symbol in self.fail_candles:
            raise BrokerApiError(f"no historicals for {symbol}")
        return make_candles(trending_closes(start=self.prices.get(symbol, self.price) - 30))

    def place_order(self, ticket):
        self._record("place_order", ticket.symbol)
        if self.order_errors:
            raise self.order_errors.pop(0)
        self.orders.append(ticket)
        price = self.prices.get(ticket.symbol, self.price)
        return OrderReceipt(
            order_id=f"fake-{len(self.orders)}",
            symbol=ticket.symbol,
            side=ticket.side,
            quantity=ticket.quantity,
            price=price,
            status="filled",
        )


class StubProducer:
    """Producer answering a fixed action, optionally per symbol, from its parameters."""

    def __init__(self, parameters=None):
        parameters = dict(parameters or {})
        self.strategy_id = parameters.get("strategy_id", "stub")
        self.action = parameters.get("action", "BUY")
        self.confidence = parameters.get("confidence", 0.9)
        self.per_symbol = parameters.get("per_symbol", {})
        self.calls = []

    def evaluate(self, symbol, market_data):
        self.calls.append(symbol)
        action = self.per_symbol.get(symbol, self.action)
        return StrategySignal(
            strategy_id=self.strategy_id,
            symbol=symbol,
            action=action,
            confidence=self.confidence,
            reasoning=f"stub says {action}",
        )


class ProducerRegistry:
    """Strategy registry whose factories remember the producers they built."""

    def __init__(self):
        self.created = []
        self.factories = {"stub": self._build}

    def _build(self, parameters):
        producer = StubProducer(parameters)
        self.created.append(producer)
        return producer

    @property
    def evaluations(self):
        return sum(len(p.calls) for p in self.created)


class FakeScheduler:
    """Stands in for APScheduler's BackgroundScheduler."""

    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.jobs = []
        self.started = False
        self.shut_down = False
        FakeScheduler.instances.append(self)

    def add_job(self, func, **kwargs):
        self.jobs.append((func, kwargs))

    def start(self):
        self.started = True

    def shutdown(self, wait=True):
        self.shut_down = True


def stub_config(action="BUY", confidence=0.9, watchlist=("AAPL",), per_symbol=None, **execution):
    execution_settings = {
        "autoExecute": False,
        "minConfidenceForOrder": 0.75,
        "maxOrdersPerDay": 20,
        "orderSizePercent": 2.0,
        "slippageTolerance": 0.5,
        "marketHoursOnly": True,
        "cooldownMinutes": 5,
    }
    execution_settings.update(execution)
    return {
        "mode": "BALANCED",
        "strategies": [
            {
                "id": "stub",
                "name": "Stub Strategy",
                "enabled": True,
                "weight": 1.0,
                "parameters": {"action": action, "confidence": confidence, "per_symbol": per_symbol or {}},
            }
        ],
        "riskManagement": {
            "maxPositionSize": 10,
            "maxDailyLoss": 2,
            "maxDrawdown": 15,
            "minConfidence": 0.7,
            "stopLossPercent": 2,
            "takeProfitPercent": 4,
            "correlationLimit": 0.7,
            "minRiskRewardRatio": 1.5,
        },
        "executionSettings": execution_settings,
        "watchlist": list(watchlist),
    }


@pytest.fixture(autouse=True)
def _reset_fake_schedulers():
    FakeScheduler.instances.clear()
    yield
    FakeScheduler.instances.clear()


@pytest.fixture
def storage(tmp_path):
    from autopilot.storage import BotStorage

    store = BotStorage(tmp_path / "autopilot.sqlite3")
    store.initialize()
    return store


@pytest.fixture
def gateway():
    from autopilot.gateway import RateLimitedGateway

    gw = RateLimitedGateway(max_requests=1000, window_seconds=60.0, max_retries=2, backoff_base_seconds=0.0)
    yield gw
    gw.close()


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def registry():
    return ProducerRegistry()
