"""Tests for the paper and Robinhood broker adapters."""
import pytest

from conftest import make_candles


class FakeMarketData:
    def __init__(self, price=50.0):
        self.price = price

    def get_candles(self, symbol, interval="day", span="3month"):
        return make_candles([self.price - 1, self.price])

    def get_quote(self, symbol):
        from autopilot.market_data import Quote

        return Quote(symbol=symbol, price=self.price, bid=self.price, ask=self.price)


def test_paper_buy_and_sell_round_trip():
    from autopilot.broker import OrderTicket, PaperBroker

    market = FakeMarketData(price=50.0)
    broker = PaperBroker(1_000.0, market_data=market)

    receipt = broker.place_order(OrderTicket("aapl", "BUY", 4, limit_price=51.0))
    account = broker.get_account()

    assert receipt.status == "filled"
    assert receipt.order_id.startswith("paper-")
    assert account.cash == pytest.approx(800.0)
    assert account.held_quantity("AAPL") == 4
    assert account.equity == pytest.approx(1_000.0)

    market.price = 60.0
    broker.get_quote("AAPL")
    assert broker.get_account().equity == pytest.approx(1_040.0)

    broker.place_order(OrderTicket("AAPL", "SELL", 4))
    account = broker.get_account()
    assert account.positions == {}
    assert account.cash == pytest.approx(1_040.0)


def test_paper_rejects_impossible_orders():
    from autopilot.broker import BrokerApiError, OrderTicket, PaperBroker

    broker = PaperBroker(100.0, market_data=FakeMarketData(price=50.0))

    with pytest.raises(BrokerApiError, match="buying power"):
        broker.place_order(OrderTicket("AAPL", "BUY", 3))
    with pytest.raises(BrokerApiError, match="position too small"):
        broker.place_order(OrderTicket("AAPL", "SELL", 1))
    with pytest.raises(BrokerApiError, match="above limit"):
        broker.place_order(OrderTicket("AAPL", "BUY", 1, limit_price=49.0))
    with pytest.raises(BrokerApiError):
        broker.place_order(OrderTicket("AAPL", "BUY", 0))


def test_candles_from_robinhood_rows():
    from autopilot.market_data import MarketData, candles_from_robinhood

    rows = [
        {"begins_at": "2024-06-10T00:00:00Z", "open_price": "10", "high_price": "11", "low_price": "9",
         "close_price": "10.5", "volume": 1000},
        {"begins_at": "2024-06-11T00:00:00Z", "close_price": None},
        "garbage",
        {"begins_at": "2024-06-12T00:00:00Z", "close_price": "11.55", "volume": "2000"},
    ]

    candles = candles_from_robinhood(rows)
    data = MarketData("AAPL", tuple(candles))

    assert len(candles) == 2
    assert candles[1].open == 11.55
    assert data.price == 11.55
    assert data.returns() == [pytest.approx(0.1)]


def _authenticated_robinhood():
    from autopilot.broker import RobinhoodBroker

    broker = RobinhoodBroker("user@example.com", "secret")
    broker._authenticated = True
    return broker


def test_robinhood_without_credentials_fails_auth():
    from autopilot.broker import BrokerApiError, RobinhoodBroker

    broker = RobinhoodBroker("", "")

    with pytest.raises(BrokerApiError) as err:
        broker.get_quote("AAPL")
    assert err.value.status == 401


def test_robinhood_quote_and_candles(monkeypatch):
    from autopilot import broker as broker_module

    monkeypatch.setattr(broker_module.rh.stocks, "get_latest_price", lambda symbol: ["123.45"])
    monkeypatch.setattr(
        broker_module.rh.stocks,
        "get_stock_historicals",
        lambda symbol, interval, span, bounds: [{"begins_at": "x", "close_price": "5"}],
    )
    broker = _authenticated_robinhood()

    assert broker.get_quote("AAPL").price == 123.45
    assert broker.get_candles("AAPL")[0].close == 5.0


def test_robinhood_errors_are_classified(monkeypatch):
    from autopilot import broker as broker_module
    from autopilot.broker import BrokerApiError, BrokerRateLimitError

    def limited(symbol):
        raise RuntimeError("429 Client Error: Too Many Requests")

    def expired(symbol):
        raise RuntimeError("401 Unauthorized")

    broker = _authenticated_robinhood()

    monkeypatch.setattr(broker_module.rh.stocks, "get_latest_price", limited)
    with pytest.raises(BrokerRateLimitError) as err:
        broker.get_quote("AAPL")
    assert err.value.status == 429

    monkeypatch.setattr(broker_module.rh.stocks, "get_latest_price", expired)
    with pytest.raises(BrokerApiError) as err:
        broker.get_quote("AAPL")
    assert err.value.status == 401


def test_robinhood_limit_order(monkeypatch):
    from autopilot import broker as broker_module
    from autopilot.broker import BrokerApiError, OrderTicket

    placed = []

    def order_buy_limit(symbol, quantity, limit_price):
        placed.append((symbol, quantity, limit_price))
        return {"id": "rh-1", "state": "queued", "price": "100.5"}

    monkeypatch.setattr(broker_module.rh.orders, "order_buy_limit", order_buy_limit)
    monkeypatch.setattr(broker_module.rh.orders, "order_sell_limit", lambda *a: {"detail": "Not enough shares"})
    broker = _authenticated_robinhood()

    receipt = broker.place_order(OrderTicket("AAPL", "BUY", 2, limit_price=100.504))

    assert placed == [("AAPL", 2, 100.5)]
    assert receipt.order_id == "rh-1"
    assert receipt.status == "queued"
    assert receipt.price == 100.5

    with pytest.raises(BrokerApiError, match="Not enough shares"):
        broker.place_order(OrderTicket("AAPL", "SELL", 2, limit_price=99.5))
