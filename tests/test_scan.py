"""Tests for the recurring watchlist scan."""
from datetime import timedelta

from conftest import CLOSED_MARKET, OPEN_MARKET, FakeScheduler, FixedClock, stub_config


def build_scanner(broker, gateway, storage, registry, payload, clock, max_symbols=10):
    from autopilot.config import parse_bot_config
    from autopilot.consensus import ConsensusEngine
    from autopilot.scan import ScanScheduler
    from autopilot.state import BotSession
    from autopilot.strategies import build_producers

    config = parse_bot_config(payload)
    producers = build_producers(config.enabled_strategies, registry.factories)
    consensus = ConsensusEngine(
        config.strategies,
        producers,
        performance_lookup=storage.get_strategy_performance,
        timeout_seconds=2.0,
    )
    session = BotSession(session_id="session_test", config=config, started_at=clock())
    scanner = ScanScheduler(
        session=session,
        broker=broker,
        gateway=gateway,
        consensus=consensus,
        storage=storage,
        max_symbols_per_scan=max_symbols,
        max_workers=2,
        clock=clock,
        scheduler_factory=FakeScheduler,
    )
    return scanner, session


def test_closed_market_tick_makes_no_calls(broker, gateway, storage, registry):
    clock = FixedClock(CLOSED_MARKET)
    scanner, session = build_scanner(broker, gateway, storage, registry, stub_config(), clock)

    result = scanner.tick()

    assert result.status == "skipped"
    assert result.reason == "weekend"
    assert registry.evaluations == 0
    assert broker.calls == []
    assert gateway.get_stats()["totalProcessed"] == 0
    assert session.error_count == 0
    assert session.scan_count == 0
    assert session.skipped_scans == 1
    assert session.last_tick_at == CLOSED_MARKET


def test_market_hours_only_off_scans_when_closed(broker, gateway, storage, registry):
    clock = FixedClock(CLOSED_MARKET)
    payload = stub_config(action="HOLD", marketHoursOnly=False)
    scanner, session = build_scanner(broker, gateway, storage, registry, payload, clock)

    result = scanner.tick()

    assert result.status == "completed"
    assert session.scan_count == 1
    assert registry.evaluations == 1


def test_buy_signal_becomes_pending_recommendation(broker, gateway, storage, registry):
    clock = FixedClock(OPEN_MARKET)
    scanner, session = build_scanner(broker, gateway, storage, registry, stub_config(), clock)

    result = scanner.tick()

    assert result.status == "completed"
    assert session.scan_count == 1
    assert session.last_scan_at == OPEN_MARKET
    [outcome] = result.candidates
    assert outcome.outcome == "recommended"
    assert outcome.quantity == 2
    assert broker.orders == []

    [pending] = storage.pending_recommendations()
    assert pending["symbol"] == "AAPL"
    assert pending["action"] == "BUY"
    assert pending["quantity"] == 2
    assert session.recommendations == 1


def test_auto_execute_submits_limit_order(broker, gateway, storage, registry):
    clock = FixedClock(OPEN_MARKET)
    payload = stub_config(autoExecute=True)
    scanner, session = build_scanner(broker, gateway, storage, registry, payload, clock)

    result = scanner.tick()

    [outcome] = result.candidates
    assert outcome.outcome == "submitted"
    [ticket] = broker.orders
    assert ticket.side == "BUY"
    assert ticket.quantity == 2
    assert ticket.limit_price == 100.5
    assert session.orders_submitted == 1
    assert storage.trade_stats()["tradesExecuted"] == 1


def test_hold_signals_are_not_candidates(broker, gateway, storage, registry):
    clock = FixedClock(OPEN_MARKET)
    scanner, _ = build_scanner(broker, gateway, storage, registry, stub_config(action="HOLD"), clock)

    result = scanner.tick()

    assert result.analyzed == 1
    assert result.candidates == []
    assert not any(name == "get_quote" for name, _ in broker.calls)


def test_low_confidence_signals_are_filtered(broker, gateway, storage, registry):
    clock = FixedClock(OPEN_MARKET)
    scanner, _ = build_scanner(broker, gateway, storage, registry, stub_config(confidence=0.6), clock)

    result = scanner.tick()

    assert result.candidates == []
    assert storage.pending_recommendations() == []


def test_sell_without_position_is_skipped(broker, gateway, storage, registry):
    clock = FixedClock(OPEN_MARKET)
    scanner, _ = build_scanner(broker, gateway, storage, registry, stub_config(action="SELL"), clock)

    result = scanner.tick()

    [outcome] = result.candidates
    assert outcome.outcome == "skipped"
    assert "position" in outcome.detail


def test_sell_closes_position_and_credits_entry_strategies(broker, gateway, storage, registry):
    from autopilot.broker import Position

    broker.positions = {"AAPL": Position("AAPL", 5, 90.0, 100.0)}
    storage.record_order(
        None, "AAPL", "paper", "BUY", 5, 90.0, "filled",
        strategies=["stub"], created_at=OPEN_MARKET - timedelta(hours=2),
    )
    clock = FixedClock(OPEN_MARKET)
    payload = stub_config(action="SELL", autoExecute=True)
    scanner, _ = build_scanner(broker, gateway, storage, registry, payload, clock)

    result = scanner.tick()

    [outcome] = result.candidates
    assert outcome.outcome == "submitted"
    [ticket] = broker.orders
    assert ticket.side == "SELL"
    assert ticket.quantity == 5
    assert ticket.limit_price == 99.5

    performance = storage.get_strategy_performance("stub")
    assert performance.total_trades == 1
    assert performance.win_rate == 1.0
    assert performance.total_pnl == 50.0


def test_oversized_position_is_rejected_without_error(broker, gateway, storage, registry):
    clock = FixedClock(OPEN_MARKET)
    payload = stub_config(orderSizePercent=50)
    scanner, session = build_scanner(broker, gateway, storage, registry, payload, clock)

    result = scanner.tick()

    [outcome] = result.candidates
    assert outcome.outcome == "rejected"
    assert "Position size" in outcome.detail
    assert session.risk_rejections == 1
    assert session.error_count == 0
    with storage.connect() as conn:
        row = conn.execute("SELECT approved, symbol FROM risk_assessments").fetchone()
    assert row["approved"] == 0
    assert row["symbol"] == "AAPL"


def test_zero_share_size_is_rejected(broker, gateway, storage, registry):
    broker.price = 1_000.0
    clock = FixedClock(OPEN_MARKET)
    scanner, session = build_scanner(broker, gateway, storage, registry, stub_config(), clock)

    result = scanner.tick()

    [outcome] = result.candidates
    assert outcome.outcome == "rejected"
    assert session.risk_rejections == 1


def test_correlated_candidate_is_rejected(broker, gateway, storage, registry):
    from autopilot.broker import Position

    broker.positions = {"MSFT": Position("MSFT", 2, 100.0, 100.0)}
    clock = FixedClock(OPEN_MARKET)
    payload = stub_config(watchlist=("AAPL", "MSFT"), per_symbol={"MSFT": "HOLD"})
    scanner, _ = build_scanner(broker, gateway, storage, registry, payload, clock)

    result = scanner.tick()

    [outcome] = result.candidates
    assert outcome.symbol == "AAPL"
    assert outcome.outcome == "rejected"
    assert "Correlation" in outcome.detail


def test_daily_order_cap(broker, gateway, storage, registry):
    clock = FixedClock(OPEN_MARKET)
    payload = stub_config(watchlist=("AAPL", "MSFT"), maxOrdersPerDay=1)
    scanner, _ = build_scanner(broker, gateway, storage, registry, payload, clock)

    result = scanner.tick()

    assert sorted(c.outcome for c in result.candidates) == ["capped", "recommended"]
    assert len(storage.pending_recommendations()) == 1


def test_daily_cap_prefers_watchlist_order_on_equal_confidence(broker, gateway, storage, registry):
    import time

    from conftest import StubProducer

    class SlowOnFirstSymbol(StubProducer):
        def evaluate(self, symbol, market_data):
            if symbol == "AAPL":
                time.sleep(0.3)
            return super().evaluate(symbol, market_data)

    registry.factories["stub"] = SlowOnFirstSymbol
    clock = FixedClock(OPEN_MARKET)
    payload = stub_config(watchlist=("AAPL", "MSFT"), maxOrdersPerDay=1)
    scanner, _ = build_scanner(broker, gateway, storage, registry, payload, clock)

    result = scanner.tick()

    assert [(c.symbol, c.outcome) for c in result.candidates] == [("AAPL", "recommended"), ("MSFT", "capped")]
    assert [r["symbol"] for r in storage.pending_recommendations()] == ["AAPL"]


def test_daily_cap_counts_earlier_dispatches_from_storage(broker, gateway, storage, registry):
    storage.record_recommendation(
        "session_previous", "MSFT", "BUY", 1, 100.0, 98.0, 104.0, 0.9, "earlier",
        created_at=OPEN_MARKET - timedelta(hours=1),
    )
    clock = FixedClock(OPEN_MARKET)
    scanner, _ = build_scanner(broker, gateway, storage, registry, stub_config(maxOrdersPerDay=1), clock)

    result = scanner.tick()

    [outcome] = result.candidates
    assert outcome.outcome == "capped"


def test_cooldown_between_dispatches(broker, gateway, storage, registry):
    clock = FixedClock(OPEN_MARKET)
    scanner, _ = build_scanner(broker, gateway, storage, registry, stub_config(cooldownMinutes=5), clock)

    assert scanner.tick().candidates[0].outcome == "recommended"

    clock.advance(minutes=1)
    assert scanner.tick().candidates[0].outcome == "cooldown"

    clock.advance(minutes=10)
    assert scanner.tick().candidates[0].outcome == "recommended"


def test_rate_limited_order_counts_as_error_and_scan_continues(broker, gateway, storage, registry):
    from autopilot.broker import BrokerRateLimitError

    broker.order_errors = [BrokerRateLimitError("429 Too Many Requests") for _ in range(3)]
    clock = FixedClock(OPEN_MARKET)
    scanner, session = build_scanner(broker, gateway, storage, registry, stub_config(autoExecute=True), clock)

    result = scanner.tick()

    assert result.status == "completed"
    [outcome] = result.candidates
    assert outcome.outcome == "failed"
    assert session.error_count == 1
    assert "rate limited" in session.last_error
    assert sum(1 for name, _ in broker.calls if name == "place_order") == 3
    assert storage.trade_stats()["tradesExecuted"] == 0


def test_tick_failure_is_caught_and_counted(broker, gateway, storage, registry):
    broker.account_error = RuntimeError("account endpoint down")
    clock = FixedClock(OPEN_MARKET)
    scanner, session = build_scanner(broker, gateway, storage, registry, stub_config(), clock)

    result = scanner.tick()

    assert result.status == "failed"
    assert session.scan_count == 1
    assert session.error_count == 1
    assert "account endpoint down" in session.last_error

    broker.account_error = None
    assert scanner.tick().status == "completed"
    assert session.scan_count == 2


def test_symbol_without_market_data_is_skipped(gateway, storage, registry):
    from conftest import FakeBroker

    broker = FakeBroker(fail_candles={"MSFT"})
    clock = FixedClock(OPEN_MARKET)
    payload = stub_config(action="HOLD", watchlist=("AAPL", "MSFT"))
    scanner, session = build_scanner(broker, gateway, storage, registry, payload, clock)

    result = scanner.tick()

    assert result.status == "completed"
    assert result.analyzed == 1
    assert session.error_count == 0


def test_watchlist_batches_rotate(broker, gateway, storage, registry):
    clock = FixedClock(OPEN_MARKET)
    payload = stub_config(action="HOLD", watchlist=("AAPL", "MSFT", "NVDA"))
    scanner, _ = build_scanner(broker, gateway, storage, registry, payload, clock, max_symbols=2)

    assert scanner.tick().symbols == ["AAPL", "MSFT"]
    assert scanner.tick().symbols == ["NVDA", "AAPL"]


def test_overlapping_tick_is_skipped(broker, gateway, storage, registry):
    clock = FixedClock(OPEN_MARKET)
    scanner, session = build_scanner(broker, gateway, storage, registry, stub_config(), clock)

    scanner._busy.acquire()
    try:
        result = scanner.tick()
    finally:
        scanner._busy.release()

    assert result.status == "busy"
    assert session.scan_count == 0
    assert broker.calls == []


def test_tick_persists_metrics(broker, gateway, storage, registry):
    clock = FixedClock(OPEN_MARKET)
    scanner, _ = build_scanner(broker, gateway, storage, registry, stub_config(), clock)

    scanner.tick()

    metrics = storage.get_metrics()
    assert metrics["sessionId"] == "session_test"
    assert metrics["isRunning"] is True
    assert metrics["riskScore"] is not None
    assert any(row["type"] == "scan" for row in storage.recent_activity())


def test_start_registers_non_overlapping_interval_job(broker, gateway, storage, registry):
    clock = FixedClock(OPEN_MARKET)
    scanner, _ = build_scanner(broker, gateway, storage, registry, stub_config(), clock)

    scanner.start()
    scheduler = FakeScheduler.instances[-1]
    func, job = scheduler.jobs[0]

    assert scheduler.started
    assert job["max_instances"] == 1
    assert job["coalesce"] is True
    assert job["next_run_time"] is not None
    assert job["trigger"].interval == timedelta(seconds=60)

    scanner.stop()
    assert scheduler.shut_down
    func()
    assert broker.calls == []
