"""Tests for risk assessment and the hard risk limits."""
import pytest


def test_reference_buy_is_low_risk():
    from autopilot.risk import assess_trade

    a = assess_trade("aapl", "BUY", 10, 100.0, 98.0, 106.0, 10_000.0)

    assert a.symbol == "AAPL"
    assert a.risk_amount == pytest.approx(20.0)
    assert a.potential_reward == pytest.approx(60.0)
    assert a.risk_reward_ratio == pytest.approx(3.0)
    assert a.position_size_percent == pytest.approx(10.0)
    assert a.account_risk_percent == pytest.approx(0.2)
    assert a.overall_risk_score == pytest.approx(25.6)
    assert a.risk_level == "LOW"
    assert a.warnings == ()
    assert a.recommendations == ()


def test_oversized_position_warns_and_is_extreme():
    from autopilot.risk import assess_trade

    a = assess_trade("AAPL", "BUY", 300, 100.0, 98.0, 106.0, 10_000.0)

    assert a.position_size_percent == pytest.approx(300.0)
    assert a.overall_risk_score == pytest.approx(53.0)
    assert a.risk_level == "EXTREME"
    assert any("Position size 300.0%" in w for w in a.warnings)
    assert any("leveraged" in w for w in a.warnings)
    assert any("Account risk" in w for w in a.warnings)


def test_sell_uses_inverted_distances():
    from autopilot.risk import assess_trade

    a = assess_trade("TSLA", "SELL", 10, 100.0, 102.0, 94.0, 10_000.0)

    assert a.risk_amount == pytest.approx(20.0)
    assert a.potential_reward == pytest.approx(60.0)
    assert a.risk_reward_ratio == pytest.approx(3.0)
    assert not a.stop_on_wrong_side


def test_zero_risk_amount_is_undefined_not_a_fault():
    from autopilot.config import RiskManagementConfig
    from autopilot.risk import AccountState, RiskEngine, assess_trade

    a = assess_trade("AAPL", "BUY", 10, 100.0, 100.0, 106.0, 10_000.0)

    assert a.risk_reward_ratio is None
    assert a.to_dict()["riskRewardRatio"] is None
    assert any("undefined" in w for w in a.warnings)

    decision = RiskEngine(RiskManagementConfig()).evaluate(a, 0.9, AccountState(10_000, 10_000, 10_000))
    assert not decision.approved
    assert any("undefined" in r for r in decision.rejections)


def test_score_is_monotone_in_position_size():
    from autopilot.risk import assess_trade

    scores = [
        assess_trade("AAPL", "BUY", qty, 100.0, 98.0, 106.0, 10_000.0).overall_risk_score
        for qty in range(1, 400, 7)
    ]
    assert scores == sorted(scores)
    assert all(0 <= s <= 100 for s in scores)


def test_poor_reward_gets_recommendation():
    from autopilot.risk import assess_trade

    a = assess_trade("AAPL", "BUY", 10, 100.0, 95.0, 102.0, 10_000.0)

    assert a.risk_reward_ratio == pytest.approx(0.4)
    assert any("Risk/reward ratio 0.40" in w for w in a.warnings)
    assert "Consider adjusting target price or stop loss" in a.recommendations


def test_high_score_recommends_smaller_position():
    from autopilot.risk import assess_trade

    a = assess_trade("AAPL", "BUY", 100, 100.0, 90.0, 105.0, 10_000.0)

    assert a.overall_risk_score > 70
    assert "Consider reducing position size" in a.recommendations


def test_stop_on_wrong_side_is_flagged():
    from autopilot.risk import assess_trade

    a = assess_trade("AAPL", "BUY", 10, 100.0, 101.0, 106.0, 10_000.0)

    assert a.stop_on_wrong_side
    assert any("below the entry price" in w for w in a.warnings)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"account_balance": 0},
        {"account_balance": -5},
        {"quantity": 0},
        {"entry_price": 0},
        {"action": "HOLD"},
    ],
)
def test_invalid_inputs_raise(kwargs):
    from autopilot.risk import assess_trade

    args = {
        "symbol": "AAPL",
        "action": "BUY",
        "quantity": 10,
        "entry_price": 100.0,
        "stop_loss": 98.0,
        "target_price": 106.0,
        "account_balance": 10_000.0,
    }
    args.update(kwargs)
    with pytest.raises(ValueError):
        assess_trade(**args)


def test_risk_level_bands():
    from autopilot.risk import risk_level_for

    assert risk_level_for(29.9) == "LOW"
    assert risk_level_for(30) == "MEDIUM"
    assert risk_level_for(60) == "HIGH"
    assert risk_level_for(85) == "EXTREME"
    assert risk_level_for(10, position_size_percent=150) == "EXTREME"


def test_default_exit_levels():
    from autopilot.risk import default_exit_levels

    assert default_exit_levels("BUY", 100.0) == pytest.approx((98.0, 105.0))
    assert default_exit_levels("SELL", 100.0) == pytest.approx((102.0, 95.0))
    assert default_exit_levels("BUY", 50.0, 4.0, 8.0) == pytest.approx((48.0, 54.0))


def test_size_position_rounds_down_to_whole_shares():
    from autopilot.risk import size_position

    assert size_position(10_000, 100.0, 2.0) == 2
    assert size_position(10_000, 30.0, 2.0) == 6
    assert size_position(10_000, 300.0, 2.0) == 0
    assert size_position(0, 100.0, 2.0) == 0


def test_account_state_losses():
    from autopilot.risk import AccountState

    state = AccountState(equity=9_700, day_start_equity=10_000, peak_equity=12_000)

    assert state.daily_loss_percent == pytest.approx(3.0)
    assert state.drawdown_percent == pytest.approx(19.1666, rel=1e-3)
    assert AccountState(11_000, 10_000, 11_000).daily_loss_percent == 0.0


def _engine(**limits):
    from autopilot.config import RiskManagementConfig
    from autopilot.risk import RiskEngine

    return RiskEngine(RiskManagementConfig(**limits))


def _healthy_account():
    from autopilot.risk import AccountState

    return AccountState(equity=10_000, day_start_equity=10_000, peak_equity=10_000)


def test_engine_approves_reference_trade():
    from autopilot.risk import assess_trade

    a = assess_trade("AAPL", "BUY", 5, 100.0, 98.0, 106.0, 10_000.0)
    decision = _engine().evaluate(a, 0.9, _healthy_account())

    assert decision.approved
    assert decision.rejections == ()
    assert decision.to_dict()["assessment"]["symbol"] == "AAPL"


def test_engine_rejections():
    from autopilot.risk import AccountState, assess_trade

    big = assess_trade("AAPL", "BUY", 20, 100.0, 98.0, 106.0, 10_000.0)
    assert "Position size" in _engine().evaluate(big, 0.9, _healthy_account()).rejections[0]

    ok = assess_trade("AAPL", "BUY", 5, 100.0, 98.0, 106.0, 10_000.0)
    assert "Confidence" in _engine().evaluate(ok, 0.5, _healthy_account()).rejections[0]

    losing_day = AccountState(equity=9_700, day_start_equity=10_000, peak_equity=10_000)
    assert "Daily loss" in _engine().evaluate(ok, 0.9, losing_day).rejections[0]

    deep = AccountState(equity=8_000, day_start_equity=8_000, peak_equity=10_000)
    assert "Drawdown" in _engine().evaluate(ok, 0.9, deep).rejections[0]

    correlated = _engine().evaluate(ok, 0.9, _healthy_account(), correlation=("MSFT", 0.92))
    assert "Correlation 0.92 with MSFT" in correlated.rejections[0]

    weak = assess_trade("AAPL", "BUY", 5, 100.0, 98.0, 101.0, 10_000.0)
    assert "Risk/reward" in _engine().evaluate(weak, 0.9, _healthy_account()).rejections[0]


def test_exits_skip_entry_only_limits():
    from autopilot.risk import AccountState, assess_trade

    exit_trade = assess_trade("AAPL", "SELL", 50, 100.0, 102.0, 94.0, 10_000.0)
    losing_day = AccountState(equity=9_000, day_start_equity=10_000, peak_equity=10_000)

    decision = _engine().evaluate(exit_trade, 0.9, losing_day, reduces_exposure=True)

    assert decision.approved


def test_max_correlation():
    from autopilot.risk import max_correlation

    base = [0.01, -0.02, 0.015, 0.003, -0.007, 0.02, -0.01, 0.004, 0.012, -0.005, 0.008, -0.003]
    inverse = [-r for r in base]
    noise = [0.002, 0.001, -0.004, 0.006, 0.0, -0.002, 0.003, -0.001, 0.005, -0.006, 0.001, 0.002]

    symbol, value = max_correlation(base, {"INV": inverse, "NOISE": noise})
    assert symbol == "INV"
    assert value == pytest.approx(1.0)

    assert max_correlation(base, {"SHORT": base[:5]}) == (None, 0.0)
    assert max_correlation(base, {}) == (None, 0.0)
