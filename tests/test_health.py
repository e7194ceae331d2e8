"""Tests for the session health rules."""
from datetime import timedelta

from conftest import OPEN_MARKET


def health(**kwargs):
    from autopilot.health import evaluate_health

    params = {
        "is_running": True,
        "scan_count": 10,
        "error_count": 0,
        "last_tick_at": OPEN_MARKET,
        "started_at": OPEN_MARKET - timedelta(hours=1),
        "now": OPEN_MARKET + timedelta(seconds=30),
    }
    params.update(kwargs)
    return evaluate_health(**params)


def test_stopped_bot_is_healthy():
    report = health(is_running=False, error_count=10)

    assert report["status"] == "HEALTHY"
    assert report["issues"] == []


def test_fresh_scans_are_healthy():
    report = health()

    assert report["status"] == "HEALTHY"
    assert report["secondsSinceLastScan"] == 30.0


def test_error_rate_thresholds_are_strict():
    assert health(error_count=2)["status"] == "HEALTHY"
    assert health(error_count=3)["status"] == "WARNING"
    assert health(error_count=5)["status"] == "WARNING"
    report = health(error_count=6)
    assert report["status"] == "ERROR"
    assert report["errorRate"] == 0.6


def test_staleness_thresholds():
    assert health(now=OPEN_MARKET + timedelta(seconds=120))["status"] == "HEALTHY"
    assert health(now=OPEN_MARKET + timedelta(seconds=121))["status"] == "WARNING"
    report = health(now=OPEN_MARKET + timedelta(minutes=10))
    assert report["status"] == "ERROR"
    assert report["issues"] == ["No scan for 10.0 min"]


def test_start_time_is_used_before_the_first_tick():
    report = health(scan_count=0, last_tick_at=None, started_at=OPEN_MARKET, now=OPEN_MARKET + timedelta(minutes=3))

    assert report["status"] == "WARNING"
    assert report["errorRate"] == 0.0


def test_custom_thresholds():
    from autopilot.health import HealthThresholds

    thresholds = HealthThresholds(error_rate_warning=0.05, error_rate_error=0.1)

    assert health(error_count=1, thresholds=thresholds)["status"] == "WARNING"
    assert health(error_count=2, thresholds=thresholds)["status"] == "ERROR"
