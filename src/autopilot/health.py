from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


@dataclass
class HealthThresholds:
    error_rate_warning: float = 0.2
    error_rate_error: float = 0.5
    stale_warning_seconds: float = 120.0
    stale_error_seconds: float = 300.0


def evaluate_health(
    is_running: bool,
    scan_count: int,
    error_count: int,
    last_tick_at: datetime | None,
    started_at: datetime | None,
    thresholds: HealthThresholds | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Derive HEALTHY / WARNING / ERROR from error rate and tick staleness.

    A stopped bot is HEALTHY.  Staleness is measured from the last tick the
    scheduler ran (including ticks skipped outside market hours), falling
    back to the session start before the first tick.
    """
    t = thresholds or HealthThresholds()
    now = now or datetime.now(timezone.utc)

    report: dict[str, Any] = {"status": "HEALTHY", "errorRate": 0.0, "secondsSinceLastScan": None, "issues": []}
    if not is_running:
        return report

    error_rate = error_count / scan_count if scan_count > 0 else 0.0
    report["errorRate"] = round(error_rate, 4)

    reference = last_tick_at or started_at
    staleness = (now - reference).total_seconds() if reference else 0.0
    report["secondsSinceLastScan"] = round(staleness, 1)

    level = 0
    if error_rate > t.error_rate_error:
        level = 2
        report["issues"].append(f"Error rate {error_rate:.0%} above {t.error_rate_error:.0%}")
    elif error_rate > t.error_rate_warning:
        level = 1
        report["issues"].append(f"Error rate {error_rate:.0%} above {t.error_rate_warning:.0%}")

    if staleness > t.stale_error_seconds:
        level = 2
        report["issues"].append(f"No scan for {staleness / 60:.1f} min")
    elif staleness > t.stale_warning_seconds:
        level = max(level, 1)
        report["issues"].append(f"No scan for {staleness / 60:.1f} min")

    report["status"] = ("HEALTHY", "WARNING", "ERROR")[level]
    return report
