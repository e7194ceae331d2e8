"""US equity regular-session calendar (NYSE hours and full-day holidays)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time as clock_time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo


MARKET_TZ = ZoneInfo("America/New_York")
MARKET_OPEN = clock_time(9, 30)
MARKET_CLOSE = clock_time(16, 0)


@dataclass(frozen=True)
class MarketStatus:
    is_open: bool
    reason: str          # regular_session / weekend / holiday / pre_market / after_hours
    timestamp_et: str

    def to_dict(self) -> dict[str, object]:
        return {"isOpen": self.is_open, "reason": self.reason, "timestampEt": self.timestamp_et}


def _nth_weekday_of_month(year: int, month: int, weekday: int, occurrence: int) -> date:
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return date(year, month, 1 + offset + (occurrence - 1) * 7)


def _last_weekday_of_month(year: int, month: int, weekday: int) -> date:
    cursor = date(year + (month == 12), month % 12 + 1, 1) - timedelta(days=1)
    while cursor.weekday() != weekday:
        cursor -= timedelta(days=1)
    return cursor


def _observed(day: date) -> date:
    if day.weekday() == 5:
        return day - timedelta(days=1)
    if day.weekday() == 6:
        return day + timedelta(days=1)
    return day


def _easter_sunday(year: int) -> date:
    # Anonymous Gregorian algorithm
    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    l = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * l) // 451
    month, day = divmod(h + l - 7 * m + 114, 31)
    return date(year, month, day + 1)


@lru_cache(maxsize=16)
def us_equity_holidays(year: int) -> frozenset[date]:
    holidays = {
        _nth_weekday_of_month(year, 1, 0, 3),            # Martin Luther King Jr. Day
        _nth_weekday_of_month(year, 2, 0, 3),            # Washington's Birthday
        _easter_sunday(year) - timedelta(days=2),        # Good Friday
        _last_weekday_of_month(year, 5, 0),              # Memorial Day
        _nth_weekday_of_month(year, 9, 0, 1),            # Labor Day
        _nth_weekday_of_month(year, 11, 3, 4),           # Thanksgiving
        _observed(date(year, 7, 4)),
        _observed(date(year, 12, 25)),
    }
    if year >= 2022:
        holidays.add(_observed(date(year, 6, 19)))
    # NYSE does not observe New Year's Day on the prior Friday
    new_year = date(year, 1, 1)
    if new_year.weekday() != 5:
        holidays.add(_observed(new_year))
    return frozenset(holidays)


def market_status(now: datetime | None = None) -> MarketStatus:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    et = now.astimezone(MARKET_TZ)
    stamp = et.isoformat()

    if et.weekday() >= 5:
        return MarketStatus(False, "weekend", stamp)
    if et.date() in us_equity_holidays(et.year):
        return MarketStatus(False, "holiday", stamp)
    if et.time() < MARKET_OPEN:
        return MarketStatus(False, "pre_market", stamp)
    if et.time() >= MARKET_CLOSE:
        return MarketStatus(False, "after_hours", stamp)
    return MarketStatus(True, "regular_session", stamp)


def is_market_open(now: datetime | None = None) -> bool:
    return market_status(now).is_open
