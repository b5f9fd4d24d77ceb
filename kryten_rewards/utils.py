"""Shared utility helpers for kryten-rewards."""

from __future__ import annotations

import sqlite3
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from decimal import ROUND_HALF_EVEN, Decimal
from zoneinfo import ZoneInfo

MONEY_QUANTUM = Decimal("0.0001")

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Fixed-width UTC ISO string so stored timestamps sort lexically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_timestamp(ts: str | None) -> datetime | None:
    """Parse a stored TIMESTAMP string to timezone-aware datetime, or None."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts)
        # SQLite stores naive timestamps as UTC
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, TypeError):
        return None


def to_money(value: Decimal | int | float | str) -> Decimal:
    """Quantize a currency amount to 4 decimal places."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_EVEN)


def connect_sqlite(path: str) -> sqlite3.Connection:
    """Create a new SQLite connection with standard settings."""
    conn = sqlite3.connect(path, timeout=30)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=30000")
    conn.row_factory = sqlite3.Row
    return conn


class CalendarPolicy:
    """Calendar-day boundaries evaluated in one configured timezone.

    Check-in days, daily earning caps, daily withdrawal totals and weekly
    bonus resets all use this policy, so two devices with different local
    clocks agree on what "today" means.
    """

    def __init__(self, tz_name: str = "UTC") -> None:
        self.tz_name = tz_name
        self._tz: tzinfo = timezone.utc if tz_name.upper() == "UTC" else ZoneInfo(tz_name)

    def local_date(self, dt: datetime) -> date:
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(self._tz).date()

    def is_same_day(self, a: datetime | None, b: datetime) -> bool:
        return a is not None and self.local_date(a) == self.local_date(b)

    def is_previous_day(self, earlier: datetime | None, now: datetime) -> bool:
        if earlier is None:
            return False
        return self.local_date(earlier) == self.local_date(now) - timedelta(days=1)

    def start_of_day(self, now: datetime) -> datetime:
        """Midnight of now's calendar day, expressed in UTC."""
        midnight = datetime.combine(self.local_date(now), time.min, tzinfo=self._tz)
        return midnight.astimezone(timezone.utc)

    def iso_week(self, dt: datetime) -> str:
        """Return ISO week string like '2026-W09'."""
        return self.local_date(dt).strftime("%G-W%V")
