"""
Monthly quota periods.

All period arithmetic is done in UTC.
"""

import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def period_of(moment: datetime) -> Tuple[int, int]:
    """(year, month) of a UTC instant."""
    moment = moment.astimezone(timezone.utc)
    return moment.year, moment.month


def period_start(year: int, month: int) -> datetime:
    """First instant of the month, 00:00:00 UTC."""
    return datetime(year, month, 1, tzinfo=timezone.utc)


def period_end(year: int, month: int) -> datetime:
    """Last millisecond of the month, 23:59:59.999 UTC."""
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, last_day, 23, 59, 59, 999000, tzinfo=timezone.utc)


def format_period(year: int, month: int) -> str:
    """Format like ``2025-12``."""
    return f"{year}-{month:02d}"


def days_remaining(end_at: Optional[datetime], now: Optional[datetime] = None) -> int:
    """Whole days until ``end_at``; 0 once the period has ended."""
    if end_at is None:
        return 0
    now = now or utc_now()
    if now > end_at:
        return 0
    return (end_at - now) // timedelta(days=1)
