"""
UTC calendar helpers.

All daily and monthly windows in the system are aligned to UTC midnight.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple


def utc_now(now: Optional[datetime] = None) -> datetime:
    """Return ``now`` as an aware UTC datetime, defaulting to the wall clock."""
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def isoformat(moment: datetime) -> str:
    return utc_now(moment).isoformat(timespec="seconds")


def utc_today(now: Optional[datetime] = None) -> date:
    return utc_now(now).date()


def yesterday(day: date) -> date:
    return day - timedelta(days=1)


def stat_date(now: Optional[datetime] = None) -> str:
    """Daily window key, YYYY-MM-DD."""
    return utc_today(now).isoformat()


def stat_month(now: Optional[datetime] = None) -> str:
    """Monthly window key, YYYYMM."""
    return utc_now(now).strftime("%Y%m")


def day_bounds(now: Optional[datetime] = None) -> Tuple[str, str]:
    """ISO timestamps of [today 00:00 UTC, tomorrow 00:00 UTC)."""
    start = datetime.combine(utc_today(now), datetime.min.time(), tzinfo=timezone.utc)
    end = start + timedelta(days=1)
    return isoformat(start), isoformat(end)


def seconds_until_reset(now: Optional[datetime] = None) -> int:
    """Whole seconds until the next UTC midnight."""
    moment = utc_now(now)
    midnight = datetime.combine(
        moment.date() + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc
    )
    return int((midnight - moment).total_seconds())
