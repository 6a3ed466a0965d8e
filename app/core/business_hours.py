"""
Time helpers: naive-UTC "now" used for every stored timestamp, and the local
business-hours gate that the autonomous loops check before claiming anything.
"""
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from app.core.config import settings


def utcnow() -> datetime:
    """Naive UTC now - the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_local(moment: datetime, tz_name: str | None = None) -> datetime:
    """Convert a naive-UTC timestamp to the business timezone."""
    tz = ZoneInfo(tz_name or settings.BUSINESS_TIMEZONE)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz)


def is_within_business_hours(
    now: datetime | None = None,
    *,
    start_hour: int | None = None,
    end_hour: int | None = None,
) -> bool:
    """True when local time is inside [start_hour, end_hour)."""
    start = settings.BUSINESS_HOURS_START if start_hour is None else start_hour
    end = settings.BUSINESS_HOURS_END if end_hour is None else end_hour
    local = to_local(now or utcnow())
    return start <= local.hour < end


def describe_business_hours(now: datetime | None = None) -> str:
    """Short phrase for the oracle's temporal context."""
    local = to_local(now or utcnow())
    if local.weekday() >= 5:
        return "weekend, business offices mostly closed"
    if local.hour < 9:
        return "early morning, before business hours"
    if local.hour < 17:
        return "during business hours"
    return "evening, after business hours"
