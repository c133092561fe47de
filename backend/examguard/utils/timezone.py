"""
Time helpers.

Everything inside the monitoring core is timezone-aware UTC; conversion to
the configured display timezone happens only at the edges (reports,
response headers).
"""
from datetime import datetime, timedelta, timezone
import pytz
from typing import Optional

from ..core.config import settings

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def get_local_tz():
    return pytz.timezone(settings.default_timezone)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes (e.g. read back from SQLite) are treated as UTC"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def to_epoch_ms(dt: datetime) -> int:
    return (ensure_utc(dt) - EPOCH) // timedelta(milliseconds=1)


def utc_to_local(utc_dt: datetime) -> datetime:
    return ensure_utc(utc_dt).astimezone(get_local_tz())


def format_local_time(dt: Optional[datetime], format_str: Optional[str] = None) -> Optional[str]:
    if dt is None:
        return None
    return utc_to_local(dt).strftime(format_str or settings.timezone_display_format)


def get_timezone_info() -> dict:
    now = utc_to_local(utc_now())
    return {
        "timezone": settings.default_timezone,
        "offset": now.strftime("%z"),
        "current_time": now.strftime(settings.timezone_display_format),
    }
