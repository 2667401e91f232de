"""
Time helpers. Everything is stored and broadcast as timezone-aware UTC.
"""
from datetime import datetime
from typing import Optional

import pytz


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()

