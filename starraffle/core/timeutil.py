import pytz
from datetime import datetime
UTC = pytz.UTC

def now_utc() -> datetime:
    return datetime.now(UTC)

def to_naive(dt: datetime) -> datetime:
    if dt.tzinfo:
        return dt.astimezone(UTC).replace(tzinfo=None)
    return dt

def utcnow_naive() -> datetime:
    # DateTime columns hold naive UTC
    return to_naive(now_utc())

def epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = UTC.localize(dt)
    return int(dt.timestamp() * 1000)
