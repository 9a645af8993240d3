from datetime import datetime, timezone
from decimal import Decimal
import math

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: datetime | None) -> datetime | None:
    # 无时区信息的时间按 UTC 处理
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def elapsed_minutes(start: datetime, end: datetime) -> int:
    start, end = as_utc(start), as_utc(end)
    if end < start:
        return 0
    return int((end - start).total_seconds() // 60)

def billable_hours(start: datetime, end: datetime) -> int:
    """Whole hours between two instants, any started hour counting in full."""
    return math.ceil(elapsed_minutes(start, end) / 60)

def hours_between(start: datetime, end: datetime) -> Decimal:
    seconds = int((as_utc(end) - as_utc(start)).total_seconds())
    return Decimal(seconds) / Decimal(3600)
