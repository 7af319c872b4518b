from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC now, matching how the driver hands datetimes back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe epoch-seconds field to a naive UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def month_bounds(now: datetime):
    """First instant of the month containing ``now`` and of the next one."""
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end
