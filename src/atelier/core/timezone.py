"""UTC clock helpers.

All persisted timestamps are UTC. The TZ variable is pinned so naive values
coming back from drivers without timezone support are still UTC.
"""

import os
from datetime import datetime, timezone

os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def epoch_ms(value: datetime) -> int:
    return int(as_utc(value).timestamp() * 1000)
