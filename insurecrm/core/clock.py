"""
Time helpers

Timestamps are stored as naive UTC datetimes. Schedulers take a ``now``
callable so tests can move the clock.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
