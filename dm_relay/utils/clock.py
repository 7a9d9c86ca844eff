import threading
from datetime import datetime, timedelta, timezone
from typing import Optional


class MonotonicClock:
    """UTC clock with millisecond resolution that never repeats a value.

    MongoDB stores datetimes with millisecond precision, so two writes in the
    same millisecond are bumped apart to keep per-writer ordering strict.
    """

    def __init__(self) -> None:
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        current = datetime.now(timezone.utc)
        current = current.replace(microsecond=(current.microsecond // 1000) * 1000)
        with self._lock:
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(milliseconds=1)
            self._last = current
        return current


_clock = MonotonicClock()


def utcnow() -> datetime:
    return _clock.now()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_millis(value: datetime) -> int:
    return int(as_utc(value).timestamp() * 1000)


def from_millis(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
