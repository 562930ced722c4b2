from __future__ import annotations

# Time source shared by the engine, the token allocator and the store queries.
#
# "Today" is always derived from `Clock.now()`, never from a string-truncated
# timestamp, so tests can move the day boundary deterministically.

from datetime import date, datetime, timedelta


class SystemClock:
    """Local wall-clock time."""

    def now(self) -> datetime:
        return datetime.now()

    def today(self) -> date:
        return self.now().date()


class FixedClock(SystemClock):
    """Manually driven clock for tests and replays."""

    def __init__(self, start: datetime) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when

    def advance(self, **kwargs: float) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now
