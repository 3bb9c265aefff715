from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

TimestampFactory = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ManualClock:
    """Deterministic clock for tests and replay; advance it explicitly."""

    def __init__(self, start: datetime | None = None) -> None:
        self._current = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self._current

    def advance(self, *, seconds: float) -> datetime:
        self._current = self._current + timedelta(seconds=seconds)
        return self._current
