from __future__ import annotations

import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from ..core.clock import TimestampFactory, utc_now
from ..core.metrics import record_handoff_transition


@dataclass(slots=True)
class HandoffRecord:
    transition: str
    run_id: str | None
    success: bool
    duration_ms: float
    correction_used: bool
    error_count: int
    warning_count: int
    errors: list[str] = field(default_factory=list)
    recorded_at: datetime | None = None


@dataclass(slots=True)
class HandoffSummary:
    captured_at: datetime
    total: int
    successful: int
    failed: int
    success_rate: float
    average_duration_ms: float
    corrections_used: int
    by_transition: dict[str, int] = field(default_factory=dict)
    common_errors: list[tuple[str, int]] = field(default_factory=list)


def build_handoff_summary(
    records: Iterable[HandoffRecord],
    *,
    captured_at: datetime | None = None,
    top_errors: int = 5,
) -> HandoffSummary:
    records = list(records)
    captured = captured_at or utc_now()
    if not records:
        return HandoffSummary(
            captured_at=captured,
            total=0,
            successful=0,
            failed=0,
            success_rate=0.0,
            average_duration_ms=0.0,
            corrections_used=0,
        )
    successful = sum(1 for record in records if record.success)
    errors = Counter(message for record in records for message in record.errors)
    return HandoffSummary(
        captured_at=captured,
        total=len(records),
        successful=successful,
        failed=len(records) - successful,
        success_rate=successful / len(records),
        average_duration_ms=sum(record.duration_ms for record in records) / len(records),
        corrections_used=sum(1 for record in records if record.correction_used),
        by_transition=dict(Counter(record.transition for record in records)),
        common_errors=errors.most_common(top_errors),
    )


class HandoffMonitor:
    """Keeps a bounded in-memory log of transition outcomes."""

    def __init__(self, *, max_records: int = 1000, now: TimestampFactory | None = None) -> None:
        self._records: deque[HandoffRecord] = deque(maxlen=max_records)
        self._now: TimestampFactory = now or utc_now
        self._lock = threading.Lock()

    def record(self, record: HandoffRecord) -> None:
        if record.recorded_at is None:
            record.recorded_at = self._now()
        with self._lock:
            self._records.append(record)
        record_handoff_transition(
            transition=record.transition,
            success=record.success,
            latency=record.duration_ms / 1000.0,
        )

    def records(self, *, transition: str | None = None) -> list[HandoffRecord]:
        with self._lock:
            items = list(self._records)
        if transition is None:
            return items
        return [record for record in items if record.transition == transition]

    def summary(self, *, transition: str | None = None) -> HandoffSummary:
        return build_handoff_summary(self.records(transition=transition), captured_at=self._now())

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
