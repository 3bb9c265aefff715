from __future__ import annotations

import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Generic, Iterator, TypeVar

from ..core.clock import TimestampFactory, utc_now
from ..core.config import ErrorHandlingSettings, HistorySettings
from ..schemas.errors import OperationErrorRecord
from ..schemas.handoff import Stage
from ..schemas.quality import QualityCheckResult

T = TypeVar("T")


class BoundedHistory(Generic[T]):
    """Append-only history capped by size and by age.

    Not thread-safe on its own; the owning store serialises access.
    """

    def __init__(self, *, max_items: int, ttl_seconds: float, now: TimestampFactory) -> None:
        self._entries: deque[tuple[datetime, T]] = deque(maxlen=max_items)
        self._ttl = timedelta(seconds=ttl_seconds)
        self._now = now

    def append(self, item: T) -> None:
        self.prune()
        self._entries.append((self._now(), item))

    def prune(self) -> None:
        cutoff = self._now() - self._ttl
        while self._entries and self._entries[0][0] < cutoff:
            self._entries.popleft()

    def items(self) -> list[T]:
        self.prune()
        return [item for _, item in self._entries]

    def latest(self, predicate: Callable[[T], bool] | None = None) -> T | None:
        self.prune()
        for _, item in reversed(self._entries):
            if predicate is None or predicate(item):
                return item
        return None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        self.prune()
        return len(self._entries)

    def __iter__(self) -> Iterator[T]:
        return iter(self.items())


class _ExpiringMap(Generic[T]):
    """Insertion-ordered map that evicts the oldest key past capacity or TTL."""

    def __init__(self, *, max_items: int, ttl_seconds: float, now: TimestampFactory) -> None:
        self._data: OrderedDict[str, tuple[datetime, T]] = OrderedDict()
        self._max_items = max_items
        self._ttl = timedelta(seconds=ttl_seconds)
        self._now = now

    def get(self, key: str) -> T | None:
        self._prune()
        entry = self._data.get(key)
        return entry[1] if entry is not None else None

    def set(self, key: str, value: T) -> None:
        self._data.pop(key, None)
        self._data[key] = (self._now(), value)
        self._prune()

    def pop(self, key: str) -> T | None:
        entry = self._data.pop(key, None)
        return entry[1] if entry is not None else None

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        self._prune()
        return len(self._data)

    def _prune(self) -> None:
        cutoff = self._now() - self._ttl
        while self._data:
            key, (touched_at, _) = next(iter(self._data.items()))
            if touched_at >= cutoff and len(self._data) <= self._max_items:
                break
            self._data.pop(key)


@dataclass(slots=True)
class RateLimitState:
    multiplier: float = 1.0
    last_hit: datetime | None = None
    hits: int = 0


@dataclass(slots=True)
class WorkflowRun:
    run_id: str
    completed: list[Stage] = field(default_factory=list)


class WorkflowStateStore:
    """In-process state shared by the workflow components.

    Holds quality checkpoint history, per-operation rate-limit tracking,
    correction attempt counters, completed stages per run, and the
    operation error log. All collections are bounded.
    """

    def __init__(
        self,
        *,
        history: HistorySettings | None = None,
        error_handling: ErrorHandlingSettings | None = None,
        now: TimestampFactory | None = None,
    ) -> None:
        self._history_settings = history or HistorySettings()
        self._error_settings = error_handling or ErrorHandlingSettings()
        self._now: TimestampFactory = now or utc_now
        self._lock = threading.Lock()
        settings = self._history_settings
        self._quality: BoundedHistory[QualityCheckResult] = BoundedHistory(
            max_items=settings.max_quality_records,
            ttl_seconds=settings.quality_ttl_seconds,
            now=self._now,
        )
        self._errors: BoundedHistory[OperationErrorRecord] = BoundedHistory(
            max_items=settings.max_handoff_records,
            ttl_seconds=settings.workflow_ttl_seconds,
            now=self._now,
        )
        self._corrections: _ExpiringMap[int] = _ExpiringMap(
            max_items=settings.max_correction_keys,
            ttl_seconds=settings.correction_ttl_seconds,
            now=self._now,
        )
        self._runs: _ExpiringMap[WorkflowRun] = _ExpiringMap(
            max_items=settings.max_workflow_runs,
            ttl_seconds=settings.workflow_ttl_seconds,
            now=self._now,
        )
        self._rate_limits: dict[str, RateLimitState] = {}

    @property
    def now(self) -> TimestampFactory:
        return self._now

    # Quality checkpoint history

    def record_quality(self, result: QualityCheckResult) -> None:
        with self._lock:
            self._quality.append(result)

    def latest_quality(self, run_id: str | None = None) -> QualityCheckResult | None:
        with self._lock:
            return self._quality.latest(lambda record: record.run_id == run_id)

    def quality_history(self) -> list[QualityCheckResult]:
        with self._lock:
            return self._quality.items()

    # Rate-limit tracking

    def register_rate_limit_hit(self, operation: str) -> float:
        """Record a rate-limit hit and return the updated backoff multiplier."""
        settings = self._error_settings
        with self._lock:
            now = self._now()
            state = self._rate_limits.setdefault(operation, RateLimitState())
            window = timedelta(seconds=settings.rate_limit_window_seconds)
            if state.last_hit is not None and now - state.last_hit < window:
                state.multiplier = min(state.multiplier * settings.rate_limit_growth, settings.rate_limit_max_multiplier)
            else:
                state.multiplier = max(state.multiplier * settings.rate_limit_relax, 1.0)
            state.last_hit = now
            state.hits += 1
            return state.multiplier

    def rate_limit_state(self, operation: str) -> RateLimitState | None:
        with self._lock:
            state = self._rate_limits.get(operation)
            if state is None:
                return None
            return RateLimitState(multiplier=state.multiplier, last_hit=state.last_hit, hits=state.hits)

    def reset_rate_limits(self, operation: str | None = None) -> None:
        with self._lock:
            if operation is None:
                self._rate_limits.clear()
            else:
                self._rate_limits.pop(operation, None)

    # Correction attempts

    def correction_attempts(self, key: str) -> int:
        with self._lock:
            return self._corrections.get(key) or 0

    def increment_correction(self, key: str) -> int:
        with self._lock:
            attempts = (self._corrections.get(key) or 0) + 1
            self._corrections.set(key, attempts)
            return attempts

    def clear_correction(self, key: str) -> None:
        with self._lock:
            self._corrections.pop(key)

    # Workflow runs

    def completed_stages(self, run_id: str) -> list[Stage]:
        with self._lock:
            run = self._runs.get(run_id)
            return list(run.completed) if run is not None else []

    def mark_stage_complete(self, run_id: str, stage: Stage) -> None:
        with self._lock:
            run = self._runs.get(run_id) or WorkflowRun(run_id=run_id)
            if stage not in run.completed:
                run.completed.append(stage)
            self._runs.set(run_id, run)

    def reset_run(self, run_id: str) -> None:
        with self._lock:
            self._runs.pop(run_id)

    # Operation errors

    def record_error(self, record: OperationErrorRecord) -> None:
        with self._lock:
            self._errors.append(record)

    def errors(self, operation: str | None = None) -> list[OperationErrorRecord]:
        with self._lock:
            records = self._errors.items()
        if operation is None:
            return records
        return [record for record in records if record.operation == operation]

    def clear_errors(self) -> None:
        with self._lock:
            self._errors.clear()
