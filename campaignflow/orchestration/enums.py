from __future__ import annotations

from enum import Enum


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FALLBACK = "fallback"
    SKIPPED = "skipped"
    FAILED = "failed"


class HaltReason(str, Enum):
    BUDGET_EXCEEDED = "budget_exceeded"
    QUALITY_GATE_CLOSED = "quality_gate_closed"


__all__ = ["StepStatus", "HaltReason"]
