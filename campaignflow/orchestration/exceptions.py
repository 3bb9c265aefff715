from __future__ import annotations

from typing import Any


class WorkflowError(RuntimeError):
    """Base class for workflow engine failures."""


class PlanExecutionError(WorkflowError):
    """Raised when a plan cannot be executed as given."""


class OperationFailure(WorkflowError):
    """Raised by operation executors; carries an optional code or HTTP status."""

    def __init__(self, message: str, *, code: str | int | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}
