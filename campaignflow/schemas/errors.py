from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .plan import ExecutionStrategy


class ErrorCategory(str, Enum):
    RATE_LIMIT = "rate_limit"
    UNAUTHORIZED = "unauthorized"
    TIMEOUT = "timeout"
    SERVICE_UNAVAILABLE = "service_unavailable"
    NO_RESULTS = "no_results"
    NOT_FOUND = "not_found"
    CONTENT_FILTER = "content_filter"
    SYNTAX_ERROR = "syntax_error"
    TEMPLATE_ERROR = "template_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ErrorAction(str, Enum):
    RETRY = "retry"
    WAIT = "wait"
    FALLBACK = "fallback"
    SKIP = "skip"
    STANDARD_RETRY = "standard_retry"


class ErrorStrategy(BaseModel):
    action: ErrorAction
    category: ErrorCategory = ErrorCategory.UNKNOWN
    delay_ms: int | None = Field(default=None, ge=0)
    fallback_operation: str | None = None
    max_attempts: int = Field(default=3, ge=1)
    skip_retry: bool = False
    modification: str | None = None

    @property
    def retries(self) -> bool:
        return self.action in {ErrorAction.RETRY, ErrorAction.WAIT, ErrorAction.STANDARD_RETRY}


class ErrorContext(BaseModel):
    """Run facts that influence how a failure is handled."""

    strategy: ExecutionStrategy = ExecutionStrategy.BALANCED
    steps_completed: int = Field(default=0, ge=0)
    total_steps: int = Field(default=0, ge=0)
    elapsed_ms: float = Field(default=0.0, ge=0.0)


class ErrorSignal(BaseModel):
    message: str = ""
    code: str | None = None


class OperationErrorRecord(BaseModel):
    operation: str
    category: ErrorCategory
    action: ErrorAction
    attempt: int
    message: str
    occurred_at: datetime


class ErrorSummary(BaseModel):
    total_errors: int = 0
    critical_errors: int = 0
    recoverable_errors: int = 0
    by_operation: dict[str, int] = Field(default_factory=dict)
    by_category: dict[ErrorCategory, int] = Field(default_factory=dict)
