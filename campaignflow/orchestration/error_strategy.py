from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from ..core.config import ErrorHandlingSettings
from ..core.logging import get_logger
from ..core.metrics import record_error_strategy
from ..schemas.errors import (
    ErrorAction,
    ErrorCategory,
    ErrorContext,
    ErrorSignal,
    ErrorStrategy,
    ErrorSummary,
    OperationErrorRecord,
)
from ..schemas.plan import ExecutionStrategy
from .store import WorkflowStateStore

logger = get_logger(name=__name__)

NON_RECOVERABLE_CATEGORIES: frozenset[ErrorCategory] = frozenset(
    {ErrorCategory.UNAUTHORIZED, ErrorCategory.CONTENT_FILTER, ErrorCategory.SYNTAX_ERROR}
)

FALLBACK_OPERATIONS: dict[str, str] = {
    "get_figma_assets": "use_unsplash_fallback",
    "get_prices": "use_estimated_prices",
    "percy_snap": "skip_visual_testing",
    "render_test": "skip_render_testing",
    "upload_s3": "local_storage",
}

RATE_LIMIT_BASE_DELAYS_MS: dict[str, int] = {
    "get_prices": 5_000,
    "get_figma_assets": 10_000,
    "generate_copy": 15_000,
    "render_mjml": 2_000,
    "percy_snap": 5_000,
    "render_test": 10_000,
    "upload_s3": 3_000,
}
DEFAULT_RATE_LIMIT_DELAY_MS = 5_000
DEFAULT_TIMEOUT_DELAY_MS = 1_000

_NETWORK_CODES = ("ECONNRESET", "ENOTFOUND", "ECONNREFUSED")


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    """Maps an error signal to a category when any phrase or code matches.

    Rules restricted to ``operations`` only apply to failures of those operations.
    """

    category: ErrorCategory
    phrases: tuple[str, ...] = ()
    codes: tuple[str, ...] = ()
    operations: tuple[str, ...] = ()

    def matches(self, operation: str, signal: ErrorSignal) -> bool:
        if self.operations and operation not in self.operations:
            return False
        message = signal.message.lower()
        if any(phrase in message for phrase in self.phrases):
            return True
        code = (signal.code or "").upper()
        return bool(code) and code in self.codes


DEFAULT_CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(ErrorCategory.RATE_LIMIT, phrases=("rate limit", "too many requests"), codes=("429",)),
    ClassificationRule(
        ErrorCategory.UNAUTHORIZED,
        phrases=("unauthorized", "invalid token", "authentication"),
        codes=("401",),
    ),
    ClassificationRule(ErrorCategory.TIMEOUT, phrases=("timeout", "timed out"), codes=("408", "ETIMEDOUT")),
    ClassificationRule(
        ErrorCategory.SERVICE_UNAVAILABLE,
        phrases=("service unavailable", "server error"),
        codes=("500", "502", "503", "504"),
    ),
    ClassificationRule(ErrorCategory.NO_RESULTS, phrases=("no flights", "no results"), operations=("get_prices",)),
    ClassificationRule(
        ErrorCategory.NOT_FOUND, phrases=("not found",), codes=("404",), operations=("get_figma_assets",)
    ),
    ClassificationRule(
        ErrorCategory.CONTENT_FILTER, phrases=("content policy", "filter"), operations=("generate_copy",)
    ),
    ClassificationRule(ErrorCategory.SYNTAX_ERROR, phrases=("syntax", "parse"), operations=("render_mjml",)),
    ClassificationRule(ErrorCategory.TEMPLATE_ERROR, phrases=("template",), operations=("render_mjml",)),
    ClassificationRule(ErrorCategory.QUOTA_EXCEEDED, phrases=("quota", "storage"), operations=("upload_s3",)),
    ClassificationRule(ErrorCategory.NETWORK, codes=_NETWORK_CODES),
)


def _strategy(action: ErrorAction, **kwargs: Any) -> ErrorStrategy:
    return ErrorStrategy(action=action, **kwargs)


DEFAULT_BASE_STRATEGIES: dict[str, dict[ErrorCategory, ErrorStrategy]] = {
    "get_prices": {
        ErrorCategory.RATE_LIMIT: _strategy(
            ErrorAction.WAIT, delay_ms=5_000, fallback_operation="use_estimated_prices", max_attempts=2
        ),
        ErrorCategory.UNAUTHORIZED: _strategy(
            ErrorAction.FALLBACK, fallback_operation="use_estimated_prices", skip_retry=True
        ),
        ErrorCategory.TIMEOUT: _strategy(
            ErrorAction.RETRY, delay_ms=3_000, modification="try_alternative_airports", max_attempts=3
        ),
        ErrorCategory.NO_RESULTS: _strategy(
            ErrorAction.FALLBACK,
            fallback_operation="use_estimated_prices",
            modification="suggest_alternative_dates",
        ),
    },
    "get_figma_assets": {
        ErrorCategory.RATE_LIMIT: _strategy(
            ErrorAction.WAIT, delay_ms=10_000, fallback_operation="use_unsplash_fallback", max_attempts=2
        ),
        ErrorCategory.UNAUTHORIZED: _strategy(
            ErrorAction.FALLBACK, fallback_operation="use_unsplash_fallback", skip_retry=True
        ),
        ErrorCategory.TIMEOUT: _strategy(ErrorAction.RETRY, delay_ms=2_000, max_attempts=2),
        ErrorCategory.NOT_FOUND: _strategy(
            ErrorAction.FALLBACK, fallback_operation="use_unsplash_fallback", modification="use_generic_assets"
        ),
    },
    "generate_copy": {
        ErrorCategory.RATE_LIMIT: _strategy(ErrorAction.WAIT, delay_ms=15_000, max_attempts=3),
        ErrorCategory.TIMEOUT: _strategy(
            ErrorAction.RETRY, delay_ms=5_000, modification="reduce_content_complexity", max_attempts=2
        ),
        ErrorCategory.CONTENT_FILTER: _strategy(
            ErrorAction.SKIP, modification="adjust_prompt_content", skip_retry=True
        ),
    },
    "render_mjml": {
        ErrorCategory.SYNTAX_ERROR: _strategy(
            ErrorAction.FALLBACK,
            fallback_operation="use_simple_template",
            modification="fix_mjml_syntax",
            skip_retry=True,
        ),
        ErrorCategory.TEMPLATE_ERROR: _strategy(
            ErrorAction.FALLBACK, fallback_operation="use_simple_template", modification="simplify_template"
        ),
    },
    "percy_snap": {
        ErrorCategory.TIMEOUT: _strategy(ErrorAction.SKIP, modification="mark_visual_testing_skipped"),
        ErrorCategory.UNAUTHORIZED: _strategy(ErrorAction.SKIP, modification="disable_visual_testing"),
    },
    "render_test": {
        ErrorCategory.SERVICE_UNAVAILABLE: _strategy(ErrorAction.SKIP, modification="mark_render_testing_skipped"),
        ErrorCategory.TIMEOUT: _strategy(ErrorAction.RETRY, delay_ms=10_000, max_attempts=2),
    },
    "upload_s3": {
        ErrorCategory.UNAUTHORIZED: _strategy(
            ErrorAction.FALLBACK, fallback_operation="local_storage", modification="save_locally"
        ),
        ErrorCategory.QUOTA_EXCEEDED: _strategy(
            ErrorAction.RETRY, delay_ms=2_000, modification="compress_files", max_attempts=2
        ),
    },
}

_PREVENTION_HINTS: dict[ErrorCategory, str] = {
    ErrorCategory.RATE_LIMIT: "Implement request spacing for {operation} to avoid rate limits",
    ErrorCategory.TIMEOUT: "Consider increasing timeout values for {operation}",
    ErrorCategory.UNAUTHORIZED: "Verify API credentials for {operation}",
    ErrorCategory.SERVICE_UNAVAILABLE: "Check service status and implement circuit breaker for {operation}",
    ErrorCategory.NOT_FOUND: "Validate input parameters for {operation}",
}


def describe_error(error: Any) -> ErrorSignal:
    """Normalise exceptions, mappings and strings into a message/code pair."""
    if isinstance(error, ErrorSignal):
        return error
    code: Any = None
    if isinstance(error, BaseException):
        message = str(error)
        if not message and isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            message = "timeout"
        for attribute in ("code", "status", "status_code"):
            code = getattr(error, attribute, None)
            if code is not None:
                break
    elif isinstance(error, Mapping):
        message = str(error.get("message") or error.get("error") or "")
        code = error.get("code")
        if code is None:
            code = error.get("status")
    else:
        message = "" if error is None else str(error)
    return ErrorSignal(message=message, code=None if code is None else str(code))


def _coerce_context(context: ErrorContext | Mapping[str, Any] | None) -> ErrorContext:
    if context is None:
        return ErrorContext()
    if isinstance(context, ErrorContext):
        return context
    return ErrorContext.model_validate(dict(context))


class ErrorStrategyResolver:
    """Chooses how to recover from a failed operation.

    Classification walks an ordered rule table; the first matching rule wins.
    Known (operation, category) pairs start from a tuned base strategy that is
    then adjusted for attempt number, rate-limit history and run context.
    Everything else falls back to a bounded exponential retry.
    """

    def __init__(
        self,
        settings: ErrorHandlingSettings | None = None,
        *,
        store: WorkflowStateStore | None = None,
        rules: Sequence[ClassificationRule] | None = None,
        base_strategies: Mapping[str, Mapping[ErrorCategory, ErrorStrategy]] | None = None,
        fallbacks: Mapping[str, str] | None = None,
    ) -> None:
        self._settings = settings or ErrorHandlingSettings()
        self._store = store or WorkflowStateStore(error_handling=self._settings)
        self._rules: tuple[ClassificationRule, ...] = tuple(rules or DEFAULT_CLASSIFICATION_RULES)
        self._base_strategies = base_strategies or DEFAULT_BASE_STRATEGIES
        self._fallbacks = dict(fallbacks or FALLBACK_OPERATIONS)

    @property
    def store(self) -> WorkflowStateStore:
        return self._store

    def classify(self, operation: str, error: Any) -> ErrorCategory:
        signal = describe_error(error)
        for rule in self._rules:
            if rule.matches(operation, signal):
                return rule.category
        return ErrorCategory.UNKNOWN

    def fallback_for(self, operation: str) -> str | None:
        return self._fallbacks.get(operation)

    def is_critical(self, operation: str) -> bool:
        return operation in self._settings.critical_operations

    def is_recoverable(self, operation: str, error: Any) -> bool:
        return self.classify(operation, error) not in NON_RECOVERABLE_CATEGORIES

    def resolve(
        self,
        operation: str,
        error: Any,
        attempt: int,
        context: ErrorContext | Mapping[str, Any] | None = None,
    ) -> ErrorStrategy:
        signal = describe_error(error)
        category = self.classify(operation, signal)
        run_context = _coerce_context(context)
        attempt = max(attempt, 1)

        base = self._base_strategies.get(operation, {}).get(category)
        if base is None and category is ErrorCategory.RATE_LIMIT:
            base = ErrorStrategy(
                action=ErrorAction.WAIT,
                delay_ms=RATE_LIMIT_BASE_DELAYS_MS.get(operation, DEFAULT_RATE_LIMIT_DELAY_MS),
                fallback_operation=self.fallback_for(operation),
                max_attempts=self._settings.critical_min_attempts if self.is_critical(operation) else 2,
            )

        if base is None:
            strategy = self._generic_strategy(operation, category, attempt)
        else:
            strategy = self._adjust(base.model_copy(update={"category": category}), operation, attempt, run_context)

        if category in NON_RECOVERABLE_CATEGORIES:
            strategy = self._refuse_retry(strategy, operation)
        strategy = self._enforce_attempt_limit(strategy, operation, attempt)

        self._store.record_error(
            OperationErrorRecord(
                operation=operation,
                category=category,
                action=strategy.action,
                attempt=attempt,
                message=signal.message,
                occurred_at=self._store.now(),
            )
        )
        record_error_strategy(operation=operation, category=category.value, action=strategy.action.value)
        logger.info(
            "error_strategy_resolved",
            operation=operation,
            category=category.value,
            action=strategy.action.value,
            attempt=attempt,
            delay_ms=strategy.delay_ms,
            fallback=strategy.fallback_operation,
        )
        return strategy

    def summarize(self, records: Iterable[OperationErrorRecord] | None = None) -> ErrorSummary:
        items = list(self._store.errors() if records is None else records)
        summary = ErrorSummary(total_errors=len(items))
        for record in items:
            summary.by_operation[record.operation] = summary.by_operation.get(record.operation, 0) + 1
            summary.by_category[record.category] = summary.by_category.get(record.category, 0) + 1
            if record.category in NON_RECOVERABLE_CATEGORIES:
                summary.critical_errors += 1
            else:
                summary.recoverable_errors += 1
        return summary

    def prevention_suggestions(self, operation: str, recent_errors: Sequence[Any] | None = None) -> list[str]:
        errors = list(self._store.errors(operation) if recent_errors is None else recent_errors)
        categories: list[ErrorCategory] = []
        for item in errors:
            category = item.category if isinstance(item, OperationErrorRecord) else self.classify(operation, item)
            if category not in categories:
                categories.append(category)

        suggestions = [
            _PREVENTION_HINTS[category].format(operation=operation)
            for category in categories
            if category in _PREVENTION_HINTS
        ]
        if len(errors) > 3:
            suggestions.append(f"High error rate for {operation} - consider implementing more robust fallbacks")
        return suggestions

    def reset_rate_limit_tracking(self) -> None:
        self._store.reset_rate_limits()

    def _adjust(
        self,
        strategy: ErrorStrategy,
        operation: str,
        attempt: int,
        context: ErrorContext,
    ) -> ErrorStrategy:
        settings = self._settings
        update: dict[str, Any] = {}
        delay = strategy.delay_ms
        action = strategy.action
        max_attempts = strategy.max_attempts

        if strategy.category is ErrorCategory.RATE_LIMIT:
            multiplier = self._store.register_rate_limit_hit(operation)
            base_delay = delay or RATE_LIMIT_BASE_DELAYS_MS.get(operation, DEFAULT_RATE_LIMIT_DELAY_MS)
            delay = int(base_delay * multiplier * settings.rate_limit_growth ** (attempt - 1))
        elif strategy.category is ErrorCategory.TIMEOUT and strategy.retries:
            delay = int((delay or DEFAULT_TIMEOUT_DELAY_MS) * settings.timeout_growth ** (attempt - 1))

        fallback = strategy.fallback_operation
        if context.strategy is ExecutionStrategy.SPEED and fallback:
            action = ErrorAction.FALLBACK
            delay = 0
        if self.is_critical(operation) and not fallback:
            max_attempts = max(max_attempts, settings.critical_min_attempts)
        if context.steps_completed > settings.late_sequence_steps and (delay or 0) > settings.long_delay_ms:
            action = ErrorAction.FALLBACK if fallback else ErrorAction.SKIP

        update.update(action=action, max_attempts=max_attempts, delay_ms=self._cap_delay(delay))
        return strategy.model_copy(update=update)

    def _generic_strategy(self, operation: str, category: ErrorCategory, attempt: int) -> ErrorStrategy:
        critical = self.is_critical(operation)
        fallback = self.fallback_for(operation)
        max_attempts = self._settings.critical_min_attempts if critical else 2

        if category in NON_RECOVERABLE_CATEGORIES:
            return ErrorStrategy(
                action=ErrorAction.FALLBACK if fallback else ErrorAction.SKIP,
                category=category,
                fallback_operation=fallback,
                max_attempts=max_attempts,
                skip_retry=True,
            )

        if category is ErrorCategory.NETWORK or attempt < 2 or critical:
            action = ErrorAction.RETRY
        else:
            action = ErrorAction.SKIP
        return ErrorStrategy(
            action=action,
            category=category,
            delay_ms=self._cap_delay(2**attempt * 1000),
            fallback_operation=fallback,
            max_attempts=max_attempts,
        )

    def _refuse_retry(self, strategy: ErrorStrategy, operation: str) -> ErrorStrategy:
        fallback = strategy.fallback_operation or self.fallback_for(operation)
        return strategy.model_copy(
            update={
                "action": ErrorAction.FALLBACK if fallback else ErrorAction.SKIP,
                "fallback_operation": fallback,
                "delay_ms": None,
                "skip_retry": True,
            }
        )

    def _enforce_attempt_limit(self, strategy: ErrorStrategy, operation: str, attempt: int) -> ErrorStrategy:
        if attempt < strategy.max_attempts or not strategy.retries:
            return strategy
        fallback = strategy.fallback_operation or self.fallback_for(operation)
        if fallback:
            return strategy.model_copy(
                update={"action": ErrorAction.FALLBACK, "fallback_operation": fallback, "delay_ms": None}
            )
        return strategy.model_copy(update={"action": ErrorAction.SKIP, "delay_ms": None})

    def _cap_delay(self, delay: int | float | None) -> int | None:
        if delay is None:
            return None
        return int(min(delay, self._settings.max_delay_seconds * 1000))
