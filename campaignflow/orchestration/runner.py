from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol

from ..core.config import ErrorHandlingSettings
from ..core.logging import get_logger
from ..core.metrics import record_plan_step_outcome
from ..schemas.errors import ErrorAction, ErrorContext
from ..schemas.plan import ExecutionPlan, RequestContext, ToolStep
from ..schemas.quality import QualityCheckResult
from .enums import HaltReason, StepStatus
from .error_strategy import ErrorStrategyResolver
from .exceptions import PlanExecutionError
from .quality_gate import QualityGateController
from .sequencer import RESULT_CONTEXT_KEYS, ExecutionSequencer

logger = get_logger(name=__name__)


class OperationExecutor(Protocol):
    def __call__(self, operation_id: str, context: Mapping[str, Any]) -> Awaitable[Any]:
        ...


@dataclass(slots=True)
class StepOutcome:
    operation_id: str
    status: StepStatus
    attempts: int
    executed_operation: str | None = None
    output: Any = None
    error: str | None = None


@dataclass(slots=True)
class PlanRunResult:
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    fallbacks_used: dict[str, str] = field(default_factory=dict)
    halted: bool = False
    halt_reason: HaltReason | None = None
    errors: list[str] = field(default_factory=list)
    outcomes: list[StepOutcome] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    quality: QualityCheckResult | None = None

    @property
    def success(self) -> bool:
        return not self.halted and not self.failed


class PlanRunner:
    """Executes an ExecutionPlan group by group.

    Parallel groups run concurrently and settle together; sequential groups
    run member by member. After every group the remaining plan is revised.
    Delivery steps only run once the quality gate is open.
    """

    def __init__(
        self,
        executor: OperationExecutor,
        *,
        sequencer: ExecutionSequencer | None = None,
        resolver: ErrorStrategyResolver | None = None,
        quality_gate: QualityGateController | None = None,
        settings: ErrorHandlingSettings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._executor = executor
        self._settings = settings or ErrorHandlingSettings()
        self._resolver = resolver or ErrorStrategyResolver(self._settings)
        self._quality_gate = quality_gate or QualityGateController(store=self._resolver.store)
        self._sequencer = sequencer or ExecutionSequencer(quality_gate=self._quality_gate)
        self._sleep = sleep
        self._monotonic = monotonic

    async def run(
        self,
        plan: ExecutionPlan,
        context: RequestContext | Mapping[str, Any] | None = None,
        *,
        run_id: str | None = None,
    ) -> PlanRunResult:
        operations = plan.operations()
        if len(operations) != len(set(operations)):
            raise PlanExecutionError("Execution plan lists the same operation more than once")
        if isinstance(context, RequestContext):
            live: dict[str, Any] = context.model_dump(exclude_none=True)
        else:
            live = dict(context or {})
        result = PlanRunResult(context=live)
        started = self._monotonic()
        current = plan
        total_steps = len(plan.steps)

        while True:
            group = self._sequencer.next_ready(current, [])
            if not group:
                break
            if self._monotonic() - started > self._settings.run_budget_seconds:
                self._halt(result, HaltReason.BUDGET_EXCEEDED, [step.operation_id for step in group])
                break
            blocked = [
                step.operation_id
                for step in group
                if self._quality_gate.is_delivery_operation(step.operation_id)
                and not self._quality_gate.may_proceed(step.operation_id, run_id=run_id)
            ]
            if blocked:
                self._halt(result, HaltReason.QUALITY_GATE_CLOSED, blocked)
                break

            error_context = ErrorContext(
                strategy=plan.strategy,
                steps_completed=len(result.completed),
                total_steps=total_steps,
                elapsed_ms=(self._monotonic() - started) * 1000.0,
            )
            if any(step.parallel for step in group):
                outcomes = await asyncio.gather(
                    *(self._run_step(step, live, error_context, started) for step in group)
                )
            else:
                outcomes = []
                for step in group:
                    outcomes.append(await self._run_step(step, live, error_context, started))

            for outcome in outcomes:
                self._apply(result, outcome, live, run_id)

            current = self._sequencer.adjust(
                current,
                completed=result.completed,
                failed=[*result.failed, *result.skipped],
                context=live,
            )

        logger.info(
            "plan_run_finished",
            run_id=run_id,
            strategy=plan.strategy.value,
            completed=len(result.completed),
            failed=len(result.failed),
            skipped=len(result.skipped),
            halted=result.halted,
            halt_reason=result.halt_reason.value if result.halt_reason else None,
        )
        return result

    async def _run_step(
        self,
        step: ToolStep,
        live: Mapping[str, Any],
        error_context: ErrorContext,
        started: float,
    ) -> StepOutcome:
        operation = step.operation_id
        attempt = 0
        while True:
            attempt += 1
            try:
                output = await self._executor(operation, live)
            except Exception as exc:
                strategy = self._resolver.resolve(operation, exc, attempt, error_context)
                message = str(exc) or exc.__class__.__name__
            else:
                return StepOutcome(operation, StepStatus.COMPLETED, attempt, executed_operation=operation, output=output)

            if strategy.retries:
                delay = (strategy.delay_ms or 0) / 1000.0
                if self._monotonic() - started + delay > self._settings.run_budget_seconds:
                    return StepOutcome(operation, StepStatus.FAILED, attempt, error=f"{message} (retry exceeds run budget)")
                await self._sleep(delay)
                continue

            if strategy.action is ErrorAction.FALLBACK:
                fallback = strategy.fallback_operation or step.fallback
                if fallback:
                    return await self._run_fallback(step, fallback, attempt, message, live)
                return StepOutcome(operation, StepStatus.FAILED, attempt, error=message)

            return StepOutcome(operation, StepStatus.SKIPPED, attempt, error=message)

    async def _run_fallback(
        self,
        step: ToolStep,
        fallback: str,
        attempts: int,
        message: str,
        live: Mapping[str, Any],
    ) -> StepOutcome:
        logger.info("plan_step_fallback", operation=step.operation_id, fallback=fallback, error=message)
        try:
            output = await self._executor(fallback, live)
        except Exception as exc:
            return StepOutcome(
                step.operation_id,
                StepStatus.FAILED,
                attempts,
                executed_operation=fallback,
                error=f"{message}; fallback {fallback} failed: {exc}",
            )
        return StepOutcome(step.operation_id, StepStatus.FALLBACK, attempts, executed_operation=fallback, output=output)

    def _apply(self, result: PlanRunResult, outcome: StepOutcome, live: dict[str, Any], run_id: str | None) -> None:
        result.outcomes.append(outcome)
        record_plan_step_outcome(operation=outcome.operation_id, outcome=outcome.status.value)
        if outcome.status in (StepStatus.COMPLETED, StepStatus.FALLBACK):
            result.completed.append(outcome.operation_id)
            if outcome.status is StepStatus.FALLBACK and outcome.executed_operation:
                result.fallbacks_used[outcome.operation_id] = outcome.executed_operation
            key = RESULT_CONTEXT_KEYS.get(outcome.executed_operation or outcome.operation_id)
            if key is not None:
                live[key] = outcome.output if outcome.output is not None else True
            if outcome.operation_id == self._quality_gate.checkpoint_operation:
                result.quality = self._quality_gate.evaluate(outcome.output, run_id=run_id)
            return
        if outcome.status is StepStatus.SKIPPED:
            result.skipped.append(outcome.operation_id)
        else:
            result.failed.append(outcome.operation_id)
        if outcome.error:
            result.errors.append(f"{outcome.operation_id}: {outcome.error}")
        logger.warning("plan_step_unsuccessful", operation=outcome.operation_id, status=outcome.status.value)

    @staticmethod
    def _halt(result: PlanRunResult, reason: HaltReason, operations: list[str]) -> None:
        result.halted = True
        result.halt_reason = reason
        result.errors.append(f"halted ({reason.value}) before: {', '.join(operations)}")
        logger.warning("plan_run_halted", reason=reason.value, pending=operations)
