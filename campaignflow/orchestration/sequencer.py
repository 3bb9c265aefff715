from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping

from ..core.config import SequencerSettings
from ..core.logging import get_logger
from ..core.metrics import record_plan_metrics
from ..schemas.plan import ExecutionPlan, ExecutionStrategy, PlanStatistics, RequestContext, ToolStep
from .error_strategy import FALLBACK_OPERATIONS

if TYPE_CHECKING:
    from .quality_gate import QualityGateController

logger = get_logger(name=__name__)

OPERATION_DURATIONS_SECONDS: dict[str, float] = {
    "get_current_date": 1,
    "analyze_topic": 3,
    "get_prices": 5,
    "get_figma_assets": 4,
    "generate_copy": 8,
    "render_mjml": 3,
    "diff_html": 2,
    "patch_html": 5,
    "percy_snap": 6,
    "render_test": 8,
    "upload_s3": 3,
}

OPERATION_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "generate_copy": ("get_prices",),
    "render_mjml": ("generate_copy", "get_figma_assets"),
    "diff_html": ("render_mjml",),
    "patch_html": ("diff_html",),
    "percy_snap": ("render_mjml",),
    "render_test": ("render_mjml",),
    "upload_s3": ("render_mjml",),
    "ai_quality_consultant": ("render_mjml",),
}

# Live-context key populated by each operation's result.
RESULT_CONTEXT_KEYS: dict[str, str] = {
    "get_prices": "prices",
    "use_estimated_prices": "fallback_prices",
    "get_figma_assets": "assets",
    "use_unsplash_fallback": "fallback_assets",
    "generate_copy": "content",
    "render_mjml": "html",
    "use_simple_template": "html",
    "diff_html": "diff_result",
    "patch_html": "final_html",
}

ConditionPredicate = Callable[[Mapping[str, Any]], bool]


@dataclass(frozen=True, slots=True)
class StepCondition:
    """Named predicate over the live context.

    ``producers`` are the operations whose results the predicate reads; while
    any of them is still pending the condition cannot be decided yet.
    """

    name: str
    predicate: ConditionPredicate
    producers: tuple[str, ...] = ()


def _diff_issues_detected(context: Mapping[str, Any]) -> bool:
    diff = context.get("diff_result")
    if not isinstance(diff, Mapping):
        return False
    return bool(diff.get("critical_changes"))


DEFAULT_CONDITIONS: dict[str, StepCondition] = {
    condition.name: condition
    for condition in (
        StepCondition("always", lambda context: True),
        StepCondition(
            "missing_route_info",
            lambda context: not context.get("origin") or not context.get("destination"),
        ),
        StepCondition(
            "has_prices_or_fallback",
            lambda context: bool(context.get("prices") or context.get("fallback_prices")),
            producers=("get_prices",),
        ),
        StepCondition(
            "has_content_and_assets",
            lambda context: bool(context.get("content"))
            and bool(context.get("assets") or context.get("fallback_assets")),
            producers=("generate_copy", "get_figma_assets"),
        ),
        StepCondition("has_html", lambda context: bool(context.get("html")), producers=("render_mjml",)),
        StepCondition("diff_issues_detected", _diff_issues_detected, producers=("diff_html",)),
        StepCondition(
            "has_final_html",
            lambda context: bool(context.get("final_html") or context.get("html")),
            producers=("render_mjml", "patch_html"),
        ),
    )
}


def group_by_priority(steps: Iterable[ToolStep]) -> dict[int, list[ToolStep]]:
    groups: dict[int, list[ToolStep]] = defaultdict(list)
    for step in steps:
        groups[step.priority].append(step)
    return dict(sorted(groups.items()))


def renumber_priorities(steps: Iterable[ToolStep]) -> tuple[ToolStep, ...]:
    """Collapse priority gaps to 1..N while keeping group membership and order."""
    ordered = sorted(steps, key=lambda step: step.priority)
    mapping = {priority: index for index, priority in enumerate(sorted({s.priority for s in ordered}), start=1)}
    return tuple(step.model_copy(update={"priority": mapping[step.priority]}) for step in ordered)


class ExecutionSequencer:
    """Builds and revises per-request execution plans."""

    def __init__(
        self,
        settings: SequencerSettings | None = None,
        *,
        quality_gate: "QualityGateController | None" = None,
        durations: Mapping[str, float] | None = None,
        dependencies: Mapping[str, tuple[str, ...]] | None = None,
        conditions: Mapping[str, StepCondition] | None = None,
    ) -> None:
        self._settings = settings or SequencerSettings()
        self._quality_gate = quality_gate
        self._durations = dict(durations or OPERATION_DURATIONS_SECONDS)
        self._dependencies = dict(dependencies or OPERATION_DEPENDENCIES)
        self._conditions = dict(conditions or DEFAULT_CONDITIONS)

    def select_strategy(self, request: RequestContext) -> ExecutionStrategy:
        if request.has_route and request.date_range:
            return ExecutionStrategy.SPEED
        if request.campaign_type in self._settings.complex_campaign_types or not request.has_route:
            return ExecutionStrategy.QUALITY
        return ExecutionStrategy.BALANCED

    def plan(self, request: RequestContext | Mapping[str, Any]) -> ExecutionPlan:
        context = request if isinstance(request, RequestContext) else RequestContext.model_validate(dict(request))
        strategy = self.select_strategy(context)

        steps: list[ToolStep] = [ToolStep(operation_id="get_current_date", priority=1, condition="always")]
        if context.has_route:
            steps.extend(self._fast_path(strategy))
        else:
            steps.extend(self._analysis_path(strategy))
        steps.extend(self._quality_steps(strategy, base=self._last_priority(steps) + 1))
        steps.append(
            ToolStep(operation_id="upload_s3", priority=self._last_priority(steps) + 1, condition="has_final_html")
        )

        plan = ExecutionPlan(
            steps=tuple(steps),
            strategy=strategy,
            estimated_duration_ms=self.estimate_duration_ms(steps, strategy),
        )
        record_plan_metrics(strategy=strategy.value, steps=len(plan.steps), estimated_duration_ms=plan.estimated_duration_ms)
        logger.info(
            "execution_plan_created",
            strategy=strategy.value,
            steps=len(plan.steps),
            estimated_duration_ms=plan.estimated_duration_ms,
        )
        return plan

    def create_enforced_plan(self, request: RequestContext | Mapping[str, Any]) -> ExecutionPlan:
        """Plan the request and guarantee the quality checkpoint precedes delivery."""
        plan = self.plan(request)
        gate = self._quality_gate
        if gate is None:
            from .quality_gate import QualityGateController

            gate = self._quality_gate = QualityGateController()
        enforced = gate.ensure_checkpoint_present(plan)
        return enforced.model_copy(
            update={"estimated_duration_ms": self.estimate_duration_ms(enforced.steps, enforced.strategy)}
        )

    def adjust(
        self,
        plan: ExecutionPlan,
        completed: Iterable[str],
        failed: Iterable[str],
        context: Mapping[str, Any] | None = None,
    ) -> ExecutionPlan:
        """Return a revised plan; the input plan is left untouched."""
        done = set(completed)
        blocked = set(failed)
        live = dict(context or {})

        remaining = [step for step in plan.steps if step.operation_id not in done and step.operation_id not in blocked]

        changed = True
        while changed:
            changed = False
            for step in list(remaining):
                dependencies = self._dependencies.get(step.operation_id, ())
                if step.fallback is None and any(dependency in blocked for dependency in dependencies):
                    remaining.remove(step)
                    blocked.add(step.operation_id)
                    changed = True

        pending = {step.operation_id for step in remaining}
        kept = [step for step in remaining if self._condition_holds(step.condition, live, pending)]

        steps = renumber_priorities(kept)
        revised = ExecutionPlan(
            steps=steps,
            strategy=plan.strategy,
            estimated_duration_ms=self.estimate_duration_ms(steps, plan.strategy),
        )
        dropped = sorted(set(plan.operations()) - set(revised.operations()) - done)
        if dropped:
            logger.info("execution_plan_adjusted", dropped=dropped, remaining=len(revised.steps))
        return revised

    def next_ready(self, plan: ExecutionPlan, completed: Iterable[str]) -> list[ToolStep]:
        done = set(completed)
        remaining = [step for step in plan.steps if step.operation_id not in done]
        if not remaining:
            return []
        lowest = min(step.priority for step in remaining)
        return [step for step in remaining if step.priority == lowest]

    def evaluate_condition(self, condition: str | None, context: Mapping[str, Any]) -> bool:
        return self._condition_holds(condition, context, pending=set())

    def statistics(self, plan: ExecutionPlan) -> PlanStatistics:
        total = len(plan.steps)
        parallel = sum(1 for step in plan.steps if step.parallel)
        groups = group_by_priority(plan.steps)
        return PlanStatistics(
            total_steps=total,
            parallel_steps=parallel,
            sequential_steps=total - parallel,
            fallback_steps=sum(1 for step in plan.steps if step.fallback),
            priority_groups=len(groups),
            estimated_duration_ms=plan.estimated_duration_ms,
            strategy=plan.strategy,
            operations={priority: [step.operation_id for step in members] for priority, members in groups.items()},
        )

    def estimate_duration_ms(self, steps: Iterable[ToolStep], strategy: ExecutionStrategy) -> float:
        total = 0.0
        for members in group_by_priority(steps).values():
            durations = [self._durations.get(step.operation_id, self._settings.default_operation_seconds) for step in members]
            if any(step.parallel for step in members):
                total += max(durations)
            else:
                total += sum(durations)
        return float(round(total * self._multiplier(strategy) * 1000))

    def _multiplier(self, strategy: ExecutionStrategy) -> float:
        settings = self._settings
        return {
            ExecutionStrategy.SPEED: settings.speed_multiplier,
            ExecutionStrategy.BALANCED: settings.balanced_multiplier,
            ExecutionStrategy.QUALITY: settings.quality_multiplier,
        }[strategy]

    def _condition_holds(self, name: str | None, context: Mapping[str, Any], pending: set[str]) -> bool:
        if not name:
            return True
        condition = self._conditions.get(name)
        if condition is None:
            return True
        if any(producer in pending for producer in condition.producers):
            return True
        return condition.predicate(context)

    @staticmethod
    def _last_priority(steps: list[ToolStep]) -> int:
        return max((step.priority for step in steps), default=0)

    @staticmethod
    def _fast_path(strategy: ExecutionStrategy) -> list[ToolStep]:
        speed = strategy is ExecutionStrategy.SPEED
        return [
            ToolStep(
                operation_id="get_prices",
                priority=2,
                parallel=speed,
                fallback=FALLBACK_OPERATIONS["get_prices"],
            ),
            ToolStep(
                operation_id="get_figma_assets",
                priority=2 if speed else 3,
                parallel=speed,
                fallback=FALLBACK_OPERATIONS["get_figma_assets"],
            ),
            ToolStep(operation_id="generate_copy", priority=3 if speed else 4, condition="has_prices_or_fallback"),
            ToolStep(operation_id="render_mjml", priority=4 if speed else 5, condition="has_content_and_assets"),
        ]

    @staticmethod
    def _analysis_path(strategy: ExecutionStrategy) -> list[ToolStep]:
        return [
            ToolStep(operation_id="analyze_topic", priority=2, condition="missing_route_info"),
            ToolStep(operation_id="get_prices", priority=3, fallback=FALLBACK_OPERATIONS["get_prices"]),
            ToolStep(
                operation_id="get_figma_assets",
                priority=3 if strategy is ExecutionStrategy.BALANCED else 4,
                parallel=strategy is ExecutionStrategy.SPEED,
                fallback=FALLBACK_OPERATIONS["get_figma_assets"],
            ),
            ToolStep(operation_id="generate_copy", priority=4, condition="has_prices_or_fallback"),
            ToolStep(operation_id="render_mjml", priority=5, condition="has_content_and_assets"),
        ]

    @staticmethod
    def _quality_steps(strategy: ExecutionStrategy, *, base: int) -> list[ToolStep]:
        diff = ToolStep(operation_id="diff_html", priority=base, condition="has_html")
        if strategy is ExecutionStrategy.SPEED:
            return [diff]
        patch = ToolStep(operation_id="patch_html", priority=base + 1, condition="diff_issues_detected")
        render_test_priority = base + 3 if strategy is ExecutionStrategy.QUALITY else base + 2
        render_test = ToolStep(
            operation_id="render_test",
            priority=render_test_priority,
            condition="has_html",
            fallback=FALLBACK_OPERATIONS["render_test"],
        )
        if strategy is ExecutionStrategy.BALANCED:
            return [diff, patch, render_test]
        percy = ToolStep(
            operation_id="percy_snap",
            priority=base + 2,
            condition="has_html",
            fallback=FALLBACK_OPERATIONS["percy_snap"],
        )
        return [diff, patch, percy, render_test]
