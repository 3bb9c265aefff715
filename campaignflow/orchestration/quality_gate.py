from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Mapping, Protocol

from pydantic import ValidationError

from ..core.config import QualityGateSettings
from ..core.logging import get_logger
from ..core.metrics import record_quality_decision
from ..schemas.plan import ExecutionPlan, ToolStep
from ..schemas.quality import (
    CheckpointData,
    CheckpointOutput,
    IssueSeverity,
    QualityCheckResult,
    QualityIssue,
)
from .store import WorkflowStateStore

logger = get_logger(name=__name__)


class CheckpointExecutor(Protocol):
    def __call__(self, payload: Mapping[str, Any]) -> Awaitable[CheckpointOutput | Mapping[str, Any]]:
        ...


class QualityGateController:
    """Owns the mandatory quality checkpoint that precedes delivery.

    A run is *ungated* until a checkpoint result is recorded for it. Without a
    recorded, passing result the gate never lets the workflow proceed.
    """

    def __init__(
        self,
        settings: QualityGateSettings | None = None,
        *,
        store: WorkflowStateStore | None = None,
    ) -> None:
        self._settings = settings or QualityGateSettings()
        self._store = store or WorkflowStateStore()

    @property
    def settings(self) -> QualityGateSettings:
        return self._settings

    @property
    def checkpoint_operation(self) -> str:
        return self._settings.checkpoint_operation

    def is_delivery_operation(self, operation_id: str) -> bool:
        return operation_id in self._settings.delivery_operations

    def ensure_checkpoint_present(self, plan: ExecutionPlan) -> ExecutionPlan:
        checkpoint_id = self._settings.checkpoint_operation
        delivery = [step for step in plan.steps if self.is_delivery_operation(step.operation_id)]
        existing = plan.find(checkpoint_id)

        if existing is None:
            render = plan.find(self._settings.render_operation)
            if render is not None:
                insert_at = render.priority + 1
                if delivery:
                    insert_at = min(insert_at, min(step.priority for step in delivery))
            elif delivery:
                insert_at = min(step.priority for step in delivery)
            else:
                insert_at = max((step.priority for step in plan.steps), default=0) + 1
            steps = [
                step.model_copy(update={"priority": step.priority + 1}) if step.priority >= insert_at else step
                for step in plan.steps
            ]
            steps.append(ToolStep(operation_id=checkpoint_id, priority=insert_at))
            logger.info("quality_checkpoint_inserted", priority=insert_at, strategy=plan.strategy.value)
            return plan.model_copy(update={"steps": tuple(sorted(steps, key=lambda step: step.priority))})

        if not delivery:
            return plan
        first_delivery = min(step.priority for step in delivery)
        if first_delivery > existing.priority:
            return plan

        steps = []
        for step in plan.steps:
            if step.operation_id == checkpoint_id:
                steps.append(step.model_copy(update={"priority": first_delivery}))
            elif step.priority >= first_delivery:
                steps.append(step.model_copy(update={"priority": step.priority + 1}))
            else:
                steps.append(step)
        logger.info(
            "quality_checkpoint_reordered",
            previous_priority=existing.priority,
            priority=first_delivery,
        )
        return plan.model_copy(update={"steps": tuple(sorted(steps, key=lambda step: step.priority))})

    def evaluate(
        self,
        output: CheckpointOutput | Mapping[str, Any] | None,
        *,
        run_id: str | None = None,
        checkpoint: str | None = None,
    ) -> QualityCheckResult:
        settings = self._settings
        name = checkpoint or settings.checkpoint_operation
        parsed = self._parse_output(output)

        if not parsed.success or parsed.data is None:
            issue = QualityIssue(
                category="checkpoint_failure",
                severity=IssueSeverity.CRITICAL,
                description=parsed.error or "Quality checkpoint returned no structured result",
            )
            result = QualityCheckResult(
                checkpoint=name,
                run_id=run_id,
                passed=False,
                score=0.0,
                issues=[issue],
                should_proceed=False,
                requires_regeneration=True,
                evaluated_at=self._store.now(),
            )
            return self._record(result)

        data: CheckpointData = parsed.data
        issues = list(data.issues)
        if data.score is None:
            score = 0.0
            issues.append(
                QualityIssue(
                    category="missing_score",
                    severity=IssueSeverity.CRITICAL,
                    description="Quality checkpoint result did not include a numeric score",
                )
            )
        else:
            score = min(max(float(data.score), 0.0), 100.0)

        critical = sum(1 for issue in issues if issue.severity is IssueSeverity.CRITICAL)
        disqualified = critical > settings.critical_issue_threshold
        passed = score >= settings.minimum_score and not disqualified
        explicit = (data.model_extra or {}).get("should_proceed")

        result = QualityCheckResult(
            checkpoint=name,
            run_id=run_id,
            passed=passed,
            score=score,
            issues=issues,
            recommendations=list(data.recommendations),
            should_proceed=passed and explicit is not False,
            requires_regeneration=disqualified or score < settings.regeneration_score_floor,
            evaluated_at=self._store.now(),
        )
        return self._record(result)

    async def run_checkpoint(
        self,
        executor: CheckpointExecutor,
        payload: Mapping[str, Any],
        *,
        run_id: str | None = None,
    ) -> QualityCheckResult:
        timeout = self._settings.checkpoint_timeout_seconds
        try:
            output = await asyncio.wait_for(executor(payload), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("quality_checkpoint_timeout", run_id=run_id, timeout_seconds=timeout)
            output = CheckpointOutput(success=False, error=f"Quality checkpoint timed out after {timeout:.0f}s")
        except Exception as exc:  # pragma: no cover - executor errors surface as a failed checkpoint
            logger.exception("quality_checkpoint_failed", run_id=run_id)
            output = CheckpointOutput(success=False, error=str(exc) or exc.__class__.__name__)
        return self.evaluate(output, run_id=run_id)

    def may_proceed(self, stage: str | None = None, *, run_id: str | None = None) -> bool:
        latest = self._store.latest_quality(run_id)
        if latest is None:
            logger.warning("quality_gate_closed", stage=stage, run_id=run_id, reason="no_checkpoint")
            return False
        allowed = latest.passed and latest.should_proceed
        if not allowed:
            logger.warning(
                "quality_gate_closed",
                stage=stage,
                run_id=run_id,
                reason="checkpoint_failed",
                score=latest.score,
            )
        return allowed

    def latest(self, run_id: str | None = None) -> QualityCheckResult | None:
        return self._store.latest_quality(run_id)

    def _record(self, result: QualityCheckResult) -> QualityCheckResult:
        self._store.record_quality(result)
        record_quality_decision(checkpoint=result.checkpoint, passed=result.passed, score=result.score)
        logger.info(
            "quality_gate_evaluated",
            checkpoint=result.checkpoint,
            run_id=result.run_id,
            passed=result.passed,
            score=result.score,
            critical_issues=result.critical_issue_count,
            requires_regeneration=result.requires_regeneration,
        )
        return result

    @staticmethod
    def _parse_output(output: CheckpointOutput | Mapping[str, Any] | None) -> CheckpointOutput:
        if isinstance(output, CheckpointOutput):
            return output
        if output is None:
            return CheckpointOutput(success=False, error="Quality checkpoint returned nothing")
        try:
            return CheckpointOutput.model_validate(dict(output))
        except (ValidationError, TypeError, ValueError) as exc:
            logger.warning("quality_checkpoint_output_invalid", error=str(exc))
            return CheckpointOutput(success=False, error="Quality checkpoint output could not be parsed")
