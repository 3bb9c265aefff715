from __future__ import annotations

import time
from typing import Any, Mapping

from pydantic import ValidationError

from ..core.config import Settings, get_settings
from ..core.logging import get_logger
from ..monitoring.handoff_report import HandoffMonitor, HandoffRecord
from ..schemas.handoff import (
    Deliverables,
    HandoffValidationResult,
    QualityMetadata,
    Stage,
    TransitionResult,
    TransitionType,
    freeze_payload,
)
from ..schemas.quality import QualityCheckResult
from .corrector import AutomatedDataCorrector, RepairExecutor
from .handoff_validator import HandoffValidator
from .quality_gate import CheckpointExecutor, QualityGateController
from .store import WorkflowStateStore

logger = get_logger(name=__name__)


class HandoffCoordinator:
    """Executes stage transitions: validate, repair, gate, record.

    ``execute_transition`` never raises; every outcome is a ``TransitionResult``.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        store: WorkflowStateStore | None = None,
        validator: HandoffValidator | None = None,
        corrector: AutomatedDataCorrector | None = None,
        quality_gate: QualityGateController | None = None,
        monitor: HandoffMonitor | None = None,
        checkpoint_executor: CheckpointExecutor | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store or WorkflowStateStore(
            history=self._settings.history,
            error_handling=self._settings.error_handling,
        )
        self._validator = validator or HandoffValidator(self._settings.handoff)
        self._corrector = corrector
        self._quality_gate = quality_gate or QualityGateController(self._settings.quality_gate, store=self._store)
        self._monitor = monitor or HandoffMonitor(
            max_records=self._settings.history.max_handoff_records,
            now=self._store.now,
        )
        self._checkpoint_executor = checkpoint_executor

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        repair_executor: RepairExecutor | None = None,
        checkpoint_executor: CheckpointExecutor | None = None,
        store: WorkflowStateStore | None = None,
    ) -> "HandoffCoordinator":
        store = store or WorkflowStateStore(history=settings.history, error_handling=settings.error_handling)
        corrector = (
            AutomatedDataCorrector(repair_executor, settings.correction, store=store)
            if repair_executor is not None
            else None
        )
        return cls(
            settings=settings,
            store=store,
            corrector=corrector,
            checkpoint_executor=checkpoint_executor,
        )

    @property
    def store(self) -> WorkflowStateStore:
        return self._store

    @property
    def quality_gate(self) -> QualityGateController:
        return self._quality_gate

    @property
    def monitor(self) -> HandoffMonitor:
        return self._monitor

    async def execute_transition(
        self,
        from_stage: Stage | str,
        to_stage: Stage | str,
        payload: Mapping[str, Any] | None,
        quality_metadata: QualityMetadata | Mapping[str, Any] | None,
        deliverables: Deliverables | Mapping[str, Any] | None = None,
        *,
        run_id: str | None = None,
    ) -> TransitionResult:
        started = time.perf_counter()
        try:
            result = await self._execute(from_stage, to_stage, payload, quality_metadata, deliverables, run_id)
        except Exception as exc:  # pragma: no cover - last-resort conversion into a failed result
            logger.exception(
                "handoff_transition_crashed",
                from_stage=str(from_stage),
                to_stage=str(to_stage),
                run_id=run_id,
            )
            source = Stage.coerce(from_stage)
            target = Stage.coerce(to_stage)
            result = TransitionResult(
                success=False,
                source=source,
                target=target,
                transition=TransitionType.between(source, target) if source and target else None,
                errors=[f"Unexpected handoff failure: {exc}"],
            )
        result.execution_time_ms = (time.perf_counter() - started) * 1000.0
        self._observe(result, run_id)
        return result

    async def _execute(
        self,
        from_stage: Stage | str,
        to_stage: Stage | str,
        payload: Mapping[str, Any] | None,
        quality_metadata: QualityMetadata | Mapping[str, Any] | None,
        deliverables: Deliverables | Mapping[str, Any] | None,
        run_id: str | None,
    ) -> TransitionResult:
        source = Stage.coerce(from_stage)
        target = Stage.coerce(to_stage)
        completed = self._store.completed_stages(run_id) if run_id else None
        declared = deliverables if deliverables is not None else Deliverables()
        current: Any = dict(payload) if isinstance(payload, Mapping) else payload

        validation = self._validator.validate(
            from_stage, to_stage, current, quality_metadata, declared, completed_stages=completed
        )
        transition = validation.transition

        corrected: dict[str, Any] | None = None
        attempts = 0
        while not validation.is_valid and self._should_correct(validation):
            attempts += 1
            candidate = await self._corrector.correct(current, validation.errors, transition)  # type: ignore[union-attr, arg-type]
            if candidate is None:
                break
            corrected = current = candidate
            validation = self._validator.validate(
                from_stage, to_stage, current, quality_metadata, declared, completed_stages=completed
            )
            if attempts >= self._corrector.max_attempts:  # type: ignore[union-attr]
                break

        result = TransitionResult(
            success=False,
            source=source,
            target=target,
            transition=transition,
            errors=validation.error_messages(),
            warnings=validation.warning_messages(),
            corrected_payload=corrected,
            correction_attempts=attempts,
            metadata={"findings": [finding.to_dict() for finding in validation.findings]},
        )
        if not validation.is_valid or source is None or target is None or transition is None:
            return result

        unusable = {
            finding.field for finding in validation.warnings if finding.code == "payload.optional_section_unusable"
        }
        try:
            result.payload = freeze_payload(
                transition, {name: value for name, value in current.items() if name not in unusable}
            )
        except ValidationError as exc:
            result.errors.append(f"Payload could not be frozen for {transition.value}: {exc.error_count()} error(s)")
            return result

        if target is Stage.QUALITY and self._checkpoint_executor is not None:
            quality = await self._quality_gate.run_checkpoint(
                self._checkpoint_executor, result.payload.sections(), run_id=run_id
            )
            result.quality = quality
            if not quality.passed:
                result.warnings.append(
                    f"Quality checkpoint did not pass (score {quality.score:.0f}); delivery will be blocked"
                )

        if target is Stage.DELIVERY:
            quality = await self._delivery_checkpoint(result, run_id)
            result.quality = quality
            if not self._quality_gate.may_proceed(target.value, run_id=run_id):
                reason = "no quality checkpoint recorded" if quality is None else f"checkpoint score {quality.score:.0f}"
                result.errors.append(f"Quality gate blocked delivery: {reason}")
                return result

        if run_id:
            self._store.mark_stage_complete(run_id, source)
        result.success = True
        return result

    async def _delivery_checkpoint(self, result: TransitionResult, run_id: str | None) -> QualityCheckResult | None:
        latest = self._quality_gate.latest(run_id)
        if latest is not None or self._checkpoint_executor is None or result.payload is None:
            return latest
        return await self._quality_gate.run_checkpoint(
            self._checkpoint_executor, result.payload.sections(), run_id=run_id
        )

    def _should_correct(self, validation: HandoffValidationResult) -> bool:
        if self._corrector is None or not self._settings.handoff.enable_correction:
            return False
        if validation.transition is None or validation.has_sequencing_errors:
            return False
        return any(finding.code.startswith("payload.") for finding in validation.errors)

    def _observe(self, result: TransitionResult, run_id: str | None) -> None:
        label = result.transition.value if result.transition else "invalid"
        self._monitor.record(
            HandoffRecord(
                transition=label,
                run_id=run_id,
                success=result.success,
                duration_ms=result.execution_time_ms,
                correction_used=result.correction_attempts > 0,
                error_count=len(result.errors),
                warning_count=len(result.warnings),
                errors=list(result.errors),
            )
        )
        log = logger.info if result.success else logger.warning
        log(
            "handoff_transition_completed" if result.success else "handoff_transition_failed",
            transition=label,
            run_id=run_id,
            errors=len(result.errors),
            warnings=len(result.warnings),
            correction_attempts=result.correction_attempts,
            execution_time_ms=round(result.execution_time_ms, 2),
        )
