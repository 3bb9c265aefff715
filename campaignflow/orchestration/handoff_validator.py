from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Mapping

from pydantic import ValidationError

from ..core.config import HandoffSettings
from ..core.logging import get_logger
from ..core.metrics import record_validation_findings
from ..schemas.handoff import (
    Deliverables,
    FindingSeverity,
    HandoffValidationResult,
    QualityMetadata,
    Stage,
    TransitionType,
    ValidationFinding,
    ValidationStatus,
    get_transition_schema,
)

logger = get_logger(name=__name__)


def _is_structured(value: Any) -> bool:
    return isinstance(value, (Mapping, list, tuple))


def _is_empty(value: Any) -> bool:
    return value is None or (_is_structured(value) and len(value) == 0)


def _loc(error: Mapping[str, Any]) -> str:
    return ".".join(str(part) for part in error.get("loc", ()))


class HandoffValidator:
    """Checks one stage-to-stage transfer. Pure: never mutates or raises."""

    def __init__(self, settings: HandoffSettings | None = None) -> None:
        self._settings = settings or HandoffSettings()

    def validate(
        self,
        from_stage: Stage | str,
        to_stage: Stage | str,
        payload: Mapping[str, Any] | None,
        quality_metadata: QualityMetadata | Mapping[str, Any] | None,
        deliverables: Deliverables | Mapping[str, Any] | None = None,
        *,
        completed_stages: Iterable[Stage | str] | None = None,
    ) -> HandoffValidationResult:
        source = Stage.coerce(from_stage)
        target = Stage.coerce(to_stage)
        transition = TransitionType.between(source, target) if source and target else None
        result = HandoffValidationResult(transition=transition)

        self._check_sequence(result, from_stage, to_stage, source, target, completed_stages)
        self._check_metadata(result, quality_metadata)
        if transition is not None:
            self._check_payload(result, transition, payload)
        if deliverables is not None:
            self._check_deliverables(result, deliverables)

        label = transition.value if transition else f"{from_stage}-to-{to_stage}"
        for severity in FindingSeverity:
            count = sum(1 for finding in result.findings if finding.severity is severity)
            record_validation_findings(transition=label, severity=severity.value, count=count)

        if result.is_valid:
            logger.info("handoff_validation_passed", transition=label, warnings=len(result.warnings))
        else:
            logger.warning(
                "handoff_validation_failed",
                transition=label,
                errors=[finding.code for finding in result.errors],
                warnings=len(result.warnings),
            )
        return result

    def _check_sequence(
        self,
        result: HandoffValidationResult,
        from_stage: Stage | str,
        to_stage: Stage | str,
        source: Stage | None,
        target: Stage | None,
        completed_stages: Iterable[Stage | str] | None,
    ) -> None:
        if source is None or target is None:
            unknown = from_stage if source is None else to_stage
            result.errors.append(
                ValidationFinding(
                    code="sequence.unknown_stage",
                    message=f"Unknown stage '{unknown}'",
                    severity=FindingSeverity.CRITICAL,
                    field="stage",
                )
            )
            return

        expected = source.successor
        if target is not expected:
            expected_label = expected.value if expected else "none (final stage)"
            result.errors.append(
                ValidationFinding(
                    code="sequence.not_adjacent",
                    message=(
                        f"Invalid transition {source.value} -> {target.value}: "
                        f"the next stage after {source.value} is {expected_label}"
                    ),
                    severity=FindingSeverity.CRITICAL,
                    field="stage",
                )
            )

        if completed_stages is None:
            return
        completed = {stage for stage in (Stage.coerce(item) for item in completed_stages) if stage}
        missing = [stage.value for stage in source.predecessors if stage not in completed]
        if missing:
            result.errors.append(
                ValidationFinding(
                    code="sequence.prior_stage_incomplete",
                    message=f"Stages not completed before {source.value}: {', '.join(missing)}",
                    severity=FindingSeverity.CRITICAL,
                    field="stage",
                )
            )
        if source in completed or target in completed:
            revisited = source if source in completed else target
            result.errors.append(
                ValidationFinding(
                    code="sequence.stage_revisited",
                    message=f"Stage {revisited.value} was already completed in this run",
                    severity=FindingSeverity.CRITICAL,
                    field="stage",
                )
            )

    def _check_metadata(
        self,
        result: HandoffValidationResult,
        quality_metadata: QualityMetadata | Mapping[str, Any] | None,
    ) -> None:
        if quality_metadata is None:
            result.errors.append(
                ValidationFinding(
                    code="metadata.missing",
                    message="Quality metadata is required for every handoff",
                    severity=FindingSeverity.CRITICAL,
                    field="quality_metadata",
                )
            )
            return

        if isinstance(quality_metadata, QualityMetadata):
            metadata = quality_metadata
        else:
            try:
                metadata = QualityMetadata.model_validate(dict(quality_metadata))
            except (ValidationError, TypeError, ValueError) as exc:
                errors = exc.errors() if isinstance(exc, ValidationError) else [{"loc": (), "msg": str(exc)}]
                for error in errors:
                    location = _loc(error)
                    result.errors.append(
                        ValidationFinding(
                            code="metadata.invalid",
                            message=f"Invalid quality metadata field '{location}': {error.get('msg')}",
                            severity=FindingSeverity.CRITICAL,
                            field=f"quality_metadata.{location}" if location else "quality_metadata",
                        )
                    )
                return

        for name in ("data_quality_score", "completeness_score"):
            value = getattr(metadata, name)
            if not 0.0 <= value <= 100.0:
                result.errors.append(
                    ValidationFinding(
                        code="metadata.score_out_of_range",
                        message=f"{name} must be between 0 and 100, got {value}",
                        field=f"quality_metadata.{name}",
                    )
                )

        if metadata.validation_status is ValidationStatus.FAILED:
            result.errors.append(
                ValidationFinding(
                    code="metadata.validation_failed",
                    message="Sending stage reported validation_status 'failed'",
                    severity=FindingSeverity.CRITICAL,
                    field="quality_metadata.validation_status",
                )
            )
        elif metadata.validation_status is ValidationStatus.WARNING:
            result.warnings.append(
                ValidationFinding(
                    code="metadata.validation_warning",
                    message="Sending stage reported validation_status 'warning'",
                    severity=FindingSeverity.MINOR,
                    field="quality_metadata.validation_status",
                )
            )

        for name in ("error_count", "warning_count"):
            if getattr(metadata, name) < 0:
                result.errors.append(
                    ValidationFinding(
                        code="metadata.negative_count",
                        message=f"{name} cannot be negative",
                        field=f"quality_metadata.{name}",
                    )
                )

        settings = self._settings
        if metadata.error_count > settings.error_count_hard_ceiling:
            result.errors.append(
                ValidationFinding(
                    code="metadata.error_count_exceeded",
                    message=(
                        f"error_count {metadata.error_count} exceeds the limit of "
                        f"{settings.error_count_hard_ceiling}"
                    ),
                    field="quality_metadata.error_count",
                )
            )
        elif metadata.error_count > settings.error_count_soft_ceiling:
            result.warnings.append(
                ValidationFinding(
                    code="metadata.error_count_high",
                    message=f"error_count {metadata.error_count} is above {settings.error_count_soft_ceiling}",
                    severity=FindingSeverity.MINOR,
                    field="quality_metadata.error_count",
                )
            )

        if metadata.processing_time < 0:
            result.warnings.append(
                ValidationFinding(
                    code="metadata.negative_processing_time",
                    message="processing_time is negative",
                    severity=FindingSeverity.MINOR,
                    field="quality_metadata.processing_time",
                )
            )

    def _check_payload(
        self,
        result: HandoffValidationResult,
        transition: TransitionType,
        payload: Mapping[str, Any] | None,
    ) -> None:
        if not isinstance(payload, Mapping):
            result.errors.append(
                ValidationFinding(
                    code="payload.not_structured",
                    message=f"Payload for {transition.value} must be a mapping of named sections",
                    severity=FindingSeverity.CRITICAL,
                    field="payload",
                )
            )
            return

        schema = get_transition_schema(transition)
        for name in schema.required_sections:
            if name not in payload:
                result.errors.append(
                    ValidationFinding(
                        code="payload.missing_section",
                        message=f"Required section '{name}' is missing for {transition.value}",
                        severity=FindingSeverity.CRITICAL,
                        field=name,
                    )
                )
                continue
            value = payload[name]
            if _is_empty(value):
                result.errors.append(
                    ValidationFinding(
                        code="payload.empty_section",
                        message=f"Required section '{name}' is empty",
                        field=name,
                    )
                )
            elif not _is_structured(value):
                result.errors.append(
                    ValidationFinding(
                        code="payload.unstructured_section",
                        message=f"Required section '{name}' must be structured data, got {type(value).__name__}",
                        field=name,
                    )
                )

        for name in schema.optional_sections:
            if name not in payload or payload[name] is None:
                continue
            value = payload[name]
            if not _is_structured(value) or _is_empty(value):
                result.warnings.append(
                    ValidationFinding(
                        code="payload.optional_section_unusable",
                        message=f"Optional section '{name}' is empty or not structured",
                        severity=FindingSeverity.MINOR,
                        field=name,
                    )
                )

    def _check_deliverables(
        self,
        result: HandoffValidationResult,
        deliverables: Deliverables | Mapping[str, Any],
    ) -> None:
        if isinstance(deliverables, Deliverables):
            parsed = deliverables
        else:
            try:
                parsed = Deliverables.model_validate(dict(deliverables))
            except (ValidationError, TypeError, ValueError) as exc:
                errors = exc.errors() if isinstance(exc, ValidationError) else [{"loc": (), "msg": str(exc)}]
                for error in errors:
                    location = _loc(error)
                    result.errors.append(
                        ValidationFinding(
                            code="deliverables.invalid",
                            message=f"Invalid deliverables field '{location}': {error.get('msg')}",
                            field=f"deliverables.{location}" if location else "deliverables",
                        )
                    )
                return

        if parsed.is_empty:
            result.errors.append(
                ValidationFinding(
                    code="deliverables.empty",
                    message="No deliverables were declared for this handoff",
                    field="deliverables",
                )
            )
            return

        if not any(item.is_primary for item in parsed.created_files):
            finding = ValidationFinding(
                code="deliverables.no_primary",
                message="No deliverable file is marked as primary",
                severity=FindingSeverity.MINOR,
                field="deliverables.created_files",
            )
            if self._settings.require_primary_deliverable:
                finding.severity = FindingSeverity.MAJOR
                result.errors.append(finding)
            else:
                result.warnings.append(finding)

        if not self._settings.verify_deliverable_files:
            return

        for item in parsed.created_files:
            path = Path(item.path)
            if not path.is_file():
                result.errors.append(
                    ValidationFinding(
                        code="deliverables.file_missing",
                        message=f"Deliverable file '{item.name}' not found at {item.path}",
                        field="deliverables.created_files",
                    )
                )
            elif path.stat().st_size == 0:
                result.errors.append(
                    ValidationFinding(
                        code="deliverables.file_empty",
                        message=f"Deliverable file '{item.name}' is empty",
                        field="deliverables.created_files",
                    )
                )

        for directory in parsed.output_directories:
            path = Path(directory.path)
            if not path.is_dir():
                result.errors.append(
                    ValidationFinding(
                        code="deliverables.directory_missing",
                        message=f"Output directory '{directory.name}' not found at {directory.path}",
                        field="deliverables.output_directories",
                    )
                )
            elif not any(path.iterdir()):
                result.errors.append(
                    ValidationFinding(
                        code="deliverables.directory_empty",
                        message=f"Output directory '{directory.name}' is empty",
                        field="deliverables.output_directories",
                    )
                )
