"""
Handoff data contracts.

Stages form a fixed linear order. Every stage-to-stage transfer carries a
payload whose required sections depend on the transition type, plus quality
metadata and the deliverables produced by the sending stage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

__all__ = [
    "STAGE_ORDER",
    "ContentToDesignPayload",
    "DataCollectionToContentPayload",
    "DeliverableFile",
    "Deliverables",
    "DesignToQualityPayload",
    "FindingSeverity",
    "HandoffPayload",
    "HandoffValidationResult",
    "OutputDirectory",
    "QualityMetadata",
    "QualityToDeliveryPayload",
    "Stage",
    "TransitionResult",
    "TransitionSchema",
    "TransitionType",
    "ValidationFinding",
    "ValidationStatus",
    "freeze_payload",
    "get_transition_schema",
]


class Stage(str, Enum):
    DATA_COLLECTION = "data-collection"
    CONTENT = "content"
    DESIGN = "design"
    QUALITY = "quality"
    DELIVERY = "delivery"

    @property
    def index(self) -> int:
        return STAGE_ORDER.index(self)

    @property
    def successor(self) -> "Stage | None":
        position = self.index + 1
        if position >= len(STAGE_ORDER):
            return None
        return STAGE_ORDER[position]

    @property
    def predecessors(self) -> tuple["Stage", ...]:
        return STAGE_ORDER[: self.index]

    @classmethod
    def coerce(cls, value: "Stage | str") -> "Stage | None":
        if isinstance(value, Stage):
            return value
        normalized = str(value).strip().lower().replace("_", "-")
        for stage in cls:
            if stage.value == normalized:
                return stage
        return None


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.DATA_COLLECTION,
    Stage.CONTENT,
    Stage.DESIGN,
    Stage.QUALITY,
    Stage.DELIVERY,
)


class TransitionType(str, Enum):
    DATA_COLLECTION_TO_CONTENT = "data-collection-to-content"
    CONTENT_TO_DESIGN = "content-to-design"
    DESIGN_TO_QUALITY = "design-to-quality"
    QUALITY_TO_DELIVERY = "quality-to-delivery"

    @classmethod
    def between(cls, source: Stage, target: Stage) -> "TransitionType | None":
        key = f"{source.value}-to-{target.value}"
        for transition in cls:
            if transition.value == key:
                return transition
        return None


class ValidationStatus(str, Enum):
    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"


class QualityMetadata(BaseModel):
    """Quality figures reported by the sending stage.

    Bounds are checked by the handoff validator so that out-of-range values
    surface as findings instead of parse errors.
    """

    model_config = ConfigDict(extra="allow")

    data_quality_score: float
    completeness_score: float
    validation_status: ValidationStatus
    error_count: int = 0
    warning_count: int = 0
    processing_time: float = 0.0


class DeliverableFile(BaseModel):
    name: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1)
    type: Literal["data", "content", "template", "asset", "report", "documentation"] = "data"
    description: str = ""
    is_primary: bool = False


class OutputDirectory(BaseModel):
    name: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1)
    content_type: Literal["data", "content", "assets", "templates", "reports", "handoffs"] = "data"


class Deliverables(BaseModel):
    created_files: list[DeliverableFile] = Field(default_factory=list)
    output_directories: list[OutputDirectory] = Field(default_factory=list)
    key_outputs: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.created_files and not self.key_outputs


Section = Union[dict[str, Any], list[Any]]


class _PayloadBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    def sections(self) -> dict[str, Any]:
        return self.model_dump(exclude={"transition"}, exclude_none=True)


class DataCollectionToContentPayload(_PayloadBase):
    transition: Literal["data-collection-to-content"] = "data-collection-to-content"
    destination_analysis: Section
    market_intelligence: Section
    emotional_profile: Section
    trend_analysis: Section
    consolidated_insights: Section
    travel_intelligence: Section | None = None
    collection_metadata: Section | None = None


class ContentToDesignPayload(_PayloadBase):
    transition: Literal["content-to-design"] = "content-to-design"
    context_analysis: Section
    date_analysis: Section
    pricing_analysis: Section
    asset_strategy: Section
    generated_content: Section
    technical_requirements: Section | None = None
    design_brief: Section | None = None


class DesignToQualityPayload(_PayloadBase):
    transition: Literal["design-to-quality"] = "design-to-quality"
    asset_manifest: Section
    mjml_template: Section
    design_decisions: Section
    preview_files: Section | None = None
    performance_metrics: Section | None = None
    template_specifications: Section | None = None


class QualityToDeliveryPayload(_PayloadBase):
    transition: Literal["quality-to-delivery"] = "quality-to-delivery"
    quality_report: Section
    compliance_status: Section
    validation_results: Section
    test_artifacts: Section | None = None
    client_compatibility: Section | None = None
    accessibility_results: Section | None = None


HandoffPayload = Annotated[
    Union[
        DataCollectionToContentPayload,
        ContentToDesignPayload,
        DesignToQualityPayload,
        QualityToDeliveryPayload,
    ],
    Field(discriminator="transition"),
]

_PAYLOAD_ADAPTER: TypeAdapter[Any] = TypeAdapter(HandoffPayload)


@dataclass(frozen=True, slots=True)
class TransitionSchema:
    transition: TransitionType
    model: type[_PayloadBase]
    required_sections: tuple[str, ...]
    optional_sections: tuple[str, ...]


def _build_schema(transition: TransitionType, model: type[_PayloadBase]) -> TransitionSchema:
    required: list[str] = []
    optional: list[str] = []
    for name, info in model.model_fields.items():
        if name == "transition":
            continue
        (required if info.is_required() else optional).append(name)
    return TransitionSchema(
        transition=transition,
        model=model,
        required_sections=tuple(required),
        optional_sections=tuple(optional),
    )


_TRANSITION_SCHEMAS: dict[TransitionType, TransitionSchema] = {
    TransitionType.DATA_COLLECTION_TO_CONTENT: _build_schema(
        TransitionType.DATA_COLLECTION_TO_CONTENT, DataCollectionToContentPayload
    ),
    TransitionType.CONTENT_TO_DESIGN: _build_schema(TransitionType.CONTENT_TO_DESIGN, ContentToDesignPayload),
    TransitionType.DESIGN_TO_QUALITY: _build_schema(TransitionType.DESIGN_TO_QUALITY, DesignToQualityPayload),
    TransitionType.QUALITY_TO_DELIVERY: _build_schema(TransitionType.QUALITY_TO_DELIVERY, QualityToDeliveryPayload),
}


def get_transition_schema(transition: TransitionType) -> TransitionSchema:
    return _TRANSITION_SCHEMAS[transition]


def freeze_payload(transition: TransitionType, sections: dict[str, Any]) -> _PayloadBase:
    """Build the immutable payload variant for a transition from raw sections."""
    data = {key: value for key, value in sections.items() if key != "transition"}
    data["transition"] = transition.value
    return _PAYLOAD_ADAPTER.validate_python(data)


class FindingSeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"

    @property
    def rank(self) -> int:
        return {"critical": 0, "major": 1, "minor": 2}[self.value]


@dataclass(slots=True)
class ValidationFinding:
    code: str
    message: str
    severity: FindingSeverity = FindingSeverity.MAJOR
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "field": self.field,
        }


@dataclass(slots=True)
class HandoffValidationResult:
    transition: TransitionType | None
    errors: list[ValidationFinding] = field(default_factory=list)
    warnings: list[ValidationFinding] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def has_sequencing_errors(self) -> bool:
        return any(finding.code.startswith("sequence.") for finding in self.errors)

    @property
    def findings(self) -> list[ValidationFinding]:
        return [*self.errors, *self.warnings]

    def error_messages(self) -> list[str]:
        return [finding.message for finding in self.errors]

    def warning_messages(self) -> list[str]:
        return [finding.message for finding in self.warnings]


@dataclass(slots=True)
class TransitionResult:
    success: bool
    source: Stage | None
    target: Stage | None
    transition: TransitionType | None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    corrected_payload: dict[str, Any] | None = None
    payload: _PayloadBase | None = None
    quality: Any | None = None
    correction_attempts: int = 0
    execution_time_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)
