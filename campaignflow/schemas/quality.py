from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class QualityIssue(BaseModel):
    model_config = ConfigDict(extra="allow")

    category: str = "general"
    severity: IssueSeverity = IssueSeverity.MEDIUM
    description: str = ""

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> Any:
        if isinstance(value, IssueSeverity):
            return value
        normalized = str(value or "").strip().lower()
        if normalized in {item.value for item in IssueSeverity}:
            return normalized
        return IssueSeverity.MEDIUM.value


class CheckpointData(BaseModel):
    model_config = ConfigDict(extra="allow")

    score: float | None = None
    issues: list[QualityIssue] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class CheckpointOutput(BaseModel):
    """Raw result of the quality-checkpoint operation."""

    model_config = ConfigDict(extra="allow")

    success: bool = False
    data: CheckpointData | None = None
    error: str | None = None


class QualityCheckResult(BaseModel):
    checkpoint: str
    run_id: str | None = None
    passed: bool
    score: float
    issues: list[QualityIssue] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    should_proceed: bool
    requires_regeneration: bool
    evaluated_at: datetime

    @property
    def critical_issue_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity is IssueSeverity.CRITICAL)
