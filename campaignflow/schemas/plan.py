from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ExecutionStrategy(str, Enum):
    SPEED = "speed"
    BALANCED = "balanced"
    QUALITY = "quality"


class RequestContext(BaseModel):
    """Campaign request facts the sequencer plans against."""

    model_config = ConfigDict(extra="allow")

    topic: str = ""
    origin: str | None = None
    destination: str | None = None
    date_range: str | None = None
    campaign_type: str | None = None
    target_audience: str | None = None

    @property
    def has_route(self) -> bool:
        return bool(self.origin) and bool(self.destination)


class ToolStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation_id: str = Field(..., min_length=1)
    priority: int = Field(..., ge=1)
    parallel: bool = False
    condition: str | None = None
    fallback: str | None = None


class ExecutionPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    steps: tuple[ToolStep, ...] = ()
    strategy: ExecutionStrategy = ExecutionStrategy.BALANCED
    estimated_duration_ms: float = 0.0

    def operations(self) -> list[str]:
        return [step.operation_id for step in self.steps]

    def find(self, operation_id: str) -> ToolStep | None:
        for step in self.steps:
            if step.operation_id == operation_id:
                return step
        return None


class PlanStatistics(BaseModel):
    total_steps: int
    parallel_steps: int
    sequential_steps: int
    fallback_steps: int
    priority_groups: int
    estimated_duration_ms: float
    strategy: ExecutionStrategy
    operations: dict[int, list[str]] = Field(default_factory=dict)

