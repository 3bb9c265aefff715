from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class HandoffSettings(BaseModel):
    error_count_soft_ceiling: int = Field(3, ge=0, description="Metadata error count above which a warning is raised.")
    error_count_hard_ceiling: int = Field(10, ge=0, description="Metadata error count above which the handoff is rejected.")
    verify_deliverable_files: bool = Field(
        True,
        description="Check that every declared deliverable file exists on disk and is non-empty.",
    )
    require_primary_deliverable: bool = Field(False, description="Reject deliverables without an is_primary file.")
    enable_correction: bool = Field(True, description="Attempt automated repair of invalid payloads.")


class CorrectionSettings(BaseModel):
    max_attempts: int = Field(3, ge=1, description="Maximum repair attempts per payload hash.")
    timeout_seconds: float = Field(15.0, gt=0.0, description="Hard wall-clock limit for one repair call.")
    max_findings: int = Field(20, ge=1, description="Maximum findings included in one repair instruction.")
    system_prompt: str = Field(
        "You repair structured handoff payloads for an email campaign pipeline. "
        "Respond with a single JSON object only.",
        min_length=16,
    )


class QualityGateSettings(BaseModel):
    checkpoint_operation: str = Field("ai_quality_consultant", min_length=1)
    render_operation: str = Field("render_mjml", min_length=1)
    delivery_operations: list[str] = Field(default_factory=lambda: ["upload_s3"])
    minimum_score: float = Field(70.0, ge=0.0, le=100.0)
    critical_issue_threshold: int = Field(0, ge=0, description="Number of critical issues tolerated.")
    regeneration_score_floor: float = Field(50.0, ge=0.0, le=100.0)
    checkpoint_timeout_seconds: float = Field(20.0, gt=0.0)


class HistorySettings(BaseModel):
    max_quality_records: int = Field(100, ge=1)
    quality_ttl_seconds: float = Field(1800.0, gt=0.0)
    max_workflow_runs: int = Field(500, ge=1)
    workflow_ttl_seconds: float = Field(3600.0, gt=0.0)
    max_correction_keys: int = Field(1000, ge=1)
    correction_ttl_seconds: float = Field(3600.0, gt=0.0)
    max_handoff_records: int = Field(1000, ge=1)


class SequencerSettings(BaseModel):
    default_operation_seconds: float = Field(5.0, gt=0.0)
    speed_multiplier: float = Field(0.8, gt=0.0)
    balanced_multiplier: float = Field(1.0, gt=0.0)
    quality_multiplier: float = Field(1.3, gt=0.0)
    complex_campaign_types: list[str] = Field(default_factory=lambda: ["seasonal"])


class ErrorHandlingSettings(BaseModel):
    rate_limit_window_seconds: float = Field(60.0, gt=0.0)
    rate_limit_growth: float = Field(1.5, ge=1.0)
    rate_limit_relax: float = Field(0.8, gt=0.0, le=1.0)
    rate_limit_max_multiplier: float = Field(5.0, ge=1.0)
    timeout_growth: float = Field(1.5, ge=1.0)
    long_delay_ms: int = Field(10_000, ge=0)
    late_sequence_steps: int = Field(5, ge=0)
    critical_operations: list[str] = Field(
        default_factory=lambda: ["get_prices", "generate_copy", "render_mjml"]
    )
    critical_min_attempts: int = Field(3, ge=1)
    run_budget_seconds: float = Field(300.0, gt=0.0, description="Overall wall-clock budget of one plan run.")
    max_delay_seconds: float = Field(60.0, ge=0.0, description="Upper bound for any single retry delay.")


class LLMSettings(BaseModel):
    host: str = Field("http://localhost", description="Base URL where Ollama is running.")
    port: int = Field(11434, ge=1, le=65535)
    model: str = Field("llama3", description="Model used for payload repair.")
    temperature: float = Field(0.1, ge=0.0, le=1.0)
    max_retries: int = Field(2, ge=0)
    retry_backoff_seconds: float = Field(1.0, ge=0.0)
    retry_max_backoff_seconds: float = Field(5.0, ge=0.0)


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")

    handoff: HandoffSettings = Field(default_factory=HandoffSettings)  # type: ignore[arg-type]
    correction: CorrectionSettings = Field(default_factory=CorrectionSettings)  # type: ignore[arg-type]
    quality_gate: QualityGateSettings = Field(default_factory=QualityGateSettings)  # type: ignore[arg-type]
    history: HistorySettings = Field(default_factory=HistorySettings)  # type: ignore[arg-type]
    sequencer: SequencerSettings = Field(default_factory=SequencerSettings)  # type: ignore[arg-type]
    error_handling: ErrorHandlingSettings = Field(default_factory=ErrorHandlingSettings)  # type: ignore[arg-type]
    llm: LLMSettings = Field(default_factory=LLMSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
