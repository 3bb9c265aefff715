from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

HANDOFF_TRANSITIONS_TOTAL = Counter(
    "campaignflow_handoff_transitions_total",
    "Stage transitions grouped by transition type and outcome",
    labelnames=("transition", "outcome"),
)

HANDOFF_LATENCY_SECONDS = Histogram(
    "campaignflow_handoff_latency_seconds",
    "Wall-clock time spent executing one stage transition",
    labelnames=("transition",),
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 15, 30, 60, float("inf")),
)

HANDOFF_VALIDATION_FINDINGS_TOTAL = Counter(
    "campaignflow_handoff_validation_findings_total",
    "Validation findings raised for handoff payloads",
    labelnames=("transition", "severity"),
)

CORRECTION_ATTEMPTS_TOTAL = Counter(
    "campaignflow_correction_attempts_total",
    "Automated payload repair attempts grouped by outcome",
    labelnames=("transition", "outcome"),
)

QUALITY_GATE_DECISIONS_TOTAL = Counter(
    "campaignflow_quality_gate_decisions_total",
    "Quality checkpoint evaluations grouped by decision",
    labelnames=("checkpoint", "decision"),
)

QUALITY_GATE_LAST_SCORE = Gauge(
    "campaignflow_quality_gate_last_score",
    "Score of the most recent quality checkpoint evaluation",
    labelnames=("checkpoint",),
)

ERROR_STRATEGIES_TOTAL = Counter(
    "campaignflow_error_strategies_total",
    "Recovery strategies resolved for failing operations",
    labelnames=("operation", "category", "action"),
)

PLANNED_STEPS_TOTAL = Counter(
    "campaignflow_planned_steps_total",
    "Steps included in execution plans grouped by strategy",
    labelnames=("strategy",),
)

PLAN_ESTIMATED_DURATION_MS = Histogram(
    "campaignflow_plan_estimated_duration_ms",
    "Estimated duration of generated execution plans",
    labelnames=("strategy",),
    buckets=(5_000, 10_000, 20_000, 30_000, 45_000, 60_000, 90_000, 120_000, float("inf")),
)

PLAN_STEP_OUTCOMES_TOTAL = Counter(
    "campaignflow_plan_step_outcomes_total",
    "Outcomes of plan steps executed by the plan runner",
    labelnames=("operation", "outcome"),
)


def record_handoff_transition(*, transition: str, success: bool, latency: float) -> None:
    HANDOFF_TRANSITIONS_TOTAL.labels(transition=transition, outcome="success" if success else "failure").inc()
    HANDOFF_LATENCY_SECONDS.labels(transition=transition).observe(max(latency, 0.0))


def record_validation_findings(*, transition: str, severity: str, count: int) -> None:
    if count <= 0:
        return
    HANDOFF_VALIDATION_FINDINGS_TOTAL.labels(transition=transition, severity=severity).inc(count)


def record_correction_attempt(*, transition: str, outcome: str) -> None:
    CORRECTION_ATTEMPTS_TOTAL.labels(transition=transition, outcome=outcome).inc()


def record_quality_decision(*, checkpoint: str, passed: bool, score: float) -> None:
    QUALITY_GATE_DECISIONS_TOTAL.labels(checkpoint=checkpoint, decision="passed" if passed else "failed").inc()
    QUALITY_GATE_LAST_SCORE.labels(checkpoint=checkpoint).set(score)


def record_error_strategy(*, operation: str, category: str, action: str) -> None:
    ERROR_STRATEGIES_TOTAL.labels(operation=operation, category=category, action=action).inc()


def record_plan_metrics(*, strategy: str, steps: int, estimated_duration_ms: float) -> None:
    PLANNED_STEPS_TOTAL.labels(strategy=strategy).inc(steps)
    PLAN_ESTIMATED_DURATION_MS.labels(strategy=strategy).observe(estimated_duration_ms)


def record_plan_step_outcome(*, operation: str, outcome: str) -> None:
    PLAN_STEP_OUTCOMES_TOTAL.labels(operation=operation, outcome=outcome).inc()
