from __future__ import annotations

import asyncio

import pytest

from campaignflow.core.clock import ManualClock
from campaignflow.core.config import QualityGateSettings
from campaignflow.orchestration.quality_gate import QualityGateController
from campaignflow.orchestration.sequencer import ExecutionSequencer
from campaignflow.orchestration.store import WorkflowStateStore
from campaignflow.schemas.plan import ExecutionPlan, ToolStep
from campaignflow.schemas.quality import CheckpointOutput, IssueSeverity

from tests.helpers.stubs import StubCheckpointExecutor, checkpoint_output


def _gate(clock: ManualClock | None = None) -> QualityGateController:
    return QualityGateController(store=WorkflowStateStore(now=clock or ManualClock()))


def _plan(*steps: tuple[str, int]) -> ExecutionPlan:
    return ExecutionPlan(steps=tuple(ToolStep(operation_id=name, priority=priority) for name, priority in steps))


def _priorities(plan: ExecutionPlan) -> dict[str, int]:
    return {step.operation_id: step.priority for step in plan.steps}


def test_checkpoint_inserted_after_render() -> None:
    gate = _gate()
    plan = ExecutionSequencer().plan(
        {"origin": "BER", "destination": "LIS", "date_range": "2025-10-01/2025-10-14"}
    )

    enforced = gate.ensure_checkpoint_present(plan)

    priorities = _priorities(enforced)
    assert priorities["render_mjml"] == 4
    assert priorities["ai_quality_consultant"] == 5
    assert priorities["diff_html"] == 6
    assert priorities["upload_s3"] == 7
    assert gate.ensure_checkpoint_present(enforced) == enforced


def test_checkpoint_inserted_before_delivery_without_render() -> None:
    enforced = _gate().ensure_checkpoint_present(_plan(("get_current_date", 1), ("upload_s3", 2)))
    assert _priorities(enforced) == {"get_current_date": 1, "ai_quality_consultant": 2, "upload_s3": 3}


def test_checkpoint_never_lands_after_early_delivery() -> None:
    gate = _gate()

    enforced = gate.ensure_checkpoint_present(_plan(("upload_s3", 1), ("render_mjml", 2)))

    assert _priorities(enforced) == {"ai_quality_consultant": 1, "upload_s3": 2, "render_mjml": 3}
    assert gate.ensure_checkpoint_present(enforced) is enforced


def test_checkpoint_appended_when_nothing_to_anchor() -> None:
    enforced = _gate().ensure_checkpoint_present(_plan(("get_current_date", 1), ("get_prices", 2)))
    assert _priorities(enforced)["ai_quality_consultant"] == 3


def test_existing_checkpoint_before_delivery_is_left_alone() -> None:
    plan = _plan(("ai_quality_consultant", 3), ("upload_s3", 5))
    assert _gate().ensure_checkpoint_present(plan) is plan


def test_checkpoint_after_delivery_is_moved_ahead() -> None:
    plan = _plan(("render_mjml", 1), ("upload_s3", 2), ("ai_quality_consultant", 4))

    enforced = _gate().ensure_checkpoint_present(plan)

    priorities = _priorities(enforced)
    assert priorities["ai_quality_consultant"] == 2
    assert priorities["upload_s3"] == 3
    assert priorities["render_mjml"] == 1


def test_low_score_with_critical_issue_requires_regeneration() -> None:
    result = _gate().evaluate(checkpoint_output(45, critical=1), run_id="run-1")

    assert result.passed is False
    assert result.should_proceed is False
    assert result.requires_regeneration is True
    assert result.critical_issue_count == 1


def test_failed_checkpoint_call_blocks() -> None:
    result = _gate().evaluate({"success": False, "error": "upstream exploded"})

    assert result.passed is False
    assert result.score == 0
    assert result.requires_regeneration is True
    assert result.issues[0].category == "checkpoint_failure"
    assert result.issues[0].severity is IssueSeverity.CRITICAL
    assert result.issues[0].description == "upstream exploded"


@pytest.mark.parametrize(
    ("score", "critical", "passed", "regenerate"),
    [
        (85, 0, True, False),
        (80, 1, False, True),
        (60, 0, False, False),
        (40, 0, False, True),
        (70, 0, True, False),
    ],
)
def test_score_thresholds(score: float, critical: int, passed: bool, regenerate: bool) -> None:
    result = _gate().evaluate(checkpoint_output(score, critical=critical))
    assert result.passed is passed
    assert result.should_proceed is passed
    assert result.requires_regeneration is regenerate


def test_missing_score_is_treated_as_critical() -> None:
    result = _gate().evaluate({"success": True, "data": {"issues": [], "recommendations": []}})

    assert result.score == 0
    assert result.passed is False
    assert [issue.category for issue in result.issues] == ["missing_score"]


def test_scores_are_clamped_and_explicit_hold_respected() -> None:
    gate = _gate()
    clamped = gate.evaluate(checkpoint_output(140))
    assert clamped.score == 100

    held = gate.evaluate({"success": True, "data": {"score": 95, "should_proceed": False}})
    assert held.passed is True
    assert held.should_proceed is False


def test_unknown_issue_severity_defaults_to_medium() -> None:
    output = {
        "success": True,
        "data": {"score": 90, "issues": [{"category": "tone", "severity": "catastrophic", "description": "x"}]},
    }
    result = _gate().evaluate(output)
    assert result.issues[0].severity is IssueSeverity.MEDIUM
    assert result.passed is True


def test_gate_is_closed_until_a_passing_checkpoint() -> None:
    gate = _gate()
    assert gate.may_proceed("upload_s3") is False

    gate.evaluate(checkpoint_output(55))
    assert gate.may_proceed("upload_s3") is False

    gate.evaluate(checkpoint_output(91))
    assert gate.may_proceed("upload_s3") is True


def test_gate_is_scoped_per_run() -> None:
    gate = _gate()
    gate.evaluate(checkpoint_output(91), run_id="run-a")

    assert gate.may_proceed(run_id="run-a") is True
    assert gate.may_proceed(run_id="run-b") is False
    assert gate.may_proceed() is False


def test_checkpoint_results_expire() -> None:
    clock = ManualClock()
    gate = _gate(clock)
    gate.evaluate(checkpoint_output(91), run_id="run-a")

    clock.advance(seconds=1801)

    assert gate.latest("run-a") is None
    assert gate.may_proceed(run_id="run-a") is False


@pytest.mark.asyncio
async def test_run_checkpoint_records_result() -> None:
    gate = _gate()
    executor = StubCheckpointExecutor(score=88)

    result = await gate.run_checkpoint(executor, {"html": "<mjml/>"}, run_id="run-a")

    assert result.passed is True
    assert result.recommendations == ["tighten subject line"]
    assert executor.payloads == [{"html": "<mjml/>"}]
    assert gate.latest("run-a") == result


@pytest.mark.asyncio
async def test_run_checkpoint_timeout_fails_closed() -> None:
    settings = QualityGateSettings(checkpoint_timeout_seconds=0.01)
    gate = QualityGateController(settings, store=WorkflowStateStore(now=ManualClock()))

    async def _slow(payload: object) -> CheckpointOutput:
        await asyncio.sleep(1)
        return CheckpointOutput(success=True)

    result = await gate.run_checkpoint(_slow, {}, run_id="run-slow")

    assert result.passed is False
    assert "timed out" in result.issues[0].description
    assert gate.may_proceed(run_id="run-slow") is False
