from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from campaignflow.core.clock import ManualClock
from campaignflow.core.config import Settings
from campaignflow.orchestration.coordinator import HandoffCoordinator
from campaignflow.orchestration.handoff_validator import HandoffValidator
from campaignflow.orchestration.store import WorkflowStateStore
from campaignflow.schemas.handoff import (
    STAGE_ORDER,
    ContentToDesignPayload,
    Stage,
    TransitionType,
)

from tests.helpers.stubs import (
    StubCheckpointExecutor,
    StubRepairExecutor,
    build_deliverables,
    build_payload,
    checkpoint_output,
    fenced,
    passing_metadata,
)


def _coordinator(**kwargs) -> HandoffCoordinator:
    settings = Settings()
    store = WorkflowStateStore(history=settings.history, error_handling=settings.error_handling, now=ManualClock())
    return HandoffCoordinator.from_settings(settings, store=store, **kwargs)


@pytest.mark.asyncio
async def test_valid_transition_freezes_payload(tmp_path: Path) -> None:
    coordinator = _coordinator()

    result = await coordinator.execute_transition(
        Stage.CONTENT,
        Stage.DESIGN,
        build_payload(TransitionType.CONTENT_TO_DESIGN, design_brief={"tone": "warm"}),
        passing_metadata(),
        build_deliverables(tmp_path),
    )

    assert result.success is True
    assert result.errors == []
    assert result.transition is TransitionType.CONTENT_TO_DESIGN
    assert isinstance(result.payload, ContentToDesignPayload)
    assert result.payload.design_brief == {"tone": "warm"}
    assert result.execution_time_ms >= 0
    with pytest.raises(ValidationError):
        result.payload.generated_content = {"subject": "changed"}


@pytest.mark.asyncio
async def test_unusable_optional_section_only_warns(tmp_path: Path) -> None:
    result = await _coordinator().execute_transition(
        Stage.CONTENT,
        Stage.DESIGN,
        build_payload(TransitionType.CONTENT_TO_DESIGN, design_brief="plain text"),
        passing_metadata(),
        build_deliverables(tmp_path),
    )

    assert result.success is True
    assert result.errors == []
    assert "Optional section 'design_brief' is empty or not structured" in result.warnings
    assert isinstance(result.payload, ContentToDesignPayload)
    assert result.payload.design_brief is None
    assert "design_brief" not in result.payload.sections()


@pytest.mark.asyncio
async def test_missing_deliverables_fail_the_handoff() -> None:
    result = await _coordinator().execute_transition(
        Stage.CONTENT,
        Stage.DESIGN,
        build_payload(TransitionType.CONTENT_TO_DESIGN),
        passing_metadata(),
    )

    assert result.success is False
    assert result.errors == ["No deliverables were declared for this handoff"]


@pytest.mark.asyncio
async def test_invalid_payload_is_repaired(tmp_path: Path) -> None:
    repaired = build_payload(TransitionType.CONTENT_TO_DESIGN)
    executor = StubRepairExecutor([fenced(repaired)])
    coordinator = _coordinator(repair_executor=executor)

    result = await coordinator.execute_transition(
        Stage.CONTENT,
        Stage.DESIGN,
        build_payload(TransitionType.CONTENT_TO_DESIGN, generated_content={}),
        passing_metadata(),
        build_deliverables(tmp_path),
    )

    assert result.success is True
    assert result.corrected_payload == repaired
    assert result.correction_attempts == 1
    assert len(executor.calls) == 1
    assert "generated_content" in executor.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_unparseable_repair_leaves_handoff_failed(tmp_path: Path) -> None:
    executor = StubRepairExecutor(default="I could not fix it")
    coordinator = _coordinator(repair_executor=executor)
    payload = build_payload(TransitionType.CONTENT_TO_DESIGN, generated_content={})

    result = await coordinator.execute_transition(
        Stage.CONTENT, Stage.DESIGN, payload, passing_metadata(), build_deliverables(tmp_path)
    )

    assert result.success is False
    assert result.errors == ["Required section 'generated_content' is empty"]
    assert result.corrected_payload is None
    assert result.metadata["findings"][0]["code"] == "payload.empty_section"
    assert result.correction_attempts == 1
    assert len(executor.calls) == 1


@pytest.mark.asyncio
async def test_repair_loop_is_bounded(tmp_path: Path) -> None:
    broken = build_payload(TransitionType.CONTENT_TO_DESIGN, generated_content={})
    executor = StubRepairExecutor(default=fenced(broken))
    coordinator = _coordinator(repair_executor=executor)

    result = await coordinator.execute_transition(
        Stage.CONTENT, Stage.DESIGN, broken, passing_metadata(), build_deliverables(tmp_path)
    )

    assert result.success is False
    assert result.correction_attempts == 3
    assert len(executor.calls) == 3
    assert result.corrected_payload == broken


@pytest.mark.asyncio
async def test_sequencing_errors_skip_repair(tmp_path: Path) -> None:
    executor = StubRepairExecutor([fenced(build_payload(TransitionType.CONTENT_TO_DESIGN))])
    coordinator = _coordinator(repair_executor=executor)

    result = await coordinator.execute_transition(
        Stage.DATA_COLLECTION,
        Stage.DESIGN,
        {},
        passing_metadata(),
        build_deliverables(tmp_path),
    )

    assert result.success is False
    assert result.transition is None
    assert executor.calls == []
    assert any("Invalid transition data-collection -> design" in error for error in result.errors)


@pytest.mark.asyncio
async def test_metadata_errors_are_not_sent_for_repair(tmp_path: Path) -> None:
    executor = StubRepairExecutor()
    coordinator = _coordinator(repair_executor=executor)

    result = await coordinator.execute_transition(
        Stage.CONTENT,
        Stage.DESIGN,
        build_payload(TransitionType.CONTENT_TO_DESIGN),
        passing_metadata(validation_status="failed"),
        build_deliverables(tmp_path),
    )

    assert result.success is False
    assert executor.calls == []


@pytest.mark.asyncio
async def test_delivery_requires_quality_checkpoint(tmp_path: Path) -> None:
    coordinator = _coordinator()
    payload = build_payload(TransitionType.QUALITY_TO_DELIVERY)

    blocked = await coordinator.execute_transition(
        Stage.QUALITY, Stage.DELIVERY, payload, passing_metadata(), build_deliverables(tmp_path)
    )
    assert blocked.success is False
    assert blocked.errors == ["Quality gate blocked delivery: no quality checkpoint recorded"]

    coordinator.quality_gate.evaluate(checkpoint_output(62))
    failing = await coordinator.execute_transition(
        Stage.QUALITY, Stage.DELIVERY, payload, passing_metadata(), build_deliverables(tmp_path)
    )
    assert failing.errors == ["Quality gate blocked delivery: checkpoint score 62"]

    coordinator.quality_gate.evaluate(checkpoint_output(91))
    allowed = await coordinator.execute_transition(
        Stage.QUALITY, Stage.DELIVERY, payload, passing_metadata(), build_deliverables(tmp_path)
    )
    assert allowed.success is True
    assert allowed.quality is not None and allowed.quality.score == 91


@pytest.mark.asyncio
async def test_delivery_runs_missing_checkpoint(tmp_path: Path) -> None:
    checkpoint = StubCheckpointExecutor(score=84)
    coordinator = _coordinator(checkpoint_executor=checkpoint)

    result = await coordinator.execute_transition(
        Stage.QUALITY,
        Stage.DELIVERY,
        build_payload(TransitionType.QUALITY_TO_DELIVERY),
        passing_metadata(),
        build_deliverables(tmp_path),
    )

    assert result.success is True
    assert result.quality is not None and result.quality.score == 84
    assert set(checkpoint.payloads[0]) == {"quality_report", "compliance_status", "validation_results"}


@pytest.mark.asyncio
async def test_prior_stages_checked_within_a_run(tmp_path: Path) -> None:
    checkpoint = StubCheckpointExecutor(score=84)
    coordinator = _coordinator(checkpoint_executor=checkpoint)

    result = await coordinator.execute_transition(
        Stage.QUALITY,
        Stage.DELIVERY,
        build_payload(TransitionType.QUALITY_TO_DELIVERY),
        passing_metadata(),
        build_deliverables(tmp_path),
        run_id="run-7",
    )

    assert result.success is False
    assert result.errors == ["Stages not completed before quality: data-collection, content, design"]
    assert checkpoint.payloads == []


@pytest.mark.asyncio
async def test_design_to_quality_runs_checkpoint(tmp_path: Path) -> None:
    checkpoint = StubCheckpointExecutor(score=58)
    coordinator = _coordinator(checkpoint_executor=checkpoint)

    result = await coordinator.execute_transition(
        Stage.DESIGN,
        Stage.QUALITY,
        build_payload(TransitionType.DESIGN_TO_QUALITY),
        passing_metadata(),
        build_deliverables(tmp_path),
    )

    assert result.success is True
    assert result.quality is not None and result.quality.passed is False
    assert result.warnings == ["Quality checkpoint did not pass (score 58); delivery will be blocked"]
    assert set(checkpoint.payloads[0]) == {"asset_manifest", "mjml_template", "design_decisions"}
    assert coordinator.quality_gate.may_proceed(Stage.DELIVERY.value) is False


@pytest.mark.asyncio
async def test_full_run_and_revisit(tmp_path: Path) -> None:
    checkpoint = StubCheckpointExecutor(score=88)
    coordinator = _coordinator(checkpoint_executor=checkpoint)
    run_id = "run-42"

    for source, target in zip(STAGE_ORDER, STAGE_ORDER[1:]):
        transition = TransitionType.between(source, target)
        result = await coordinator.execute_transition(
            source,
            target,
            build_payload(transition),
            passing_metadata(),
            build_deliverables(tmp_path / source.value),
            run_id=run_id,
        )
        assert result.success is True, result.errors

    assert coordinator.store.completed_stages(run_id) == list(STAGE_ORDER[:-1])
    assert len(checkpoint.payloads) == 1

    again = await coordinator.execute_transition(
        Stage.DATA_COLLECTION,
        Stage.CONTENT,
        build_payload(TransitionType.DATA_COLLECTION_TO_CONTENT),
        passing_metadata(),
        build_deliverables(tmp_path / "again"),
        run_id=run_id,
    )
    assert again.success is False
    assert again.errors == ["Stage data-collection was already completed in this run"]


@pytest.mark.asyncio
async def test_monitor_summarises_outcomes(tmp_path: Path) -> None:
    coordinator = _coordinator()
    await coordinator.execute_transition(
        Stage.DATA_COLLECTION,
        Stage.CONTENT,
        build_payload(TransitionType.DATA_COLLECTION_TO_CONTENT),
        passing_metadata(),
        build_deliverables(tmp_path),
    )
    await coordinator.execute_transition(Stage.CONTENT, Stage.QUALITY, {}, passing_metadata())

    summary = coordinator.monitor.summary()

    assert summary.total == 2
    assert summary.successful == 1
    assert summary.success_rate == pytest.approx(0.5)
    assert summary.by_transition == {"data-collection-to-content": 1, "invalid": 1}
    assert summary.common_errors[0][1] == 1


@pytest.mark.asyncio
async def test_unexpected_failure_becomes_failed_result(tmp_path: Path) -> None:
    class _ExplodingValidator(HandoffValidator):
        def validate(self, *args, **kwargs):
            raise RuntimeError("validator offline")

    coordinator = HandoffCoordinator(settings=Settings(), validator=_ExplodingValidator())

    result = await coordinator.execute_transition(
        Stage.CONTENT,
        Stage.DESIGN,
        build_payload(TransitionType.CONTENT_TO_DESIGN),
        passing_metadata(),
        build_deliverables(tmp_path),
    )

    assert result.success is False
    assert result.transition is TransitionType.CONTENT_TO_DESIGN
    assert result.errors == ["Unexpected handoff failure: validator offline"]
    assert coordinator.monitor.summary().failed == 1
