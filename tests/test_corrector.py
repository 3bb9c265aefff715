from __future__ import annotations

import pytest

from campaignflow.core.config import CorrectionSettings
from campaignflow.orchestration.corrector import (
    AutomatedDataCorrector,
    extract_structured_payload,
    payload_hash,
)
from campaignflow.orchestration.store import WorkflowStateStore
from campaignflow.schemas.handoff import FindingSeverity, TransitionType, ValidationFinding

from tests.helpers.stubs import SlowRepairExecutor, StubRepairExecutor, build_payload, fenced

TRANSITION = TransitionType.CONTENT_TO_DESIGN


def _broken_payload() -> dict:
    return build_payload(TRANSITION, generated_content={})


def _findings() -> list[ValidationFinding]:
    return [
        ValidationFinding(
            code="payload.optional_section_unusable",
            message="design brief blank",
            severity=FindingSeverity.MINOR,
            field="design_brief",
        ),
        ValidationFinding(
            code="payload.empty_section",
            message="Required section 'generated_content' is empty",
            field="generated_content",
        ),
        ValidationFinding(
            code="payload.missing_section",
            message="asset strategy missing",
            severity=FindingSeverity.CRITICAL,
            field="asset_strategy",
        ),
    ]


@pytest.mark.asyncio
async def test_attempts_are_capped_per_payload() -> None:
    executor = StubRepairExecutor()
    corrector = AutomatedDataCorrector(executor, store=WorkflowStateStore())
    payload = _broken_payload()

    results = [await corrector.correct(payload, _findings(), TRANSITION) for _ in range(4)]

    assert results == [None, None, None, None]
    assert len(executor.calls) == 3
    assert corrector.attempts_for(payload) == 3


@pytest.mark.asyncio
async def test_distinct_payloads_have_separate_budgets() -> None:
    executor = StubRepairExecutor()
    corrector = AutomatedDataCorrector(executor, CorrectionSettings(max_attempts=1))

    await corrector.correct(_broken_payload(), _findings(), TRANSITION)
    await corrector.correct(build_payload(TRANSITION, generated_content=[]), _findings(), TRANSITION)

    assert len(executor.calls) == 2


@pytest.mark.asyncio
async def test_successful_repair_resets_counter() -> None:
    repaired = build_payload(TRANSITION)
    executor = StubRepairExecutor(["garbage", fenced(repaired)])
    corrector = AutomatedDataCorrector(executor)
    payload = _broken_payload()

    assert await corrector.correct(payload, _findings(), TRANSITION) is None
    assert corrector.attempts_for(payload) == 1

    result = await corrector.correct(payload, _findings(), TRANSITION)

    assert result == repaired
    assert corrector.attempts_for(payload) == 0
    assert executor.calls[1]["prompt"].startswith("ATTEMPT 2 of 3")
    assert executor.calls[1]["system_prompt"] == CorrectionSettings().system_prompt


@pytest.mark.asyncio
async def test_executor_errors_count_as_failed_attempts() -> None:
    executor = StubRepairExecutor([RuntimeError("model offline")])
    corrector = AutomatedDataCorrector(executor)
    payload = _broken_payload()

    assert await corrector.correct(payload, _findings(), TRANSITION) is None
    assert corrector.attempts_for(payload) == 1


@pytest.mark.asyncio
async def test_slow_executor_times_out() -> None:
    executor = SlowRepairExecutor(delay=1.0)
    corrector = AutomatedDataCorrector(executor, CorrectionSettings(timeout_seconds=0.01))

    assert await corrector.correct(_broken_payload(), _findings(), TRANSITION) is None
    assert executor.calls == 1


def test_prompt_lists_findings_by_severity() -> None:
    corrector = AutomatedDataCorrector(StubRepairExecutor())

    prompt = corrector.build_prompt(_broken_payload(), _findings(), TRANSITION, attempt=1)

    assert prompt.startswith("ATTEMPT 1 of 3")
    assert "content-to-design" in prompt
    critical = prompt.index("[CRITICAL] asset_strategy")
    major = prompt.index("[MAJOR] generated_content")
    minor = prompt.index("[MINOR] design_brief")
    assert critical < major < minor
    assert "context_analysis, date_analysis, pricing_analysis, asset_strategy, generated_content" in prompt


def test_prompt_truncates_findings() -> None:
    corrector = AutomatedDataCorrector(StubRepairExecutor(), CorrectionSettings(max_findings=1))
    prompt = corrector.build_prompt(_broken_payload(), _findings(), TRANSITION, attempt=2)
    assert "[CRITICAL]" in prompt
    assert "[MAJOR]" not in prompt


@pytest.mark.parametrize(
    ("response", "expected"),
    [
        ('```json\n{"a": 1}\n```', {"a": 1}),
        ('```\n{"a": 2}\n```', {"a": 2}),
        ('  {"a": 3}  ', {"a": 3}),
        ('Sure! {"a": {"b": "}"}} and also {"c": 1}', {"a": {"b": "}"}}),
        ("```json\n[1, 2]\n```", None),
        ("[1, 2, 3]", None),
        ("no structure here", None),
        ("", None),
    ],
)
def test_extract_structured_payload(response: str, expected: dict | None) -> None:
    assert extract_structured_payload(response) == expected


def test_payload_hash_ignores_key_order() -> None:
    assert payload_hash({"a": 1, "b": 2}) == payload_hash({"b": 2, "a": 1})
    assert payload_hash({"a": 1}) != payload_hash({"a": 2})
