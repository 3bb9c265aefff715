from __future__ import annotations

import asyncio
import json
from collections import deque
from pathlib import Path
from typing import Any, Iterable, Mapping

from campaignflow.orchestration.exceptions import OperationFailure
from campaignflow.schemas.handoff import Deliverables, TransitionType, get_transition_schema


def build_payload(transition: TransitionType, **overrides: Any) -> dict[str, Any]:
    """Payload with every required section filled for the given transition."""
    schema = get_transition_schema(transition)
    payload: dict[str, Any] = {name: {"summary": f"{name} ready", "items": [1, 2]} for name in schema.required_sections}
    payload.update(overrides)
    return payload


def passing_metadata(**overrides: Any) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "data_quality_score": 92,
        "completeness_score": 95,
        "validation_status": "passed",
        "error_count": 0,
        "warning_count": 1,
        "processing_time": 1250.0,
    }
    metadata.update(overrides)
    return metadata


def build_deliverables(directory: Path, *, name: str = "content.json", body: str = '{"ok": true}') -> Deliverables:
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / name
    target.write_text(body, encoding="utf-8")
    return Deliverables.model_validate(
        {
            "created_files": [
                {
                    "name": name,
                    "path": str(target),
                    "type": "content",
                    "description": "Stage output",
                    "is_primary": True,
                }
            ],
            "key_outputs": ["stage output written"],
        }
    )


class StubRepairExecutor:
    """Repair executor replaying scripted responses; exceptions are raised."""

    def __init__(self, responses: Iterable[Any] | None = None, *, default: str = "no json here") -> None:
        self.responses: deque[Any] = deque(responses or [])
        self.default = default
        self.calls: list[dict[str, Any]] = []

    async def generate(self, prompt: str, *, system_prompt: str | None = None) -> str:
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt})
        response = self.responses.popleft() if self.responses else self.default
        if isinstance(response, BaseException):
            raise response
        return response


class SlowRepairExecutor:
    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.calls = 0

    async def generate(self, prompt: str, *, system_prompt: str | None = None) -> str:  # noqa: ARG002
        self.calls += 1
        await asyncio.sleep(self.delay)
        return "{}"


class StubCheckpointExecutor:
    """Quality checkpoint returning a fixed score and issue list."""

    def __init__(self, score: float | None = 88.0, issues: list[dict[str, Any]] | None = None, *, success: bool = True) -> None:
        self.score = score
        self.issues = issues or []
        self.success = success
        self.payloads: list[Mapping[str, Any]] = []

    async def __call__(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        self.payloads.append(payload)
        if not self.success:
            return {"success": False, "error": "checkpoint service unavailable"}
        return {
            "success": True,
            "data": {"score": self.score, "issues": self.issues, "recommendations": ["tighten subject line"]},
        }


class ScriptedOperationExecutor:
    """Plan-runner executor. Scripts map an operation to queued outcomes.

    An outcome that is an exception is raised; anything else is returned.
    Operations without a script succeed with ``"<operation>:ok"``.
    """

    def __init__(self, scripts: Mapping[str, Iterable[Any]] | None = None, *, delay: float = 0.0) -> None:
        self.scripts: dict[str, deque[Any]] = {key: deque(values) for key, values in (scripts or {}).items()}
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, operation_id: str, context: Mapping[str, Any]) -> Any:  # noqa: ARG002
        self.calls.append(operation_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            queue = self.scripts.get(operation_id)
            outcome = queue.popleft() if queue else f"{operation_id}:ok"
        finally:
            self.in_flight -= 1
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def checkpoint_output(score: float, *, critical: int = 0) -> dict[str, Any]:
    issues = [
        {"category": "compliance", "severity": "critical", "description": f"blocking issue {index}"}
        for index in range(critical)
    ]
    return {"success": True, "data": {"score": score, "issues": issues, "recommendations": []}}


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def rate_limited(operation: str = "get_prices") -> OperationFailure:
    return OperationFailure(f"{operation}: too many requests", code=429)


def fenced(payload: Mapping[str, Any]) -> str:
    return f"Here is the repaired payload:\n```json\n{json.dumps(payload)}\n```\nLet me know if anything else is needed."
