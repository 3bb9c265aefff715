from __future__ import annotations

import asyncio
import hashlib
import json
import re
from typing import Any, Mapping, Protocol, Sequence

from ..core.config import CorrectionSettings
from ..core.logging import get_logger
from ..core.metrics import record_correction_attempt
from ..schemas.handoff import TransitionType, ValidationFinding, get_transition_schema
from .store import WorkflowStateStore

logger = get_logger(name=__name__)

_FENCED_BLOCK = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


class RepairExecutor(Protocol):
    async def generate(self, prompt: str, *, system_prompt: str | None = None) -> str:
        ...


def payload_hash(payload: Mapping[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def _balanced_objects(text: str) -> list[str]:
    candidates: list[str] = []
    for start, char in enumerate(text):
        if char != "{":
            continue
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            current = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif current == "\\":
                    escaped = True
                elif current == '"':
                    in_string = False
                continue
            if current == '"':
                in_string = True
            elif current == "{":
                depth += 1
            elif current == "}":
                depth -= 1
                if depth == 0:
                    candidates.append(text[start : index + 1])
                    break
    return candidates


def extract_structured_payload(response: str) -> dict[str, Any] | None:
    """Pull a JSON object out of a free-text response.

    Preference order: fenced code block, the whole response, then the largest
    balanced ``{...}`` span that parses.
    """
    if not response:
        return None
    for block in _FENCED_BLOCK.findall(response):
        parsed = _loads_object(block.strip())
        if parsed is not None:
            return parsed
    parsed = _loads_object(response.strip())
    if parsed is not None:
        return parsed
    for candidate in sorted(_balanced_objects(response), key=len, reverse=True):
        parsed = _loads_object(candidate)
        if parsed is not None:
            return parsed
    return None


class AutomatedDataCorrector:
    """Bounded-attempt repair of handoff payloads that failed validation.

    The result is only a candidate; callers must validate it again.
    """

    def __init__(
        self,
        executor: RepairExecutor,
        settings: CorrectionSettings | None = None,
        *,
        store: WorkflowStateStore | None = None,
    ) -> None:
        self._executor = executor
        self._settings = settings or CorrectionSettings()
        self._store = store or WorkflowStateStore()

    @property
    def max_attempts(self) -> int:
        return self._settings.max_attempts

    def attempts_for(self, payload: Mapping[str, Any]) -> int:
        return self._store.correction_attempts(payload_hash(payload))

    async def correct(
        self,
        payload: Mapping[str, Any],
        findings: Sequence[ValidationFinding],
        transition: TransitionType,
    ) -> dict[str, Any] | None:
        settings = self._settings
        key = payload_hash(payload)
        if self._store.correction_attempts(key) >= settings.max_attempts:
            logger.warning(
                "correction_attempt_limit_reached",
                transition=transition.value,
                payload_hash=key[:12],
                max_attempts=settings.max_attempts,
            )
            record_correction_attempt(transition=transition.value, outcome="limit_reached")
            return None

        attempt = self._store.increment_correction(key)
        prompt = self.build_prompt(payload, findings, transition, attempt=attempt)
        logger.info(
            "correction_attempt_started",
            transition=transition.value,
            attempt=attempt,
            findings=len(findings),
        )
        try:
            response = await asyncio.wait_for(
                self._executor.generate(prompt, system_prompt=settings.system_prompt),
                timeout=settings.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "correction_attempt_timeout",
                transition=transition.value,
                attempt=attempt,
                timeout_seconds=settings.timeout_seconds,
            )
            record_correction_attempt(transition=transition.value, outcome="timeout")
            return None
        except Exception:  # pragma: no cover - executor failures count as a failed attempt
            logger.exception("correction_attempt_failed", transition=transition.value, attempt=attempt)
            record_correction_attempt(transition=transition.value, outcome="error")
            return None

        corrected = extract_structured_payload(response if isinstance(response, str) else str(response))
        if corrected is None:
            logger.warning("correction_response_unparseable", transition=transition.value, attempt=attempt)
            record_correction_attempt(transition=transition.value, outcome="unparseable")
            return None

        self._store.clear_correction(key)
        record_correction_attempt(transition=transition.value, outcome="corrected")
        logger.info(
            "correction_attempt_succeeded",
            transition=transition.value,
            attempt=attempt,
            sections=sorted(corrected),
        )
        return corrected

    def build_prompt(
        self,
        payload: Mapping[str, Any],
        findings: Sequence[ValidationFinding],
        transition: TransitionType,
        *,
        attempt: int,
    ) -> str:
        schema = get_transition_schema(transition)
        ordered = sorted(findings, key=lambda finding: finding.severity.rank)[: self._settings.max_findings]
        issues = "\n".join(
            f"- [{finding.severity.value.upper()}] {finding.field or 'payload'}: {finding.message}"
            for finding in ordered
        )
        return (
            f"ATTEMPT {attempt} of {self._settings.max_attempts}\n"
            f"Repair the handoff payload for transition {transition.value}.\n\n"
            f"Required sections (non-empty objects or lists): {', '.join(schema.required_sections)}\n"
            f"Optional sections: {', '.join(schema.optional_sections)}\n\n"
            f"Fix these problems, most severe first:\n{issues or '- none reported'}\n\n"
            "Current payload:\n"
            f"{json.dumps(payload, indent=2, sort_keys=True, default=str)}\n\n"
            "Return the complete corrected payload as one JSON object. Keep valid sections unchanged."
        )
