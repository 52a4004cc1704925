"""Parsers that pull structured data out of free-text agent output.

Two grammars are recognised:

* a plan block: a fenced ```json (or bare ```) block, else the first balanced
  ``{...}`` object, else the whole response, decoded into a ProjectPlan;
* turn signals: ``<task-complete/>``, ``<task-stuck reason="..."/>`` and a
  ``<thinking>...</thinking>`` block, each optional.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Iterator, Mapping

from pydantic import ValidationError

from .memory.schema import PlanContext, ProjectPlan, TaskKind, TaskRecord, utc_now
from .utils.ids import IdGenerator, TimestampIdGenerator

_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\r?\n?(.*?)```", re.DOTALL)
_COMPLETE_RE = re.compile(r"<task-complete\s*/>")
_STUCK_RE = re.compile(r"<task-stuck\s+reason=\"([^\"]*)\"[^>]*?/>")
_THINKING_RE = re.compile(r"<thinking>(.*?)</thinking>", re.DOTALL)

# Keys an agent may set on a task; lifecycle fields always start fresh.
_TASK_INPUT_KEYS: dict[str, str] = {
    "id": "id",
    "kind": "kind",
    "type": "kind",
    "description": "description",
    "validation_command": "validation_command",
    "validation_cmd": "validation_command",
    "test_file": "test_file",
    "max_attempts": "max_attempts",
}


class ParseError(ValueError):
    """Raised when agent output holds no usable structured block."""


@dataclass(slots=True)
class TurnSignals:
    """Signals extracted from one agent turn."""

    complete: bool = False
    stuck: bool = False
    stuck_reason: str | None = None
    thinking: str | None = None

    @property
    def has_thinking(self) -> bool:
        return self.thinking is not None


def parse_turn_response(text: str) -> TurnSignals:
    signals = TurnSignals()
    thinking = _THINKING_RE.search(text)
    if thinking:
        signals.thinking = thinking.group(1).strip()
    if _COMPLETE_RE.search(text):
        signals.complete = True
    stuck = _STUCK_RE.search(text)
    if stuck:
        signals.stuck = True
        signals.stuck_reason = stuck.group(1)
    return signals


def _candidate_blocks(text: str) -> Iterator[str]:
    for match in _FENCE_RE.finditer(text):
        yield match.group(1).strip()
    balanced = _first_balanced_object(text)
    if balanced is not None:
        yield balanced
    yield text.strip()


def _first_balanced_object(text: str) -> str | None:
    """Return the first ``{...}`` span whose braces balance, ignoring strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the first JSON object found in ``text``."""
    if not text or not text.strip():
        raise ParseError("Agent response is empty.")
    last_error: json.JSONDecodeError | None = None
    for candidate in _candidate_blocks(text):
        if not candidate:
            continue
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as error:
            last_error = error
            continue
        if isinstance(data, dict):
            return data
    detail = f": {last_error}" if last_error else ""
    raise ParseError(f"Could not find a valid JSON plan in the response{detail}")


def _coerce_task(raw: Any, index: int, *, max_attempts: int) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        raise ParseError(f"Task #{index + 1} is not an object.")
    payload: dict[str, Any] = {"max_attempts": max_attempts}
    for key, value in raw.items():
        target = _TASK_INPUT_KEYS.get(str(key))
        if target is None or value is None:
            continue
        payload[target] = value
    kind = payload.get("kind")
    if isinstance(kind, str):
        normalised = kind.strip().lower()
        if normalised not in {member.value for member in TaskKind}:
            raise ParseError(f"Task #{index + 1} has unknown type {kind!r}.")
        payload["kind"] = normalised
    if "description" in payload:
        payload["description"] = str(payload["description"]).strip()
    return payload


def parse_plan_source(
    text: str,
    *,
    id_generator: IdGenerator | None = None,
    max_attempts: int = 3,
) -> ProjectPlan:
    """Build a fresh :class:`ProjectPlan` from the planning agent's response.

    Tasks without an ``id`` get one from ``id_generator``; every task starts
    pending with no attempts regardless of what the response says.
    """
    data = extract_json_object(text)
    raw_tasks = data.get("tasks", [])
    if not isinstance(raw_tasks, list):
        raise ParseError("Plan 'tasks' must be a list.")

    generator = id_generator or TimestampIdGenerator()
    taken: set[str] = set()
    tasks: list[TaskRecord] = []
    for index, raw in enumerate(raw_tasks):
        payload = _coerce_task(raw, index, max_attempts=max_attempts)
        task_id = str(payload.get("id") or "").strip()
        if not task_id:
            task_id = generator(taken)
        if task_id in taken:
            raise ParseError(f"Duplicate task id {task_id!r} in plan.")
        payload["id"] = task_id
        try:
            tasks.append(TaskRecord.model_validate(payload))
        except ValidationError as error:
            raise ParseError(f"Task {task_id!r} is invalid: {error}") from error
        taken.add(task_id)

    now = utc_now()
    context = data.get("context")
    try:
        plan_context = PlanContext.model_validate(context) if isinstance(context, Mapping) else PlanContext()
        return ProjectPlan(
            project_name=str(data.get("project_name") or "Untitled Project").strip(),
            description=str(data.get("description") or "").strip(),
            created_at=now,
            updated_at=now,
            tasks=tasks,
            context=plan_context,
        )
    except ValidationError as error:
        raise ParseError(f"Plan is invalid: {error}") from error


__all__ = [
    "ParseError",
    "TurnSignals",
    "extract_json_object",
    "parse_plan_source",
    "parse_turn_response",
]
