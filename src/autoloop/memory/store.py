"""Durable JSON records for the project plan and the iteration loop.

Both stores are single-writer: nothing here locks the files, so running two
engines (or two loop controllers) against the same paths at once is not
supported.  Every write goes through a temporary sibling file followed by
``os.replace`` so a crash never leaves a half-written record behind.

I/O failures (``OSError``) propagate unchanged.  Records that exist but
cannot be decoded raise :class:`PersistenceError`.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from .schema import LoopState, ProjectPlan

DEFAULT_PLAN_PATH = Path("prd.json")
DEFAULT_STATE_DIR = Path(".autoloop")
LOOP_STATE_NAME = "loop.state.json"
LOOP_VIEW_NAME = "loop.local.md"
LOGGER = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """Raised when a persisted record exists but cannot be decoded."""


def _write_atomic(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` without exposing partial writes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> Optional[Any]:
    """Return decoded JSON from ``path`` or ``None`` when the file is absent."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as error:
        raise PersistenceError(f"Corrupt record at {path}: {error}") from error


def _dump_json(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


class PlanStore:
    """File-backed persistence for a single :class:`ProjectPlan`."""

    def __init__(self, path: Path | str = DEFAULT_PLAN_PATH) -> None:
        self.path = Path(path)

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, root: Path | None = None) -> "PlanStore":
        paths = config.get("paths") or {}
        candidate = Path(str(paths.get("plan") or DEFAULT_PLAN_PATH))
        if root is not None and not candidate.is_absolute():
            candidate = root / candidate
        return cls(candidate)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[ProjectPlan]:
        """Return the stored plan, or ``None`` when no plan has been written."""
        data = _read_json(self.path)
        if data is None:
            return None
        try:
            return ProjectPlan.model_validate(data)
        except ValidationError as error:
            raise PersistenceError(f"Invalid plan record at {self.path}: {error}") from error

    def save(self, plan: ProjectPlan) -> None:
        _write_atomic(self.path, _dump_json(plan.to_record()))
        LOGGER.debug("Persisted plan with %d task(s) to %s", len(plan.tasks), self.path)


class LoopStore:
    """File-backed persistence for :class:`LoopState`.

    Alongside the JSON record a markdown view is written for shell hooks that
    only need to glance at the header fields.
    """

    def __init__(self, state_dir: Path | str = DEFAULT_STATE_DIR) -> None:
        self.state_dir = Path(state_dir)
        self.state_path = self.state_dir / LOOP_STATE_NAME
        self.view_path = self.state_dir / LOOP_VIEW_NAME

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, root: Path | None = None) -> "LoopStore":
        paths = config.get("paths") or {}
        candidate = Path(str(paths.get("state_dir") or DEFAULT_STATE_DIR))
        if root is not None and not candidate.is_absolute():
            candidate = root / candidate
        return cls(candidate)

    def read(self) -> Optional[LoopState]:
        data = _read_json(self.state_path)
        if data is None:
            return None
        try:
            return LoopState.model_validate(data)
        except ValidationError as error:
            raise PersistenceError(f"Invalid loop record at {self.state_path}: {error}") from error

    def write(self, state: LoopState) -> None:
        record = state.to_record()
        _write_atomic(self.state_path, _dump_json(record))
        _write_atomic(self.view_path, render_loop_view(record))

    def clear(self) -> None:
        self.state_path.unlink(missing_ok=True)
        self.view_path.unlink(missing_ok=True)

    def is_active(self) -> bool:
        state = self.read()
        return bool(state and state.active)


def render_loop_view(record: Mapping[str, Any]) -> str:
    """Render the human-readable header view of a loop record."""
    iteration = str(record.get("iteration", 0))
    if record.get("max_iterations"):
        iteration = f"{iteration}/{record['max_iterations']}"
    promise = record.get("completion_promise")
    lines = [
        "# Autoloop State",
        "",
        f"active: {'true' if record.get('active') else 'false'}",
        f"iteration: {iteration}",
        f"completion_promise: {json.dumps(promise) if promise else 'null'}",
        f"started: {record.get('started_at')}",
        "",
        "## Prompt",
        "",
        str(record.get("prompt") or "(no prompt)"),
        "",
    ]
    return "\n".join(lines)


__all__ = [
    "DEFAULT_PLAN_PATH",
    "DEFAULT_STATE_DIR",
    "LoopStore",
    "PersistenceError",
    "PlanStore",
    "render_loop_view",
]
