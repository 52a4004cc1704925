"""Typed records persisted by the autoloop plan and loop stores."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False, populate_by_name=True)


class TaskKind(str, Enum):
    """Kinds of work a plan may contain."""

    SETUP = "setup"
    FEATURE = "feature"
    TEST = "test"
    BUGFIX = "bugfix"
    REFACTOR = "refactor"
    DOCS = "docs"


class TaskStatus(str, Enum):
    """Lifecycle states for a task."""

    PENDING = "pending"
    TEST_CREATION = "test_creation"
    IMPLEMENTATION = "implementation"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TddPhase(str, Enum):
    """Red/green sub-state of a TDD task."""

    RED = "red"
    GREEN = "green"
    NONE = "none"


TDD_KINDS: frozenset[TaskKind] = frozenset({TaskKind.FEATURE, TaskKind.BUGFIX})
IN_FLIGHT_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.TEST_CREATION, TaskStatus.IMPLEMENTATION}
)
TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED}
)


class ErrorLogEntry(RecordModel):
    """One failed attempt recorded against a task."""

    attempt: int = Field(ge=1)
    timestamp: datetime
    error: str


class TaskRecord(RecordModel):
    """Single unit of work moving through the TDD lifecycle."""

    id: str
    kind: TaskKind = Field(
        default=TaskKind.FEATURE,
        validation_alias=AliasChoices("kind", "type"),
    )
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    tdd_phase: TddPhase = TddPhase.NONE
    validation_command: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("validation_command", "validation_cmd"),
    )
    test_file: Optional[str] = None
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    error_log: List[ErrorLogEntry] = Field(default_factory=list)
    completed_at: Optional[datetime] = None
    commit_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("commit_ref", "commit_sha"),
    )

    @property
    def requires_tdd(self) -> bool:
        return self.kind in TDD_KINDS

    @property
    def in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def max_attempts_reached(self) -> bool:
        return self.attempts >= self.max_attempts


class PlanContext(BaseModel):
    """Free-form notes carried alongside the plan.

    The engine never interprets these; extra keys are preserved verbatim.
    """

    model_config = ConfigDict(extra="allow")

    agents_md: Optional[str] = None
    progress_summary: Optional[str] = ""


class ProjectPlan(RecordModel):
    """Ordered task list plus project metadata."""

    project_name: str = "Untitled Project"
    description: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    tasks: List[TaskRecord] = Field(default_factory=list)
    context: PlanContext = Field(default_factory=PlanContext)

    @model_validator(mode="after")
    def _check_unique_ids(self) -> "ProjectPlan":
        seen: set[str] = set()
        for task in self.tasks:
            if task.id in seen:
                raise ValueError(f"Duplicate task id: {task.id}")
            seen.add(task.id)
        return self

    def task_ids(self) -> set[str]:
        return {task.id for task in self.tasks}

    def get_task(self, task_id: str) -> Optional[TaskRecord]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def in_flight_tasks(self) -> List[TaskRecord]:
        return [task for task in self.tasks if task.in_flight]

    def current_task(self) -> Optional[TaskRecord]:
        """Return the task currently in test creation or implementation."""
        for task in self.tasks:
            if task.in_flight:
                return task
        return None

    def next_task(self) -> Optional[TaskRecord]:
        """Resume in-flight work first, then the earliest pending task."""
        current = self.current_task()
        if current is not None:
            return current
        for task in self.tasks:
            if task.status == TaskStatus.PENDING:
                return task
        return None

    def completed_tasks(self) -> List[TaskRecord]:
        return [task for task in self.tasks if task.status == TaskStatus.COMPLETED]

    def failed_tasks(self) -> List[TaskRecord]:
        return [task for task in self.tasks if task.status == TaskStatus.FAILED]

    def is_complete(self) -> bool:
        return all(task.is_terminal for task in self.tasks)

    def to_record(self) -> dict[str, Any]:
        """Return the JSON-ready persisted form, nulls included."""
        return self.model_dump(mode="json", by_alias=True)


class LoopState(RecordModel):
    """Session-level iteration state, persisted apart from the plan."""

    prompt: str = ""
    completion_promise: Optional[str] = None
    max_iterations: Optional[int] = Field(default=None, ge=1)
    current_iteration: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("iteration", "current_iteration"),
        serialization_alias="iteration",
    )
    started_at: datetime = Field(default_factory=utc_now)
    active: bool = True

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


__all__ = [
    "ErrorLogEntry",
    "IN_FLIGHT_STATUSES",
    "LoopState",
    "PlanContext",
    "ProjectPlan",
    "RecordModel",
    "TDD_KINDS",
    "TERMINAL_STATUSES",
    "TaskKind",
    "TaskRecord",
    "TaskStatus",
    "TddPhase",
    "utc_now",
]
