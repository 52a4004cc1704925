"""Pure state transitions for a single task.

Nothing here touches storage or external processes; the engine wraps each
function with persistence and collaborator calls.

::

    pending --(requires TDD)--> test_creation[red]
    pending --(no TDD)-------> implementation[none]
    test_creation[red] ------> implementation[green]
    implementation ----------> completed
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from ..memory.schema import (
    TDD_KINDS,
    ErrorLogEntry,
    TaskKind,
    TaskRecord,
    TaskStatus,
    TddPhase,
    utc_now,
)
from ..tools.validation import ValidationOutcome


class InvalidTransitionError(RuntimeError):
    """Raised when a task is asked to move out of a terminal state."""


def requires_tdd(kind: TaskKind) -> bool:
    return kind in TDD_KINDS


def advance_phase(task: TaskRecord, *, clock: Callable[[], datetime] = utc_now) -> TaskStatus:
    """Move ``task`` one step along the lifecycle and return the new status."""
    if task.status == TaskStatus.PENDING:
        if task.requires_tdd:
            task.status = TaskStatus.TEST_CREATION
            task.tdd_phase = TddPhase.RED
        else:
            task.status = TaskStatus.IMPLEMENTATION
            task.tdd_phase = TddPhase.NONE
    elif task.status == TaskStatus.TEST_CREATION:
        task.status = TaskStatus.IMPLEMENTATION
        task.tdd_phase = TddPhase.GREEN
    elif task.status == TaskStatus.IMPLEMENTATION:
        task.status = TaskStatus.COMPLETED
        task.completed_at = clock()
    else:
        raise InvalidTransitionError(f"Task {task.id} is {task.status.value}; it cannot advance.")
    return task.status


def record_failure(
    task: TaskRecord,
    error: str,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> bool:
    """Log a failed attempt; returns ``True`` when the task just became failed."""
    if task.is_terminal:
        raise InvalidTransitionError(f"Task {task.id} is {task.status.value}; no further attempts.")
    task.attempts += 1
    task.error_log.append(ErrorLogEntry(attempt=task.attempts, timestamp=clock(), error=error))
    if task.max_attempts_reached:
        task.status = TaskStatus.FAILED
        return True
    return False


def verify_outcome(task: TaskRecord, outcome: ValidationOutcome) -> bool:
    """Apply the TDD verification rule.

    Red phase requires the validation to fail, green (and non-TDD work)
    requires it to pass.  A task without a validation command is always
    verified, whatever its phase.  A command that timed out or could not
    run never verifies a task, not even a red one.
    """
    if not task.validation_command:
        return True
    if outcome.errored:
        return False
    if task.requires_tdd and task.tdd_phase == TddPhase.RED:
        return not outcome.succeeded
    return outcome.succeeded


def describe_phase(task: TaskRecord) -> str:
    if task.tdd_phase == TddPhase.NONE:
        return task.status.value
    return f"{task.status.value}[{task.tdd_phase.value}]"


__all__ = [
    "InvalidTransitionError",
    "advance_phase",
    "describe_phase",
    "record_failure",
    "requires_tdd",
    "verify_outcome",
]
