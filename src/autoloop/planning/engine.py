"""Task lifecycle engine: retry, rollback, and commit-on-success policy.

The engine is the only component that mutates a :class:`ProjectPlan`.  Every
mutating call writes the whole plan through the :class:`PlanStore` before it
returns, so a restart resumes exactly at the last completed operation.  At
most one task may be in ``test_creation`` or ``implementation`` at a time;
mutating calls check this first and raise :class:`TaskInFlightError` when it
would be violated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping

from ..memory.schema import (
    PlanContext,
    ProjectPlan,
    TaskKind,
    TaskRecord,
    TaskStatus,
    TddPhase,
    utc_now,
)
from ..memory.store import PlanStore
from ..tools.progress_log import ProgressLog
from ..tools.validation import DEFAULT_TIMEOUT_SECONDS, ValidationOutcome, ValidationRunner
from ..tools.vcs import VersionControl
from ..utils.ids import IdGenerator, TimestampIdGenerator
from . import lifecycle
from .lifecycle import InvalidTransitionError

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_COMMIT_TEMPLATE = "{prefix}({task_id}): {summary}"
_SUMMARY_LENGTH = 50
_ERROR_OUTPUT_LIMIT = 2000


class TaskInFlightError(RuntimeError):
    """Raised when an operation would put a second task in flight."""

    def __init__(self, requested: str, in_flight: str) -> None:
        super().__init__(
            f"Task {in_flight} is already in flight; finish it before touching {requested}."
        )
        self.requested = requested
        self.in_flight = in_flight


class PlanNotFoundError(RuntimeError):
    """Raised when an operation needs a plan but none has been stored."""


@dataclass(slots=True)
class PlanProgress:
    """Per-status counts for a plan."""

    total: int
    pending: int
    in_progress: int
    completed: int
    failed: int
    skipped: int
    percentage: int

    @classmethod
    def from_plan(cls, plan: ProjectPlan) -> "PlanProgress":
        counts = {status: 0 for status in TaskStatus}
        for task in plan.tasks:
            counts[task.status] += 1
        total = len(plan.tasks)
        completed = counts[TaskStatus.COMPLETED]
        # Half-up rounding; Python's round() would send 12.5 to 12.
        percentage = int(100 * completed / total + 0.5) if total else 0
        return cls(
            total=total,
            pending=counts[TaskStatus.PENDING],
            in_progress=counts[TaskStatus.TEST_CREATION] + counts[TaskStatus.IMPLEMENTATION],
            completed=completed,
            failed=counts[TaskStatus.FAILED],
            skipped=counts[TaskStatus.SKIPPED],
            percentage=percentage,
        )


@dataclass(slots=True)
class AttemptResult:
    """Outcome of validating the in-flight task once."""

    task: TaskRecord
    outcome: ValidationOutcome
    verified: bool
    previous_status: TaskStatus
    previous_phase: TddPhase
    rolled_back: bool = False
    commit_ref: str | None = None


class TaskLifecycleEngine:
    """Drive tasks through the TDD lifecycle using external collaborators."""

    def __init__(
        self,
        store: PlanStore,
        vcs: VersionControl,
        runner: ValidationRunner,
        *,
        progress_log: ProgressLog | None = None,
        id_generator: IdGenerator | None = None,
        clock: Callable[[], datetime] = utc_now,
        validation_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        commit_template: str = DEFAULT_COMMIT_TEMPLATE,
    ) -> None:
        self.store = store
        self.vcs = vcs
        self.runner = runner
        self.progress_log = progress_log
        self.id_generator: IdGenerator = id_generator or TimestampIdGenerator()
        self.clock = clock
        self.validation_timeout = validation_timeout
        self.max_attempts = max_attempts
        self.commit_template = commit_template
        self._plan: ProjectPlan | None = None

    # ------------------------------------------------------------------ plans
    def load_plan(self) -> ProjectPlan | None:
        """Rehydrate the plan from the store; ``None`` when uninitialised."""
        self._plan = self.store.load()
        return self._plan

    def require_plan(self) -> ProjectPlan:
        plan = self._plan if self._plan is not None else self.load_plan()
        if plan is None:
            raise PlanNotFoundError(f"No plan found at {self.store.path}")
        return plan

    def create_plan(
        self,
        project_name: str,
        description: str = "",
        *,
        context: PlanContext | Mapping[str, Any] | None = None,
    ) -> ProjectPlan:
        now = self.clock()
        if context is None:
            plan_context = PlanContext()
        elif isinstance(context, PlanContext):
            plan_context = context
        else:
            plan_context = PlanContext.model_validate(dict(context))
        plan = ProjectPlan(
            project_name=project_name or "Untitled Project",
            description=description,
            created_at=now,
            updated_at=now,
            context=plan_context,
        )
        self._plan = plan
        self._save()
        LOGGER.info("Created plan %r", plan.project_name)
        return plan

    def adopt_plan(self, parsed: ProjectPlan, *, replace: bool = False) -> ProjectPlan:
        """Store a plan produced by the planning step.

        With an existing plan (and ``replace`` unset) the parsed tasks are
        appended; identifiers that collide are regenerated.
        """
        existing = self._plan if self._plan is not None else self.load_plan()
        if existing is None or replace:
            if existing is not None and parsed.context.agents_md is None:
                parsed.context = existing.context
            self._plan = parsed
            self._save()
            LOGGER.info("Adopted plan %r with %d task(s)", parsed.project_name, len(parsed.tasks))
            return parsed

        self._guard(None)
        taken = existing.task_ids()
        for incoming in parsed.tasks:
            task_id = incoming.id if incoming.id not in taken else self.id_generator(taken)
            existing.tasks.append(incoming.model_copy(update={"id": task_id}, deep=True))
            taken.add(task_id)
        if not existing.description and parsed.description:
            existing.description = parsed.description
        self._save()
        LOGGER.info("Appended %d task(s) to plan %r", len(parsed.tasks), existing.project_name)
        return existing

    # ------------------------------------------------------------------ tasks
    def add_task(
        self,
        kind: TaskKind | str = TaskKind.FEATURE,
        description: str = "",
        *,
        validation_command: str | None = None,
        test_file: str | None = None,
        max_attempts: int | None = None,
        task_id: str | None = None,
    ) -> TaskRecord:
        """Append a pending task with a freshly generated identifier."""
        plan = self.require_plan()
        self._guard(None)
        taken = plan.task_ids()
        if task_id is not None and task_id in taken:
            raise ValueError(f"Duplicate task id: {task_id}")
        task = TaskRecord(
            id=task_id or self.id_generator(taken),
            kind=TaskKind(kind),
            description=description,
            validation_command=validation_command or None,
            test_file=test_file,
            max_attempts=max_attempts or self.max_attempts,
        )
        plan.tasks.append(task)
        self._save()
        LOGGER.info("Added %s task %s", task.kind.value, task.id)
        return task

    def get_task(self, task: TaskRecord | str) -> TaskRecord:
        return self._resolve(task)

    def next_task(self) -> TaskRecord | None:
        """In-flight task first, then the earliest pending one."""
        return self.require_plan().next_task()

    def claim_next_task(self) -> TaskRecord | None:
        """Return the next task, starting it when it is still pending."""
        task = self.next_task()
        if task is not None and task.status == TaskStatus.PENDING:
            self.start_task(task)
        return task

    def start_task(self, task: TaskRecord | str) -> TaskRecord:
        """Move a pending task into its first working state.

        Uncommitted changes left over from earlier work are stashed first so
        the task starts from the last commit.
        """
        record = self._resolve(task)
        self._guard(record)
        if record.status != TaskStatus.PENDING:
            raise InvalidTransitionError(f"Task {record.id} is {record.status.value}, not pending.")
        if not self.vcs.is_clean():
            self.vcs.stash()
            self._log("- Stashed uncommitted changes before starting task")
            LOGGER.warning("Stashed uncommitted changes before starting %s", record.id)
        return self.advance_phase(record)

    def advance_phase(self, task: TaskRecord | str) -> TaskRecord:
        record = self._resolve(task)
        self._guard(record)
        previous = lifecycle.describe_phase(record)
        lifecycle.advance_phase(record, clock=self.clock)
        self._save()
        current = lifecycle.describe_phase(record)
        LOGGER.info("Task %s advanced from %s to %s", record.id, previous, current)
        return record

    def record_failure(self, task: TaskRecord | str, error: str) -> TaskRecord:
        record = self._resolve(task)
        self._guard(record)
        lifecycle.record_failure(record, error, clock=self.clock)
        self._save()
        return record

    def skip_task(self, task: TaskRecord | str, reason: str = "") -> TaskRecord:
        record = self._resolve(task)
        self._guard(record)
        if record.is_terminal:
            raise InvalidTransitionError(f"Task {record.id} is already {record.status.value}.")
        record.status = TaskStatus.SKIPPED
        self._save()
        suffix = f": {reason}" if reason else ""
        self._log(f"- Skipped {record.id}{suffix}")
        LOGGER.info("Skipped task %s%s", record.id, suffix)
        return record

    # ------------------------------------------------------------- validation
    def validate(self, task: TaskRecord | str) -> ValidationOutcome:
        record = self._resolve(task)
        if not record.validation_command:
            return ValidationOutcome.trivial()
        return self.runner.run(record.validation_command, self.validation_timeout)

    def verify(self, task: TaskRecord | str, outcome: ValidationOutcome) -> bool:
        return lifecycle.verify_outcome(self._resolve(task), outcome)

    def handle_success(self, task: TaskRecord | str) -> TaskRecord:
        """Commit the phase's work, then advance the task."""
        record = self._resolve(task)
        self._guard(record)
        if not record.in_flight:
            raise InvalidTransitionError(f"Task {record.id} is {record.status.value}, not in flight.")
        previous = lifecycle.describe_phase(record)
        commit_ref = self.vcs.commit(self._commit_message(record))
        lifecycle.advance_phase(record, clock=self.clock)
        if record.status == TaskStatus.COMPLETED:
            record.commit_ref = commit_ref
        self._save()

        if record.status == TaskStatus.COMPLETED:
            self._log(f"- Completed {record.id}: {record.description}\n  Commit: {commit_ref or 'N/A'}")
            LOGGER.info("Completed task %s (commit %s)", record.id, commit_ref or "none")
        else:
            current = lifecycle.describe_phase(record)
            self._log(
                f"- {record.id}: advanced from {previous} to {current}\n  Commit: {commit_ref or 'N/A'}"
            )
            LOGGER.info("Task %s advanced from %s to %s", record.id, previous, current)
        return record

    def handle_failure(self, task: TaskRecord | str, error: str) -> bool:
        """Record a failed attempt; roll back when the task is abandoned.

        Returns ``True`` when the task reached its attempt limit and the
        working tree was reset to the last commit.
        """
        record = self._resolve(task)
        self._guard(record)
        became_failed = lifecycle.record_failure(record, error, clock=self.clock)
        self._save()
        if not became_failed:
            self._log(f"- Attempt {record.attempts}/{record.max_attempts} failed for {record.id}: {error}")
            LOGGER.warning(
                "Attempt %d/%d failed for %s", record.attempts, record.max_attempts, record.id
            )
            return False

        self.vcs.reset_to_last_commit()
        # The reset may have discarded the record if it lives in the work tree.
        self._save()
        self._log(
            f"- FAILED {record.id} after {record.attempts} attempts: {error}\n"
            "  Working tree reset to last commit"
        )
        LOGGER.error("Task %s failed after %d attempts; working tree reset", record.id, record.attempts)
        return True

    def run_attempt(self, task: TaskRecord | str | None = None) -> AttemptResult | None:
        """Validate one task once and apply the outcome.

        Without ``task`` the next task is claimed (resuming in-flight work,
        else starting the earliest pending one).  A pending ``task`` is
        started first.  Returns ``None`` when no task remains.
        """
        if task is None:
            record = self.claim_next_task()
            if record is None:
                return None
        else:
            record = self._resolve(task)
            if record.status == TaskStatus.PENDING:
                self.start_task(record)
        self._guard(record)
        if not record.in_flight:
            raise InvalidTransitionError(f"Task {record.id} is {record.status.value}, not in flight.")

        previous_status = record.status
        previous_phase = record.tdd_phase
        outcome = self.validate(record)
        verified = self.verify(record, outcome)
        if verified:
            self.handle_success(record)
            return AttemptResult(
                task=record,
                outcome=outcome,
                verified=True,
                previous_status=previous_status,
                previous_phase=previous_phase,
                commit_ref=record.commit_ref,
            )

        rolled_back = self.handle_failure(record, _failure_message(record, outcome))
        return AttemptResult(
            task=record,
            outcome=outcome,
            verified=False,
            previous_status=previous_status,
            previous_phase=previous_phase,
            rolled_back=rolled_back,
        )

    # ------------------------------------------------------------- reporting
    def is_complete(self) -> bool:
        return self.require_plan().is_complete()

    def progress(self) -> PlanProgress:
        return PlanProgress.from_plan(self.require_plan())

    # -------------------------------------------------------------- internals
    def _resolve(self, task: TaskRecord | str) -> TaskRecord:
        plan = self.require_plan()
        task_id = task if isinstance(task, str) else task.id
        record = plan.get_task(task_id)
        if record is None:
            raise KeyError(f"Unknown task: {task_id}")
        return record

    def _guard(self, task: TaskRecord | None) -> None:
        in_flight = self.require_plan().in_flight_tasks()
        if len(in_flight) > 1:
            raise TaskInFlightError(in_flight[1].id, in_flight[0].id)
        if task is not None and in_flight and in_flight[0].id != task.id:
            raise TaskInFlightError(task.id, in_flight[0].id)

    def _save(self) -> None:
        plan = self.require_plan()
        plan.updated_at = self.clock()
        self.store.save(plan)

    def _log(self, entry: str) -> None:
        if self.progress_log is not None:
            self.progress_log.append(entry)

    def _commit_message(self, task: TaskRecord) -> str:
        prefix = "test" if task.tdd_phase == TddPhase.RED else "feat"
        summary = task.description.strip().splitlines()[0] if task.description.strip() else task.kind.value
        return self.commit_template.format(
            prefix=prefix,
            task_id=task.id,
            summary=summary[:_SUMMARY_LENGTH],
            kind=task.kind.value,
        )


def _failure_message(task: TaskRecord, outcome: ValidationOutcome) -> str:
    if task.tdd_phase == TddPhase.RED and outcome.succeeded:
        return "Validation passed during the red phase; tests must fail before implementation."
    if outcome.timed_out:
        return outcome.output.strip() or "Validation command timed out"
    if outcome.process_failed:
        detail = outcome.output.strip()[-_ERROR_OUTPUT_LIMIT:] or "no output"
        return f"Validation command could not run (exit {outcome.exit_code}): {detail}"
    output = outcome.output.strip()
    if len(output) > _ERROR_OUTPUT_LIMIT:
        output = output[-_ERROR_OUTPUT_LIMIT:]
    return f"Validation failed (exit {outcome.exit_code}): {output or 'no output'}"


__all__ = [
    "AttemptResult",
    "DEFAULT_COMMIT_TEMPLATE",
    "DEFAULT_MAX_ATTEMPTS",
    "PlanNotFoundError",
    "PlanProgress",
    "TaskInFlightError",
    "TaskLifecycleEngine",
]
