"""Autoloop: TDD task lifecycle engine and iteration loop controller."""

from .loop import IterationLoopController, IterationOutcome, IterationReason
from .memory.schema import LoopState, ProjectPlan, TaskKind, TaskRecord, TaskStatus, TddPhase
from .planning.engine import PlanProgress, TaskInFlightError, TaskLifecycleEngine
from .structured import ParseError, parse_plan_source, parse_turn_response

__version__ = "0.1.0"

__all__ = [
    "IterationLoopController",
    "IterationOutcome",
    "IterationReason",
    "LoopState",
    "ParseError",
    "PlanProgress",
    "ProjectPlan",
    "TaskInFlightError",
    "TaskKind",
    "TaskLifecycleEngine",
    "TaskRecord",
    "TaskStatus",
    "TddPhase",
    "parse_plan_source",
    "parse_turn_response",
]
