"""Persisted records for plans and iteration loops."""

from .schema import (
    ErrorLogEntry,
    LoopState,
    PlanContext,
    ProjectPlan,
    TaskKind,
    TaskRecord,
    TaskStatus,
    TddPhase,
)
from .store import LoopStore, PersistenceError, PlanStore

__all__ = [
    "ErrorLogEntry",
    "LoopState",
    "LoopStore",
    "PersistenceError",
    "PlanContext",
    "PlanStore",
    "ProjectPlan",
    "TaskKind",
    "TaskRecord",
    "TaskStatus",
    "TddPhase",
]
