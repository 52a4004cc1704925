"""
Task lifecycle: pure transitions plus the persisting engine around them.
"""

from .engine import (
    AttemptResult,
    PlanNotFoundError,
    PlanProgress,
    TaskInFlightError,
    TaskLifecycleEngine,
)
from .lifecycle import InvalidTransitionError, advance_phase, record_failure, verify_outcome

__all__ = [
    "AttemptResult",
    "InvalidTransitionError",
    "PlanNotFoundError",
    "PlanProgress",
    "TaskInFlightError",
    "TaskLifecycleEngine",
    "advance_phase",
    "record_failure",
    "verify_outcome",
]
