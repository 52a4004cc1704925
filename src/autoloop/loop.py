"""Iteration loop controller.

The controller counts agent turns for a session and ends it when the agent
emits the completion promise or the iteration cap is reached.  It is
independent of the task plan and persists its own record through a store
with ``read``/``write``/``clear``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol

from .memory.schema import LoopState, utc_now

LOGGER = logging.getLogger(__name__)


class LoopStateStore(Protocol):
    def read(self) -> Optional[LoopState]: ...

    def write(self, state: LoopState) -> None: ...

    def clear(self) -> None: ...


class IterationReason(str, Enum):
    NO_ACTIVE_LOOP = "no_active_loop"
    PROMISE_FULFILLED = "promise_fulfilled"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    ITERATION_COMPLETE = "iteration_complete"


@dataclass(slots=True)
class IterationOutcome:
    should_continue: bool
    reason: IterationReason
    iteration: int = 0


def completion_pattern(promise: str) -> re.Pattern[str]:
    """Compile the ``<promise>TEXT</promise>`` matcher for literal ``promise``."""
    return re.compile(rf"<promise>\s*{re.escape(promise)}\s*</promise>", re.IGNORECASE)


def matches_completion_promise(promise: str | None, output: str) -> bool:
    if not promise:
        return False
    return completion_pattern(promise).search(output) is not None


class IterationLoopController:
    """Own and mutate the session's :class:`LoopState`."""

    def __init__(self, store: LoopStateStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.clock = clock
        self.state: LoopState | None = None

    def start(
        self,
        prompt: str,
        *,
        completion_promise: str | None = None,
        max_iterations: int | None = None,
    ) -> LoopState:
        self.state = LoopState(
            prompt=prompt,
            completion_promise=completion_promise or None,
            max_iterations=max_iterations or None,
            current_iteration=0,
            started_at=self.clock(),
            active=True,
        )
        self.store.write(self.state)
        LOGGER.info(
            "Started loop (promise=%r, max_iterations=%s)",
            self.state.completion_promise,
            self.state.max_iterations,
        )
        return self.state

    def load(self) -> LoopState | None:
        self.state = self.store.read()
        return self.state

    def _current(self) -> LoopState | None:
        if self.state is None:
            return self.load()
        return self.state

    def process_iteration(self, output: str) -> IterationOutcome:
        """Account for one agent turn whose text is ``output``."""
        state = self._current()
        if state is None or not state.active:
            return IterationOutcome(False, IterationReason.NO_ACTIVE_LOOP)

        if matches_completion_promise(state.completion_promise, output):
            state.active = False
            self.store.write(state)
            self.store.clear()
            self.state = None
            LOGGER.info("Completion promise fulfilled at iteration %d", state.current_iteration)
            return IterationOutcome(False, IterationReason.PROMISE_FULFILLED, state.current_iteration)

        state.current_iteration += 1
        self.store.write(state)
        if state.max_iterations and state.current_iteration >= state.max_iterations:
            self.store.clear()
            self.state = None
            LOGGER.info("Reached max iterations (%d)", state.max_iterations)
            return IterationOutcome(False, IterationReason.MAX_ITERATIONS_REACHED, state.current_iteration)

        return IterationOutcome(True, IterationReason.ITERATION_COMPLETE, state.current_iteration)

    def cancel(self) -> bool:
        state = self._current()
        if state is None or not state.active:
            return False
        state.active = False
        self.store.write(state)
        self.store.clear()
        self.state = None
        LOGGER.info("Cancelled loop at iteration %d", state.current_iteration)
        return True

    def status(self) -> dict | None:
        state = self.load()
        return state.to_record() if state is not None else None


__all__ = [
    "IterationLoopController",
    "IterationOutcome",
    "IterationReason",
    "LoopStateStore",
    "completion_pattern",
    "matches_completion_promise",
]
