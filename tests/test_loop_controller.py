from __future__ import annotations

import pytest

from autoloop.loop import IterationLoopController, IterationReason, matches_completion_promise
from autoloop.memory.schema import LoopState
from autoloop.memory.store import LoopStore


class MemoryLoopStore:
    """In-memory store that remembers every write."""

    def __init__(self) -> None:
        self.record: dict | None = None
        self.writes: list[dict] = []
        self.clears = 0

    def read(self) -> LoopState | None:
        return LoopState.model_validate(self.record) if self.record is not None else None

    def write(self, state: LoopState) -> None:
        self.record = state.to_record()
        self.writes.append(self.record)

    def clear(self) -> None:
        self.record = None
        self.clears += 1


def test_start_persists_active_state() -> None:
    store = MemoryLoopStore()
    controller = IterationLoopController(store)

    state = controller.start("Build an API", completion_promise="DONE", max_iterations=10)

    assert state.active
    assert state.current_iteration == 0
    assert store.record["prompt"] == "Build an API"
    assert store.record["completion_promise"] == "DONE"
    assert store.record["max_iterations"] == 10


def test_load_returns_none_without_record() -> None:
    assert IterationLoopController(MemoryLoopStore()).load() is None


def test_process_without_loop_reports_no_active_loop() -> None:
    store = MemoryLoopStore()
    outcome = IterationLoopController(store).process_iteration("anything")

    assert outcome.reason == IterationReason.NO_ACTIVE_LOOP
    assert not outcome.should_continue
    assert store.writes == []


def test_inactive_record_is_not_mutated() -> None:
    store = MemoryLoopStore()
    store.record = LoopState(prompt="x", active=False).to_record()

    outcome = IterationLoopController(store).process_iteration("output")

    assert outcome.reason == IterationReason.NO_ACTIVE_LOOP
    assert store.writes == []


def test_iterations_continue_until_max_then_clear() -> None:
    store = MemoryLoopStore()
    controller = IterationLoopController(store)
    controller.start("Test", max_iterations=2)

    first = controller.process_iteration("still working")
    assert first.should_continue
    assert first.reason == IterationReason.ITERATION_COMPLETE
    assert first.iteration == 1
    assert store.record["iteration"] == 1

    second = controller.process_iteration("still working")
    assert not second.should_continue
    assert second.reason == IterationReason.MAX_ITERATIONS_REACHED
    assert second.iteration == 2
    assert store.writes[-1]["iteration"] == 2
    assert store.record is None

    third = controller.process_iteration("still working")
    assert third.reason == IterationReason.NO_ACTIVE_LOOP


def test_promise_fulfilled_deactivates_then_clears() -> None:
    store = MemoryLoopStore()
    controller = IterationLoopController(store)
    controller.start("Test", completion_promise="DONE")
    controller.process_iteration("working")

    outcome = controller.process_iteration("Finished! <promise>DONE</promise>")

    assert outcome.reason == IterationReason.PROMISE_FULFILLED
    assert outcome.iteration == 1
    assert store.writes[-1]["active"] is False
    assert store.record is None


def test_iterations_without_limit_keep_going() -> None:
    store = MemoryLoopStore()
    controller = IterationLoopController(store)
    controller.start("Test")

    for expected in range(1, 6):
        outcome = controller.process_iteration("<promise>DONE</promise>")
        assert outcome.should_continue
        assert outcome.iteration == expected


def test_cancel_reports_whether_a_loop_was_active() -> None:
    store = MemoryLoopStore()
    controller = IterationLoopController(store)
    assert controller.cancel() is False

    controller.start("Test")
    assert controller.cancel() is True
    assert store.writes[-1]["active"] is False
    assert store.record is None
    assert controller.cancel() is False


def test_status_reflects_persisted_record() -> None:
    store = MemoryLoopStore()
    controller = IterationLoopController(store)
    assert controller.status() is None

    controller.start("Test", max_iterations=5)
    controller.process_iteration("working")

    snapshot = IterationLoopController(store).status()
    assert snapshot["iteration"] == 1
    assert snapshot["active"] is True


def test_controller_resumes_from_file_store(loop_store: LoopStore) -> None:
    IterationLoopController(loop_store).start("Test", max_iterations=3)
    IterationLoopController(loop_store).process_iteration("one")

    outcome = IterationLoopController(loop_store).process_iteration("two")

    assert outcome.iteration == 2
    assert loop_store.read().current_iteration == 2


@pytest.mark.parametrize(
    ("promise", "output", "expected"),
    [
        ("DONE", "Finished! <promise>DONE</promise>", True),
        ("DONE", "<PROMISE> done </PROMISE>", True),
        ("tests.pass()", "<promise>tests.pass()</promise>", True),
        ("tests.pass()", "<promise>testsXpass()</promise>", False),
        ("a+b", "<promise>aab</promise>", False),
        ("DONE", "DONE", False),
        ("DONE", "<promise>NOT DONE</promise>", False),
        (None, "<promise>DONE</promise>", False),
    ],
)
def test_completion_promise_matching(promise: str | None, output: str, expected: bool) -> None:
    assert matches_completion_promise(promise, output) is expected
