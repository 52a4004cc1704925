from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from autoloop.memory.schema import LoopState, ProjectPlan, TaskRecord
from autoloop.memory.store import LoopStore, PersistenceError, PlanStore
from autoloop.tools.progress_log import ProgressLog


def test_plan_store_returns_none_when_absent(tmp_path: Path) -> None:
    store = PlanStore(tmp_path / "prd.json")

    assert not store.exists()
    assert store.load() is None


def test_plan_store_roundtrip_leaves_no_temp_files(tmp_path: Path) -> None:
    store = PlanStore(tmp_path / "nested" / "prd.json")
    plan = ProjectPlan(project_name="Demo", tasks=[TaskRecord(id="A", description="first")])

    store.save(plan)

    assert store.load() == plan
    assert sorted(path.name for path in store.path.parent.iterdir()) == ["prd.json"]
    assert json.loads(store.path.read_text(encoding="utf-8"))["tasks"][0]["id"] == "A"


def test_plan_store_rejects_corrupt_json(tmp_path: Path) -> None:
    path = tmp_path / "prd.json"
    path.write_text("{ not json", encoding="utf-8")

    with pytest.raises(PersistenceError):
        PlanStore(path).load()


def test_plan_store_rejects_invalid_record(tmp_path: Path) -> None:
    path = tmp_path / "prd.json"
    path.write_text(json.dumps({"tasks": [{"id": "A", "status": "exploded"}]}), encoding="utf-8")

    with pytest.raises(PersistenceError):
        PlanStore(path).load()


def test_plan_store_from_config_resolves_against_root(tmp_path: Path) -> None:
    store = PlanStore.from_config({"paths": {"plan": "state/plan.json"}}, root=tmp_path)

    assert store.path == tmp_path / "state" / "plan.json"


def test_loop_store_writes_record_and_view(loop_store: LoopStore) -> None:
    state = LoopState(
        prompt="Build an API",
        completion_promise="DONE",
        max_iterations=10,
        current_iteration=2,
        started_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )

    loop_store.write(state)

    assert loop_store.read() == state
    assert loop_store.is_active()
    view = loop_store.view_path.read_text(encoding="utf-8")
    assert "iteration: 2/10" in view
    assert 'completion_promise: "DONE"' in view
    assert view.rstrip().endswith("Build an API")


def test_loop_store_clear_removes_both_files(loop_store: LoopStore) -> None:
    loop_store.write(LoopState(prompt="x"))

    loop_store.clear()
    loop_store.clear()

    assert not loop_store.state_path.exists()
    assert not loop_store.view_path.exists()
    assert loop_store.read() is None
    assert not loop_store.is_active()


def test_loop_store_rejects_corrupt_record(loop_store: LoopStore) -> None:
    loop_store.state_dir.mkdir(parents=True)
    loop_store.state_path.write_text("[]", encoding="utf-8")

    with pytest.raises(PersistenceError):
        loop_store.read()


def test_progress_log_header_written_once(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path / "progress.md")

    assert log.initialise("Build a todo API") is True
    assert log.initialise("Something else") is False

    log.append("Completed TASK-001")
    text = log.path.read_text(encoding="utf-8")
    assert text.count("# Autoloop Progress Log") == 1
    assert "Build a todo API" in text
    assert log.tail(1) == "Completed TASK-001"


def test_progress_log_tail_without_file(tmp_path: Path) -> None:
    assert ProgressLog(tmp_path / "missing.md").tail() == ""


def test_plan_store_keeps_null_context_notes(tmp_path: Path) -> None:
    path = tmp_path / "prd.json"
    path.write_text(
        json.dumps({"tasks": [], "context": {"agents_md": None, "progress_summary": None, "extra": None}}),
        encoding="utf-8",
    )
    store = PlanStore(path)

    plan = store.load()
    store.save(plan)

    context = json.loads(path.read_text(encoding="utf-8"))["context"]
    assert context == {"agents_md": None, "progress_summary": None, "extra": None}
    assert store.load().context.progress_summary is None


def test_loop_store_from_config_resolves_state_dir(tmp_path: Path) -> None:
    store = LoopStore.from_config({"paths": {"state_dir": "run/state"}}, root=tmp_path)

    assert store.state_path == tmp_path / "run" / "state" / "loop.state.json"
