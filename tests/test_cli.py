from __future__ import annotations

import json
import textwrap
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from autoloop.cli import app, extract_project_name
from autoloop.memory.store import PlanStore
from autoloop.tools.vcs import GitRepository


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    """Initialise an autoloop project in a fresh directory and return its config path."""

    repo_root = tmp_path / "proj"
    repo_root.mkdir()
    (repo_root / "AGENTS.md").write_text("# Agent notes\n", encoding="utf-8")
    config_path = repo_root / "autoloop.yaml"

    result = CliRunner().invoke(
        app,
        ["-c", str(config_path), "init", "--goal", "Build a todo API, quickly and well"],
        catch_exceptions=False,
    )
    assert result.exit_code == 0, result.output
    return config_path


def _invoke(config_path: Path, *args: str):
    return CliRunner().invoke(app, ["-c", str(config_path), *args], catch_exceptions=False)


def test_init_bootstraps_config_git_plan_and_log(project: Path) -> None:
    repo_root = project.parent
    config_data = yaml.safe_load(project.read_text(encoding="utf-8"))
    assert config_data["project"]["name"] == "Build a todo API quickly"

    plan = PlanStore(repo_root / "prd.json").load()
    assert plan is not None
    assert plan.project_name == "Build a todo API quickly"
    assert plan.context.agents_md == "# Agent notes\n"
    assert (repo_root / "autoloop-progress.md").exists()

    ignore = (repo_root / ".gitignore").read_text(encoding="utf-8").splitlines()
    assert {"prd.json", "autoloop-progress.md", ".autoloop/"} <= set(ignore)
    assert GitRepository(repo_root).is_clean()


def test_init_twice_keeps_existing_plan(project: Path) -> None:
    result = _invoke(project, "init", "--goal", "Something else")

    assert result.exit_code == 0, result.output
    assert "Plan already exists" in result.output
    assert PlanStore(project.parent / "prd.json").load().project_name == "Build a todo API quickly"


def test_docs_task_completes_without_validation(project: Path) -> None:
    assert _invoke(project, "task", "add", "Write README", "--kind", "docs", "--id", "DOC-1").exit_code == 0

    claimed = _invoke(project, "next", "--json")
    assert claimed.exit_code == 0, claimed.output
    record = json.loads(claimed.output)
    assert record["id"] == "DOC-1"
    assert record["status"] == "implementation"

    result = _invoke(project, "attempt")
    assert result.exit_code == 0, result.output
    assert "DOC-1 is now completed" in result.output

    status = _invoke(project, "status")
    assert "(100%)" in status.output
    assert "Plan complete." in status.output


def test_feature_task_goes_red_then_green_with_real_git(project: Path) -> None:
    repo_root = project.parent
    added = _invoke(project, "task", "add", "Add marker", "--id", "F-1", "-V", "test -f marker.txt")
    assert added.exit_code == 0, added.output

    claimed = _invoke(project, "next")
    assert "test_creation[red]" in claimed.output

    red = _invoke(project, "attempt")
    assert red.exit_code == 0, red.output
    assert "implementation[green]" in red.output

    (repo_root / "marker.txt").write_text("done\n", encoding="utf-8")
    green = _invoke(project, "attempt")
    assert green.exit_code == 0, green.output
    assert "F-1 is now completed" in green.output

    task = PlanStore(repo_root / "prd.json").load().get_task("F-1")
    repo = GitRepository(repo_root)
    assert task.commit_ref == repo.head()
    assert "feat(F-1): Add marker" in repo.recent_log(1)


def test_failed_attempts_exit_nonzero_and_roll_back(project: Path) -> None:
    repo_root = project.parent
    _invoke(project, "task", "add", "Needs tool", "--kind", "setup", "-V", "false", "--max-attempts", "1")
    _invoke(project, "next")
    (repo_root / "half-done.txt").write_text("partial", encoding="utf-8")

    result = _invoke(project, "attempt")

    assert result.exit_code == 1
    assert "working tree reset" in result.output
    assert not (repo_root / "half-done.txt").exists()
    plan = PlanStore(repo_root / "prd.json").load()
    assert plan.tasks[0].status.value == "failed"


def test_attempt_with_empty_plan_exits_nonzero(project: Path) -> None:
    result = _invoke(project, "attempt")

    assert result.exit_code == 1
    assert "No tasks remaining." in result.output


def test_attempt_starts_pending_task(project: Path) -> None:
    _invoke(project, "task", "add", "Write README", "--kind", "docs", "--id", "DOC-1")

    result = _invoke(project, "attempt")

    assert result.exit_code == 0, result.output
    assert "DOC-1 is now completed" in result.output


def test_run_drains_plan(project: Path) -> None:
    _invoke(project, "task", "add", "Write README", "--kind", "docs", "--id", "DOC-1")
    _invoke(project, "task", "add", "Configure CI", "--kind", "setup", "--id", "SET-1", "-V", "true")

    result = _invoke(project, "run")

    assert result.exit_code == 0, result.output
    assert "Ran 2 attempt(s); 2/2 task(s) completed." in result.output
    assert "Plan complete." in _invoke(project, "status").output


def test_run_reports_failed_tasks(project: Path) -> None:
    _invoke(
        project, "task", "add", "Broken", "--kind", "setup", "--id", "BAD-1", "-V", "false", "--max-attempts", "2"
    )
    _invoke(project, "task", "add", "Write README", "--kind", "docs", "--id", "DOC-1")

    result = _invoke(project, "run")

    assert result.exit_code == 1
    assert "Ran 3 attempt(s); 1/2 task(s) completed." in result.output
    assert "Failed tasks: BAD-1" in result.output
    assert "Failed tasks: BAD-1" in _invoke(project, "status").output


def test_run_honours_limit(project: Path) -> None:
    _invoke(project, "task", "add", "Broken", "--kind", "setup", "-V", "false")

    result = _invoke(project, "run", "--limit", "1")

    assert result.exit_code == 0, result.output
    assert "Stopped before the plan was exhausted." in result.output


def test_plan_import_appends_parsed_tasks(project: Path, tmp_path: Path) -> None:
    response = tmp_path / "plan.md"
    response.write_text(
        textwrap.dedent(
            """
            Here is the plan:
            ```json
            {"project_name": "Todo", "tasks": [
              {"id": "T-1", "type": "setup", "description": "Install"},
              {"id": "T-2", "type": "feature", "description": "Create todo"}
            ]}
            ```
            """
        ),
        encoding="utf-8",
    )

    result = _invoke(project, "plan", "import", str(response))

    assert result.exit_code == 0, result.output
    assert "now has 2 task(s)" in result.output
    assert PlanStore(project.parent / "prd.json").load().task_ids() == {"T-1", "T-2"}


def test_plan_import_rejects_unparseable_response(project: Path, tmp_path: Path) -> None:
    response = tmp_path / "plan.md"
    response.write_text("I could not come up with a plan.", encoding="utf-8")

    result = _invoke(project, "plan", "import", str(response))

    assert result.exit_code == 1
    assert "Error:" in result.output


def test_skip_unknown_task_reports_error(project: Path) -> None:
    result = _invoke(project, "task", "skip", "NOPE")

    assert result.exit_code == 1
    assert "Unknown task: NOPE" in result.output


def test_loop_commands_track_iterations(project: Path, tmp_path: Path) -> None:
    working = tmp_path / "working.txt"
    working.write_text("Still going.", encoding="utf-8")
    finished = tmp_path / "finished.txt"
    finished.write_text("All done <promise>DONE</promise>", encoding="utf-8")

    started = _invoke(project, "loop", "start", "Build it", "-p", "DONE", "-n", "5")
    assert started.exit_code == 0, started.output
    assert "max iterations: 5" in started.output

    first = json.loads(_invoke(project, "loop", "iterate", str(working)).output)
    assert first == {"continue": True, "reason": "iteration_complete", "iteration": 1}

    snapshot = json.loads(_invoke(project, "loop", "status").output)
    assert snapshot["iteration"] == 1
    assert snapshot["completion_promise"] == "DONE"

    done = json.loads(_invoke(project, "loop", "iterate", str(finished)).output)
    assert done == {"continue": False, "reason": "promise_fulfilled", "iteration": 1}

    assert "No active loop." in _invoke(project, "loop", "status").output
    assert "No active loop." in _invoke(project, "loop", "cancel").output


def test_loop_cancel_stops_active_loop(project: Path) -> None:
    _invoke(project, "loop", "start", "Build it")

    assert "Loop cancelled." in _invoke(project, "loop", "cancel").output
    assert not (project.parent / ".autoloop" / "loop.state.json").exists()


def test_parse_turn_prints_signals(tmp_path: Path) -> None:
    turn = tmp_path / "turn.txt"
    turn.write_text('<task-stuck reason="no network"/>', encoding="utf-8")

    result = CliRunner().invoke(app, ["-c", str(tmp_path / "autoloop.yaml"), "parse-turn", str(turn)])

    assert result.exit_code == 0, result.output
    signals = json.loads(result.output)
    assert signals["stuck"] is True
    assert signals["stuck_reason"] == "no network"


@pytest.mark.parametrize(
    ("goal", "expected"),
    [
        ("Build a todo API, quickly and well", "Build a todo API quickly"),
        ("!!!", "Untitled Project"),
    ],
)
def test_extract_project_name(goal: str, expected: str) -> None:
    assert extract_project_name(goal) == expected
