"""CLI commands for driving autoloop plans and iteration loops."""

from __future__ import annotations

import json
import logging
import re
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import typer

from .config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    copy_config_template,
    load_config,
    resolve_path,
    resolve_repo_root,
    task_settings,
    write_config,
)
from .loop import IterationLoopController
from .memory.schema import PlanContext, TaskKind, TaskRecord
from .memory.store import LoopStore, PersistenceError, PlanStore
from .planning.engine import AttemptResult, PlanNotFoundError, TaskInFlightError, TaskLifecycleEngine
from .planning.lifecycle import InvalidTransitionError, describe_phase
from .structured import ParseError, parse_plan_source, parse_turn_response
from .tools.progress_log import ProgressLog
from .tools.validation import CommandRunner
from .tools.vcs import GitError, GitRepository
from .utils.ids import TimestampIdGenerator

APP_HELP = "Autoloop: TDD task lifecycle and iteration loop control for coding agents."

app = typer.Typer(help=APP_HELP, no_args_is_help=True)
plan_app = typer.Typer(help="Manage the project plan.")
task_app = typer.Typer(help="Manage individual tasks.")
loop_app = typer.Typer(help="Control the iteration loop.")
app.add_typer(plan_app, name="plan")
app.add_typer(task_app, name="task")
app.add_typer(loop_app, name="loop")

LOGGER = logging.getLogger(__name__)

_CLI_ERRORS = (
    ConfigError,
    GitError,
    InvalidTransitionError,
    ParseError,
    PersistenceError,
    PlanNotFoundError,
    TaskInFlightError,
)


@contextmanager
def _cli_errors() -> Iterator[None]:
    """Turn domain errors into a message and exit code 1."""
    try:
        yield
    except _CLI_ERRORS as error:
        typer.echo(f"Error: {error}", err=True)
        raise typer.Exit(code=1) from error
    except KeyError as error:
        typer.echo(f"Error: {error.args[0] if error.args else error}", err=True)
        raise typer.Exit(code=1) from error


@app.callback()
def main(
    ctx: typer.Context,
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the autoloop configuration file.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Load configuration shared by every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config_path = Path(config)
    with _cli_errors():
        config_data = load_config(config_path)
    ctx.obj = {"config_path": config_path, "config": config_data}


def _config(ctx: typer.Context) -> tuple[Path, Dict[str, Any]]:
    return ctx.obj["config_path"], ctx.obj["config"]


def _repo_root(ctx: typer.Context) -> Path:
    config_path, config_data = _config(ctx)
    return resolve_repo_root(config_data, config_path)


def _build_engine(ctx: typer.Context) -> TaskLifecycleEngine:
    """Wire the engine to git, the shell runner, and the file stores."""
    _, config_data = _config(ctx)
    repo_root = _repo_root(ctx)
    settings = task_settings(config_data)
    return TaskLifecycleEngine(
        PlanStore.from_config(config_data, root=repo_root),
        GitRepository(repo_root),
        CommandRunner(repo_root),
        progress_log=ProgressLog(resolve_path(config_data, "progress_log", repo_root)),
        id_generator=TimestampIdGenerator(),
        validation_timeout=settings["validation_timeout"],
        max_attempts=settings["max_attempts"],
        commit_template=settings["commit_template"],
    )


def _build_controller(ctx: typer.Context) -> IterationLoopController:
    _, config_data = _config(ctx)
    return IterationLoopController(LoopStore.from_config(config_data, root=_repo_root(ctx)))


def _read_source(source: str) -> str:
    if source == "-":
        return typer.get_text_stream("stdin").read()
    path = Path(source)
    if not path.exists():
        raise typer.BadParameter(f"File not found: {source}")
    return path.read_text(encoding="utf-8")


def extract_project_name(goal: str) -> str:
    """Derive a short project name from the first words of the goal."""
    words = goal.split()[:5]
    name = re.sub(r"[^A-Za-z0-9\s]", "", " ".join(words)).strip()
    return name or "Untitled Project"


def _ensure_ignored(repo_root: Path, entries: List[str]) -> bool:
    """Append ``entries`` to ``.gitignore`` when missing; returns ``True`` on change."""
    ignore_path = repo_root / ".gitignore"
    existing = ignore_path.read_text(encoding="utf-8").splitlines() if ignore_path.exists() else []
    missing = [entry for entry in entries if entry not in existing]
    if not missing:
        return False
    lines = existing + (["", "# autoloop state"] if existing else ["# autoloop state"]) + missing
    ignore_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return True


def _relative_entry(path: Path, repo_root: Path, *, directory: bool = False) -> Optional[str]:
    try:
        relative = path.resolve().relative_to(repo_root.resolve()).as_posix()
    except ValueError:
        return None
    return f"{relative}/" if directory else relative


def _render_task(task: TaskRecord) -> None:
    typer.echo(f"{task.id} [{task.kind.value}] {describe_phase(task)}")
    if task.description:
        typer.echo(f"  {task.description}")
    typer.echo(f"  validation: {task.validation_command or 'None'}")
    if task.test_file:
        typer.echo(f"  test file: {task.test_file}")
    typer.echo(f"  attempts: {task.attempts}/{task.max_attempts}")


def _render_attempt(result: AttemptResult) -> None:
    task = result.task
    typer.echo(f"Validation: {result.outcome.short_message()}")
    if result.verified:
        typer.echo(f"Verified: {task.id} is now {describe_phase(task)}")
        if task.commit_ref:
            typer.echo(f"Commit: {task.commit_ref[:7]}")
        return
    typer.echo(f"Not verified: attempt {task.attempts}/{task.max_attempts} for {task.id}")
    if result.rolled_back:
        typer.echo(f"Task {task.id} failed; working tree reset to last commit.")


@app.command()
def init(
    ctx: typer.Context,
    goal: str = typer.Option(..., "--goal", "-g", help="High-level project description."),
) -> None:
    """Initialise git, configuration, the plan record, and the progress log."""
    config_path, config_data = _config(ctx)
    goal_text = goal.strip()
    if not goal_text:
        raise typer.BadParameter("A goal is required.", param_hint="--goal")

    if not config_path.exists():
        config_data = copy_config_template()
        config_data["project"]["name"] = extract_project_name(goal_text)
        config_data["project"]["description"] = goal_text
        write_config(config_path, config_data)
        ctx.obj["config"] = config_data
        typer.echo(f"Created configuration at {config_path}.")

    repo_root = _repo_root(ctx)
    repo_root.mkdir(parents=True, exist_ok=True)
    ignored = [
        _relative_entry(resolve_path(config_data, "plan", repo_root), repo_root),
        _relative_entry(resolve_path(config_data, "progress_log", repo_root), repo_root),
        _relative_entry(resolve_path(config_data, "state_dir", repo_root), repo_root, directory=True),
    ]
    ignore_changed = _ensure_ignored(repo_root, [entry for entry in ignored if entry])

    with _cli_errors():
        try:
            repo = GitRepository(repo_root)
        except GitError:
            GitRepository.initialise(repo_root)
            typer.echo(f"Initialized git repository at {repo_root}.")
        else:
            if ignore_changed:
                repo.git("add", ".gitignore")
                repo.git("commit", "-m", "autoloop: ignore state files", check=False)

        engine = _build_engine(ctx)
        if engine.load_plan() is not None:
            typer.echo(f"Plan already exists at {engine.store.path}.")
        else:
            agents_path = resolve_path(config_data, "agents", repo_root)
            agents_md = agents_path.read_text(encoding="utf-8") if agents_path.exists() else None
            project = config_data.get("project") or {}
            engine.create_plan(
                str(project.get("name") or extract_project_name(goal_text)),
                goal_text,
                context=PlanContext(agents_md=agents_md),
            )
            typer.echo(f"Created plan at {engine.store.path}.")

    if engine.progress_log is not None and engine.progress_log.initialise(goal_text):
        typer.echo(f"Created progress log at {engine.progress_log.path}.")


@plan_app.command("import")
def plan_import(
    ctx: typer.Context,
    source: str = typer.Argument("-", help="File holding the planning agent's response ('-' for stdin)."),
    replace: bool = typer.Option(False, "--replace", help="Replace the stored plan instead of appending."),
) -> None:
    """Parse a planning response and store its tasks."""
    text = _read_source(source)
    with _cli_errors():
        engine = _build_engine(ctx)
        parsed = parse_plan_source(text, id_generator=engine.id_generator, max_attempts=engine.max_attempts)
        plan = engine.adopt_plan(parsed, replace=replace)
    typer.echo(f"Plan '{plan.project_name}' now has {len(plan.tasks)} task(s).")


@task_app.command("add")
def task_add(
    ctx: typer.Context,
    description: str = typer.Argument(..., help="What the task should achieve."),
    kind: TaskKind = typer.Option(TaskKind.FEATURE, "--kind", "-k", help="Task kind."),
    validation: Optional[str] = typer.Option(None, "--validation", "-V", help="Validation command."),
    test_file: Optional[str] = typer.Option(None, "--test-file", help="Test file the red phase writes."),
    max_attempts: Optional[int] = typer.Option(None, "--max-attempts", min=1, help="Attempt limit."),
    task_id: Optional[str] = typer.Option(None, "--id", help="Explicit task identifier."),
) -> None:
    """Append a pending task to the plan."""
    with _cli_errors():
        engine = _build_engine(ctx)
        try:
            task = engine.add_task(
                kind,
                description,
                validation_command=validation,
                test_file=test_file,
                max_attempts=max_attempts,
                task_id=task_id,
            )
        except ValueError as error:
            raise typer.BadParameter(str(error), param_hint="--id") from error
    typer.echo(f"Added {task.id}.")


@task_app.command("skip")
def task_skip(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task to skip."),
    reason: str = typer.Option("", "--reason", "-r", help="Why the task is skipped."),
) -> None:
    """Mark a task as skipped."""
    with _cli_errors():
        task = _build_engine(ctx).skip_task(task_id, reason)
    typer.echo(f"Skipped {task.id}.")


@app.command()
def status(ctx: typer.Context) -> None:
    """Report plan progress, the current task, and git state."""
    with _cli_errors():
        engine = _build_engine(ctx)
        plan = engine.load_plan()
        if plan is None:
            typer.echo("Not initialized. Run 'autoloop init --goal ...' first.")
            raise typer.Exit(code=1)
        progress = engine.progress()
        current = plan.current_task()
        upcoming = plan.next_task()
        clean = engine.vcs.is_clean()
        log = engine.vcs.recent_log(5)

    typer.echo(f"Project: {plan.project_name}")
    typer.echo(
        f"Tasks: total {progress.total} | pending {progress.pending} | in progress {progress.in_progress} "
        f"| completed {progress.completed} | failed {progress.failed} | skipped {progress.skipped} "
        f"({progress.percentage}%)"
    )
    if current is not None:
        typer.echo("Current task:")
        _render_task(current)
    elif upcoming is not None:
        typer.echo("Next task:")
        _render_task(upcoming)
    failed = plan.failed_tasks()
    if failed:
        typer.echo(f"Failed tasks: {', '.join(task.id for task in failed)}")
    if plan.is_complete():
        typer.echo("Plan complete.")
    typer.echo(f"Working tree: {'clean' if clean else 'has uncommitted changes'}")
    typer.echo("Recent commits:")
    typer.echo(log)


@app.command("next")
def next_task(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print the task record as JSON."),
) -> None:
    """Claim the next task, starting it when it is still pending."""
    with _cli_errors():
        engine = _build_engine(ctx)
        task = engine.claim_next_task()
    if task is None:
        typer.echo("No tasks remaining.")
        return
    if as_json:
        typer.echo(json.dumps(task.model_dump(mode="json", by_alias=True), indent=2))
    else:
        _render_task(task)


@app.command()
def attempt(ctx: typer.Context) -> None:
    """Validate the next task once and apply the retry/rollback policy.

    A pending task is started first.  Exits with code 1 when the validation
    did not verify the task or no task remains.
    """
    with _cli_errors():
        engine = _build_engine(ctx)
        result = engine.run_attempt()
    if result is None:
        typer.echo("No tasks remaining.")
        raise typer.Exit(code=1)
    _render_attempt(result)
    if not result.verified:
        raise typer.Exit(code=1)


@app.command()
def run(
    ctx: typer.Context,
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Stop after this many attempts."),
) -> None:
    """Attempt tasks one after another until the plan is exhausted.

    Exits with code 1 when any task in the plan ended up failed.
    """
    attempts = 0
    with _cli_errors():
        engine = _build_engine(ctx)
        while limit is None or attempts < limit:
            result = engine.run_attempt()
            if result is None:
                break
            attempts += 1
            _render_attempt(result)
        plan = engine.require_plan()

    completed = plan.completed_tasks()
    failed = plan.failed_tasks()
    typer.echo(f"Ran {attempts} attempt(s); {len(completed)}/{len(plan.tasks)} task(s) completed.")
    if failed:
        typer.echo(f"Failed tasks: {', '.join(task.id for task in failed)}")
        raise typer.Exit(code=1)
    if not plan.is_complete():
        typer.echo("Stopped before the plan was exhausted.")


@app.command()
def unstash(ctx: typer.Context) -> None:
    """Restore changes stashed before the last task started."""
    with _cli_errors():
        restored = GitRepository(_repo_root(ctx)).unstash()
    typer.echo("Restored stashed changes." if restored else "No stash to restore.")


@app.command("parse-turn")
def parse_turn(
    source: str = typer.Argument("-", help="File holding the agent's turn output ('-' for stdin)."),
) -> None:
    """Print completion/stuck/thinking signals found in an agent turn."""
    signals = parse_turn_response(_read_source(source))
    typer.echo(json.dumps(asdict(signals), indent=2))


@loop_app.command("start")
def loop_start(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="Prompt repeated on every iteration."),
    completion_promise: Optional[str] = typer.Option(
        None, "--completion-promise", "-p", help="Text that ends the loop inside <promise> tags."
    ),
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", "-n", min=1, help="Stop after this many iterations."
    ),
) -> None:
    """Start a new iteration loop, replacing any existing one."""
    _, config_data = _config(ctx)
    loop_cfg = config_data.get("loop") or {}
    with _cli_errors():
        state = _build_controller(ctx).start(
            prompt,
            completion_promise=completion_promise or loop_cfg.get("completion_promise"),
            max_iterations=max_iterations or loop_cfg.get("max_iterations"),
        )
    limit = state.max_iterations or "unlimited"
    typer.echo(f"Loop started (max iterations: {limit}, promise: {state.completion_promise or 'none'}).")


@loop_app.command("iterate")
def loop_iterate(
    ctx: typer.Context,
    source: str = typer.Argument("-", help="File holding the agent's output ('-' for stdin)."),
) -> None:
    """Account for one agent turn and report whether the loop continues."""
    output = _read_source(source)
    with _cli_errors():
        outcome = _build_controller(ctx).process_iteration(output)
    typer.echo(
        json.dumps(
            {
                "continue": outcome.should_continue,
                "reason": outcome.reason.value,
                "iteration": outcome.iteration,
            }
        )
    )


@loop_app.command("cancel")
def loop_cancel(ctx: typer.Context) -> None:
    """Cancel the active loop."""
    with _cli_errors():
        cancelled = _build_controller(ctx).cancel()
    typer.echo("Loop cancelled." if cancelled else "No active loop.")


@loop_app.command("status")
def loop_status(ctx: typer.Context) -> None:
    """Print the persisted loop record."""
    with _cli_errors():
        snapshot = _build_controller(ctx).status()
    if snapshot is None:
        typer.echo("No active loop.")
        return
    typer.echo(json.dumps(snapshot, indent=2))


if __name__ == "__main__":
    app()
