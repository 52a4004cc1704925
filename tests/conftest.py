from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from autoloop.memory.store import LoopStore, PlanStore  # noqa: E402
from autoloop.planning.engine import TaskLifecycleEngine  # noqa: E402
from autoloop.tools.progress_log import ProgressLog  # noqa: E402
from autoloop.tools.validation import ValidationOutcome  # noqa: E402
from autoloop.utils.ids import SequentialIdGenerator  # noqa: E402


@dataclass(slots=True)
class FakeVcs:
    """Records version-control calls instead of touching git."""

    clean: bool = True
    commits: list[str] = field(default_factory=list)
    resets: int = 0
    stashes: int = 0
    unstashes: int = 0

    def is_clean(self) -> bool:
        return self.clean

    def commit(self, message: str) -> str | None:
        self.commits.append(message)
        return f"sha{len(self.commits):04d}"

    def reset_to_last_commit(self) -> None:
        self.resets += 1

    def stash(self) -> str | None:
        self.stashes += 1
        self.clean = True
        return "stash@{0}"

    def unstash(self) -> bool:
        self.unstashes += 1
        return True

    def recent_log(self, count: int = 5) -> str:
        return "\n".join(self.commits[-count:])


@dataclass(slots=True)
class FakeRunner:
    """Returns queued outcomes and records the commands it was asked to run."""

    outcomes: list[ValidationOutcome] = field(default_factory=list)
    calls: list[tuple[str, float]] = field(default_factory=list)

    def queue(
        self,
        *,
        succeeded: bool,
        output: str = "",
        exit_code: int | None = None,
        timed_out: bool = False,
        process_failed: bool = False,
    ) -> None:
        code = exit_code if exit_code is not None else (0 if succeeded else 1)
        self.outcomes.append(
            ValidationOutcome(
                succeeded=succeeded,
                output=output,
                exit_code=code,
                timed_out=timed_out,
                process_failed=process_failed,
            )
        )

    def run(self, command: str, timeout: float) -> ValidationOutcome:
        self.calls.append((command, timeout))
        return self.outcomes.pop(0)


class FakeClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self) -> None:
        self.current = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


@dataclass(slots=True)
class EngineHarness:
    engine: TaskLifecycleEngine
    store: PlanStore
    vcs: FakeVcs
    runner: FakeRunner
    progress_log: ProgressLog


@pytest.fixture()
def harness(tmp_path: Path) -> EngineHarness:
    """Engine wired to file stores under ``tmp_path`` and in-memory fakes."""

    store = PlanStore(tmp_path / "prd.json")
    vcs = FakeVcs()
    runner = FakeRunner()
    clock = FakeClock()
    progress_log = ProgressLog(tmp_path / "autoloop-progress.md", clock=clock)
    engine = TaskLifecycleEngine(
        store,
        vcs,
        runner,
        progress_log=progress_log,
        id_generator=SequentialIdGenerator(),
        clock=clock,
        validation_timeout=5.0,
    )
    engine.create_plan("Demo", "Demo project")
    return EngineHarness(engine=engine, store=store, vcs=vcs, runner=runner, progress_log=progress_log)


@pytest.fixture()
def loop_store(tmp_path: Path) -> LoopStore:
    return LoopStore(tmp_path / ".autoloop")


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Create a tiny git repository with one committed file."""

    repo_root = tmp_path / "tiny-repo"
    repo_root.mkdir()

    def run_git(*cmd: str) -> None:
        subprocess.run(
            ["git", *cmd],
            cwd=repo_root,
            check=True,
            capture_output=True,
            text=True,
        )

    run_git("init")
    run_git("config", "user.email", "agent@example.com")
    run_git("config", "user.name", "Autoloop Tests")
    (repo_root / "README.md").write_text("# tiny\n", encoding="utf-8")
    run_git("add", ".")
    run_git("commit", "-m", "Initial tiny repo state")
    return repo_root
