"""Git operations used by the task lifecycle.

The helpers below commit a finished task phase, detect pending changes,
stash leftovers before a task starts, and hard-reset to the last commit when
a task is abandoned.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Protocol, Sequence, Set

import subprocess

SAFETY_STASH_MESSAGE = "autoloop-safety-stash"


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class VersionControl(Protocol):
    """Narrow version-control surface used by the lifecycle engine."""

    def is_clean(self) -> bool: ...

    def commit(self, message: str) -> str | None: ...

    def reset_to_last_commit(self) -> None: ...

    def stash(self) -> str | None: ...

    def unstash(self) -> bool: ...


def _run(args: Sequence[str], cwd: Path, *, check: bool = True) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
        )
    except FileNotFoundError as error:
        raise GitError("git executable not found") from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    @classmethod
    def initialise(cls, root: Path | str, *, message: str = "Initial commit (autoloop init)") -> "GitRepository":
        """Initialise a git repository at ``root`` and record an initial commit.

        Existing repositories are left untouched.
        """

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        if (path / ".git").exists():
            return cls(path)

        _run(["init"], path)

        def _ensure_config(key: str, value: str) -> None:
            probe = _run(["config", "--get", key], path, check=False)
            if probe.returncode != 0 or not probe.stdout.strip():
                _run(["config", key, value], path)

        _ensure_config("user.email", "autoloop@example.com")
        _ensure_config("user.name", "Autoloop")

        _run(["add", "--all"], path)
        _run(["commit", "--allow-empty", "-m", message], path)

        return cls(path)

    # ------------------------------------------------------------------ git IO
    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return _run(list(args), self.root, check=check)

    # ------------------------------------------------------------- repo status
    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self.git("status", "--porcelain")
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            status_clean = status.strip() or status
            entries.append((status_clean, Path(raw_path.strip())))
        return entries

    def working_tree_changes(self) -> List[Path]:
        """Return the paths with pending modifications, untracked files included."""

        paths: Set[Path] = {path for _, path in self._status_entries()}
        return sorted(paths, key=lambda item: item.as_posix())

    def is_clean(self) -> bool:
        """Return ``True`` when the working tree has no pending changes."""

        return not self.working_tree_changes()

    def head(self) -> str | None:
        result = self.git("rev-parse", "--verify", "HEAD", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def recent_log(self, count: int = 5) -> str:
        """Return ``git log --oneline`` for the last ``count`` commits."""

        result = self.git("log", "-n", str(count), "--oneline", check=False)
        if result.returncode != 0:
            return "No commits yet"
        return result.stdout.strip()

    # ---------------------------------------------------------------- commits
    def commit(self, message: str) -> str | None:
        """Stage everything and commit.

        Returns the new commit SHA, or ``None`` when there was nothing to
        commit.
        """

        self.git("add", "--all")
        commit = self.git("commit", "-m", message, check=False)
        if commit.returncode != 0:
            output = f"{commit.stdout}\n{commit.stderr}".strip()
            lowered = output.lower()
            if "nothing to commit" in lowered or "no changes added to commit" in lowered:
                return None
            raise GitError(f"git commit failed: {output}")
        return self.head()

    def reset_to_last_commit(self) -> None:
        """Discard tracked edits and remove untracked files."""

        self.git("reset", "--hard", "HEAD")
        self.git("clean", "-fd")

    # ------------------------------------------------------------------- stash
    def stash(self, message: str = SAFETY_STASH_MESSAGE) -> str | None:
        """Stash pending changes (untracked included) and return the reference."""

        args = ["stash", "push", "-u", "-m", message]
        result = self.git(*args, check=False)
        combined = f"{result.stdout}\n{result.stderr}".strip()
        if "No local changes to save" in combined:
            return None
        if result.returncode != 0:
            raise GitError(f"git {' '.join(args)} failed: {combined or 'unknown git error'}")
        return "stash@{0}"

    def unstash(self) -> bool:
        """Pop the most recent stash; returns ``False`` when there was none."""

        listing = self.git("stash", "list")
        if not listing.stdout.strip():
            return False
        self.git("stash", "pop")
        return True


__all__ = ["GitError", "GitRepository", "SAFETY_STASH_MESSAGE", "VersionControl"]
