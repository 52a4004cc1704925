"""Validation command execution for task verification."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import logging
import os
import signal
import subprocess

DEFAULT_TIMEOUT_SECONDS = 120.0
TIMEOUT_EXIT_CODE = 124
NO_COMMAND_OUTPUT = "No validation command"
# Shell exit codes for "cannot execute" and "command not found".
SHELL_SPAWN_EXIT_CODES = frozenset({126, 127})
LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ValidationOutcome:
    """Result of running a task's validation command."""

    succeeded: bool
    output: str
    exit_code: int
    timed_out: bool = False
    process_failed: bool = False

    @property
    def errored(self) -> bool:
        """True when the command timed out or never ran, whatever its exit code."""
        return self.timed_out or self.process_failed

    @classmethod
    def trivial(cls) -> "ValidationOutcome":
        """Outcome for a task that carries no validation command."""
        return cls(succeeded=True, output=NO_COMMAND_OUTPUT, exit_code=0)

    def short_message(self) -> str:
        if self.succeeded:
            return f"passed (exit {self.exit_code})"
        if self.timed_out:
            return "timed out"
        if self.process_failed:
            return f"could not run (exit {self.exit_code})"
        text = self.output.strip()
        first = text.splitlines()[0] if text else "no output"
        return f"failed (exit {self.exit_code}): {first}"


class ValidationRunner(Protocol):
    """Blocking command runner with a caller-imposed timeout."""

    def run(self, command: str, timeout: float) -> ValidationOutcome: ...


class CommandRunner:
    """Run validation commands through the shell inside ``cwd``."""

    def __init__(self, cwd: Path | str | None = None) -> None:
        self.cwd = Path(cwd) if cwd is not None else None

    def run(self, command: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> ValidationOutcome:
        LOGGER.debug("Running validation command %r (timeout %.0fs)", command, timeout)
        try:
            process = subprocess.Popen(  # noqa: S602  # commands come from the project plan
                command,
                shell=True,
                cwd=self.cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as error:
            return ValidationOutcome(succeeded=False, output=str(error), exit_code=1, process_failed=True)

        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_group(process)
            stdout, stderr = process.communicate()
            partial = (_decode(stdout) + _decode(stderr)).strip()
            message = f"Validation command timed out after {timeout:g}s"
            return ValidationOutcome(
                succeeded=False,
                output=f"{message}\n{partial}" if partial else message,
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
            )

        succeeded = process.returncode == 0
        if succeeded:
            output = _decode(stdout)
        else:
            output = _decode(stderr) or _decode(stdout)
        return ValidationOutcome(
            succeeded=succeeded,
            output=output,
            exit_code=process.returncode,
            process_failed=process.returncode in SHELL_SPAWN_EXIT_CODES,
        )


def _kill_group(process: subprocess.Popen[bytes]) -> None:
    """Terminate the shell and everything it spawned."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        process.kill()


def _decode(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = [
    "CommandRunner",
    "DEFAULT_TIMEOUT_SECONDS",
    "TIMEOUT_EXIT_CODE",
    "ValidationOutcome",
    "ValidationRunner",
]
