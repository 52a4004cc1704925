"""Append-only markdown audit log of task progress."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable

from ..memory.schema import utc_now

DEFAULT_PROGRESS_PATH = Path("autoloop-progress.md")


class ProgressLog:
    """Human-readable progress sink.

    Entries are only ever appended; the engine never reads them back.
    """

    def __init__(
        self,
        path: Path | str = DEFAULT_PROGRESS_PATH,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.path = Path(path)
        self._clock = clock

    def initialise(self, goal: str) -> bool:
        """Write the log header unless the log already exists."""
        if self.path.exists():
            return False
        timestamp = self._clock().isoformat()
        header = "\n".join(
            [
                "# Autoloop Progress Log",
                "",
                "## Project",
                goal.strip() or "(no goal given)",
                "",
                "## Timeline",
                "",
                f"### {timestamp} - Project Initialized",
                "- Created plan record",
                "- Ready for worker loop",
                "",
                "---",
                "",
            ]
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(header, encoding="utf-8")
        return True

    def append(self, entry: str) -> None:
        timestamp = self._clock().isoformat()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(f"\n### {timestamp}\n{entry}\n")

    def tail(self, lines: int = 50) -> str:
        """Return the last ``lines`` lines for display."""
        if not self.path.exists():
            return ""
        content = self.path.read_text(encoding="utf-8").splitlines()
        return "\n".join(content[-lines:])


__all__ = ["DEFAULT_PROGRESS_PATH", "ProgressLog"]
