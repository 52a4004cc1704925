"""Collaborators the engine talks to: git, validation commands, the progress log."""

from .progress_log import ProgressLog
from .validation import CommandRunner, ValidationOutcome, ValidationRunner
from .vcs import GitError, GitRepository, VersionControl

__all__ = [
    "CommandRunner",
    "GitError",
    "GitRepository",
    "ProgressLog",
    "ValidationOutcome",
    "ValidationRunner",
    "VersionControl",
]
