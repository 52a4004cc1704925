"""Task identifier generators.

The engine never invents identifiers itself; it asks an injected generator so
tests can substitute a deterministic sequence.
"""

from __future__ import annotations

import secrets
import string
import time
from typing import Callable, Iterable, Protocol

_BASE36 = string.digits + string.ascii_uppercase


class IdGenerator(Protocol):
    """Callable returning a fresh identifier that is not in ``taken``."""

    def __call__(self, taken: Iterable[str] = ()) -> str: ...


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


class TimestampIdGenerator:
    """Produce ``TASK-<millis base36>-<random>`` identifiers."""

    def __init__(
        self,
        prefix: str = "TASK",
        *,
        clock: Callable[[], float] = time.time,
        random_chars: int = 4,
    ) -> None:
        self.prefix = prefix
        self._clock = clock
        self._random_chars = random_chars

    def __call__(self, taken: Iterable[str] = ()) -> str:
        existing = set(taken)
        while True:
            stamp = _to_base36(int(self._clock() * 1000))
            suffix = "".join(secrets.choice(_BASE36) for _ in range(self._random_chars))
            candidate = f"{self.prefix}-{stamp}-{suffix}"
            if candidate not in existing:
                return candidate


class SequentialIdGenerator:
    """Produce ``TASK-001``, ``TASK-002`` ... skipping identifiers already taken."""

    def __init__(self, prefix: str = "TASK", *, start: int = 1, width: int = 3) -> None:
        self.prefix = prefix
        self._next = start
        self._width = width

    def __call__(self, taken: Iterable[str] = ()) -> str:
        existing = set(taken)
        while True:
            candidate = f"{self.prefix}-{self._next:0{self._width}d}"
            self._next += 1
            if candidate not in existing:
                return candidate


__all__ = ["IdGenerator", "SequentialIdGenerator", "TimestampIdGenerator"]
