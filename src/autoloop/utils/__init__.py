"""Shared helpers."""

from .ids import IdGenerator, SequentialIdGenerator, TimestampIdGenerator

__all__ = ["IdGenerator", "SequentialIdGenerator", "TimestampIdGenerator"]
