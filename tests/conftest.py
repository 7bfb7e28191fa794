"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It pins the environment so settings never pick up a developer's Redis or
.env.development file, and provides an in-process stand-in for the Redis
sorted-set commands used by the sliding-window store.
"""

from __future__ import annotations

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"

# Tests must never talk to a real Redis unless they build a client themselves
os.environ.pop("REDIS_URL", None)
os.environ.pop("RATE_LIMIT_REDIS_URL", None)
os.environ.pop("RATE_LIMIT_MAX_REQUESTS", None)

import pytest


class FakeSortedSetPipeline:
    """Queues the four commands the store issues and applies them on execute."""

    def __init__(self, backend: "FakeSortedSetRedis") -> None:
        self._backend = backend
        self._commands: list[tuple] = []

    def zremrangebyscore(self, key, min_score, max_score):
        self._commands.append(("zremrangebyscore", key, max_score))
        return self

    def zadd(self, key, mapping):
        self._commands.append(("zadd", key, mapping))
        return self

    def zcard(self, key):
        self._commands.append(("zcard", key))
        return self

    def expire(self, key, seconds):
        self._commands.append(("expire", key, seconds))
        return self

    async def execute(self):
        return [self._backend.apply(command) for command in self._commands]


class FakeSortedSetRedis:
    def __init__(self) -> None:
        self.sets: dict[str, dict[str, float]] = {}
        self.ttls: dict[str, int] = {}

    def pipeline(self, transaction: bool = True) -> FakeSortedSetPipeline:
        assert transaction is True
        return FakeSortedSetPipeline(self)

    def apply(self, command: tuple):
        name, key = command[0], command[1]
        members = self.sets.setdefault(key, {})
        if name == "zremrangebyscore":
            bound = str(command[2])
            exclusive = bound.startswith("(")
            limit = float(bound.lstrip("("))
            stale = [
                m for m, s in members.items() if (s < limit if exclusive else s <= limit)
            ]
            for member in stale:
                del members[member]
            return len(stale)
        if name == "zadd":
            added = sum(1 for m in command[2] if m not in members)
            members.update(command[2])
            return added
        if name == "zcard":
            return len(members)
        if name == "expire":
            self.ttls[key] = command[2]
            return True
        raise AssertionError(f"unexpected command {name}")

    async def zrange(self, key, start, end, withscores=False):
        ordered = sorted(self.sets.get(key, {}).items(), key=lambda item: item[1])
        return ordered[start : end + 1]


@pytest.fixture
def fake_redis() -> FakeSortedSetRedis:
    """Redis double that applies sorted-set commands in memory."""
    return FakeSortedSetRedis()
