"""In-memory fixed-window rate limit store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

from app.adapters.rate_limit.base import AbstractRateLimitStore, WindowUsage


@dataclass
class _WindowState:
    count: int
    reset_at_ms: int


class InMemoryFixedWindowStore(AbstractRateLimitStore):
    """Store counting attempts per key in a lazily started fixed window.

    A key's window opens on its first attempt and lasts ``window_ms``. The
    first attempt seen after the window ends starts a fresh one.

    Important:
        This store is per-process only. If the API runs with multiple workers
        (e.g., multiple Uvicorn/Gunicorn workers), each worker will enforce its
        own independent limits.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._state_by_key: dict[str, _WindowState] = {}
        self._next_sweep_at_ms = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._state_by_key)

    def _sweep_expired(self, now_ms: int) -> None:
        """Drop every window that has ended. Caller must hold the lock."""
        expired = [
            key for key, state in self._state_by_key.items() if state.reset_at_ms <= now_ms
        ]
        for key in expired:
            del self._state_by_key[key]

    async def increment(self, key: str, *, now_ms: int, window_ms: int) -> WindowUsage:
        """Count one attempt for ``key``, opening a new window when needed.

        The counter is incremented before any limit check, so rejected
        attempts count as well.

        Args:
            key: Client key.
            now_ms: Current UNIX time in milliseconds.
            window_ms: Window length in milliseconds.

        Returns:
            WindowUsage with the updated count and the window end.
        """
        with self._lock:
            # At most one full scan per window length; expiry of the key
            # itself is decided below.
            if now_ms >= self._next_sweep_at_ms:
                self._sweep_expired(now_ms)
                self._next_sweep_at_ms = now_ms + window_ms

            state = self._state_by_key.get(key)
            if state is None or state.reset_at_ms <= now_ms:
                state = _WindowState(count=1, reset_at_ms=now_ms + window_ms)
                self._state_by_key[key] = state
            else:
                state.count += 1

            return WindowUsage(count=state.count, reset_at_ms=state.reset_at_ms)

    async def earliest_reset(self, key: str, *, now_ms: int, window_ms: int) -> int:
        with self._lock:
            state = self._state_by_key.get(key)
            if state is None or state.reset_at_ms <= now_ms:
                return now_ms + window_ms
            return state.reset_at_ms
