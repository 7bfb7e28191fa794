"""Rate limiter interfaces.

The limiter service depends on this abstraction (not a concrete store) so the
sliding Redis log and the in-memory fixed window are interchangeable.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit admission check.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        remaining: Remaining requests in the current window (0 when blocked).
        reset_at_ms: UNIX epoch milliseconds when the budget frees up.
        retry_after_seconds: Suggested wait time in seconds when blocked.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after_seconds: int | None = None


@dataclass(frozen=True)
class WindowUsage:
    """Usage recorded by a store for one key after counting an attempt.

    Attributes:
        count: Attempts recorded in the current window, this one included.
        reset_at_ms: Window end when the store tracks one, else None.
    """

    count: int
    reset_at_ms: int | None = None


class AbstractRateLimitStore(ABC):
    """Interface for rate limit backing stores."""

    @abstractmethod
    async def increment(self, key: str, *, now_ms: int, window_ms: int) -> WindowUsage:
        """Record one attempt for ``key`` and return the window usage.

        Args:
            key: Client key (e.g., IP address).
            now_ms: Current UNIX time in milliseconds.
            window_ms: Window length in milliseconds.

        Returns:
            WindowUsage including the attempt just recorded.

        Raises:
            RateLimitStoreError: If the store cannot be reached.
        """
        raise NotImplementedError

    async def earliest_reset(self, key: str, *, now_ms: int, window_ms: int) -> int:
        """Return when the oldest counted attempt for ``key`` leaves the window."""
        return now_ms + window_ms

    async def close(self) -> None:
        """Release store resources."""
        return None
