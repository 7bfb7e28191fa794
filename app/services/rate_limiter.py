"""Per-client request rate limiter.

The limiter is written once against ``AbstractRateLimitStore``; whether
attempts are counted in Redis or in process memory is decided by whoever
constructs it. Store failures never block traffic: the limiter fails open
and logs the outage.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import math
import secrets
import time
from typing import Callable

from app.adapters.rate_limit.base import AbstractRateLimitStore, RateLimitResult
from app.core.errors import RateLimitStoreError

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT_KEY = "unknown"

# Regenerated per process; hashes only correlate log lines within one worker.
_CLIENT_KEY_SECRET = secrets.token_bytes(32)


def hash_client_key(key: str) -> str:
    """Hash the client key for logging without exposing addresses.

    Keyed with a per-process secret so the small IPv4 space cannot be
    enumerated back to an address.
    """
    return hmac.new(_CLIENT_KEY_SECRET, key.encode(), hashlib.sha256).hexdigest()[:16]


class RateLimiter:
    """Admit or reject requests against a per-client budget.

    Every call to ``admit`` records one attempt, including attempts that end
    up rejected, so a client cannot test the limiter for free.
    """

    def __init__(
        self,
        store: AbstractRateLimitStore,
        *,
        max_requests: int,
        window_ms: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Backing store that counts attempts per key.
            max_requests: Maximum admitted requests per key and window.
            window_ms: Window length in milliseconds.
            clock: Time source function returning UNIX time in seconds.

        Raises:
            ValueError: If max_requests or window_ms are invalid.
        """
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")

        self._store = store
        self._max_requests = max_requests
        self._window_ms = window_ms
        self._clock = clock

    @property
    def store(self) -> AbstractRateLimitStore:
        return self._store

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_ms(self) -> int:
        return self._window_ms

    def _now_ms(self) -> int:
        return int(round(self._clock() * 1000))

    def _fail_open(self, key: str, now_ms: int, exc: RateLimitStoreError) -> RateLimitResult:
        logger.warning(
            "rate_limit.store_unavailable",
            extra={
                "key_hash": hash_client_key(key),
                "error_code": exc.code,
                "error_message": exc.message,
            },
        )
        return RateLimitResult(
            allowed=True,
            limit=self._max_requests,
            remaining=self._max_requests,
            reset_at_ms=now_ms + self._window_ms,
        )

    async def admit(self, client_key: str) -> RateLimitResult:
        """Record one attempt for ``client_key`` and decide on it.

        Args:
            client_key: Client identity (usually the source address). Blank
                values are counted under the ``"unknown"`` sentinel.

        Returns:
            RateLimitResult with the decision and header metadata.
        """
        key = client_key.strip() if client_key else ""
        if not key:
            logger.debug("rate_limit.blank_client_key")
            key = UNKNOWN_CLIENT_KEY

        now_ms = self._now_ms()
        window_ms = self._window_ms

        try:
            usage = await self._store.increment(key, now_ms=now_ms, window_ms=window_ms)
            allowed = usage.count <= self._max_requests

            reset_at_ms = usage.reset_at_ms
            if reset_at_ms is None:
                if allowed:
                    reset_at_ms = now_ms + window_ms
                else:
                    reset_at_ms = await self._store.earliest_reset(
                        key, now_ms=now_ms, window_ms=window_ms
                    )
        except RateLimitStoreError as exc:
            return self._fail_open(key, now_ms, exc)

        remaining = max(0, self._max_requests - usage.count)
        if allowed:
            return RateLimitResult(
                allowed=True,
                limit=self._max_requests,
                remaining=remaining,
                reset_at_ms=reset_at_ms,
            )

        retry_after = max(1, math.ceil((reset_at_ms - now_ms) / 1000))
        return RateLimitResult(
            allowed=False,
            limit=self._max_requests,
            remaining=remaining,
            reset_at_ms=reset_at_ms,
            retry_after_seconds=retry_after,
        )

    async def close(self) -> None:
        await self._store.close()
