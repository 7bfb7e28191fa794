"""Redis sliding-window rate limit store.

Every admitted or rejected attempt is a member of a sorted set scored by its
arrival time in milliseconds. The window is trimmed, extended, counted and
given a TTL in a single MULTI/EXEC round trip, so concurrent requests for the
same key serialize on Redis rather than racing on a read-modify-write.
"""

from __future__ import annotations

import logging
import math
import secrets
from typing import Any

from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from app.adapters.rate_limit.base import AbstractRateLimitStore, WindowUsage
from app.core.errors import RateLimitStoreError

logger = logging.getLogger(__name__)


class RedisSlidingWindowStore(AbstractRateLimitStore):
    """Shared store backed by Redis sorted sets.

    State lives outside the process, so every worker enforces one global
    budget per key. Keys expire on their own once a client goes quiet.
    """

    def __init__(
        self,
        *,
        client: Redis | None = None,
        redis_url: str | None = None,
        key_prefix: str = "rate_limit:",
        max_retries: int = 3,
        socket_timeout_seconds: float = 1.0,
    ) -> None:
        """Initialize the store from a client or a connection URL.

        Args:
            client: Pre-built asyncio Redis client (tests, shared pools).
            redis_url: Connection URL used when no client is given.
            key_prefix: Namespace prepended to every client key.
            max_retries: Connection/timeout retries before a command fails.
            socket_timeout_seconds: Socket connect and read timeout.

        Raises:
            ValueError: If neither client nor redis_url is provided.
        """
        if client is None and not redis_url:
            raise ValueError("either client or redis_url is required")

        self._key_prefix = key_prefix
        self._owns_client = client is None
        if client is None:
            # Connection is established lazily on the first command.
            client = Redis.from_url(
                redis_url,
                retry=Retry(ExponentialBackoff(), max_retries),
                retry_on_error=[RedisConnectionError, RedisTimeoutError],
                socket_timeout=socket_timeout_seconds,
                socket_connect_timeout=socket_timeout_seconds,
            )
        self._client = client

    def _redis_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    @staticmethod
    def _member(now_ms: int) -> str:
        # Sorted set members must be unique even for identical timestamps.
        return f"{now_ms}-{secrets.token_hex(6)}"

    def _store_error(self, operation: str, exc: BaseException) -> RateLimitStoreError:
        return RateLimitStoreError(
            code="rate_limit_store_unavailable",
            message=f"Redis {operation} failed: {type(exc).__name__}",
            details={"backend": "redis", "operation": operation},
        )

    async def increment(self, key: str, *, now_ms: int, window_ms: int) -> WindowUsage:
        """Trim, record, count and expire the key's log in one transaction.

        Args:
            key: Client key.
            now_ms: Current UNIX time in milliseconds.
            window_ms: Window length in milliseconds.

        Returns:
            WindowUsage with the number of attempts in the trailing window.

        Raises:
            RateLimitStoreError: If Redis is unreachable or the command fails.
        """
        redis_key = self._redis_key(key)
        window_start = now_ms - window_ms
        ttl_seconds = max(1, math.ceil(window_ms / 1000))

        try:
            # A connection retry after EXEC resends the same queued commands,
            # member included, so a replayed ZADD leaves the set unchanged.
            pipe = self._client.pipeline(transaction=True)
            pipe.zremrangebyscore(redis_key, "-inf", f"({window_start}")
            pipe.zadd(redis_key, {self._member(now_ms): now_ms})
            pipe.zcard(redis_key)
            pipe.expire(redis_key, ttl_seconds)
            results: list[Any] = await pipe.execute()
        except (RedisError, OSError) as exc:
            raise self._store_error("increment", exc) from exc

        return WindowUsage(count=int(results[2]))

    async def earliest_reset(self, key: str, *, now_ms: int, window_ms: int) -> int:
        """Return when the oldest recorded attempt falls out of the window.

        Raises:
            RateLimitStoreError: If Redis is unreachable or the command fails.
        """
        try:
            oldest = await self._client.zrange(self._redis_key(key), 0, 0, withscores=True)
        except (RedisError, OSError) as exc:
            raise self._store_error("earliest_reset", exc) from exc

        if not oldest:
            return now_ms + window_ms
        _, score = oldest[0]
        return int(score) + window_ms

    async def close(self) -> None:
        if not self._owns_client:
            return
        try:
            await self._client.aclose()
        except (RedisError, OSError):
            logger.warning("rate_limit.store_close_failed", exc_info=True)
