"""Rate limiting wiring for the HTTP layer.

This module wires the rate limiter service into FastAPI.

Design goals:
- Injectable: the limiter is built once by the app factory and stored on
  ``app.state``; tests pass their own.
- Store selection happens here, from configuration: Redis when a URL is
  configured, process memory otherwise.
- Every request is checked, keyed by client address.
"""

from __future__ import annotations

import ipaddress
import logging
from datetime import datetime, timedelta, timezone

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from app.adapters.rate_limit.base import AbstractRateLimitStore, RateLimitResult
from app.adapters.rate_limit.in_memory import InMemoryFixedWindowStore
from app.adapters.rate_limit.redis_store import RedisSlidingWindowStore
from app.core.config import RateLimitSettings, Settings, settings
from app.services.rate_limiter import UNKNOWN_CLIENT_KEY, RateLimiter, hash_client_key

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Too many requests, please try again later."


def build_rate_limit_store(rate_limit_settings: RateLimitSettings) -> AbstractRateLimitStore:
    """Select the backing store for the configured deployment.

    Args:
        rate_limit_settings: Rate limit configuration.

    Returns:
        AbstractRateLimitStore: Redis store when a URL is configured, else the
            in-memory store.
    """

    if rate_limit_settings.redis_url:
        logger.info("rate_limit.store_selected", extra={"backend": "redis"})
        return RedisSlidingWindowStore(
            redis_url=rate_limit_settings.redis_url,
            key_prefix=rate_limit_settings.key_prefix,
            max_retries=rate_limit_settings.store_max_retries,
            socket_timeout_seconds=rate_limit_settings.store_timeout_seconds,
        )

    logger.info("rate_limit.store_selected", extra={"backend": "memory"})
    return InMemoryFixedWindowStore()


def build_rate_limiter(app_settings: Settings | None = None) -> RateLimiter:
    """Build the request rate limiter from settings.

    Args:
        app_settings: Settings container; defaults to the global settings.

    Returns:
        RateLimiter: Limiter with the effective budget and selected store.
    """

    cfg = app_settings or settings
    return RateLimiter(
        build_rate_limit_store(cfg.rate_limit),
        max_requests=cfg.rate_limit_max_requests,
        window_ms=cfg.rate_limit.window_ms,
    )


def _normalize_address(address: str) -> str:
    address = address.strip()
    try:
        parsed = ipaddress.ip_address(address)
    except ValueError:
        return address
    if isinstance(parsed, ipaddress.IPv6Address) and parsed.ipv4_mapped is not None:
        return str(parsed.ipv4_mapped)
    return str(parsed)


def get_client_key(request: Request, *, trust_forwarded_for: bool = False) -> str:
    """Derive the client identity requests are counted under.

    Args:
        request: Incoming request.
        trust_forwarded_for: Prefer the first ``X-Forwarded-For`` hop; only
            safe behind a proxy that overwrites the header.

    Returns:
        str: Normalized client address, or ``"unknown"``.
    """

    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return _normalize_address(first_hop)

    host = request.client.host if request.client else None
    if not host or not host.strip():
        return UNKNOWN_CLIENT_KEY
    return _normalize_address(host)


def format_reset(reset_at_ms: int) -> str:
    """Render an epoch-milliseconds instant as an ISO-8601 UTC timestamp."""

    seconds, millis = divmod(reset_at_ms, 1000)
    instant = datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(milliseconds=millis)
    return instant.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(max(0, result.remaining)),
        "X-RateLimit-Reset": format_reset(result.reset_at_ms),
    }


def rate_limit_exceeded_response(result: RateLimitResult) -> JSONResponse:
    """Build the 429 response for a rejected request."""

    retry_after = result.retry_after_seconds or 1
    headers = rate_limit_headers(result)
    headers["Retry-After"] = str(retry_after)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "success": False,
            "message": RATE_LIMIT_MESSAGE,
            "retryAfter": retry_after,
        },
        headers=headers,
    )


async def rate_limit_middleware(request: Request, call_next) -> Response:
    """HTTP middleware enforcing the per-client request budget.

    Consumes one unit of the client's budget per request. Rejected requests
    are answered with 429 and never reach the route handlers; admitted ones
    carry ``X-RateLimit-*`` headers on their response.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: 429 JSON response or the downstream response.
    """

    limiter: RateLimiter | None = getattr(request.app.state, "rate_limiter", None)
    cfg: RateLimitSettings = getattr(request.app.state, "rate_limit_settings", settings.rate_limit)
    if limiter is None or not cfg.enabled:
        return await call_next(request)

    key = get_client_key(request, trust_forwarded_for=cfg.trust_forwarded_for)
    result = await limiter.admit(key)

    if not result.allowed:
        logger.warning(
            "rate_limit.exceeded",
            extra={
                "key_hash": hash_client_key(key),
                "limit": result.limit,
                "window_ms": limiter.window_ms,
                "retry_after_s": result.retry_after_seconds,
                "path": request.url.path,
            },
        )
        return rate_limit_exceeded_response(result)

    response: Response = await call_next(request)
    if cfg.include_headers:
        response.headers.update(rate_limit_headers(result))
    return response
