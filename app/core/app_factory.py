"""Application factory for FastAPI app.

Centralizes app construction (middleware, handlers, routers, rate limiter)
so tests can build isolated apps with their own limiter.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api.routes import health_router
from app.core.config import Settings, settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware
from app.core.rate_limit import build_rate_limiter, rate_limit_middleware
from app.services.rate_limiter import RateLimiter


def create_app(
    *,
    app_settings: Settings | None = None,
    rate_limiter: RateLimiter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        app_settings: Settings container; defaults to the global settings.
        rate_limiter: Pre-built limiter; built from settings when omitted and
            rate limiting is enabled.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    cfg = app_settings or settings

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log)

    if rate_limiter is None and cfg.rate_limit.enabled:
        rate_limiter = build_rate_limiter(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        if app.state.rate_limiter is not None:
            await app.state.rate_limiter.close()

    app = FastAPI(
        title="Collateral Marketplace API",
        description=(
            "REST API for repossessed-collateral listings (vehicles and real "
            "estate). Every request is rate limited per client address."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.rate_limiter = rate_limiter
    app.state.rate_limit_settings = cfg.rate_limit

    # Middleware: the last registered runs first, so request ids are bound
    # before the rate limiter logs anything.
    app.middleware("http")(rate_limit_middleware)
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(health_router)

    return app
