"""Application factory for the FastAPI app.

Centralizes app construction (limiter, lifespan, middleware, handlers,
routers) so tests can build isolated apps with their own limiter state.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from throttle.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from throttle.api.routes import health_router, rate_limits_router
from throttle.core.config import settings
from throttle.core.exception_handlers import setup_exception_handlers
from throttle.core.logging import configure_logging
from throttle.core.middleware import request_id_middleware
from throttle.core.openapi import apply_openapi_customizations
from throttle.core.rate_limit import build_rate_limiter

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run the limiters' cleanup sweeps for the lifetime of the app."""

    limiters: tuple[InMemoryFixedWindowRateLimiter, ...] = (
        app.state.rate_limiter,
        app.state.api_rate_limiter,
    )
    if settings.app.rate_limit_cleanup_enabled:
        for limiter in limiters:
            limiter.start_cleanup()
    try:
        yield
    finally:
        for limiter in limiters:
            limiter.stop_cleanup()


def create_app(
    limiter: InMemoryFixedWindowRateLimiter | None = None,
    api_limiter: InMemoryFixedWindowRateLimiter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        limiter: Limiter answering /v1/rate-limits/check and the admin
            routes (tests inject one with a fake clock); built from settings
            when omitted.
        api_limiter: Limiter throttling callers of the /v1 routes themselves;
            built from settings when omitted.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Throttle",
        description=(
            "Fixed-window rate limiting service. Exposes admission decisions, "
            "per-category quotas, usage stats and administrative resets. "
            "Requires X-API-Key on /v1 routes."
        ),
        version="0.1.0",
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
        lifespan=lifespan,
    )
    app.state.rate_limiter = limiter or build_rate_limiter(settings.app)
    app.state.api_rate_limiter = api_limiter or build_rate_limiter(settings.app)

    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(rate_limits_router, prefix="/v1")
    app.include_router(health_router)

    apply_openapi_customizations(app)

    logger.info(
        "app.created",
        extra={
            "app_env": settings.app_env,
            "rate_limit_enabled": settings.app.rate_limit_enabled,
            "categories": list(app.state.rate_limiter.list_configs()),
        },
    )
    return app
