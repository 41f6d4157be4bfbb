"""Rate limiting dependency for FastAPI routes.

This module wires the rate limiting adapter into the HTTP layer.

Design goals:
- Minimal coupling: routes depend on ``enforce_rate_limit(category)`` only.
- Swap-friendly: storage backend can be replaced (e.g., Redis) behind an
  abstract interface.
- Explicit lifecycle: limiters live on ``app.state`` and are created by
  the app factory, not as module globals.
- Separate key spaces: ``app.state.rate_limiter`` serves the subjects callers
  ask about over the API, while ``app.state.api_rate_limiter`` throttles the
  API callers themselves. Nothing a caller submits to /check or
  /identifiers can touch the service's own throttle state.

Identifier strategy:
- Hashed API key when the caller sends X-API-Key.
- Otherwise the client IP (optionally the first X-Forwarded-For hop).
"""

from __future__ import annotations

import logging
import math
from typing import Annotated, Awaitable, Callable

from fastapi import Header, HTTPException, Request, status

from throttle.adapters.rate_limit.base import (
    DEFAULT_CATEGORY,
    AbstractRateLimiter,
    RateLimitConfig,
    RateLimitResult,
)
from throttle.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from throttle.core.config import AppSettings, settings
from throttle.core.logging import fingerprint

logger = logging.getLogger(__name__)


def build_rate_limiter(app_settings: AppSettings | None = None) -> InMemoryFixedWindowRateLimiter:
    """Create a limiter seeded with the built-in and configured categories.

    Args:
        app_settings: Settings to read from; defaults to the global settings.

    Returns:
        A limiter whose cleanup sweep has not been started yet.
    """

    cfg = app_settings or settings.app
    limits = {
        category: RateLimitConfig(window_ms=item.window_ms, max_requests=item.max_requests)
        for category, item in cfg.rate_limit_categories.items()
    }
    return InMemoryFixedWindowRateLimiter(
        limits=limits,
        cleanup_interval_seconds=cfg.rate_limit_cleanup_interval_seconds,
    )


def get_rate_limiter(request: Request) -> AbstractRateLimiter:
    """Return the limiter owned by the running application."""

    return request.app.state.rate_limiter


def get_api_rate_limiter(request: Request) -> AbstractRateLimiter:
    """Return the limiter that throttles callers of this service's own routes."""

    return request.app.state.api_rate_limiter


def resolve_identifier(request: Request, x_api_key: str | None) -> str:
    """Build the limiter identifier for the current request.

    Args:
        request: FastAPI request.
        x_api_key: API key value from the X-API-Key header.

    Returns:
        str: Namespaced identifier (``api_key:<hash>`` or ``ip:<address>``).
    """

    if x_api_key:
        return f"api_key:{fingerprint(x_api_key)}"

    if settings.app.rate_limit_trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return f"ip:{first_hop}"

    client_host = request.client.host if request.client else "unknown"
    return f"ip:{client_host}"


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Render a decision as X-RateLimit-* headers (plus Retry-After when blocked)."""

    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(math.ceil(result.reset_time / 1000)),
    }
    if result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def enforce_rate_limit(
    category: str = DEFAULT_CATEGORY,
) -> Callable[..., Awaitable[RateLimitResult | None]]:
    """Build a FastAPI dependency that throttles a route under ``category``.

    Usage:
        @router.post("/login", dependencies=[Depends(enforce_rate_limit("auth:login"))])

    Args:
        category: Quota category charged for each request.

    Returns:
        Async dependency that raises HTTP 429 when the quota is exhausted.
    """

    async def dependency(
        request: Request,
        x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
    ) -> RateLimitResult | None:
        if not settings.app.rate_limit_enabled:
            return None

        limiter = get_api_rate_limiter(request)
        identifier = resolve_identifier(request, x_api_key)
        log_fields = {
            "category": category,
            "key_type": identifier.split(":", 1)[0],
            "identifier_hash": fingerprint(identifier),
        }

        result = limiter.check(identifier, category)
        if result.allowed:
            logger.debug(
                "rate_limit.allowed",
                extra={**log_fields, "limit": result.limit, "remaining": result.remaining},
            )
            return result

        logger.warning(
            "rate_limit.exceeded",
            extra={
                **log_fields,
                "limit": result.limit,
                "remaining": result.remaining,
                "retry_after_s": result.retry_after,
            },
        )

        headers: dict[str, str] = {}
        if settings.app.rate_limit_include_headers:
            headers = rate_limit_headers(result)

        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded. Try again later.",
            headers=headers or None,
        )

    dependency.__name__ = f"enforce_rate_limit[{category}]"
    return dependency
