from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response

from throttle.adapters.rate_limit.base import AbstractRateLimiter
from throttle.core.auth import verify_api_key
from throttle.core.logging import fingerprint
from throttle.core.rate_limit import enforce_rate_limit, get_rate_limiter, rate_limit_headers
from throttle.schemas.rate_limit import (
    CategoryConfig,
    CategoryInfo,
    CategoryListResponse,
    CheckRequest,
    CheckResponse,
    ResetResponse,
    StatsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/rate-limits",
    tags=["Rate limits"],
    dependencies=[Depends(verify_api_key)],
)

Limiter = Annotated[AbstractRateLimiter, Depends(get_rate_limiter)]


@router.post(
    "/check",
    response_model=CheckResponse,
    dependencies=[Depends(enforce_rate_limit("api:query"))],
)
def check_rate_limit(body: CheckRequest, response: Response, limiter: Limiter) -> CheckResponse:
    """Make an admission decision for a caller outside this process.

    A rejection is a normal outcome and is reported with HTTP 200; the caller
    is expected to refuse its own request and surface ``retry_after``.
    """

    result = limiter.check(body.identifier, body.category)
    response.headers.update(rate_limit_headers(result))

    logger.info(
        "rate_limit.decision",
        extra={
            "category": body.category,
            "identifier_hash": fingerprint(body.identifier),
            "allowed": result.allowed,
            "remaining": result.remaining,
        },
    )
    return CheckResponse.from_result(result)


@router.get(
    "/stats",
    response_model=StatsResponse,
    dependencies=[Depends(enforce_rate_limit("api:query"))],
)
def get_stats(limiter: Limiter) -> StatsResponse:
    return StatsResponse.from_stats(limiter.get_stats())


@router.get(
    "/categories",
    response_model=CategoryListResponse,
    dependencies=[Depends(enforce_rate_limit("api:query"))],
)
def list_categories(limiter: Limiter) -> CategoryListResponse:
    return CategoryListResponse(
        categories=[
            CategoryInfo(category=name, window_ms=cfg.window_ms, max_requests=cfg.max_requests)
            for name, cfg in limiter.list_configs().items()
        ]
    )


@router.put(
    "/categories/{category}",
    response_model=CategoryInfo,
    dependencies=[Depends(enforce_rate_limit("api:mutation"))],
)
def register_category(category: str, body: CategoryConfig, limiter: Limiter) -> CategoryInfo:
    """Insert or overwrite a category quota.

    Raises:
        ValidationAppError: Non-positive window or request count (rendered as 400).
    """

    limiter.register_limit(category, body.to_config())
    return CategoryInfo(category=category, window_ms=body.window_ms, max_requests=body.max_requests)


@router.delete(
    "/identifiers/{identifier:path}",
    response_model=ResetResponse,
    dependencies=[Depends(enforce_rate_limit("api:mutation"))],
)
def reset_identifier(
    identifier: str,
    request: Request,
    limiter: Limiter,
    category: Annotated[str | None, Query(min_length=1)] = None,
) -> ResetResponse:
    """Drop tracked windows for an identifier (one category, or all of them)."""

    removed = limiter.reset(identifier, category)
    logger.info(
        "rate_limit.admin_reset",
        extra={
            "identifier_hash": fingerprint(identifier),
            "category": category or "*",
            "removed": removed,
            "client_hash": fingerprint(request.client.host) if request.client else None,
        },
    )
    return ResetResponse(identifier=identifier, category=category, removed=removed)
