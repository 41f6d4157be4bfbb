"""Pydantic schemas for the rate limit API."""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field

from throttle.adapters.rate_limit.base import (
    DEFAULT_CATEGORY,
    RateLimitConfig,
    RateLimitResult,
    RateLimitStats,
)


class CheckRequest(BaseModel):
    """Admission request made on behalf of an out-of-process caller."""

    identifier: str = Field(
        ...,
        min_length=1,
        description="Rate-limited subject (client IP, user id, API key hash).",
    )
    category: str = Field(
        DEFAULT_CATEGORY,
        min_length=1,
        description="Quota category; unknown categories use the default quota.",
    )


class CheckResponse(BaseModel):
    """Admission decision."""

    allowed: bool
    category: str
    limit: int = Field(..., description="Requests admitted per window.")
    remaining: int = Field(..., description="Requests left in the current window.")
    reset_time: int = Field(..., description="Window end in epoch milliseconds.")
    retry_after: int | None = Field(
        None, description="Seconds to wait before retrying (only when not allowed)."
    )

    @classmethod
    def from_result(cls, result: RateLimitResult) -> "CheckResponse":
        return cls(
            allowed=result.allowed,
            category=result.category,
            limit=result.limit,
            remaining=result.remaining,
            reset_time=result.reset_time,
            retry_after=result.retry_after,
        )


class CategoryConfig(BaseModel):
    """Quota of one category.

    Values are not range-checked here; the limiter rejects non-positive
    values when the category is registered.
    """

    window_ms: int = Field(..., description="Window length in milliseconds.")
    max_requests: int = Field(..., description="Requests admitted per window.")

    def to_config(self) -> RateLimitConfig:
        return RateLimitConfig(window_ms=self.window_ms, max_requests=self.max_requests)


class CategoryInfo(CategoryConfig):
    category: str


class CategoryListResponse(BaseModel):
    categories: List[CategoryInfo] = Field(default_factory=list)


class StatsResponse(BaseModel):
    """Observational limiter stats."""

    total_limits: int = Field(..., description="Tracked (category, identifier) windows.")
    active_users: int = Field(..., description="Distinct identifiers across all categories.")
    categories: List[str] = Field(
        default_factory=list, description="Registered categories in registration order."
    )

    @classmethod
    def from_stats(cls, stats: RateLimitStats) -> "StatsResponse":
        return cls(
            total_limits=stats.total_limits,
            active_users=stats.active_users,
            categories=list(stats.categories),
        )


class ResetResponse(BaseModel):
    identifier: str
    category: str | None = None
    removed: int = Field(..., description="Number of tracked windows deleted.")
