"""Rate limiter interfaces.

The API should depend on this abstraction (not the concrete implementation)
so we can swap storage backends later (e.g., Redis) with minimal changes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

DEFAULT_CATEGORY = "default"


@dataclass(frozen=True)
class RateLimitConfig:
    """Quota for one category.

    Attributes:
        window_ms: Length of the fixed window in milliseconds.
        max_requests: Maximum admitted requests per window.
    """

    window_ms: int
    max_requests: int


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window for the effective config.
        remaining: Remaining requests in the current window (0 when blocked).
        reset_time: UNIX epoch milliseconds when the current window ends.
        retry_after: Suggested wait time in seconds when blocked.
        category: Category the check was made against.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    retry_after: int | None
    category: str = DEFAULT_CATEGORY


@dataclass(frozen=True)
class RateLimitStats:
    """Point-in-time view of the limiter state."""

    total_limits: int
    active_users: int
    categories: list[str] = field(default_factory=list)


class AbstractRateLimiter(ABC):
    """Interface for rate limiters."""

    @abstractmethod
    def check(self, identifier: str, category: str = DEFAULT_CATEGORY) -> RateLimitResult:
        """Decide whether a request from ``identifier`` may proceed.

        Args:
            identifier: Rate-limited subject (e.g., client IP, user id, API key hash).
            category: Named class of operation with its own quota.

        Returns:
            RateLimitResult describing whether it was allowed.
        """
        raise NotImplementedError

    @abstractmethod
    def reset(self, identifier: str, category: str | None = None) -> int:
        """Forget tracked usage for ``identifier``.

        Returns:
            Number of tracked entries removed.
        """
        raise NotImplementedError

    @abstractmethod
    def register_limit(self, category: str, config: RateLimitConfig) -> None:
        """Insert or overwrite the quota for ``category``."""
        raise NotImplementedError

    @abstractmethod
    def get_config(self, category: str) -> RateLimitConfig:
        """Return the effective config for ``category`` (falls back to default)."""
        raise NotImplementedError

    @abstractmethod
    def list_configs(self) -> dict[str, RateLimitConfig]:
        """Return all registered configs in registration order."""
        raise NotImplementedError

    @abstractmethod
    def get_stats(self) -> RateLimitStats:
        """Return observational stats without mutating state."""
        raise NotImplementedError
