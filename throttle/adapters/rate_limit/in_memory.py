"""In-memory fixed-window rate limiter with per-category quotas.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state, including the cleanup sweep.
- Fixed window: a burst at the end of one window followed by a burst at the
  start of the next may admit up to 2x max_requests in a short interval.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from throttle.adapters.rate_limit.base import (
    DEFAULT_CATEGORY,
    AbstractRateLimiter,
    RateLimitConfig,
    RateLimitResult,
    RateLimitStats,
)
from throttle.core.errors import ValidationAppError

logger = logging.getLogger(__name__)


DEFAULT_LIMITS: dict[str, RateLimitConfig] = {
    DEFAULT_CATEGORY: RateLimitConfig(window_ms=60_000, max_requests=100),
    "api:query": RateLimitConfig(window_ms=60_000, max_requests=500),
    "api:mutation": RateLimitConfig(window_ms=60_000, max_requests=100),
    "api:ai": RateLimitConfig(window_ms=60_000, max_requests=20),
    "api:export": RateLimitConfig(window_ms=300_000, max_requests=10),
    "auth:login": RateLimitConfig(window_ms=300_000, max_requests=5),
    "auth:password-reset": RateLimitConfig(window_ms=3_600_000, max_requests=3),
}

DEFAULT_CLEANUP_INTERVAL_SECONDS = 60.0


@dataclass
class _WindowState:
    count: int
    reset_time: int


class InMemoryFixedWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter using a fixed time window per (category, identifier).

    Each key starts its own window on its first request; the window lasts
    ``window_ms`` of the category's config. Unregistered categories fall back
    to the ``default`` config.

    Important:
        This limiter is per-process only. If the API runs with multiple workers
        (e.g., multiple Uvicorn/Gunicorn workers), each worker will enforce its
        own independent limits.
    """

    def __init__(
        self,
        *,
        limits: dict[str, RateLimitConfig] | None = None,
        clock: Callable[[], float] = time.time,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the limiter and seed the default category registry.

        Args:
            limits: Extra categories registered on top of the defaults.
            clock: Time source function returning UNIX time in seconds.
            cleanup_interval_seconds: Period of the background cleanup sweep.

        Raises:
            ValidationAppError: If a provided config is invalid.
            ValueError: If cleanup_interval_seconds is not positive.
        """
        if cleanup_interval_seconds <= 0:
            raise ValueError("cleanup_interval_seconds must be > 0")

        self._clock = clock
        self._cleanup_interval = cleanup_interval_seconds
        self._lock = threading.RLock()
        self._configs: dict[str, RateLimitConfig] = dict(DEFAULT_LIMITS)
        self._state_by_key: dict[tuple[str, str], _WindowState] = {}

        self._cleanup_thread: threading.Thread | None = None
        self._cleanup_stop = threading.Event()

        for category, config in (limits or {}).items():
            self.register_limit(category, config)

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"InMemoryFixedWindowRateLimiter(categories={len(self._configs)}, "
            f"tracked={len(self._state_by_key)}, cleanup_running={self.cleanup_running})"
        )

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _resolve_config(self, category: str) -> RateLimitConfig:
        return self._configs.get(category) or self._configs[DEFAULT_CATEGORY]

    def _get_or_reset_state(
        self, key: tuple[str, str], config: RateLimitConfig, now: int
    ) -> _WindowState:
        """Get the current state for key, starting a fresh window when expired.

        Args:
            key: (category, identifier) tuple.
            config: Effective config for the category.
            now: Current time in epoch milliseconds.

        Returns:
            The current window state for this key.
        """
        state = self._state_by_key.get(key)
        if state is None or now >= state.reset_time:
            state = _WindowState(count=0, reset_time=now + config.window_ms)
            self._state_by_key[key] = state
        return state

    def register_limit(self, category: str, config: RateLimitConfig) -> None:
        """Insert or overwrite the quota for a category.

        Existing windows keep their reset_time; the new window_ms applies from
        their next rollover.

        Raises:
            ValidationAppError: If the category is empty or the config is not positive.
        """
        if not category:
            raise ValidationAppError(
                code="invalid_rate_limit_config",
                message="Rate limit category must be a non-empty string",
            )
        if config.window_ms < 1 or config.max_requests < 1:
            raise ValidationAppError(
                code="invalid_rate_limit_config",
                message="window_ms and max_requests must be >= 1",
                details={
                    "hint": f"category={category} window_ms={config.window_ms} "
                    f"max_requests={config.max_requests}",
                },
            )

        with self._lock:
            self._configs[category] = config

        logger.info(
            "rate_limit.registered",
            extra={
                "category": category,
                "window_ms": config.window_ms,
                "max_requests": config.max_requests,
            },
        )

    def get_config(self, category: str) -> RateLimitConfig:
        with self._lock:
            return self._resolve_config(category)

    def list_configs(self) -> dict[str, RateLimitConfig]:
        with self._lock:
            return dict(self._configs)

    def check(self, identifier: str, category: str = DEFAULT_CATEGORY) -> RateLimitResult:
        """Check and consume one request for ``identifier`` in ``category``.

        This method both checks the current window usage and mutates the state
        if the request is allowed. Rejected requests leave the count untouched.

        Args:
            identifier: Rate-limited subject (client IP, user id, hashed API key).
            category: Quota category; unknown names use the default quota.

        Returns:
            RateLimitResult with allowance decision and metadata.
        """
        now = self._now_ms()

        with self._lock:
            config = self._resolve_config(category)
            state = self._get_or_reset_state((category, identifier), config, now)

            allowed = state.count < config.max_requests
            if allowed:
                state.count += 1

            remaining = max(0, config.max_requests - state.count)
            retry_after = None
            if not allowed:
                retry_after = max(0, math.ceil((state.reset_time - now) / 1000))

            return RateLimitResult(
                allowed=allowed,
                limit=config.max_requests,
                remaining=remaining,
                reset_time=state.reset_time,
                retry_after=retry_after,
                category=category,
            )

    def reset(self, identifier: str, category: str | None = None) -> int:
        """Forget usage for an identifier in one category or in all of them.

        Args:
            identifier: Identifier whose windows should be dropped.
            category: Limit the reset to this category; None means every category.

        Returns:
            Number of tracked entries removed.
        """
        with self._lock:
            if category is not None:
                removed = 1 if self._state_by_key.pop((category, identifier), None) else 0
            else:
                keys = [key for key in self._state_by_key if key[1] == identifier]
                for key in keys:
                    del self._state_by_key[key]
                removed = len(keys)

        logger.info(
            "rate_limit.reset",
            extra={
                "category": category or "*",
                "removed": removed,
            },
        )
        return removed

    def get_stats(self) -> RateLimitStats:
        with self._lock:
            return RateLimitStats(
                total_limits=len(self._state_by_key),
                active_users=len({identifier for _, identifier in self._state_by_key}),
                categories=list(self._configs),
            )

    def cleanup(self) -> int:
        """Delete every entry whose window has ended.

        Expired entries are already treated as fresh windows by check(); this
        sweep only bounds memory.

        Returns:
            Number of entries removed.
        """
        now = self._now_ms()
        with self._lock:
            expired_keys = [
                key for key, state in self._state_by_key.items() if now >= state.reset_time
            ]
            for key in expired_keys:
                del self._state_by_key[key]
            remaining = len(self._state_by_key)

        if expired_keys:
            logger.debug(
                "rate_limit.cleanup",
                extra={"removed": len(expired_keys), "tracked": remaining},
            )
        return len(expired_keys)

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_thread is not None and self._cleanup_thread.is_alive()

    def start_cleanup(self) -> None:
        """Run cleanup() on a daemon thread every cleanup interval.

        Calling it while the sweep is already running is a no-op.
        """
        if self.cleanup_running:
            return

        self._cleanup_stop.clear()
        self._cleanup_thread = threading.Thread(
            target=self._cleanup_loop,
            name="rate-limit-cleanup",
            daemon=True,
        )
        self._cleanup_thread.start()
        logger.info(
            "rate_limit.cleanup_started",
            extra={"interval_s": self._cleanup_interval},
        )

    def stop_cleanup(self, timeout: float | None = 5.0) -> None:
        """Stop the background sweep and wait for the thread to exit.

        If the thread outlives ``timeout`` (a sweep still in progress) its
        handle is kept, so ``start_cleanup()`` cannot spawn a second sweeper
        until it has exited.
        """
        thread = self._cleanup_thread
        if thread is None:
            return

        self._cleanup_stop.set()
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("rate_limit.cleanup_stop_timeout", extra={"timeout_s": timeout})
            return

        self._cleanup_thread = None
        logger.info("rate_limit.cleanup_stopped")

    def _cleanup_loop(self) -> None:
        while not self._cleanup_stop.wait(self._cleanup_interval):
            try:
                self.cleanup()
            except Exception:
                logger.exception("rate_limit.cleanup_failed")
