"""Tests for the rate limit API routes and the enforce_rate_limit dependency.

IMPORTANT: API Key Authentication
- All /v1/rate-limits/* endpoints require X-API-Key header
- Use valid_api_key_headers fixture in tests
"""

from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from throttle.adapters.rate_limit.base import RateLimitConfig
from throttle.adapters.rate_limit.in_memory import DEFAULT_LIMITS, InMemoryFixedWindowRateLimiter
from throttle.core import rate_limit as rate_limit_module
from throttle.core.app_factory import create_app
from throttle.core.logging import fingerprint


# ======================== Health / Auth ========================


class TestHealthAndAuth:
    def test_health_is_public(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "tracked_limits": 0}

    def test_stats_without_api_key_returns_403(self, client: TestClient) -> None:
        response = client.get("/v1/rate-limits/stats")

        assert response.status_code == 403
        assert "Missing API key" in response.json()["detail"]

    def test_stats_with_invalid_api_key_returns_403(self, client: TestClient) -> None:
        response = client.get("/v1/rate-limits/stats", headers={"X-API-Key": "nope"})

        assert response.status_code == 403

    def test_rejected_auth_does_not_consume_quota(
        self,
        client: TestClient,
        limiter: InMemoryFixedWindowRateLimiter,
        api_limiter: InMemoryFixedWindowRateLimiter,
    ) -> None:
        client.get("/v1/rate-limits/stats", headers={"X-API-Key": "nope"})

        assert limiter.get_stats().total_limits == 0
        assert api_limiter.get_stats().total_limits == 0


# ======================== Check endpoint ========================


class TestCheckEndpoint:
    def test_decisions_follow_quota(
        self,
        client: TestClient,
        limiter: InMemoryFixedWindowRateLimiter,
        valid_api_key_headers: dict[str, str],
    ) -> None:
        limiter.register_limit("test", RateLimitConfig(window_ms=60_000, max_requests=3))
        body = {"identifier": "u", "category": "test"}

        admitted = [
            client.post("/v1/rate-limits/check", json=body, headers=valid_api_key_headers)
            for _ in range(3)
        ]
        assert all(r.status_code == 200 for r in admitted)
        assert [r.json()["remaining"] for r in admitted] == [2, 1, 0]
        assert all(r.json()["allowed"] is True for r in admitted)
        assert "Retry-After" not in admitted[0].headers
        assert admitted[0].headers["X-RateLimit-Limit"] == "3"

        blocked = client.post("/v1/rate-limits/check", json=body, headers=valid_api_key_headers)
        assert blocked.status_code == 200
        data = blocked.json()
        assert data["allowed"] is False
        assert data["remaining"] == 0
        assert data["retry_after"] == 60
        assert data["reset_time"] == 1_060_000
        assert blocked.headers["Retry-After"] == "60"
        assert blocked.headers["X-RateLimit-Remaining"] == "0"
        assert blocked.headers["X-RateLimit-Reset"] == "1060"

    def test_category_defaults_to_default(
        self, client: TestClient, valid_api_key_headers: dict[str, str]
    ) -> None:
        response = client.post(
            "/v1/rate-limits/check", json={"identifier": "u"}, headers=valid_api_key_headers
        )

        assert response.json()["category"] == "default"
        assert response.json()["limit"] == 100

    def test_empty_identifier_is_rejected(
        self, client: TestClient, valid_api_key_headers: dict[str, str]
    ) -> None:
        response = client.post(
            "/v1/rate-limits/check", json={"identifier": ""}, headers=valid_api_key_headers
        )

        assert response.status_code == 422


# ======================== Admin endpoints ========================


class TestAdminEndpoints:
    def test_stats_report_distinct_identifiers(
        self,
        client: TestClient,
        limiter: InMemoryFixedWindowRateLimiter,
        valid_api_key_headers: dict[str, str],
    ) -> None:
        limiter.register_limit("test", RateLimitConfig(window_ms=60_000, max_requests=5))
        for identifier in ("user1", "user2"):
            client.post(
                "/v1/rate-limits/check",
                json={"identifier": identifier, "category": "test"},
                headers=valid_api_key_headers,
            )
        limiter.check("user1", "api:ai")

        response = client.get("/v1/rate-limits/stats", headers=valid_api_key_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total_limits"] == 3
        assert data["active_users"] == 2
        assert data["categories"][0] == "default"

    def test_list_categories(self, client: TestClient, valid_api_key_headers: dict[str, str]) -> None:
        response = client.get("/v1/rate-limits/categories", headers=valid_api_key_headers)

        assert response.status_code == 200
        categories = {c["category"]: c for c in response.json()["categories"]}
        assert categories["api:export"] == {
            "category": "api:export",
            "window_ms": 300_000,
            "max_requests": 10,
        }
        assert len(categories) == 7

    def test_register_category(
        self,
        client: TestClient,
        limiter: InMemoryFixedWindowRateLimiter,
        valid_api_key_headers: dict[str, str],
    ) -> None:
        response = client.put(
            "/v1/rate-limits/categories/contact:form",
            json={"window_ms": 600_000, "max_requests": 2},
            headers=valid_api_key_headers,
        )

        assert response.status_code == 200
        assert response.json()["category"] == "contact:form"
        assert limiter.get_config("contact:form") == RateLimitConfig(
            window_ms=600_000, max_requests=2
        )

    @pytest.mark.parametrize(
        "body",
        [
            {"window_ms": 0, "max_requests": 2},
            {"window_ms": 1_000, "max_requests": -1},
        ],
    )
    def test_register_invalid_category_returns_400(
        self,
        client: TestClient,
        limiter: InMemoryFixedWindowRateLimiter,
        valid_api_key_headers: dict[str, str],
        body: dict,
    ) -> None:
        response = client.put(
            "/v1/rate-limits/categories/contact:form", json=body, headers=valid_api_key_headers
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_rate_limit_config"
        assert "request_id" in error
        assert "contact:form" not in limiter.list_configs()

    def test_reset_identifier_in_one_category(
        self,
        client: TestClient,
        limiter: InMemoryFixedWindowRateLimiter,
        valid_api_key_headers: dict[str, str],
    ) -> None:
        limiter.register_limit("test", RateLimitConfig(window_ms=60_000, max_requests=1))
        limiter.check("user1", "test")
        limiter.check("user1", "api:ai")
        assert limiter.check("user1", "test").allowed is False

        response = client.delete(
            "/v1/rate-limits/identifiers/user1",
            params={"category": "test"},
            headers=valid_api_key_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"identifier": "user1", "category": "test", "removed": 1}
        assert limiter.check("user1", "test").allowed is True

    def test_reset_identifier_everywhere(
        self,
        client: TestClient,
        limiter: InMemoryFixedWindowRateLimiter,
        valid_api_key_headers: dict[str, str],
    ) -> None:
        for category in ("api:ai", "auth:login", "api:export"):
            limiter.check("ip:10.0.0.1", category)

        response = client.delete(
            "/v1/rate-limits/identifiers/ip:10.0.0.1", headers=valid_api_key_headers
        )

        assert response.status_code == 200
        assert response.json()["removed"] == 3
        assert response.json()["category"] is None

    def test_reset_identifier_containing_slashes(
        self,
        client: TestClient,
        limiter: InMemoryFixedWindowRateLimiter,
        valid_api_key_headers: dict[str, str],
    ) -> None:
        limiter.register_limit("test", RateLimitConfig(window_ms=60_000, max_requests=1))
        limiter.check("tenants/acme/users/42", "test")
        assert limiter.check("tenants/acme/users/42", "test").allowed is False

        response = client.delete(
            "/v1/rate-limits/identifiers/tenants/acme/users/42",
            params={"category": "test"},
            headers=valid_api_key_headers,
        )

        assert response.status_code == 200
        assert response.json() == {
            "identifier": "tenants/acme/users/42",
            "category": "test",
            "removed": 1,
        }
        assert limiter.check("tenants/acme/users/42", "test").allowed is True


# ======================== Throttling of routes ========================


class TestRateLimiting:
    """Test rate limiting on protected endpoints."""

    def test_blocks_with_429_after_quota(
        self,
        client: TestClient,
        api_limiter: InMemoryFixedWindowRateLimiter,
        valid_api_key_headers: dict[str, str],
    ) -> None:
        api_limiter.register_limit("api:query", RateLimitConfig(window_ms=60_000, max_requests=2))

        assert client.get("/v1/rate-limits/stats", headers=valid_api_key_headers).status_code == 200
        assert client.get("/v1/rate-limits/stats", headers=valid_api_key_headers).status_code == 200

        blocked = client.get("/v1/rate-limits/stats", headers=valid_api_key_headers)
        assert blocked.status_code == 429
        assert "Rate limit exceeded" in blocked.json()["detail"]
        assert blocked.headers["Retry-After"] == "60"
        assert blocked.headers["X-RateLimit-Limit"] == "2"
        assert blocked.headers["X-RateLimit-Remaining"] == "0"
        assert "X-RateLimit-Reset" in blocked.headers

    def test_reads_and_writes_have_separate_quotas(
        self,
        client: TestClient,
        api_limiter: InMemoryFixedWindowRateLimiter,
        valid_api_key_headers: dict[str, str],
    ) -> None:
        api_limiter.register_limit("api:query", RateLimitConfig(window_ms=60_000, max_requests=1))

        client.get("/v1/rate-limits/stats", headers=valid_api_key_headers)
        assert client.get("/v1/rate-limits/stats", headers=valid_api_key_headers).status_code == 429

        response = client.delete("/v1/rate-limits/identifiers/x", headers=valid_api_key_headers)
        assert response.status_code == 200

    def test_quota_is_isolated_by_api_key(
        self, client: TestClient, api_limiter: InMemoryFixedWindowRateLimiter
    ) -> None:
        api_limiter.register_limit("api:query", RateLimitConfig(window_ms=60_000, max_requests=1))
        key1 = {"X-API-Key": "test-api-key-123"}
        key2 = {"X-API-Key": "test-api-key-456"}

        assert client.get("/v1/rate-limits/stats", headers=key1).status_code == 200
        assert client.get("/v1/rate-limits/stats", headers=key1).status_code == 429

        assert client.get("/v1/rate-limits/stats", headers=key2).status_code == 200

    def test_window_rollover_unblocks(
        self,
        client: TestClient,
        api_limiter: InMemoryFixedWindowRateLimiter,
        clock: Mock,
        valid_api_key_headers: dict[str, str],
    ) -> None:
        api_limiter.register_limit("api:query", RateLimitConfig(window_ms=60_000, max_requests=1))
        client.get("/v1/rate-limits/stats", headers=valid_api_key_headers)
        assert client.get("/v1/rate-limits/stats", headers=valid_api_key_headers).status_code == 429

        clock.return_value = 1_060.0

        assert client.get("/v1/rate-limits/stats", headers=valid_api_key_headers).status_code == 200

    def test_headers_omitted_when_disabled(
        self,
        client: TestClient,
        api_limiter: InMemoryFixedWindowRateLimiter,
        valid_api_key_headers: dict[str, str],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(rate_limit_module.settings.app, "rate_limit_include_headers", False)
        api_limiter.register_limit("api:query", RateLimitConfig(window_ms=60_000, max_requests=1))

        client.get("/v1/rate-limits/stats", headers=valid_api_key_headers)
        blocked = client.get("/v1/rate-limits/stats", headers=valid_api_key_headers)

        assert blocked.status_code == 429
        assert "Retry-After" not in blocked.headers
        assert "X-RateLimit-Limit" not in blocked.headers

    def test_disabled_rate_limit_never_blocks(
        self,
        client: TestClient,
        api_limiter: InMemoryFixedWindowRateLimiter,
        valid_api_key_headers: dict[str, str],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(rate_limit_module.settings.app, "rate_limit_enabled", False)
        api_limiter.register_limit("api:query", RateLimitConfig(window_ms=60_000, max_requests=1))

        for _ in range(3):
            response = client.get("/v1/rate-limits/stats", headers=valid_api_key_headers)
            assert response.status_code == 200
        assert api_limiter.get_stats().total_limits == 0

    def test_anonymous_callers_are_limited_by_ip(
        self,
        client: TestClient,
        api_limiter: InMemoryFixedWindowRateLimiter,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(rate_limit_module.settings.app, "api_key_required", False)
        api_limiter.register_limit("api:query", RateLimitConfig(window_ms=60_000, max_requests=1))

        assert client.get("/v1/rate-limits/stats").status_code == 200
        assert client.get("/v1/rate-limits/stats").status_code == 429

        # TestClient reports its peer address as "testclient".
        assert api_limiter.check("ip:testclient", "api:query").allowed is False


class TestThrottleIsolation:
    """Subjects submitted over the API never share state with the API's own throttling."""

    def test_submitted_identifier_cannot_lock_out_another_key(
        self,
        client: TestClient,
        limiter: InMemoryFixedWindowRateLimiter,
        api_limiter: InMemoryFixedWindowRateLimiter,
    ) -> None:
        limiter.register_limit("api:query", RateLimitConfig(window_ms=60_000, max_requests=3))
        api_limiter.register_limit("api:query", RateLimitConfig(window_ms=60_000, max_requests=5))
        victim = {"X-API-Key": "test-api-key-123"}
        other = {"X-API-Key": "test-api-key-456"}
        body = {"identifier": f"api_key:{fingerprint('test-api-key-123')}", "category": "api:query"}

        decisions = [
            client.post("/v1/rate-limits/check", json=body, headers=other).json()["allowed"]
            for _ in range(4)
        ]
        assert decisions == [True, True, True, False]

        assert client.get("/v1/rate-limits/stats", headers=victim).status_code == 200

    def test_admin_reset_does_not_touch_api_throttling(
        self,
        client: TestClient,
        api_limiter: InMemoryFixedWindowRateLimiter,
        valid_api_key_headers: dict[str, str],
    ) -> None:
        api_limiter.register_limit("api:query", RateLimitConfig(window_ms=60_000, max_requests=1))
        client.get("/v1/rate-limits/stats", headers=valid_api_key_headers)
        assert client.get("/v1/rate-limits/stats", headers=valid_api_key_headers).status_code == 429

        caller = f"api_key:{fingerprint('test-api-key-123')}"
        response = client.delete(
            f"/v1/rate-limits/identifiers/{caller}", headers=valid_api_key_headers
        )

        assert response.json()["removed"] == 0
        assert client.get("/v1/rate-limits/stats", headers=valid_api_key_headers).status_code == 429

    def test_stats_exclude_api_callers(
        self,
        client: TestClient,
        api_limiter: InMemoryFixedWindowRateLimiter,
        valid_api_key_headers: dict[str, str],
    ) -> None:
        for _ in range(2):
            response = client.get("/v1/rate-limits/stats", headers=valid_api_key_headers)

        assert response.json() == {
            "total_limits": 0,
            "active_users": 0,
            "categories": list(DEFAULT_LIMITS),
        }
        assert api_limiter.get_stats().total_limits == 1


# ======================== App lifecycle ========================


class TestLifespan:
    def test_cleanup_runs_for_app_lifetime(
        self,
        limiter: InMemoryFixedWindowRateLimiter,
        api_limiter: InMemoryFixedWindowRateLimiter,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(rate_limit_module.settings.app, "rate_limit_cleanup_enabled", True)

        with TestClient(create_app(limiter=limiter, api_limiter=api_limiter)) as client:
            assert client.get("/health").status_code == 200
            assert limiter.cleanup_running is True
            assert api_limiter.cleanup_running is True

        assert limiter.cleanup_running is False
        assert api_limiter.cleanup_running is False

    def test_cleanup_not_started_when_disabled(
        self,
        limiter: InMemoryFixedWindowRateLimiter,
        api_limiter: InMemoryFixedWindowRateLimiter,
    ) -> None:
        with TestClient(create_app(limiter=limiter, api_limiter=api_limiter)):
            assert limiter.cleanup_running is False
            assert api_limiter.cleanup_running is False

    def test_each_app_owns_its_limiters(self, valid_api_key_headers: dict[str, str]) -> None:
        first = create_app()
        second = create_app()

        assert first.state.rate_limiter is not second.state.rate_limiter
        assert first.state.api_rate_limiter is not first.state.rate_limiter
        assert first.state.api_rate_limiter is not second.state.api_rate_limiter

        TestClient(first).get("/v1/rate-limits/stats", headers=valid_api_key_headers)
        assert first.state.api_rate_limiter.get_stats().total_limits == 1
        assert second.state.api_rate_limiter.get_stats().total_limits == 0


class TestOpenAPI:
    def test_schema_documents_auth_and_throttling(self, client: TestClient) -> None:
        schema = client.get("/openapi.json").json()

        assert "ApiKeyAuth" in schema["components"]["securitySchemes"]
        assert schema["paths"]["/health"]["get"]["security"] == []
        stats = schema["paths"]["/v1/rate-limits/stats"]["get"]
        assert "429" in stats["responses"]
        assert "Retry-After" in stats["responses"]["429"]["headers"]
