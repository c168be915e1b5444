"""Per-client rate limits on the public auth endpoints."""

import pytest
from fastapi.testclient import TestClient

from ojekkampus import app as app_module
from ojekkampus.service.runtime import check_rate_limit, get_runtime, reset_runtime_for_tests


@pytest.fixture
def tight_limits(monkeypatch):
    monkeypatch.setenv("IP_RATE_LIMIT_PER_WINDOW", "2")
    monkeypatch.setenv("IP_RATE_LIMIT_WINDOW_SECONDS", "60")
    reset_runtime_for_tests()
    return TestClient(app_module.app)


def _login(client):
    return client.post(
        "/api/auth/login", json={"phone_number": "081234567890", "password": "rahasia123"}
    )


class TestEndpointLimits:
    def test_login_limited_after_budget(self, tight_limits):
        first = _login(tight_limits)
        second = _login(tight_limits)
        third = _login(tight_limits)

        assert first.status_code == second.status_code == 401
        assert third.status_code == 429
        body = third.json()
        assert body["error"]["code"] == "rate_limited"
        assert body["error"]["message"] == "too many requests"
        assert int(third.headers["Retry-After"]) >= 1

    def test_scopes_do_not_share_buckets(self, tight_limits):
        _login(tight_limits)
        _login(tight_limits)

        response = tight_limits.post("/api/auth/refresh", json={"refresh_token": "unknown"})

        assert response.status_code == 401

    def test_otp_endpoints_limited(self, tight_limits):
        body = {"phone_number": "081234567890", "otp_code": "123456"}
        statuses = [
            tight_limits.post("/api/auth/verify-otp", json=body).status_code for _ in range(3)
        ]
        assert statuses == [200, 200, 429]

    def test_registration_limited(self, tight_limits):
        statuses = []
        for i in range(3):
            statuses.append(
                tight_limits.post(
                    "/api/auth/register/passenger",
                    json={
                        "phone_number": f"08123456789{i}",
                        "password": "rahasia123",
                        "full_name": "Siti",
                    },
                ).status_code
            )
        assert statuses == [201, 201, 429]


class TestLimiter:
    async def test_disabled_when_limit_not_positive(self):
        allowed, remaining, retry_after = await check_rate_limit(get_runtime(), "k", 0, 60)
        assert allowed is True
        assert retry_after == 0

    async def test_local_bucket_refuses_then_reports_wait(self):
        runtime = get_runtime()
        results = [await check_rate_limit(runtime, "login:1.2.3.4", 2, 60) for _ in range(3)]

        assert [r[0] for r in results] == [True, True, False]
        assert results[2][2] >= 1

    async def test_invalid_window_falls_back(self):
        allowed, _, _ = await check_rate_limit(get_runtime(), "k2", 1, 0)
        assert allowed is True


def test_redis_keys_are_hashed():
    from ojekkampus.storage.redis_cache import RedisCache

    key = RedisCache._normalize_rate_key("login:10.0.0.1")
    assert key.startswith("rate:")
    assert len(key) == len("rate:") + 64
    assert "10.0.0.1" not in key
    assert key == RedisCache._normalize_rate_key("login:10.0.0.1")
