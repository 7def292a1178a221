"""Integration tests for the /v1/rate-limit monitoring and admin routes."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from quota_gate.core.app_factory import create_app
from quota_gate.core.config import RateLimitSettings
from quota_gate.services.engine_factory import build_admission_engine

HEADERS = {"X-API-Key": "test-api-key-123"}


@pytest.fixture
def monitored_engine(clock):
    return build_admission_engine(
        RateLimitSettings(storage="memory"),
        clock=clock,
        start_sweeper=False,
    )


@pytest.fixture
def client(monitored_engine) -> TestClient:
    return TestClient(create_app(engine=monitored_engine))


def _violate(engine, identity: str = "203.0.113.4", times: int = 7) -> None:
    for _ in range(times):
        engine.check(identity, "auth-login")


class TestViolations:
    def test_lists_recent_violations(self, client, monitored_engine):
        _violate(monitored_engine)

        resp = client.get("/v1/rate-limit/violations", headers=HEADERS)

        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 2
        assert body["violations"][0]["policy_name"] == "auth-login"
        assert body["violations"][0]["count_at_violation"] == 7
        assert "timestamp" in body

    def test_limit_parameter(self, client, monitored_engine):
        _violate(monitored_engine)

        resp = client.get("/v1/rate-limit/violations?limit=1", headers=HEADERS)

        assert resp.json()["total"] == 1

    def test_limit_parameter_is_validated(self, client):
        resp = client.get("/v1/rate-limit/violations?limit=0", headers=HEADERS)

        assert resp.status_code == 422

    def test_clear_violations(self, client, monitored_engine):
        _violate(monitored_engine)

        resp = client.delete("/v1/rate-limit/violations", headers=HEADERS)

        assert resp.status_code == 204
        assert monitored_engine.recent_violations() == []


class TestAuthAndLimits:
    def test_requires_api_key(self, client):
        resp = client.get("/v1/rate-limit/violations")

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "missing_api_key"

    def test_rejects_wrong_api_key(self, client):
        resp = client.get("/v1/rate-limit/health", headers={"X-API-Key": "nope"})

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "invalid_api_key"

    def test_monitoring_routes_are_rate_limited(self, client):
        resp = client.get("/v1/rate-limit/health", headers=HEADERS)

        assert resp.headers["X-RateLimit-Limit"] == "100"
        assert resp.headers["X-RateLimit-Remaining"] == "99"


class TestHealthStatusReset:
    def test_health(self, client):
        resp = client.get("/v1/rate-limit/health", headers=HEADERS)

        assert resp.status_code == 200
        assert resp.json() == {
            "preferred_store_healthy": True,
            "degraded_calls_last_minute": 0,
            "storage": "memory",
            "fallback_storage": None,
        }

    def test_status(self, client, monitored_engine):
        _violate(monitored_engine, times=3)

        resp = client.get(
            "/v1/rate-limit/status",
            params={"identity": "203.0.113.4", "endpoint_class": "auth-login"},
            headers=HEADERS,
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["policy_name"] == "auth-login"
        assert (body["used"], body["remaining"], body["limit"]) == (3, 2, 5)

    def test_status_invalid_identity_is_400(self, client):
        resp = client.get(
            "/v1/rate-limit/status",
            params={"identity": "bad\tid", "endpoint_class": "auth-login"},
            headers=HEADERS,
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_identity"

    def test_status_unknown_endpoint_class_is_500(self, client):
        resp = client.get(
            "/v1/rate-limit/status",
            params={"identity": "u1", "endpoint_class": "billing"},
            headers=HEADERS,
        )

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "policy_not_found"

    def test_reset_unlocks_identity(self, client, monitored_engine):
        _violate(monitored_engine)

        resp = client.post(
            "/v1/rate-limit/reset",
            json={"identity": "203.0.113.4", "endpoint_class": "auth-login"},
            headers=HEADERS,
        )

        assert resp.status_code == 204
        assert monitored_engine.check("203.0.113.4", "auth-login").remaining == 4


def test_public_health_needs_no_key(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_openapi_documents_api_key_and_exempts_health(client):
    schema = client.get("/openapi.json").json()

    assert "ApiKeyAuth" in schema["components"]["securitySchemes"]
    assert schema["paths"]["/health"]["get"]["security"] == []
    assert "429" in schema["paths"]["/v1/rate-limit/health"]["get"]["responses"]
