"""
Integration tests for the Gateway service.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from service_gateway.app.adapters.auth_client import AuthClient
from service_gateway.app.adapters.upstream_client import UpstreamClient
from service_gateway.app.main import GatewayService
from service_gateway.app.ratelimit.store import InMemoryCounterStore
from shared.config import get_config
from shared.errors import StoreUnavailableError
from shared.test_helpers import StubAuthClient, bearer, test_data_factory

FREE, PRO, PREMIUM, ADMIN = test_data_factory.create_test_users()


def content_service(request: httpx.Request) -> httpx.Response:
    """Stand-in for the song/chords content service."""
    if request.url.path == "/api/auth/session":
        return httpx.Response(200, content=b"ok", headers=[
            ("Set-Cookie", "session=abc; Path=/; HttpOnly"),
            ("Set-Cookie", "theme=dark; Path=/"),
        ])
    return httpx.Response(
        200,
        json={
            "path": request.url.path,
            "query": request.url.query.decode(),
            "authorization": request.headers.get("authorization"),
        },
    )


class UnavailableStore:
    """Counter store whose every operation fails."""

    def __init__(self):
        self.calls = 0

    async def _fail(self, *args, **kwargs):
        self.calls += 1
        raise StoreUnavailableError("exists", "Connection refused")

    increment = exists = ttl = set = get = delete = _fail

    async def ping(self):
        return False

    async def close(self):
        return None


class ClosingCounterStore(InMemoryCounterStore):
    """In-memory store recording whether it was closed."""

    def __init__(self):
        super().__init__()
        self.closed = False

    async def close(self):
        self.closed = True
        await super().close()


def build_service(store=None, upstream=True, auth_client=None, **overrides):
    config = get_config(
        "gateway",
        8000,
        env="test",
        rate_limit_store="memory",
        rate_limits_file=None,
        upstream_url=None,
        trusted_proxy_header="X-Forwarded-For",
        **overrides,
    )
    upstream_client = None
    if upstream:
        upstream_client = UpstreamClient("http://content.test", transport=httpx.MockTransport(content_service))
    return GatewayService(
        config,
        store=store or InMemoryCounterStore(),
        auth_client=auth_client or StubAuthClient(),
        upstream_client=upstream_client,
    )


@pytest.fixture
def service():
    return build_service()


@pytest.fixture
def client(service):
    with TestClient(service.app) as test_client:
        yield test_client


class TestGatewayRateLimiting:
    """End-to-end rate limiting through the gateway."""

    def test_allowed_request_headers(self, client):
        """Test allowed requests are proxied with rate limit headers."""
        response = client.get("/api/songs/12?transpose=2")

        assert response.status_code == 200
        assert response.json()["path"] == "/api/songs/12"
        assert response.json()["query"] == "transpose=2"
        assert response.headers["X-RateLimit-Limit"] == "30"
        assert response.headers["X-RateLimit-Remaining"] == "29"
        assert response.headers["X-RateLimit-Reset"] == "60"
        assert "X-Request-ID" in response.headers

    def test_request_id_echoed(self, client):
        response = client.get("/api/songs", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_rejection_and_block(self, client):
        """Test going over budget returns 429 and blocks the subject."""
        for i in range(15):
            response = client.post("/api/auth/login", json={"email": "a@songbook.test"})
            assert response.status_code == 200
            assert response.headers["X-RateLimit-Remaining"] == str(14 - i)

        rejected = client.post("/api/auth/login")

        assert rejected.status_code == 429
        body = rejected.json()
        assert body["statusCode"] == 429
        assert body["message"] == "Too many requests, please try again later."
        assert 0 < body["retryAfter"] <= 60
        assert rejected.headers["Retry-After"] == str(body["retryAfter"])
        assert rejected.headers["X-RateLimit-Limit"] == "15"
        assert rejected.headers["X-RateLimit-Remaining"] == "0"
        assert "ip:" not in rejected.text
        assert "ratelimit" not in rejected.text

        blocked = client.post("/api/auth/login")
        assert blocked.status_code == 429
        assert blocked.json()["retryAfter"] == 60

    def test_categories_have_separate_budgets(self, client):
        for _ in range(16):
            client.post("/api/auth/login")

        response = client.get("/api/songs")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "29"

    def test_tiers_from_identity(self, client):
        """Test tier budgets follow the verified identity."""
        premium = client.get("/api/songs", headers=bearer(PREMIUM))
        pro = client.get("/api/songs", headers=bearer(PRO))
        free = client.get("/api/songs", headers=bearer(FREE))
        admin = client.get("/api/admin/users", headers=bearer(ADMIN))

        assert premium.headers["X-RateLimit-Limit"] == "240"
        assert pro.headers["X-RateLimit-Limit"] == "120"
        assert free.headers["X-RateLimit-Limit"] == "60"
        assert admin.headers["X-RateLimit-Limit"] == "300"
        assert premium.json()["authorization"] == "Bearer token-premium"

    def test_unknown_token_is_anonymous(self, client):
        response = client.get("/api/songs", headers={"Authorization": "Bearer forged"})

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "30"

    def test_forwarded_addresses_counted_separately(self, client):
        """Test each forwarded client address gets its own budget."""
        first = client.get("/api/songs", headers={"X-Forwarded-For": "203.0.113.7"})
        second = client.get("/api/songs", headers={"X-Forwarded-For": "198.51.100.4, 10.0.0.1"})
        again = client.get("/api/songs", headers={"X-Forwarded-For": "203.0.113.7"})

        assert first.headers["X-RateLimit-Remaining"] == "29"
        assert second.headers["X-RateLimit-Remaining"] == "29"
        assert again.headers["X-RateLimit-Remaining"] == "28"

    def test_exempt_paths_have_no_headers(self, client):
        """Test health and metrics are never rate limited."""
        for _ in range(40):
            health = client.get("/health")
            assert health.status_code == 200

        assert "X-RateLimit-Limit" not in health.headers
        assert health.json()["dependencies"] == {"store": "ok"}
        assert "X-RateLimit-Limit" not in client.get("/ping").headers

    def test_metrics_record_decisions(self, client):
        client.get("/api/songs")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "rate_limit_decisions_total" in response.text
        assert 'outcome="allowed"' in response.text


class TestGatewayFailOpen:
    """Behaviour when the counter store is unavailable."""

    def test_store_outage_fails_open(self):
        """Test requests proceed without headers when the store is down."""
        store = UnavailableStore()
        service = build_service(store=store)

        with TestClient(service.app) as client:
            for _ in range(50):
                response = client.post("/api/auth/login")
                assert response.status_code == 200
                assert "X-RateLimit-Limit" not in response.headers

            health = client.get("/health")

        assert store.calls == 50
        assert health.json()["dependencies"] == {"store": "error"}

    def test_rate_limiting_disabled(self):
        service = build_service(rate_limit_enabled=False)

        with TestClient(service.app) as client:
            for _ in range(20):
                response = client.post("/api/auth/login")
                assert response.status_code == 200
                assert "X-RateLimit-Limit" not in response.headers


class TestGatewayRoutes:
    """Gateway-owned routes."""

    def test_status_does_not_consume(self, client):
        """Test the status endpoint reports usage for another category."""
        for _ in range(3):
            client.get("/api/songs")

        response = client.get("/api/rate-limit/status", params={"path": "/api/songs/42"})

        assert response.status_code == 200
        assert response.json() == {
            "tier": "anonymous",
            "category": "/api/songs",
            "limit": 30,
            "used": 3,
            "remaining": 27,
            "reset_in_seconds": 60,
            "blocked": False,
        }
        assert client.get("/api/songs").headers["X-RateLimit-Remaining"] == "26"

    def test_status_reports_block(self, client):
        for _ in range(16):
            client.post("/api/auth/login")

        status = client.get("/api/rate-limit/status", params={"path": "/api/auth"}).json()

        assert status["blocked"] is True
        assert status["remaining"] == 0
        assert status["used"] == 16

    def test_admin_reset(self, client):
        """Test admins can lift a block."""
        for _ in range(16):
            client.post("/api/auth/login")
        assert client.post("/api/auth/login").status_code == 429

        response = client.delete(
            "/api/admin/rate-limits",
            params={"subject": "ip:testclient", "path": "/api/auth/login"},
            headers=bearer(ADMIN),
        )

        assert response.status_code == 200
        assert response.json() == {"subject": "ip:testclient", "category": "/api/auth", "removed": 2}
        allowed = client.post("/api/auth/login")
        assert allowed.status_code == 200
        assert allowed.headers["X-RateLimit-Remaining"] == "14"

    def test_reset_requires_admin(self, client):
        forbidden = client.delete(
            "/api/admin/rate-limits", params={"subject": "ip:testclient"}, headers=bearer(PREMIUM)
        )
        anonymous = client.delete("/api/admin/rate-limits", params={"subject": "ip:testclient"})

        assert forbidden.status_code == 403
        assert forbidden.json()["code"] == "AUTHORIZATION_ERROR"
        assert anonymous.status_code == 401
        assert anonymous.json()["code"] == "AUTHENTICATION_ERROR"

    def test_no_upstream_configured(self):
        service = build_service(upstream=False)

        with TestClient(service.app) as client:
            response = client.get("/api/songs")

        assert response.status_code == 502
        assert response.json()["code"] == "EXTERNAL_SERVICE_ERROR"

    def test_repeated_upstream_headers_preserved(self, client):
        response = client.post("/api/auth/session")

        assert response.status_code == 200
        assert response.headers.get_list("set-cookie") == [
            "session=abc; Path=/; HttpOnly",
            "theme=dark; Path=/",
        ]
        assert response.headers["X-RateLimit-Limit"] == "15"

    def test_metrics_use_route_templates(self, client):
        """Test concrete song ids do not become metric label values."""
        for song_id in range(20):
            client.get(f"/api/songs/{song_id}")
        client.get("/not-a-route")

        text = client.get("/metrics").text

        assert 'endpoint="/api/{path:path}"' in text
        assert 'endpoint="unmatched"' in text
        assert "/api/songs/7" not in text

    def test_shutdown_releases_store_and_upstream(self):
        store = ClosingCounterStore()
        service = build_service(store=store)

        with TestClient(service.app) as client:
            client.get("/api/songs")
            assert store.closed is False

        assert store.closed is True
        assert service.upstream_client._client.is_closed


class TestIdentityProviderFailures:
    """Broken identity provider answers leave callers anonymous."""

    @pytest.mark.parametrize("answer", [
        httpx.Response(200, text="<html>oops</html>"),
        httpx.Response(200, json=["valid"]),
        httpx.Response(200, json={"valid": True, "user_info": "user-123"}),
        httpx.Response(503, text="maintenance"),
    ])
    def test_request_continues_anonymously(self, answer):
        auth_client = AuthClient(
            "http://auth.test",
            transport=httpx.MockTransport(lambda request: answer),
        )
        service = build_service(auth_client=auth_client)

        with TestClient(service.app) as client:
            response = client.get("/api/rate-limit/status", headers={"Authorization": "Bearer t"})

        assert response.status_code == 200
        assert response.json()["tier"] == "anonymous"
        assert response.headers["X-RateLimit-Limit"] == "30"
