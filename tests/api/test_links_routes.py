"""Tests for the REST hosted-link and auth proxy routes."""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from src.api.main import app
from src.api.routes.links import get_link_client
from src.services.hosted_link import HostedLinkClient

TEST_GETGATHER_URL = "https://getgather.test"


class _Upstream:
    """Fake getgather REST API recording the requests it receives."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"error": "upstream detail"})
        path = request.url.path
        if path == "/api/link/create":
            return httpx.Response(200, json={
                "link_id": "L1", "hosted_link_url": f"{TEST_GETGATHER_URL}/link/L1",
            })
        if path.startswith("/api/link/status/"):
            return httpx.Response(200, json={"status": "completed", "profile_id": "p-1"})
        if path.startswith("/api/auth/"):
            return httpx.Response(200, json={"extract_result": [{"content": []}]})
        return httpx.Response(404)


@pytest.fixture
def upstream(client: TestClient) -> _Upstream:
    fake = _Upstream()
    link_client = HostedLinkClient(
        TEST_GETGATHER_URL, api_key="gg-key", transport=httpx.MockTransport(fake),
    )
    app.dependency_overrides[get_link_client] = lambda: link_client
    return fake


class TestCreateLink:

    def test_creates_and_rewrites_url(self, client: TestClient, upstream: _Upstream):
        response = client.post("/getgather/link/create", json={"brand_id": "Amazon"})

        assert response.status_code == 200
        assert response.json() == {
            "link_id": "L1", "hosted_link_url": "http://testserver/link/L1",
        }
        assert json.loads(upstream.requests[0].content) == {"brand_id": "amazon"}

    def test_unknown_brand(self, client: TestClient, upstream: _Upstream):
        response = client.post("/getgather/link/create", json={"brand_id": "nordstrom"})

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid brand name"}
        assert upstream.requests == []

    def test_upstream_failure_is_generic(self, client: TestClient, upstream: _Upstream):
        upstream.fail_with = 500

        response = client.post("/getgather/link/create", json={"brand_id": "amazon"})

        assert response.status_code == 502
        assert "upstream detail" not in response.text


class TestLinkStatus:

    def test_status(self, client: TestClient, upstream: _Upstream):
        response = client.get("/getgather/link/status/L1")

        assert response.json() == {
            "link_id": "L1", "status": "completed", "profile_id": "p-1", "auth_completed": True,
        }


class TestAuthProxy:

    def test_adds_bearer_and_location(self, client: TestClient, upstream: _Upstream):
        response = client.post(
            "/getgather/auth/amazon",
            json={"profile_id": "p-1"},
            headers={"X-Forwarded-For": "203.0.113.9"},
        )

        assert response.status_code == 200
        assert response.json() == {"extract_result": [{"content": []}]}
        request = upstream.requests[0]
        body = json.loads(request.content)
        assert request.headers["authorization"] == "Bearer gg-key"
        assert body["profile_id"] == "p-1"
        assert body["location"]["ip"] == "203.0.113.9"
        assert body["forwarded_ip"] == "203.0.113.9"

    def test_missing_profile_rejected(self, client: TestClient, upstream: _Upstream):
        response = client.post("/getgather/auth/amazon", json={})
        assert response.status_code == 422
