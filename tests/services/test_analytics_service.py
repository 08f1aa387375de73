"""Tests for Segment analytics delivery."""

import json

import httpx
import pytest

from src.services.analytics_service import AnalyticsService


def _service(handler, write_key: str = "wk") -> tuple[AnalyticsService, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    service = AnalyticsService(write_key, source="test-app", transport=httpx.MockTransport(_record))
    return service, requests


def _ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"success": True})


@pytest.mark.asyncio
async def test_track_adds_source_and_timestamp():
    service, requests = _service(_ok)

    assert await service.track("sess-1", "portrait_generated", {"model": "gemini"}) is True

    request = requests[0]
    body = json.loads(request.content)
    assert request.url == "https://api.segment.io/v1/track"
    assert request.headers["authorization"].startswith("Basic ")
    assert body["userId"] == "sess-1"
    assert body["event"] == "portrait_generated"
    assert body["properties"]["model"] == "gemini"
    assert body["properties"]["source"] == "test-app"
    assert "timestamp" in body["properties"]


@pytest.mark.asyncio
async def test_identify_uses_email_shaped_user_id():
    service, requests = _service(_ok)

    assert await service.identify("jane@example.com", {"plan": "free"}) is True

    body = json.loads(requests[0].content)
    assert requests[0].url.path == "/v1/identify"
    assert body["traits"] == {"plan": "free", "email": "jane@example.com"}


@pytest.mark.asyncio
async def test_identify_keeps_explicit_email():
    service, requests = _service(_ok)

    await service.identify("a@b.c", {"email": "real@example.com"})

    assert json.loads(requests[0].content)["traits"]["email"] == "real@example.com"


@pytest.mark.asyncio
async def test_disabled_without_write_key():
    service, requests = _service(_ok, write_key="")

    assert not service.enabled
    assert await service.track("sess-1", "evt") is False
    assert requests == []


@pytest.mark.asyncio
async def test_missing_user_or_event_dropped():
    service, requests = _service(_ok)

    assert await service.track("", "evt") is False
    assert await service.track("sess-1", "") is False
    assert await service.identify("") is False
    assert requests == []


@pytest.mark.asyncio
async def test_delivery_failure_returns_false():
    service, _ = _service(lambda request: httpx.Response(500))
    assert await service.track("sess-1", "evt") is False
