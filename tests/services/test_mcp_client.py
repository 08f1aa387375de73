"""Tests for the session-scoped ExternalToolClient."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.services.mcp_client import (
    APP_HEADER,
    ExternalToolClient,
    MCPConnectionError,
    ToolInvocationError,
    _default_is_retryable,
    build_mcp_headers,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_text_content(text: str) -> MagicMock:
    """Create a mock TextContent with the given text."""
    from mcp.types import TextContent
    content = MagicMock(spec=TextContent)
    content.text = text
    # Make isinstance check work
    content.__class__ = TextContent
    return content


def _make_call_result(
    text: str = "", is_error: bool = False, structured: dict | None = None,
) -> MagicMock:
    """Create a mock CallToolResult."""
    result = MagicMock()
    result.isError = is_error
    result.content = [_make_text_content(text)] if text else []
    result.structuredContent = structured
    return result


def _make_client(**kwargs) -> ExternalToolClient:
    """Create a client with an already-open mock session."""
    kwargs.setdefault("base_delay", 0)
    client = ExternalToolClient("https://getgather.test", session_key="sess-1", **kwargs)
    client._session = AsyncMock()
    return client


def _mock_transport(mock_streamable, mock_session_cls, session):
    transport_ctx = AsyncMock()
    transport_ctx.__aenter__ = AsyncMock(return_value=(MagicMock(), MagicMock(), MagicMock()))
    transport_ctx.__aexit__ = AsyncMock(return_value=None)
    mock_streamable.return_value = transport_ctx

    session_ctx = AsyncMock()
    session_ctx.__aenter__ = AsyncMock(return_value=session)
    session_ctx.__aexit__ = AsyncMock(return_value=None)
    mock_session_cls.return_value = session_ctx
    return transport_ctx, session_ctx


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------


class TestBuildHeaders:
    """Outbound header construction."""

    def test_app_header_always_present(self):
        headers = build_mcp_headers()
        assert headers == {APP_HEADER: "data-portrait"}

    def test_forwarded_ip_and_location(self):
        headers = build_mcp_headers(
            "203.0.113.9",
            {"ip": "203.0.113.9", "city": "Austin", "state": "Texas",
             "country": "US", "postal_code": "78701"},
        )
        assert headers["X-Forwarded-For"] == "203.0.113.9"
        assert headers["x-location-city"] == "Austin"
        assert headers["x-location-state"] == "Texas"
        assert headers["x-location-country"] == "US"
        assert headers["x-location-postal-code"] == "78701"

    def test_unknown_ip_and_empty_location_fields_skipped(self):
        headers = build_mcp_headers("unknown", {"city": None, "country": ""})
        assert "X-Forwarded-For" not in headers
        assert not any(k.startswith("x-location-") for k in headers)

    def test_api_key_becomes_bearer(self):
        headers = build_mcp_headers(api_key="secret")
        assert headers["Authorization"] == "Bearer secret"


# ---------------------------------------------------------------------------
# Lifecycle tests
# ---------------------------------------------------------------------------


class TestLifecycle:
    """Connection lifecycle."""

    def test_url_appends_mcp_path(self):
        client = ExternalToolClient("https://getgather.test/")
        assert client.url == "https://getgather.test/mcp"

    @pytest.mark.asyncio
    async def test_connect_initializes_session(self):
        """connect() opens transport and session and runs the handshake."""
        session = AsyncMock()
        with patch("src.services.mcp_client.streamablehttp_client") as mock_streamable, \
             patch("src.services.mcp_client.ClientSession") as MockSession:
            _mock_transport(mock_streamable, MockSession, session)
            client = ExternalToolClient("https://getgather.test", client_ip="198.51.100.7")
            await client.connect()

            session.initialize.assert_awaited_once()
            assert client.is_connected
            _, kwargs = mock_streamable.call_args
            assert kwargs["headers"]["X-Forwarded-For"] == "198.51.100.7"

    @pytest.mark.asyncio
    async def test_connect_is_noop_when_connected(self):
        client = _make_client()
        with patch("src.services.mcp_client.streamablehttp_client") as mock_streamable:
            await client.connect()
        mock_streamable.assert_not_called()

    @pytest.mark.asyncio
    async def test_connect_failure_raises_connection_error(self):
        with patch("src.services.mcp_client.streamablehttp_client") as mock_streamable:
            transport_ctx = AsyncMock()
            transport_ctx.__aenter__ = AsyncMock(side_effect=OSError("refused"))
            transport_ctx.__aexit__ = AsyncMock(return_value=None)
            mock_streamable.return_value = transport_ctx

            client = ExternalToolClient("https://getgather.test")
            with pytest.raises(MCPConnectionError) as exc_info:
                await client.connect()

        assert isinstance(exc_info.value, ConnectionError)
        assert "refused" in exc_info.value.reason
        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_ignores_errors(self):
        session = AsyncMock()
        with patch("src.services.mcp_client.streamablehttp_client") as mock_streamable, \
             patch("src.services.mcp_client.ClientSession") as MockSession:
            _, session_ctx = _mock_transport(mock_streamable, MockSession, session)
            session_ctx.__aexit__ = AsyncMock(side_effect=RuntimeError("boom"))

            async with ExternalToolClient("https://getgather.test") as client:
                assert client.is_connected
            assert not client.is_connected
            await client.close()

    @pytest.mark.asyncio
    async def test_check_health(self):
        client = _make_client()
        assert await client.check_health() is True
        client._session.list_tools = AsyncMock(side_effect=RuntimeError("down"))
        assert await client.check_health() is False
        await client.close()
        assert await client.check_health() is False


class TestExpiry:
    """Idle expiry bookkeeping."""

    def test_fresh_client_not_expired(self):
        assert not ExternalToolClient("https://getgather.test").is_expired

    def test_idle_client_expired(self):
        client = ExternalToolClient("https://getgather.test", idle_timeout=timedelta(minutes=5))
        client.last_accessed = datetime.now(timezone.utc) - timedelta(minutes=6)
        assert client.is_expired

    def test_touch_resets_expiry(self):
        client = ExternalToolClient("https://getgather.test", idle_timeout=timedelta(minutes=5))
        client.last_accessed = datetime.now(timezone.utc) - timedelta(minutes=6)
        client.touch()
        assert not client.is_expired


# ---------------------------------------------------------------------------
# invoke
# ---------------------------------------------------------------------------


class TestInvoke:
    """Tool calls with reconnect-and-retry."""

    @pytest.mark.asyncio
    async def test_returns_structured_content(self):
        client = _make_client()
        client._session.call_tool = AsyncMock(
            return_value=_make_call_result(structured={"purchases": []}),
        )
        assert await client.invoke("amazon_get_purchase_history") == {"purchases": []}

    @pytest.mark.asyncio
    async def test_single_json_object_text_is_parsed(self):
        client = _make_client()
        client._session.call_tool = AsyncMock(
            return_value=_make_call_result(json.dumps({"link_id": "L1", "url": "u"})),
        )
        assert await client.invoke("goodreads_get_book_list") == {"link_id": "L1", "url": "u"}

    @pytest.mark.asyncio
    async def test_non_object_text_wrapped_as_content(self):
        client = _make_client()
        client._session.call_tool = AsyncMock(return_value=_make_call_result("[1, 2]"))
        assert await client.invoke("t") == {"content": [{"text": "[1, 2]"}]}

    @pytest.mark.asyncio
    async def test_passes_arguments_and_read_timeout(self):
        client = _make_client(call_timeout=timedelta(minutes=10))
        client._session.call_tool = AsyncMock(return_value=_make_call_result(structured={}))
        await client.invoke("poll_signin", {"link_id": "L1"})
        client._session.call_tool.assert_awaited_once_with(
            "poll_signin", {"link_id": "L1"}, read_timeout_seconds=timedelta(minutes=10),
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failures", [1, 2, 3])
    async def test_k_transport_failures_then_success(self, failures):
        """k transport failures then success takes k+1 attempts with k reconnects."""
        client = _make_client()
        client.reconnect = AsyncMock()
        client._session.call_tool = AsyncMock(
            side_effect=[RuntimeError("stream closed")] * failures
            + [_make_call_result(structured={"ok": True})],
        )

        result = await client.invoke("t", max_retries=3)

        assert result == {"ok": True}
        assert client._session.call_tool.await_count == failures + 1
        assert client.reconnect.await_count == failures

    @pytest.mark.asyncio
    async def test_exhaustion_raises_and_updates_last_accessed(self):
        client = _make_client()
        client.reconnect = AsyncMock()
        client._session.call_tool = AsyncMock(side_effect=RuntimeError("stream closed"))
        stale = datetime.now(timezone.utc) - timedelta(hours=2)
        client.last_accessed = stale

        with pytest.raises(ToolInvocationError) as exc_info:
            await client.invoke("amazon_get_purchase_history", max_retries=2)

        assert exc_info.value.attempts == 3
        assert exc_info.value.tool_name == "amazon_get_purchase_history"
        assert "stream closed" in exc_info.value.error_text
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert client._session.call_tool.await_count == 3
        assert client.last_accessed > stale
        assert not client.is_expired

    @pytest.mark.asyncio
    async def test_reconnect_failure_counts_as_attempt(self):
        client = _make_client()
        client.reconnect = AsyncMock(
            side_effect=MCPConnectionError("https://getgather.test/mcp", "refused"),
        )
        client._session.call_tool = AsyncMock(side_effect=RuntimeError("stream closed"))

        with pytest.raises(ToolInvocationError) as exc_info:
            await client.invoke("t", max_retries=1)

        assert exc_info.value.attempts == 2

    @pytest.mark.asyncio
    async def test_retryable_tool_error_is_retried(self):
        client = _make_client()
        client._session.call_tool = AsyncMock(side_effect=[
            _make_call_result("429 rate limit exceeded", is_error=True),
            _make_call_result(structured={"ok": True}),
        ])
        assert await client.invoke("t") == {"ok": True}
        assert client._session.call_tool.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_tool_error_fails_immediately(self):
        client = _make_client()
        client._session.call_tool = AsyncMock(
            return_value=_make_call_result("Unknown tool: nope", is_error=True),
        )
        with pytest.raises(ToolInvocationError) as exc_info:
            await client.invoke("nope", max_retries=3)

        assert exc_info.value.attempts == 1
        assert exc_info.value.error_text == "Unknown tool: nope"
        assert client._session.call_tool.await_count == 1

    @pytest.mark.asyncio
    async def test_connects_lazily(self):
        client = ExternalToolClient("https://getgather.test")

        async def _connect():
            client._session = AsyncMock()
            client._session.call_tool = AsyncMock(
                return_value=_make_call_result(structured={"ok": True}),
            )

        client.connect = AsyncMock(side_effect=_connect)
        assert await client.invoke("t") == {"ok": True}
        client.connect.assert_awaited_once()


class TestRetryablePatterns:
    """Default retryable error classification."""

    @pytest.mark.parametrize("text", [
        "HTTP 429 Too Many Requests", "502 Bad Gateway", "503 unavailable",
        "Rate limit hit", "read timeout", "Connection reset",
    ])
    def test_retryable(self, text):
        assert _default_is_retryable(text)

    @pytest.mark.parametrize("text", ["Invalid arguments", "Unknown tool", ""])
    def test_not_retryable(self, text):
        assert not _default_is_retryable(text)
