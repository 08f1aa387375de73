"""Session-scoped async MCP client for the getgather tool service.

One ``ExternalToolClient`` holds one streamable-HTTP connection to the
remote MCP server. Tool calls are retried: a transport failure triggers a
full reconnect before the next attempt, a retryable tool error (rate limit,
gateway errors) triggers an exponential backoff. Every attempt refreshes
``last_accessed`` so the client pool sees an actively retried session as
recently used even if the call ultimately fails.

Example:
    client = ExternalToolClient("https://getgather.example.com", client_ip="203.0.113.9")
    await client.connect()
    result = await client.invoke("amazon_get_purchase_history")
    await client.close()
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import TextContent

logger = logging.getLogger(__name__)

APP_HEADER = "x-getgather-custom-app"
APP_NAME = "data-portrait"

DEFAULT_IDLE_TIMEOUT = timedelta(hours=1)

# Upstream tools may block on slow remote scraping, so calls get minutes.
DEFAULT_CALL_TIMEOUT = timedelta(minutes=10)


class MCPConnectionError(ConnectionError):
    """Failed to open or re-open the MCP session.

    Attributes:
        url: The MCP endpoint that was dialled.
        reason: Description of why the connection failed.
    """

    def __init__(self, url: str, reason: str) -> None:
        """Initialize with endpoint and failure reason.

        Args:
            url: The MCP endpoint URL.
            reason: Why the connection failed.
        """
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to connect to MCP server '{url}': {reason}")


class ToolInvocationError(Exception):
    """Tool call failed after all attempts were used.

    Attributes:
        tool_name: Name of the MCP tool that failed.
        error_text: Text of the last failure.
        attempts: Number of attempts made.
    """

    def __init__(self, tool_name: str, error_text: str, attempts: int = 1) -> None:
        """Initialize with tool name, error text and attempt count.

        Args:
            tool_name: The MCP tool name.
            error_text: The last error text.
            attempts: How many attempts were made.
        """
        self.tool_name = tool_name
        self.error_text = error_text
        self.attempts = attempts
        super().__init__(
            f"MCP tool '{tool_name}' failed after {attempts} attempt(s): {error_text}"
        )


_DEFAULT_RETRYABLE_PATTERNS = [
    "429", "503", "502", "rate limit", "timeout", "connection",
]


def _default_is_retryable(error_text: str) -> bool:
    """Check if a tool error is retryable using default patterns.

    Args:
        error_text: The error text to check.

    Returns:
        True if the error matches a retryable pattern.
    """
    lower = error_text.lower()
    return any(p in lower for p in _DEFAULT_RETRYABLE_PATTERNS)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_mcp_headers(
    client_ip: str | None = None,
    location: dict[str, Any] | None = None,
    api_key: str | None = None,
) -> dict[str, str]:
    """Build outbound headers identifying the app and the end user's origin.

    Args:
        client_ip: Originating browser IP, forwarded upstream.
        location: Optional geolocation dict (city, state, country, postal_code).
        api_key: Optional bearer token for the tool service.

    Returns:
        Header dict for the MCP transport.
    """
    headers = {APP_HEADER: APP_NAME}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    if client_ip and client_ip != "unknown":
        headers["X-Forwarded-For"] = client_ip
    if location:
        for key in ("city", "state", "country", "postal_code"):
            value = location.get(key)
            if value:
                headers[f"x-location-{key.replace('_', '-')}"] = str(value)
    return headers


class ExternalToolClient:
    """One logical connection to the remote tool-calling service.

    Owned by ``MCPClientPool`` under a session key. Not tied to a brand:
    one client serves every brand for its session.

    Attributes:
        session_key: Browser session this client belongs to.
        client_ip: Originating client address used for upstream context.
        last_accessed: UTC timestamp of the most recent use.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session_key: str = "",
        client_ip: str | None = None,
        location: dict[str, Any] | None = None,
        api_key: str | None = None,
        idle_timeout: timedelta = DEFAULT_IDLE_TIMEOUT,
        call_timeout: timedelta = DEFAULT_CALL_TIMEOUT,
        base_delay: float = 0.5,
        is_retryable: Callable[[str], bool] | None = None,
    ) -> None:
        """Initialize the client without connecting.

        Args:
            base_url: Tool service base URL; the MCP endpoint is ``{base_url}/mcp``.
            session_key: Owning session identifier (for logging).
            client_ip: Originating client address.
            location: Optional geolocation context for outbound headers.
            api_key: Optional bearer token for the tool service.
            idle_timeout: Inactivity window after which ``is_expired`` is True.
            call_timeout: Read timeout applied to each tool call.
            base_delay: Base backoff in seconds for retryable tool errors.
            is_retryable: Optional classifier for tool error text.
        """
        self._url = f"{base_url.rstrip('/')}/mcp"
        self.session_key = session_key
        self.client_ip = client_ip
        self._headers = build_mcp_headers(client_ip, location, api_key)
        self._idle_timeout = idle_timeout
        self._call_timeout = call_timeout
        self._base_delay = base_delay
        self._is_retryable = is_retryable or _default_is_retryable
        self._session: ClientSession | None = None
        self._transport_context: Any = None
        self._session_context: Any = None
        self.last_accessed = _utcnow()

    @property
    def url(self) -> str:
        """MCP endpoint URL."""
        return self._url

    @property
    def is_connected(self) -> bool:
        """Whether the MCP session is currently open."""
        return self._session is not None

    @property
    def is_expired(self) -> bool:
        """True when idle for longer than the idle timeout."""
        return self.last_accessed < _utcnow() - self._idle_timeout

    def touch(self) -> None:
        """Mark the client as used now."""
        self.last_accessed = _utcnow()

    async def check_health(self) -> bool:
        """Lightweight health check via ``list_tools()``; never raises."""
        if self._session is None:
            return False
        try:
            await self._session.list_tools()
            return True
        except Exception:
            return False

    async def connect(self) -> None:
        """Open the MCP session if not already open.

        Raises:
            MCPConnectionError: If the endpoint is unreachable or the
                handshake fails.
        """
        if self._session is not None:
            return

        try:
            await self._cleanup()
            self._transport_context = streamablehttp_client(
                self._url, headers=self._headers,
            )
            read_stream, write_stream, _ = await self._transport_context.__aenter__()
            self._session_context = ClientSession(read_stream, write_stream)
            self._session = await self._session_context.__aenter__()
            await self._session.initialize()
            logger.info(
                "MCP client connected to '%s' for session %s",
                self._url, self.session_key,
            )
        except Exception as e:
            await self._cleanup()
            raise MCPConnectionError(url=self._url, reason=str(e)) from e

    async def reconnect(self) -> None:
        """Drop the current session (ignoring close errors) and open a new one.

        Raises:
            MCPConnectionError: If the fresh connection cannot be opened.
        """
        self.touch()
        await self._cleanup()
        await self.connect()

    async def close(self) -> None:
        """Release the connection. Safe to call repeatedly."""
        await self._cleanup()

    async def __aenter__(self) -> "ExternalToolClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _cleanup(self) -> None:
        """Exit session and transport contexts, swallowing close errors."""
        if self._session_context is not None:
            try:
                await self._session_context.__aexit__(None, None, None)
            except Exception:
                pass
            self._session_context = None
        self._session = None

        if self._transport_context is not None:
            try:
                await self._transport_context.__aexit__(None, None, None)
            except Exception:
                pass
            self._transport_context = None

    async def invoke(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        max_retries: int = 3,
    ) -> dict[str, Any]:
        """Call a named remote tool with reconnect-and-retry.

        Args:
            name: MCP tool name.
            arguments: Tool arguments.
            max_retries: Additional attempts after the first one.

        Returns:
            The tool's structured content, or ``{"content": [{"text": ...}]}``
            when the tool only returned text.

        Raises:
            ToolInvocationError: All attempts failed, or the tool reported a
                non-retryable error.
        """
        last_error = ""
        last_exc: BaseException | None = None
        attempts = 0

        for attempt in range(max_retries + 1):
            attempts = attempt + 1
            self.touch()
            try:
                if self._session is None:
                    await self.connect()
                result = await self._session.call_tool(
                    name, arguments, read_timeout_seconds=self._call_timeout,
                )
            except Exception as e:
                last_error = str(e) or type(e).__name__
                last_exc = e
                if attempt == max_retries:
                    break
                logger.warning(
                    "MCP tool '%s' failed (attempt %d/%d), reconnecting: %s",
                    name, attempts, max_retries + 1, last_error[:200],
                )
                try:
                    await self.reconnect()
                except MCPConnectionError as conn_err:
                    last_error = str(conn_err)
                    last_exc = conn_err
                continue

            if not getattr(result, "isError", False):
                return self._parse_result(result)

            last_error = self._extract_text(result)
            last_exc = None
            if attempt < max_retries and self._is_retryable(last_error):
                delay = self._base_delay * (2 ** attempt)
                logger.warning(
                    "MCP tool '%s' returned retryable error (attempt %d/%d), "
                    "retrying in %.1fs: %s",
                    name, attempts, max_retries + 1, delay, last_error[:200],
                )
                await asyncio.sleep(delay)
                continue
            break

        raise ToolInvocationError(
            tool_name=name, error_text=last_error, attempts=attempts,
        ) from last_exc

    def _parse_result(self, result: Any) -> dict[str, Any]:
        """Turn a CallToolResult into a plain dict.

        Args:
            result: CallToolResult from the MCP session.

        Returns:
            Structured content when present, else the text content blocks.
        """
        structured = getattr(result, "structuredContent", None)
        if isinstance(structured, dict):
            return structured

        texts = [
            {"text": item.text}
            for item in (result.content or [])
            if isinstance(item, TextContent)
        ]
        if len(texts) == 1:
            # Some tools return a single JSON object as text
            try:
                parsed = json.loads(texts[0]["text"])
            except (json.JSONDecodeError, TypeError):
                parsed = None
            if isinstance(parsed, dict):
                return parsed
        return {"content": texts}

    def _extract_text(self, result: Any) -> str:
        """Extract text from the first TextContent in a result.

        Args:
            result: CallToolResult from MCP session.

        Returns:
            Text string, or empty string if no TextContent found.
        """
        for item in result.content or []:
            if isinstance(item, TextContent):
                return item.text
        return ""
