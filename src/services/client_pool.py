"""Per-session registry of External Tool Clients.

Maps browser session keys to live ``ExternalToolClient`` instances.
Clients are created lazily on first use, reused afterwards, and evicted by
a background sweep once idle past their timeout.

Concurrent first requests for the same session share one in-flight
creation task, so a session never ends up with two clients. Unrelated
sessions are never serialized behind each other.

Safe for single-process usage (FastAPI's async loop). Not designed for
multi-process deployment.

Example:
    pool = MCPClientPool(lambda key, ip, loc: ExternalToolClient(url, session_key=key, client_ip=ip))
    pool.start()
    client = await pool.get("sess-1", client_ip="203.0.113.9")
    await pool.stop()
"""

import asyncio
import logging
from typing import Any, Callable

from src.services.mcp_client import ExternalToolClient

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 10 * 60

ClientFactory = Callable[[str, str | None, dict[str, Any] | None], ExternalToolClient]


class MCPClientPool:
    """Registry of External Tool Clients keyed by session.

    Attributes:
        _clients: Dict of session_key -> connected ExternalToolClient.
        _pending: Dict of session_key -> in-flight creation task.
        _sweep_interval: Seconds between background eviction sweeps.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        """Initialize an empty pool.

        Args:
            client_factory: Builds an unconnected client from
                (session_key, client_ip, location).
            sweep_interval: Seconds between eviction sweeps.
        """
        self._client_factory = client_factory
        self._sweep_interval = sweep_interval
        self._clients: dict[str, ExternalToolClient] = {}
        self._pending: dict[str, asyncio.Task[ExternalToolClient]] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, session_key: object) -> bool:
        return session_key in self._clients

    def session_keys(self) -> list[str]:
        """List session keys with a live client."""
        return list(self._clients.keys())

    async def count_healthy(self) -> int:
        """Health-check every connected client concurrently.

        Returns:
            Number of connected clients whose session answered.
        """
        connected = [c for c in list(self._clients.values()) if c.is_connected]
        results = await asyncio.gather(*(c.check_health() for c in connected))
        return sum(1 for ok in results if ok)

    async def get(
        self,
        session_key: str,
        client_ip: str | None = None,
        location: dict[str, Any] | None = None,
    ) -> ExternalToolClient:
        """Return the session's client, creating and connecting it if needed.

        Args:
            session_key: Opaque browser session identifier.
            client_ip: Originating client address for a new client.
            location: Optional geolocation context for a new client.

        Returns:
            A connected ExternalToolClient owned by this pool.

        Raises:
            MCPConnectionError: If a new client could not connect. Nothing is
                stored, so the next call tries again.
        """
        client = self._clients.get(session_key)
        if client is not None:
            client.touch()
            return client

        task = self._pending.get(session_key)
        if task is None:
            task = asyncio.create_task(
                self._create(session_key, client_ip, location),
                name=f"mcp-client-create:{session_key}",
            )
            self._pending[session_key] = task
        # Shield so one cancelled waiter does not abort creation for the others
        return await asyncio.shield(task)

    async def _create(
        self,
        session_key: str,
        client_ip: str | None,
        location: dict[str, Any] | None,
    ) -> ExternalToolClient:
        try:
            client = self._client_factory(session_key, client_ip, location)
            await client.connect()
            self._clients[session_key] = client
            logger.info(
                "Created MCP client for session %s (pool size %d)",
                session_key, len(self._clients),
            )
            return client
        finally:
            self._pending.pop(session_key, None)

    async def remove(self, session_key: str) -> bool:
        """Close and forget a session's client. Idempotent.

        Args:
            session_key: Session whose client should be dropped.

        Returns:
            True if a client was removed.
        """
        client = self._clients.pop(session_key, None)
        if client is None:
            return False
        await self._close_quietly(session_key, client)
        return True

    async def sweep_expired(self) -> int:
        """Close and remove every expired client.

        Entries are removed from the map before closing, so each expired
        client is closed exactly once even if sweeps overlap.

        Returns:
            Number of clients evicted.
        """
        expired = [
            (key, client)
            for key, client in list(self._clients.items())
            if client.is_expired
        ]
        evicted = 0
        for key, client in expired:
            if self._clients.get(key) is not client:
                continue
            del self._clients[key]
            await self._close_quietly(key, client)
            evicted += 1
        if evicted:
            logger.info(
                "Evicted %d idle MCP client(s); %d remain",
                evicted, len(self._clients),
            )
        return evicted

    async def _close_quietly(self, session_key: str, client: ExternalToolClient) -> None:
        try:
            await client.close()
        except Exception as e:
            logger.warning("Error closing MCP client for session %s: %s", session_key, e)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep_expired()
            except Exception:
                logger.exception("MCP client sweep failed")

    def start(self) -> None:
        """Start the background eviction sweep (no-op if already running)."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(
            self._sweep_loop(), name="mcp-client-sweep",
        )

    async def stop(self) -> None:
        """Cancel the sweep task and close every client."""
        task = self._sweep_task
        self._sweep_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.close_all()

    async def close_all(self) -> None:
        """Close and remove all clients."""
        clients = list(self._clients.items())
        self._clients.clear()
        for key, client in clients:
            await self._close_quietly(key, client)
