"""Segment analytics over the HTTP tracking API.

Fire-and-forget: without a write key every call is a no-op, and delivery
failures are logged, never raised to the caller.
"""

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from src.utils.redaction import sanitize_request_data

logger = logging.getLogger(__name__)

SEGMENT_API_URL = "https://api.segment.io/v1"
SEGMENT_TIMEOUT_SECONDS = 10.0


class AnalyticsService:
    """Sends identify/track calls to Segment on behalf of a session."""

    def __init__(
        self,
        write_key: str = "",
        source: str = "data-portrait",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._write_key = write_key
        self._source = source
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self._write_key)

    async def _send(self, endpoint: str, payload: dict[str, Any]) -> bool:
        if not self.enabled:
            logger.debug("Segment write key not configured, dropping %s", endpoint)
            return False
        try:
            async with httpx.AsyncClient(
                base_url=SEGMENT_API_URL,
                timeout=SEGMENT_TIMEOUT_SECONDS,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    f"/{endpoint}", json=payload, auth=(self._write_key, ""),
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Analytics %s failed: %s", endpoint, e)
            return False
        return True

    async def identify(self, user_id: str, traits: dict[str, Any] | None = None) -> bool:
        """Associate traits with a user.

        A user id that looks like an email doubles as the email trait.

        Returns:
            True if Segment accepted the call.
        """
        if not user_id:
            return False
        final_traits = dict(traits or {})
        if not final_traits.get("email") and "@" in user_id:
            final_traits["email"] = user_id
        return await self._send("identify", {"userId": user_id, "traits": final_traits})

    async def track(
        self,
        user_id: str,
        event: str,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        """Record an event for a user.

        Returns:
            True if Segment accepted the call.
        """
        if not user_id or not event:
            return False
        final_properties = {
            **(properties or {}),
            "source": self._source,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        logger.debug(
            "Tracking %s for %s: %s",
            event, user_id, sanitize_request_data(final_properties),
        )
        return await self._send(
            "track", {"userId": user_id, "event": event, "properties": final_properties},
        )
