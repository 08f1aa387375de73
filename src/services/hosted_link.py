"""Hosted-link authentication flow.

Creating a link, polling it, and fetching the extracted data once the user
has signed in on the externally hosted page. Two upstream paths exist:

- REST: ``POST /api/link/create``, ``GET /api/link/status/{id}``,
  ``POST /api/auth/{brand}`` on the getgather base URL.
- MCP: a brand tool answers with ``{link_id, url}`` instead of data and
  the ``poll_signin`` tool reports progress.

Both share ``poll_until_finished``, which caps every wait at
``max_attempts`` round-trips and swallows per-attempt failures so a
transient upstream hiccup does not abort a sign-in in progress.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit, urlunsplit

import httpx

from src.errors import AuthTimeoutError
from src.models import HostedLink, LinkState
from src.utils.redaction import sanitize_request_data

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 120
DEFAULT_POLL_INTERVAL = 1.0

PollOnce = Callable[[HostedLink], Awaitable[Any]]


async def poll_until_finished(
    link: HostedLink,
    poll_once: PollOnce,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    interval: float = DEFAULT_POLL_INTERVAL,
) -> HostedLink:
    """Poll a hosted link until it reports completion.

    Each call to ``poll_once`` is one round-trip returning the decoded
    poll payload. Exceptions from a round-trip are logged and count as a
    non-terminal attempt.

    Args:
        link: Link to poll; updated in place.
        poll_once: Coroutine performing one poll round-trip.
        max_attempts: Upper bound on round-trips.
        interval: Seconds to sleep between round-trips.

    Returns:
        The finished link.

    Raises:
        AuthTimeoutError: If the link is not finished after max_attempts;
            the link is marked abandoned.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            payload = await poll_once(link)
        except Exception as e:
            if link.state == LinkState.LINK_CREATED:
                link.transition(LinkState.POLLING)
            link.poll_attempts += 1
            logger.warning(
                "Poll attempt %d/%d for link %s failed: %s",
                attempt, max_attempts, link.link_id, e,
            )
        else:
            if link.record_poll(payload):
                logger.info(
                    "Hosted link %s finished after %d attempt(s)",
                    link.link_id, attempt,
                )
                return link
        if attempt < max_attempts:
            await asyncio.sleep(interval)

    link.abandon()
    raise AuthTimeoutError(link.link_id, max_attempts)


def rewrite_hosted_link_url(url: str, upstream_base: str, app_host: str) -> str:
    """Point an upstream hosted-link URL at this app's reverse proxy.

    URLs on the upstream host are rewritten to ``app_host`` keeping path and
    query; any other URL is returned unchanged.

    Args:
        url: Hosted link URL from the upstream service.
        upstream_base: getgather base URL.
        app_host: Public origin of this app (scheme://host[:port]).

    Returns:
        The possibly rewritten URL.
    """
    if not url or not upstream_base or not app_host:
        return url
    target = urlsplit(url)
    upstream = urlsplit(upstream_base)
    if (target.scheme, target.netloc) != (upstream.scheme, upstream.netloc):
        return url
    app = urlsplit(app_host.rstrip("/"))
    return urlunsplit((app.scheme, app.netloc, target.path, target.query, target.fragment))


class HostedLinkClient:
    """REST client for getgather's dedicated link and auth endpoints.

    Attributes:
        _base_url: getgather base URL without trailing slash.
        _api_key: Bearer token sent to the auth endpoint.
    """

    LINK_TIMEOUT = 30.0
    AUTH_TIMEOUT = 90.0

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: getgather base URL.
            api_key: Bearer token for ``/api/auth``.
            transport: Optional httpx transport (tests use MockTransport).
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=self._transport,
            headers={"accept": "application/json"},
        )

    async def create_link(self, brand_id: str) -> HostedLink:
        """Request a new hosted link for a brand.

        Args:
            brand_id: Brand identifier.

        Returns:
            HostedLink in the link_created state.

        Raises:
            httpx.HTTPError: On transport failure or non-2xx status.
        """
        async with self._client(self.LINK_TIMEOUT) as client:
            response = await client.post("/api/link/create", json={"brand_id": brand_id})
            response.raise_for_status()
            data = response.json()

        link = HostedLink(
            link_id=str(data["link_id"]),
            hosted_link_url=str(data.get("hosted_link_url") or data.get("url") or ""),
            brand_id=brand_id,
        )
        logger.info("Created hosted link %s for %s", link.link_id, brand_id)
        return link

    async def get_status(self, link_id: str) -> dict[str, Any]:
        """Fetch a link's status once.

        Args:
            link_id: Link to check.

        Returns:
            Decoded status payload (e.g. ``{"status": "completed", "profile_id": ...}``).

        Raises:
            httpx.HTTPError: On transport failure or non-2xx status.
        """
        async with self._client(self.LINK_TIMEOUT) as client:
            response = await client.get(f"/api/link/status/{link_id}")
            response.raise_for_status()
            return response.json()

    async def poll(self, link: HostedLink) -> dict[str, Any]:
        """One poll round-trip for ``poll_until_finished``."""
        return await self.get_status(link.link_id)

    async def extract(
        self,
        brand_id: str,
        profile_id: str,
        location: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Fetch extracted account data for a finished link's profile.

        Args:
            brand_id: Brand identifier.
            profile_id: Profile bound by the finished link.
            location: Optional client geolocation forwarded upstream.

        Returns:
            Decoded auth response (contains ``extract_result``).

        Raises:
            httpx.HTTPError: On transport failure or non-2xx status.
        """
        body: dict[str, Any] = {"profile_id": profile_id, "extract": True}
        if location:
            body["location"] = location
            body["forwarded_ip"] = location.get("ip")
        logger.info("Auth extract request %s: %s", brand_id, sanitize_request_data(body))

        async with self._client(self.AUTH_TIMEOUT) as client:
            response = await client.post(
                f"/api/auth/{brand_id}",
                json=body,
                headers=self._auth_headers(),
            )
            response.raise_for_status()
            return response.json()

    def _auth_headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"Authorization": f"Bearer {self._api_key}"}
