"""Purchase-history retrieval flow.

Orchestrates the session's External Tool Client, the hosted-link protocol
and the normalizer. A retrieval request ends in one of two legitimate
outcomes: the brand tool already had data (records are returned), or the
user must finish a hosted link first (link id and URL are returned and the
browser polls ``poll_link`` until done, then asks again).

Architecture:
    Route -> PurchaseHistoryService -> MCPClientPool -> ExternalToolClient -> getgather
"""

import asyncio
import logging
from typing import Any

from src.errors import UnknownBrandError, UpstreamShapeError
from src.models import (
    HostedLink,
    LinkPollResult,
    OrderDetails,
    PurchaseHistoryRecord,
    PurchaseHistoryResult,
)
from src.models.hosted_link import is_finished_payload
from src.services.brand_constants import POLL_SIGNIN_TOOL, BrandConfig, get_brand
from src.services.client_pool import MCPClientPool
from src.services.hosted_link import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_POLL_INTERVAL,
    poll_until_finished,
    rewrite_hosted_link_url,
)
from src.services.mcp_client import ExternalToolClient, MCPConnectionError, ToolInvocationError
from src.services.purchase_history_normalizer import (
    filter_unique_orders,
    normalize_order_details,
    normalize_purchase_history,
)

logger = logging.getLogger(__name__)

DEFAULT_DETAIL_CONCURRENCY = 4


class PurchaseHistoryService:
    """Retrieve normalized purchase history for a session and brand.

    Attributes:
        _pool: Session-keyed client registry.
        _max_retries: Retries per tool call.
        _detail_concurrency: Max in-flight per-order detail calls.
    """

    def __init__(
        self,
        pool: MCPClientPool,
        *,
        upstream_base: str = "",
        app_host: str = "",
        max_retries: int = 3,
        detail_concurrency: int = DEFAULT_DETAIL_CONCURRENCY,
        poll_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        """Initialize the service.

        Args:
            pool: Client pool to draw session clients from.
            upstream_base: getgather base URL, used for link URL rewriting.
            app_host: Public app origin; empty disables rewriting.
            max_retries: Retries per tool call.
            detail_concurrency: Bound on concurrent detail fetches.
            poll_max_attempts: Cap for ``wait_for_link``.
            poll_interval: Seconds between polls in ``wait_for_link``.
        """
        self._pool = pool
        self._upstream_base = upstream_base
        self._app_host = app_host
        self._max_retries = max_retries
        self._detail_concurrency = max(1, detail_concurrency)
        self._poll_max_attempts = poll_max_attempts
        self._poll_interval = poll_interval

    async def _client(
        self,
        session_key: str,
        client_ip: str | None,
        location: dict[str, Any] | None,
    ) -> ExternalToolClient:
        return await self._pool.get(session_key, client_ip=client_ip, location=location)

    def _link_from_payload(
        self, raw: dict[str, Any], brand: BrandConfig, app_host: str | None,
    ) -> HostedLink | None:
        link = HostedLink.from_tool_payload(raw, brand_id=brand.brand_id)
        if link is None:
            return None
        host = app_host or self._app_host
        link.hosted_link_url = rewrite_hosted_link_url(
            link.hosted_link_url, self._upstream_base, host,
        )
        return link

    def _resolve(
        self,
        raw: Any,
        brand: BrandConfig,
        tool_name: str,
        app_host: str | None,
    ) -> tuple[list[PurchaseHistoryRecord], HostedLink | None]:
        """Split a tool payload into deduplicated records and an optional link.

        The link is read before decoding so a sign-in response is recognized
        whatever extra keys it carries.
        """
        if not isinstance(raw, dict):
            raise UpstreamShapeError(
                f"'{tool_name}' returned {type(raw).__name__}, expected object"
            )
        link = self._link_from_payload(raw, brand, app_host)
        records = filter_unique_orders(normalize_purchase_history(brand, raw))
        return records, link

    async def get_purchase_history(
        self,
        session_key: str,
        brand_id: str,
        *,
        client_ip: str | None = None,
        location: dict[str, Any] | None = None,
        app_host: str | None = None,
    ) -> PurchaseHistoryResult:
        """Fetch a brand's purchase history or the link the user must finish first.

        Args:
            session_key: Browser session identifier.
            brand_id: Brand to fetch.
            client_ip: Originating client address.
            location: Optional geolocation context.
            app_host: Request-derived public origin for link rewriting.

        Returns:
            PurchaseHistoryResult with records, or with a link when sign-in
            is required.

        Raises:
            UnknownBrandError: Brand not supported.
            MCPConnectionError: Client could not connect.
            ToolInvocationError: Tool call failed after retries.
            UpstreamShapeError: Response matched no known shape.
        """
        brand = get_brand(brand_id)
        client = await self._client(session_key, client_ip, location)
        raw = await client.invoke(brand.history_tool, max_retries=self._max_retries)
        records, link = self._resolve(raw, brand, brand.history_tool, app_host)

        if link is not None and not records:
            logger.info(
                "Brand %s requires sign-in for session %s (link %s)",
                brand.brand_id, session_key, link.link_id,
            )
            return PurchaseHistoryResult(
                link_id=link.link_id, hosted_link_url=link.hosted_link_url,
            )

        if brand.detail_tool and records:
            records = await self._enrich_with_details(client, brand, records)

        logger.info(
            "Fetched %d %s record(s) for session %s",
            len(records), brand.brand_id, session_key,
        )
        return PurchaseHistoryResult(
            link_id=link.link_id if link else "",
            hosted_link_url=link.hosted_link_url if link else "",
            content=records,
        )

    async def search_purchase_history(
        self,
        session_key: str,
        keyword: str,
        *,
        brand_id: str = "amazon",
        client_ip: str | None = None,
        location: dict[str, Any] | None = None,
        app_host: str | None = None,
    ) -> PurchaseHistoryResult:
        """Search a brand's purchases by keyword.

        Ends like ``get_purchase_history``: matching records, or the hosted
        link to finish first.

        Raises:
            UnknownBrandError: Brand not supported or has no search tool.
            MCPConnectionError: Client could not connect.
            ToolInvocationError: Tool call failed after retries.
            UpstreamShapeError: Response matched no known shape.
        """
        brand = get_brand(brand_id)
        if not brand.search_tool:
            raise UnknownBrandError(brand_id)
        client = await self._client(session_key, client_ip, location)
        raw = await client.invoke(
            brand.search_tool, {"keyword": keyword}, max_retries=self._max_retries,
        )
        records, link = self._resolve(raw, brand, brand.search_tool, app_host)

        if link is not None and not records:
            logger.info(
                "Search on %s requires sign-in for session %s (link %s)",
                brand.brand_id, session_key, link.link_id,
            )
            return PurchaseHistoryResult(
                link_id=link.link_id, hosted_link_url=link.hosted_link_url,
            )

        logger.info(
            "Search %r matched %d %s record(s) for session %s",
            keyword, len(records), brand.brand_id, session_key,
        )
        return PurchaseHistoryResult(content=records)

    async def _fetch_details(
        self, client: ExternalToolClient, brand: BrandConfig, order_id: str,
    ) -> OrderDetails:
        raw = await client.invoke(
            brand.detail_tool or "",
            {"order_id": order_id},
            max_retries=self._max_retries,
        )
        return normalize_order_details(brand, order_id, raw)

    async def _enrich_with_details(
        self,
        client: ExternalToolClient,
        brand: BrandConfig,
        records: list[PurchaseHistoryRecord],
    ) -> list[PurchaseHistoryRecord]:
        """Fill product names and images from the brand's detail tool.

        Runs at most ``detail_concurrency`` calls at once. A failing order
        keeps the data it had before the detail call.
        """
        semaphore = asyncio.Semaphore(self._detail_concurrency)

        async def _enrich(record: PurchaseHistoryRecord) -> PurchaseHistoryRecord:
            if not record.order_id:
                return record
            async with semaphore:
                try:
                    details = await self._fetch_details(client, brand, record.order_id)
                except (ToolInvocationError, MCPConnectionError, UpstreamShapeError) as e:
                    logger.warning(
                        "Detail fetch for %s order %s failed, keeping summary: %s",
                        brand.brand_id, record.order_id, e,
                    )
                    return record
            update: dict[str, Any] = {}
            if details.product_names:
                update["product_names"] = details.product_names
            if details.image_urls:
                update["image_urls"] = details.image_urls
            return record.model_copy(update=update) if update else record

        return list(await asyncio.gather(*(_enrich(r) for r in records)))

    async def get_order_details(
        self,
        session_key: str,
        brand_id: str,
        order_id: str,
        *,
        client_ip: str | None = None,
        location: dict[str, Any] | None = None,
    ) -> OrderDetails:
        """Fetch product names and images for one order.

        Raises:
            UnknownBrandError: Brand not supported or has no detail tool.
            ToolInvocationError: Tool call failed after retries.
            UpstreamShapeError: Response matched no known shape.
        """
        brand = get_brand(brand_id)
        if not brand.detail_tool:
            raise UnknownBrandError(brand_id)
        client = await self._client(session_key, client_ip, location)
        return await self._fetch_details(client, brand, order_id)

    async def _poll_signin(self, client: ExternalToolClient, link_id: str) -> dict[str, Any]:
        return await client.invoke(
            POLL_SIGNIN_TOOL, {"link_id": link_id}, max_retries=self._max_retries,
        )

    async def poll_link(
        self,
        session_key: str,
        link_id: str,
        *,
        client_ip: str | None = None,
        location: dict[str, Any] | None = None,
    ) -> LinkPollResult:
        """Run one poll round-trip for a hosted link.

        Failures are logged and reported as not completed; the caller's
        loop decides whether to poll again.

        Args:
            session_key: Browser session identifier.
            link_id: Link being polled.
            client_ip: Originating client address.
            location: Optional geolocation context.

        Returns:
            LinkPollResult with ``auth_completed``.
        """
        try:
            client = await self._client(session_key, client_ip, location)
            payload = await self._poll_signin(client, link_id)
        except (ToolInvocationError, MCPConnectionError) as e:
            logger.warning("Poll for link %s failed: %s", link_id, e)
            return LinkPollResult(link_id=link_id, auth_completed=False)

        status = payload.get("status") if isinstance(payload, dict) else None
        return LinkPollResult(
            link_id=link_id,
            auth_completed=is_finished_payload(payload),
            status=status if isinstance(status, str) else None,
        )

    async def wait_for_link(
        self,
        session_key: str,
        link: HostedLink,
        *,
        client_ip: str | None = None,
        location: dict[str, Any] | None = None,
    ) -> HostedLink:
        """Poll ``poll_signin`` until the link finishes or the cap is hit.

        Raises:
            AuthTimeoutError: Link not finished within the polling cap.
        """
        async def _poll_once(current: HostedLink) -> dict[str, Any]:
            client = await self._client(session_key, client_ip, location)
            return await self._poll_signin(client, current.link_id)

        return await poll_until_finished(
            link,
            _poll_once,
            max_attempts=self._poll_max_attempts,
            interval=self._poll_interval,
        )
