"""FastAPI routes for purchase-history retrieval over MCP.

The browser asks for a brand's history; the answer is either records or a
hosted link to finish first, after which it polls ``/mcp-poll/{link_id}``
and asks again.

Architecture:
    Frontend -> FastAPI -> PurchaseHistoryService -> MCPClientPool -> getgather MCP
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import (
    get_app_host,
    get_client_ip,
    get_location_dict,
    require_session_key,
)
from src.api.schemas import (
    ErrorResponse,
    McpPollResponse,
    OrderDetailsResponse,
    PurchaseHistoryResponse,
    PurchaseSearchRequest,
)
from src.services.gateway_provider import get_purchase_history_service
from src.services.purchase_history_service import PurchaseHistoryService

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["purchase-history"],
    responses={
        400: {"model": ErrorResponse, "description": "Invalid brand name"},
        502: {"model": ErrorResponse, "description": "Upstream tool service failure"},
    },
)


def get_history_service() -> PurchaseHistoryService:
    """Dependency to get the process-global PurchaseHistoryService."""
    return get_purchase_history_service()


@router.get("/purchase-history/{brand}", response_model=PurchaseHistoryResponse)
async def get_purchase_history(
    brand: str,
    request: Request,
    session_key: str = Depends(require_session_key),
    location: dict[str, Any] = Depends(get_location_dict),
    service: PurchaseHistoryService = Depends(get_history_service),
) -> PurchaseHistoryResponse:
    """Fetch a brand's purchase history for the current session.

    Args:
        brand: Brand identifier (amazon, wayfair, officedepot, goodreads).
        request: Incoming request, used for client IP and public host.
        session_key: Browser session id.
        location: Client geolocation context.
        service: Retrieval flow dependency.

    Returns:
        PurchaseHistoryResponse with records or a hosted link.

    Raises:
        UnknownBrandError: Unsupported brand (400).
        ToolInvocationError: Tool call failed after retries (502).
        UpstreamShapeError: Unrecognized tool response (502).
    """
    result = await service.get_purchase_history(
        session_key,
        brand,
        client_ip=get_client_ip(request),
        location=location,
        app_host=get_app_host(request),
    )
    return PurchaseHistoryResponse(
        link_id=result.link_id,
        hosted_link_url=result.hosted_link_url,
        content=result.content,
    )


@router.post("/search-purchase-history", response_model=PurchaseHistoryResponse)
async def search_purchase_history(
    body: PurchaseSearchRequest,
    request: Request,
    session_key: str = Depends(require_session_key),
    location: dict[str, Any] = Depends(get_location_dict),
    service: PurchaseHistoryService = Depends(get_history_service),
) -> PurchaseHistoryResponse:
    """Search purchases by keyword; answers with records or a hosted link."""
    result = await service.search_purchase_history(
        session_key,
        body.keyword,
        brand_id=body.brand,
        client_ip=get_client_ip(request),
        location=location,
        app_host=get_app_host(request),
    )
    return PurchaseHistoryResponse(
        link_id=result.link_id,
        hosted_link_url=result.hosted_link_url,
        content=result.content,
    )


@router.get(
    "/purchase-history-details/{brand}/{order_id}",
    response_model=OrderDetailsResponse,
)
async def get_purchase_history_details(
    brand: str,
    order_id: str,
    request: Request,
    session_key: str = Depends(require_session_key),
    location: dict[str, Any] = Depends(get_location_dict),
    service: PurchaseHistoryService = Depends(get_history_service),
) -> OrderDetailsResponse:
    """Fetch product names and images for one order of a brand with a detail tool."""
    details = await service.get_order_details(
        session_key,
        brand,
        order_id,
        client_ip=get_client_ip(request),
        location=location,
    )
    return OrderDetailsResponse(**details.model_dump())


@router.get("/mcp-poll/{link_id}", response_model=McpPollResponse)
async def poll_link(
    link_id: str,
    request: Request,
    session_key: str = Depends(require_session_key),
    location: dict[str, Any] = Depends(get_location_dict),
    service: PurchaseHistoryService = Depends(get_history_service),
) -> McpPollResponse:
    """One poll round-trip for a hosted link; failures read as not completed."""
    result = await service.poll_link(
        session_key,
        link_id,
        client_ip=get_client_ip(request),
        location=location,
    )
    return McpPollResponse(auth_completed=result.auth_completed, link_id=result.link_id)
