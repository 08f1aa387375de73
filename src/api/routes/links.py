"""FastAPI routes for getgather's REST hosted-link and auth endpoints.

Creating a link and checking its status pass through to getgather with
the hosted URL rewritten onto this app's reverse proxy. The auth proxy
adds the server-side bearer key and the client's location before
forwarding, so neither is exposed to the browser.
"""

import logging
from typing import Any

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request

from src.api.dependencies import get_app_host, get_location_dict
from src.api.schemas import AuthRequest, LinkCreateRequest, LinkCreateResponse, LinkStatusResponse
from src.config import get_settings
from src.models.hosted_link import is_finished_payload
from src.services.brand_constants import get_brand
from src.services.gateway_provider import get_hosted_link_client
from src.services.hosted_link import HostedLinkClient, rewrite_hosted_link_url

logger = logging.getLogger(__name__)

router = APIRouter(tags=["links"])


def get_link_client() -> HostedLinkClient:
    """Dependency to get the process-global HostedLinkClient."""
    return get_hosted_link_client()


def _upstream_error(action: str, exc: httpx.HTTPError) -> HTTPException:
    if isinstance(exc, httpx.HTTPStatusError):
        logger.error("%s failed with upstream status %d", action, exc.response.status_code)
    else:
        logger.error("%s failed: %s", action, exc)
    return HTTPException(status_code=502, detail=f"{action} failed")


@router.post("/link/create", response_model=LinkCreateResponse)
async def create_link(
    body: LinkCreateRequest,
    request: Request,
    link_client: HostedLinkClient = Depends(get_link_client),
) -> LinkCreateResponse:
    """Create a hosted link for a brand.

    Raises:
        UnknownBrandError: Unsupported brand (400).
        HTTPException: 502 if getgather rejects or is unreachable.
    """
    brand = get_brand(body.brand_id)
    try:
        link = await link_client.create_link(brand.brand_id)
    except httpx.HTTPError as e:
        raise _upstream_error("Link creation", e) from e
    except KeyError as e:
        logger.error("Link creation response missing %s", e)
        raise HTTPException(status_code=502, detail="Link creation failed") from e

    url = rewrite_hosted_link_url(
        link.hosted_link_url, get_settings().getgather.url, get_app_host(request),
    )
    return LinkCreateResponse(link_id=link.link_id, hosted_link_url=url)


@router.get("/link/status/{link_id}", response_model=LinkStatusResponse)
async def get_link_status(
    link_id: str,
    link_client: HostedLinkClient = Depends(get_link_client),
) -> LinkStatusResponse:
    """Report a hosted link's upstream status."""
    try:
        payload = await link_client.get_status(link_id)
    except httpx.HTTPError as e:
        raise _upstream_error("Link status retrieval", e) from e

    status = payload.get("status")
    profile_id = payload.get("profile_id")
    return LinkStatusResponse(
        link_id=link_id,
        status=str(status) if status is not None else None,
        profile_id=str(profile_id) if profile_id is not None else None,
        auth_completed=is_finished_payload(payload),
    )


@router.post("/auth/{brand}")
async def auth_proxy(
    brand: str,
    body: AuthRequest,
    location: dict[str, Any] = Depends(get_location_dict),
    link_client: HostedLinkClient = Depends(get_link_client),
) -> dict[str, Any]:
    """Fetch extracted account data for a finished link's profile.

    Returns:
        getgather's auth response, unchanged.
    """
    brand_config = get_brand(brand)
    try:
        return await link_client.extract(brand_config.brand_id, body.profile_id, location)
    except httpx.HTTPError as e:
        raise _upstream_error(f"Auth request for {brand_config.brand_id}", e) from e
