"""Geolocation middleware.

Attaches ``request.state.location`` (a LocationData) to API requests so
routes can forward the user's region to getgather. Lookup failures never
block the request; the location then carries only the IP.
"""

from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import Response

from src.api.dependencies import get_client_ip
from src.services.gateway_provider import get_geolocation_service
from src.services.geolocation_service import LocationData

logger = logging.getLogger(__name__)

_LOCATED_PATH_PREFIXES = ("/getgather/",)


def should_locate(path: str) -> bool:
    """Return True when this path needs location context."""
    return path.startswith(_LOCATED_PATH_PREFIXES)


async def attach_location(request: Request, call_next) -> Response:
    """FastAPI middleware entrypoint for request geolocation."""
    if not should_locate(request.url.path):
        return await call_next(request)

    client_ip = get_client_ip(request)
    try:
        request.state.location = await get_geolocation_service().locate(client_ip)
    except Exception as e:
        logger.error("Geolocation middleware error: %s", e)
        request.state.location = LocationData(ip=client_ip)
    return await call_next(request)
