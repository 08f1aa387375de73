"""Request-scoped helpers shared by the API routes.

Session identity comes from Starlette's signed session cookie: a random
session id is minted the first time a data route needs one and reused for
the cookie's lifetime. That id is the client-pool key.
"""

import secrets
from typing import Any

from fastapi import Request

from src.config import get_settings
from src.services.geolocation_service import LocationData

SESSION_ID_KEY = "sid"


def get_session_key(request: Request, create: bool = True) -> str | None:
    """Return the browser session id, minting one when allowed.

    Args:
        request: Incoming request (SessionMiddleware must be installed).
        create: Mint and store a new id when the session has none.

    Returns:
        Session id, or None when absent and ``create`` is False.
    """
    session_id = request.session.get(SESSION_ID_KEY)
    if session_id is None and create:
        session_id = secrets.token_urlsafe(24)
        request.session[SESSION_ID_KEY] = session_id
    return session_id


def require_session_key(request: Request) -> str:
    """FastAPI dependency: session id, created on first use."""
    return get_session_key(request, create=True) or ""


def optional_session_key(request: Request) -> str | None:
    """FastAPI dependency: session id only if the browser already has one."""
    return get_session_key(request, create=False)


def get_client_ip(request: Request) -> str:
    """Extract the client IP.

    Only uses X-Forwarded-For when ``server.trust_proxy`` is enabled, so
    the address cannot be spoofed when not behind a reverse proxy.
    """
    if get_settings().server.trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_location(request: Request) -> LocationData:
    """Location attached by the geolocation middleware, or just the IP."""
    location = getattr(request.state, "location", None)
    if isinstance(location, LocationData):
        return location
    return LocationData(ip=get_client_ip(request))


def get_location_dict(request: Request) -> dict[str, Any]:
    """FastAPI dependency: location in the dict form sent upstream."""
    return get_location(request).as_upstream()


def get_app_host(request: Request) -> str:
    """Public origin of this app for hosted-link URL rewriting.

    Prefers the configured ``server.app_host``; otherwise derives it from
    the request.
    """
    configured = get_settings().server.app_host
    if configured:
        return configured.rstrip("/")
    return str(request.base_url).rstrip("/")
