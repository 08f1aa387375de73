"""Baseline security response headers."""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import Response

from src.config import get_settings

_BASE_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
}

# Only sent when cookies are HTTPS-only, i.e. in production.
_HTTPS_HEADERS = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


async def add_security_headers(request: Request, call_next) -> Response:
    """FastAPI middleware entrypoint adding security headers to every response."""
    response = await call_next(request)
    for name, value in _BASE_HEADERS.items():
        response.headers.setdefault(name, value)
    if get_settings().server.https_only:
        for name, value in _HTTPS_HEADERS.items():
            response.headers.setdefault(name, value)
    return response
