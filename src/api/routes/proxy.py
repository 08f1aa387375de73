"""Reverse-proxy passthrough to getgather.

Hosted sign-in pages are served from getgather under ``/link``, with
their assets under ``/__assets`` and ``/__static/assets`` and their XHRs
under ``/api``. Rewritten hosted-link URLs point at this app, so those
paths are forwarded verbatim to keep the page same-origin.
"""

import logging

import httpx
from fastapi import APIRouter, HTTPException, Request, Response

from src.config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["proxy"], include_in_schema=False)

PROXY_PREFIXES = ("/link", "/__assets", "/__static/assets", "/api")
PROXY_TIMEOUT_SECONDS = 120.0
_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]

# httpx has already decoded the body; these would describe the wire form.
_SKIP_RESPONSE_HEADERS = frozenset({
    "content-encoding", "content-length", "transfer-encoding", "connection",
})
_SKIP_REQUEST_HEADERS = frozenset({"host", "content-length", "cookie"})

_transport: httpx.AsyncBaseTransport | None = None


def set_proxy_transport(transport: httpx.AsyncBaseTransport | None) -> None:
    """Override the upstream transport. Used by tests."""
    global _transport
    _transport = transport


async def proxy_to_getgather(request: Request, path: str) -> Response:
    """Forward a request to the same path on getgather and relay the answer."""
    url = f"{get_settings().getgather.url}{path}"
    if request.query_params:
        url += f"?{request.query_params}"

    headers = {
        key: value for key, value in request.headers.items()
        if key.lower() not in _SKIP_REQUEST_HEADERS
    }
    body = await request.body() if request.method in ("POST", "PUT", "PATCH") else None

    try:
        async with httpx.AsyncClient(
            timeout=PROXY_TIMEOUT_SECONDS, transport=_transport,
        ) as client:
            upstream = await client.request(
                method=request.method, url=url, headers=headers, content=body,
            )
    except httpx.TimeoutException as e:
        logger.error("Proxy timeout for %s %s", request.method, path)
        raise HTTPException(status_code=504, detail="Proxy timeout") from e
    except httpx.HTTPError as e:
        logger.error("Proxy error for %s %s: %s", request.method, path, e)
        raise HTTPException(status_code=502, detail="Proxy error occurred") from e

    response_headers = {
        key: value for key, value in upstream.headers.items()
        if key.lower() not in _SKIP_RESPONSE_HEADERS
    }
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=response_headers,
    )


def _register(prefix: str) -> None:
    async def _root(request: Request) -> Response:
        return await proxy_to_getgather(request, prefix)

    async def _nested(request: Request, path: str) -> Response:
        return await proxy_to_getgather(request, f"{prefix}/{path}")

    name = prefix.strip("/").replace("/", "_")
    router.add_api_route(prefix, _root, methods=_METHODS, name=f"proxy_{name}_root")
    router.add_api_route(
        f"{prefix}/{{path:path}}", _nested, methods=_METHODS, name=f"proxy_{name}",
    )


for _prefix in PROXY_PREFIXES:
    _register(_prefix)
