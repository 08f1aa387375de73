"""FastAPI application for the Data Portrait server.

Provides the main application instance with routers, middleware,
and exception handlers configured. Serves generated portraits from the
public directory and the frontend build when available.
"""

import asyncio
import logging
import sys
import time as _time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from src.config import get_settings

_settings = get_settings()

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
# Ensure our application loggers are captured
logging.getLogger("src").setLevel(_settings.server.log_level.upper())

from src.api.middleware.geolocation import attach_location
from src.api.middleware.security import add_security_headers
from src.api.routes import analytics, links, portrait, proxy, purchase_history
from src.api.schemas import HealthResponse
from src.errors import (
    AuthTimeoutError,
    PortraitGenerationError,
    UnknownBrandError,
    UpstreamShapeError,
)
from src.services.gateway_provider import (
    check_gateway_health,
    get_client_pool,
    get_image_service,
    shutdown_gateways,
)
from src.services.mcp_client import MCPConnectionError, ToolInvocationError

# Frontend build directory
FRONTEND_DIR = Path(__file__).parent.parent.parent / "frontend" / "dist"
SERVICE_NAME = "data-portrait-server"
API_PREFIX = "/getgather"

logger = logging.getLogger(__name__)

_startup_time: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Async lifespan: settings check, background tasks, shutdown cleanup."""
    global _startup_time

    # --- Startup ---
    _startup_time = _time.time()
    settings = get_settings()
    settings.validate_required()
    logger.info("Using getgather at %s", settings.getgather.url)

    get_client_pool().start()
    cleanup_task = asyncio.create_task(
        get_image_service().run_cleanup(settings.images.cleanup_interval_minutes * 60)
    )

    yield

    # --- Shutdown ---
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass
    await shutdown_gateways()


app = FastAPI(
    title="Data Portrait API",
    description="Purchase-history retrieval and AI portrait generation",
    version="0.1.0",
    lifespan=lifespan,
)

# Middleware runs in reverse registration order: sessions are available
# to everything below.
app.middleware("http")(attach_location)
app.middleware("http")(add_security_headers)
app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.server.session_secret,
    max_age=_settings.server.session_max_age_seconds,
    https_only=_settings.server.https_only,
    same_site="lax",
)

# CORS allowlist is config-driven. If unset, CORS is disabled (same-origin only).
if _settings.server.allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_settings.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(UnknownBrandError)
async def unknown_brand_handler(request: Request, exc: UnknownBrandError) -> JSONResponse:
    logger.warning("Unknown brand requested: %s", exc.brand_id)
    return _error(400, "Invalid brand name")


@app.exception_handler(UpstreamShapeError)
async def upstream_shape_handler(request: Request, exc: UpstreamShapeError) -> JSONResponse:
    logger.error("Unrecognized upstream payload on %s: %s", request.url.path, exc)
    return _error(502, "Unexpected response from data provider")


@app.exception_handler(MCPConnectionError)
async def mcp_connection_handler(request: Request, exc: MCPConnectionError) -> JSONResponse:
    logger.error("MCP connection failed on %s: %s", request.url.path, exc)
    return _error(502, "Failed to connect to MCP server")


@app.exception_handler(ToolInvocationError)
async def tool_invocation_handler(request: Request, exc: ToolInvocationError) -> JSONResponse:
    logger.error("Tool call failed on %s: %s", request.url.path, exc)
    return _error(502, "Failed to retrieve data from MCP server")


@app.exception_handler(AuthTimeoutError)
async def auth_timeout_handler(request: Request, exc: AuthTimeoutError) -> JSONResponse:
    logger.warning("%s", exc)
    return _error(504, "Authentication timed out")


@app.exception_handler(PortraitGenerationError)
async def portrait_error_handler(
    request: Request, exc: PortraitGenerationError
) -> JSONResponse:
    logger.error("%s", exc)
    return _error(502, "Failed to generate portrait")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "Internal Server Error")


# Include routers
app.include_router(purchase_history.router, prefix=API_PREFIX)
app.include_router(links.router, prefix=API_PREFIX)
app.include_router(portrait.router, prefix=API_PREFIX)
app.include_router(analytics.router, prefix=API_PREFIX)
app.include_router(proxy.router)


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint.

    Returns:
        HealthResponse with status, unix timestamp, service name and pool state.
    """
    return HealthResponse(
        timestamp=int(_time.time()),
        service=SERVICE_NAME,
        uptime_seconds=int(_time.time() - _startup_time) if _startup_time else 0,
        gateway=await check_gateway_health(),
    )


def _safe_file(base: Path, relative: str) -> Path | None:
    """Resolve ``relative`` under ``base``; None if missing or outside it."""
    if not relative:
        return None
    base = base.resolve()
    candidate = (base / relative).resolve()
    if base not in candidate.parents or not candidate.is_file():
        return None
    return candidate


# Generated portraits and SPA fallback (must be AFTER API routes)
@app.get("/{full_path:path}", include_in_schema=False)
async def serve_static(full_path: str):
    """Serve generated portraits, frontend files, or the SPA index.

    Args:
        full_path: The requested path.

    Returns:
        FileResponse for a matching file, index.html for SPA routing, or
        a 404 JSON error when no frontend is built.
    """
    portrait_file = _safe_file(get_image_service().output_dir, full_path)
    if portrait_file is not None:
        return FileResponse(portrait_file)

    if FRONTEND_DIR.exists():
        frontend_file = _safe_file(FRONTEND_DIR, full_path)
        if frontend_file is not None:
            return FileResponse(frontend_file)
        return FileResponse(FRONTEND_DIR / "index.html")

    if not full_path:
        return {"name": "Data Portrait API", "version": "0.1.0", "docs": "/docs"}
    return _error(404, "Not found")
