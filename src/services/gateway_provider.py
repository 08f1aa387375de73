"""Centralized provider: single owner of process-global service singletons.

API routes and the CLI import accessors from HERE. This module owns the
lifecycle of the client pool and the collaborator services built from
settings. Never instantiate MCPClientPool elsewhere outside tests.
"""

import logging
from datetime import timedelta
from typing import Any

from src.config import Settings, get_settings
from src.services.analytics_service import AnalyticsService
from src.services.client_pool import MCPClientPool
from src.services.geolocation_service import GeolocationService
from src.services.hosted_link import HostedLinkClient
from src.services.image_service import ImageService
from src.services.mcp_client import ExternalToolClient
from src.services.purchase_history_service import PurchaseHistoryService

logger = logging.getLogger(__name__)


def build_client_factory(settings: Settings):
    """Return a pool factory producing unconnected clients for getgather."""
    def _factory(
        session_key: str,
        client_ip: str | None,
        location: dict[str, Any] | None,
    ) -> ExternalToolClient:
        return ExternalToolClient(
            settings.getgather.url,
            session_key=session_key,
            client_ip=client_ip,
            location=location,
            api_key=settings.getgather.api_key or None,
            idle_timeout=timedelta(minutes=settings.pool.idle_timeout_minutes),
            call_timeout=timedelta(minutes=settings.pool.call_timeout_minutes),
        )

    return _factory


# -- MCPClientPool singleton -------------------------------------------------
_pool: MCPClientPool | None = None
_history_service: PurchaseHistoryService | None = None


def get_client_pool() -> MCPClientPool:
    """Get or create the process-global client pool.

    The sweep task is not started here; the API lifespan calls ``start()``.
    """
    global _pool
    if _pool is None:
        settings = get_settings()
        _pool = MCPClientPool(
            build_client_factory(settings),
            sweep_interval=settings.pool.sweep_interval_seconds,
        )
        logger.info("MCPClientPool singleton initialized")
    return _pool


def get_purchase_history_service() -> PurchaseHistoryService:
    """Get or create the process-global retrieval flow."""
    global _history_service
    if _history_service is None:
        settings = get_settings()
        _history_service = PurchaseHistoryService(
            get_client_pool(),
            upstream_base=settings.getgather.url,
            app_host=settings.server.app_host,
            max_retries=settings.pool.max_retries,
            detail_concurrency=settings.pool.detail_concurrency,
            poll_max_attempts=settings.polling.max_attempts,
            poll_interval=settings.polling.interval_seconds,
        )
    return _history_service


# -- Collaborators -------------------------------------------------------------
_link_client: HostedLinkClient | None = None
_geolocation: GeolocationService | None = None
_analytics: AnalyticsService | None = None
_images: ImageService | None = None


def get_hosted_link_client() -> HostedLinkClient:
    """Get or create the REST client for getgather link/auth endpoints."""
    global _link_client
    if _link_client is None:
        settings = get_settings()
        _link_client = HostedLinkClient(settings.getgather.url, settings.getgather.api_key)
    return _link_client


def get_geolocation_service() -> GeolocationService:
    """Get or create the geolocation service; disabled without MaxMind keys."""
    global _geolocation
    if _geolocation is None:
        config = get_settings().geolocation
        if not config.enabled:
            logger.warning("MaxMind credentials not configured; geolocation disabled")
        _geolocation = GeolocationService(
            config.maxmind_account_id,
            config.maxmind_license_key,
            cache_ttl=config.cache_ttl_seconds,
        )
    return _geolocation


def get_analytics_service() -> AnalyticsService:
    """Get or create the analytics service; a no-op without a write key."""
    global _analytics
    if _analytics is None:
        config = get_settings().analytics
        if not config.segment_write_key:
            logger.warning("SEGMENT_WRITE_KEY not configured; analytics disabled")
        _analytics = AnalyticsService(config.segment_write_key, source=config.source)
    return _analytics


def get_image_service() -> ImageService:
    """Get or create the portrait image service."""
    global _images
    if _images is None:
        config = get_settings().images
        _images = ImageService(
            together_api_key=config.together_api_key,
            gemini_api_key=config.gemini_api_key,
            output_dir=config.output_dir,
            timeout=config.timeout_seconds,
            max_age_hours=config.max_age_hours,
        )
    return _images


async def check_gateway_health() -> dict[str, Any]:
    """Summarize pool state for the health endpoint. Best-effort, never raises."""
    if _pool is None:
        return {"status": "not_initialized", "sessions": 0, "healthy": 0}
    try:
        healthy = await _pool.count_healthy()
    except Exception as e:
        logger.warning("MCP client health check failed: %s", e)
        return {"status": "degraded", "sessions": len(_pool), "healthy": 0}
    return {"status": "ok", "sessions": len(_pool), "healthy": healthy}


async def shutdown_gateways() -> None:
    """Shutdown hook: stop the sweep and close every client. Call from lifespan."""
    global _pool, _history_service, _link_client, _geolocation, _analytics, _images
    if _pool is not None:
        try:
            await _pool.stop()
        except Exception as e:
            logger.warning("Failed to stop MCPClientPool cleanly: %s", e)
        _pool = None
    _history_service = None
    _link_client = None
    _geolocation = None
    _analytics = None
    _images = None
