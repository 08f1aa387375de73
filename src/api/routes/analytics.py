"""FastAPI routes for client analytics and client-side log forwarding.

Both endpoints acknowledge immediately; delivery happens in a background
task so the browser never waits on Segment. Calls from a browser with no
session yet are dropped.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends

from src.api.dependencies import optional_session_key
from src.api.schemas import AckResponse, AnalyticsRequest, ClientLogRequest
from src.services.analytics_service import AnalyticsService
from src.services.gateway_provider import get_analytics_service
from src.utils.redaction import sanitize_error_message, sanitize_request_data

logger = logging.getLogger(__name__)
client_logger = logging.getLogger("src.client")

router = APIRouter(tags=["analytics"])

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def get_analytics() -> AnalyticsService:
    """Dependency to get the process-global AnalyticsService."""
    return get_analytics_service()


async def _deliver(
    analytics: AnalyticsService, session_key: str, body: AnalyticsRequest,
) -> None:
    if body.identify:
        await analytics.identify(session_key, body.properties)
        return
    if not body.event:
        logger.warning("Analytics track called without event name (session %s)", session_key)
        return
    await analytics.track(
        session_key, body.event, {**body.properties, "sessionId": session_key},
    )


@router.post("/analytics", response_model=AckResponse)
async def track_analytics(
    body: AnalyticsRequest,
    background_tasks: BackgroundTasks,
    session_key: str | None = Depends(optional_session_key),
    analytics: AnalyticsService = Depends(get_analytics),
) -> AckResponse:
    """Acknowledge, then identify or track in the background."""
    if not session_key:
        logger.warning("Analytics called without session; dropping")
        return AckResponse()
    background_tasks.add_task(_deliver, analytics, session_key, body)
    return AckResponse()


@router.post("/log", response_model=AckResponse)
async def client_log(
    body: ClientLogRequest,
    session_key: str | None = Depends(optional_session_key),
) -> AckResponse:
    """Write a browser log line into the server log, sanitized."""
    if not session_key:
        return AckResponse()
    client_logger.log(
        _LOG_LEVELS[body.level],
        "[%s] %s %s",
        session_key,
        sanitize_error_message(body.message),
        sanitize_request_data(body.context) if body.context else "",
    )
    return AckResponse()
