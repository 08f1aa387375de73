"""Service layer for the Data Portrait server.

Provides the session-scoped tool-client pool, the hosted-link flow and
purchase-history retrieval, plus the geolocation, analytics and portrait
collaborators.
"""

from src.services.client_pool import MCPClientPool
from src.services.hosted_link import HostedLinkClient, poll_until_finished
from src.services.mcp_client import (
    ExternalToolClient,
    MCPConnectionError,
    ToolInvocationError,
)
from src.services.purchase_history_service import PurchaseHistoryService

__all__ = [
    "ExternalToolClient",
    "HostedLinkClient",
    "MCPClientPool",
    "MCPConnectionError",
    "PurchaseHistoryService",
    "ToolInvocationError",
    "poll_until_finished",
]
