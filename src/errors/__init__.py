"""Error types for the Data Portrait server.

Domain errors are raised by the service layer and mapped to HTTP
responses by the API exception handlers. MCP transport errors live
beside the client in ``src.services.mcp_client``.
"""

from src.errors.domain import (
    AuthTimeoutError,
    DomainError,
    PortraitGenerationError,
    UnknownBrandError,
    UpstreamShapeError,
)

__all__ = [
    "DomainError",
    "UnknownBrandError",
    "UpstreamShapeError",
    "AuthTimeoutError",
    "PortraitGenerationError",
]
