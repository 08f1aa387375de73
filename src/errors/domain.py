"""Typed domain exceptions for API error mapping.

Routes let these propagate; the exception handlers in ``src.api.main``
translate each type into a generic JSON error with a fixed status code.
Upstream error text is logged but never returned to the browser.

Usage:
    # In service layer
    raise UnknownBrandError(brand_id)

    # Mapped by src.api.main to HTTP 400 {"error": "Invalid brand name"}
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class UnknownBrandError(DomainError):
    """Brand identifier has no tool mapping. Maps to HTTP 400."""

    def __init__(self, brand_id: str) -> None:
        super().__init__(f"Unknown brand '{brand_id}'")
        self.brand_id = brand_id


class UpstreamShapeError(DomainError):
    """Tool response matched none of the known payload variants. Maps to HTTP 502.

    Raised instead of emitting partially decoded records, since portrait
    generation depends on the data being intact.
    """

    def __init__(self, message: str, payload_preview: str = "") -> None:
        super().__init__(message)
        self.payload_preview = payload_preview[:200]


class AuthTimeoutError(DomainError):
    """Hosted-link polling exhausted without completion. Maps to HTTP 504."""

    def __init__(self, link_id: str, attempts: int) -> None:
        super().__init__(
            f"Hosted link '{link_id}' not finished after {attempts} poll attempt(s)"
        )
        self.link_id = link_id
        self.attempts = attempts


class PortraitGenerationError(DomainError):
    """Image provider failed or timed out. Maps to HTTP 502."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(f"Portrait generation via '{provider}' failed: {reason}")
        self.provider = provider
        self.reason = reason
