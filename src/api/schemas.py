"""Pydantic schemas for API request/response validation.

This module defines the data contracts for the Data Portrait REST API:
purchase-history retrieval, hosted-link polling, portrait generation and
client analytics/logging.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from src.models import PurchaseHistoryRecord


# Purchase history


class PurchaseHistoryResponse(BaseModel):
    """Records, or the hosted link the user must finish first."""

    link_id: str = ""
    hosted_link_url: str = ""
    content: list[PurchaseHistoryRecord] = Field(default_factory=list)


class PurchaseSearchRequest(BaseModel):
    """Keyword search over a brand's purchases."""

    keyword: str = Field(..., min_length=1, max_length=200)
    brand: str = "amazon"


class OrderDetailsResponse(BaseModel):
    """Product names and images for one order."""

    order_id: str
    product_names: list[str] = Field(default_factory=list)
    image_urls: list[str] = Field(default_factory=list)


class McpPollResponse(BaseModel):
    """Single poll round-trip result."""

    auth_completed: bool
    link_id: str


# Hosted links (REST path)


class LinkCreateRequest(BaseModel):
    """Request body for creating a hosted link."""

    brand_id: str = Field(..., min_length=1)


class LinkCreateResponse(BaseModel):
    """Created hosted link, URL rewritten to this app's proxy."""

    link_id: str
    hosted_link_url: str


class LinkStatusResponse(BaseModel):
    """Status of a hosted link as reported upstream."""

    link_id: str
    status: str | None = None
    profile_id: str | None = None
    auth_completed: bool = False


class AuthRequest(BaseModel):
    """Auth proxy body; location and bearer key are added server-side."""

    profile_id: str = Field(..., min_length=1)
    extract: bool = True


# Portrait generation


class PortraitPurchase(BaseModel):
    """The subset of a purchase record used to describe the portrait."""

    brand: str = ""
    product_names: list[str] = Field(default_factory=list)


class PortraitRequest(BaseModel):
    """Request body for portrait generation; accepts camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    image_style: str = Field("realistic", alias="imageStyle")
    gender: str = "Female"
    traits: list[str] = Field(default_factory=list)
    model: str = "flux-schnell"
    purchase_data: list[PortraitPurchase] = Field(default_factory=list, alias="purchaseData")


class PortraitImage(BaseModel):
    """Saved portrait file."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    filename: str
    file_size: int = Field(..., alias="fileSize")
    width: int
    height: int


class PortraitResponse(BaseModel):
    """Successful portrait generation."""

    success: bool = True
    image: PortraitImage
    model: str
    provider: str
    timestamp: str


# Analytics and client logs


class AnalyticsRequest(BaseModel):
    """Client analytics call: track an event, or identify the session."""

    event: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    identify: bool = False


class ClientLogRequest(BaseModel):
    """A log line forwarded from the browser."""

    level: Literal["debug", "info", "warn", "warning", "error"] = "info"
    message: str = Field(..., max_length=2000)
    context: dict[str, Any] = Field(default_factory=dict)


class AckResponse(BaseModel):
    """Acknowledgement for fire-and-forget endpoints."""

    success: bool = True


# Health


class HealthResponse(BaseModel):
    """Liveness response."""

    status: str = "OK"
    timestamp: int
    service: str
    uptime_seconds: int = 0
    gateway: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Generic error body; never carries upstream error text."""

    error: str
