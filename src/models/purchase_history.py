"""Canonical purchase-history models.

Every brand integration is normalized into ``PurchaseHistoryRecord`` so
portrait generation can treat Amazon orders, Wayfair orders and Goodreads
books alike.
"""

from datetime import date
from itertools import zip_longest

from pydantic import BaseModel, Field


class PurchaseHistoryRecord(BaseModel):
    """One order (or book) in canonical form.

    ``product_names`` and ``image_urls`` come from different upstream
    fields and are not guaranteed to line up; use ``items()`` to pair them.

    Attributes:
        brand_id: Brand identifier (e.g. "amazon").
        brand: Brand display name (e.g. "Amazon").
        order_date: Order date when it could be parsed.
        order_total: Currency-formatted total, kept as upstream text.
        order_id: Upstream order identifier.
        product_names: Ordered product names.
        image_urls: Product image URLs.
    """

    brand_id: str = Field(..., description="Brand identifier")
    brand: str = Field(..., description="Brand display name")
    order_date: date | None = Field(None, description="Order date")
    order_total: str = Field(default="", description="Order total as displayed upstream")
    order_id: str = Field(default="", description="Upstream order identifier")
    product_names: list[str] = Field(default_factory=list)
    image_urls: list[str] = Field(default_factory=list)

    @property
    def first_product_name(self) -> str:
        """First product name, or empty string."""
        return self.product_names[0] if self.product_names else ""

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        """Identity used when merging records: (brand, order_id, first product)."""
        return (self.brand, self.order_id, self.first_product_name)

    def items(self) -> list[tuple[str | None, str | None]]:
        """Pair product names with image URLs, padding the shorter list with None."""
        return list(zip_longest(self.product_names, self.image_urls))


class OrderDetails(BaseModel):
    """Per-order detail fetched by a brand's detail tool."""

    order_id: str
    product_names: list[str] = Field(default_factory=list)
    image_urls: list[str] = Field(default_factory=list)


class PurchaseHistoryResult(BaseModel):
    """Outcome of one retrieval request.

    Either ``content`` holds records (data was available immediately) or
    ``link_id``/``hosted_link_url`` point at a page the user must visit
    first. Both are legitimate terminal outcomes.
    """

    link_id: str = ""
    hosted_link_url: str = ""
    content: list[PurchaseHistoryRecord] = Field(default_factory=list)

    @property
    def needs_link(self) -> bool:
        """True when the user must complete a hosted link before data exists."""
        return bool(self.link_id) and not self.content


class LinkPollResult(BaseModel):
    """Outcome of a single poll round-trip for a hosted link."""

    link_id: str
    auth_completed: bool = False
    status: str | None = None
