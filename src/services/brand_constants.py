"""Canonical brand integration constants.

Single source of truth for the brands a user can link, the getgather
tools that serve each one, and the per-brand field aliases the
normalizer uses to map raw records onto ``PurchaseHistoryRecord``.
"""

from dataclasses import dataclass, field
from enum import Enum

from src.errors import UnknownBrandError


class BrandId(str, Enum):
    """Supported brand integrations."""

    AMAZON = "amazon"
    WAYFAIR = "wayfair"
    OFFICEDEPOT = "officedepot"
    GOODREADS = "goodreads"


# ---------------------------------------------------------------------------
# Shared tool names
# ---------------------------------------------------------------------------

POLL_SIGNIN_TOOL = "poll_signin"

# Fields whose first non-empty value is used for each canonical attribute.
_DEFAULT_ALIASES: dict[str, tuple[str, ...]] = {
    "order_id": ("order_id", "order_number", "id"),
    "order_date": ("order_date", "date", "ordered_at"),
    "order_total": ("order_total", "total", "grand_total"),
    "product_names": ("product_names", "products", "items"),
    "image_urls": ("image_urls", "images", "image_url"),
}


@dataclass(frozen=True)
class BrandConfig:
    """Static description of one brand integration.

    Attributes:
        brand_id: URL-safe identifier used by routes and the UI.
        brand_name: Display name stamped on every normalized record.
        history_tool: Tool returning the order/purchase list.
        detail_tool: Optional per-order tool filling in products and images.
        search_tool: Optional tool searching purchases by keyword.
        field_aliases: Canonical field -> raw keys, in precedence order.
    """

    brand_id: str
    brand_name: str
    history_tool: str
    detail_tool: str | None = None
    search_tool: str | None = None
    field_aliases: dict[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(_DEFAULT_ALIASES)
    )

    def aliases_for(self, canonical: str) -> tuple[str, ...]:
        """Return the raw keys to try for a canonical field."""
        return self.field_aliases.get(canonical, (canonical,))


BRANDS: dict[str, BrandConfig] = {
    BrandId.AMAZON.value: BrandConfig(
        brand_id=BrandId.AMAZON.value,
        brand_name="Amazon",
        history_tool="amazon_get_purchase_history",
        search_tool="amazon_search_purchase_history",
    ),
    BrandId.WAYFAIR.value: BrandConfig(
        brand_id=BrandId.WAYFAIR.value,
        brand_name="Wayfair",
        history_tool="wayfair_get_order_history",
        detail_tool="wayfair_get_order_history_details",
        field_aliases={
            **_DEFAULT_ALIASES,
            "order_id": ("order_number", "order_id", "id"),
        },
    ),
    BrandId.OFFICEDEPOT.value: BrandConfig(
        brand_id=BrandId.OFFICEDEPOT.value,
        brand_name="Office Depot",
        history_tool="officedepot_get_order_history",
        field_aliases={
            **_DEFAULT_ALIASES,
            "order_id": ("order_number", "order_id", "id"),
            "order_total": ("order_total", "total", "order_amount"),
        },
    ),
    BrandId.GOODREADS.value: BrandConfig(
        brand_id=BrandId.GOODREADS.value,
        brand_name="Goodreads",
        history_tool="goodreads_get_book_list",
        field_aliases={
            "order_id": ("book_id", "isbn", "id", "title"),
            "order_date": ("date_read", "date_added", "read_at"),
            "order_total": ("order_total",),
            "product_names": ("title", "product_names"),
            "image_urls": ("cover_image", "image_url", "image_urls"),
        },
    ),
}


def get_brand(brand_id: str) -> BrandConfig:
    """Look up a brand by identifier (case-insensitive).

    Args:
        brand_id: Brand identifier from a route or CLI argument.

    Returns:
        The brand's BrandConfig.

    Raises:
        UnknownBrandError: If the brand is not supported.
    """
    brand = BRANDS.get(brand_id.strip().lower())
    if brand is None:
        raise UnknownBrandError(brand_id)
    return brand
