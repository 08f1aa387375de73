"""Normalize heterogeneous purchase-history tool responses.

Brand tools disagree on payload shape: some return a JSON string, some a
structured list, some nest the list under ``extract_result[0].content``,
some wrap everything in MCP text content. Decoding tries each known
variant in a fixed precedence order and tags the result with the variant
that matched, so callers never duck-type raw payloads.

Mapping is partial-success: a record missing fields is kept with empty
defaults. A payload whose shape matches no variant raises
``UpstreamShapeError`` rather than yielding corrupted records.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from src.errors import UpstreamShapeError
from src.models import OrderDetails, PurchaseHistoryRecord
from src.services.brand_constants import BrandConfig

logger = logging.getLogger(__name__)

# Top-level list fields, in precedence order.
LIST_FIELDS: tuple[str, ...] = ("books", "purchases", "purchase_history", "orders")

# Keys that carry link/status metadata rather than data.
_METADATA_KEYS = frozenset({
    "link_id", "url", "hosted_link_url", "message", "system_message",
    "status", "profile_id",
})

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%B %d, %Y",
    "%b %d, %Y",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%d %B %Y",
    "%Y/%m/%d",
)

_MAX_NESTING = 3


@dataclass
class DecodedContent:
    """Raw records extracted from a tool payload.

    Attributes:
        variant: Which payload variant matched (e.g. "purchases",
            "extract_result", "mcp_text", "array", "empty").
        items: Untyped record dicts.
    """

    variant: str
    items: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.items


def _preview(raw: Any) -> str:
    try:
        return json.dumps(raw, default=str)[:200]
    except (TypeError, ValueError):
        return repr(raw)[:200]


def _parse_json_text(text: str, source: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise UpstreamShapeError(
            f"{source} content is not valid JSON: {e}", _preview(text),
        ) from e


def _as_records(value: Any, variant: str) -> list[dict[str, Any]]:
    """Validate that content is a list of objects.

    Raises:
        UpstreamShapeError: If content is not a list or holds non-objects.
    """
    if not isinstance(value, list):
        raise UpstreamShapeError(
            f"'{variant}' content is {type(value).__name__}, expected list",
            _preview(value),
        )
    for index, item in enumerate(value):
        if not isinstance(item, dict):
            raise UpstreamShapeError(
                f"'{variant}' item {index} is {type(item).__name__}, expected object",
                _preview(item),
            )
    return value


def _decode_list_field(value: Any, variant: str, depth: int) -> DecodedContent | None:
    if isinstance(value, str):
        if not value.strip():
            return None
        value = _parse_json_text(value, variant)
        if isinstance(value, dict):
            inner = _decode(value, depth + 1)
            return None if inner.is_empty else inner
    records = _as_records(value, variant)
    return DecodedContent(variant, records) if records else None


def _decode_extract_result(value: Any, depth: int) -> DecodedContent | None:
    if isinstance(value, str):
        value = _parse_json_text(value, "extract_result")
    if not isinstance(value, list):
        raise UpstreamShapeError(
            "'extract_result' is not a list", _preview(value),
        )
    if not value:
        return None
    first = value[0]
    if not isinstance(first, dict):
        raise UpstreamShapeError(
            "'extract_result[0]' is not an object", _preview(first),
        )
    return _decode_list_field(first.get("content") or [], "extract_result", depth)


def _decode_mcp_text(value: Any, depth: int) -> DecodedContent | None:
    if not isinstance(value, list):
        raise UpstreamShapeError("'content' is not a list", _preview(value))
    blocks = [b for b in value if isinstance(b, dict) and "text" in b]
    if not blocks:
        # Already a list of records rather than MCP text blocks
        records = _as_records(value, "content")
        return DecodedContent("content", records) if records else None
    text = blocks[0].get("text")
    if not isinstance(text, str) or not text.strip():
        return None
    decoded = _parse_json_text(text, "content[0].text")
    if isinstance(decoded, list):
        records = _as_records(decoded, "mcp_text")
        return DecodedContent("mcp_text", records) if records else None
    if isinstance(decoded, dict):
        inner = _decode(decoded, depth + 1)
        return None if inner.is_empty else inner
    raise UpstreamShapeError(
        "content[0].text decodes to neither list nor object", _preview(decoded),
    )


def _decode(raw: Any, depth: int) -> DecodedContent:
    if depth > _MAX_NESTING:
        raise UpstreamShapeError("payload nested too deeply", _preview(raw))

    if raw is None:
        return DecodedContent("empty")
    if isinstance(raw, str):
        if not raw.strip():
            return DecodedContent("empty")
        return _decode(_parse_json_text(raw, "payload"), depth + 1)
    if isinstance(raw, list):
        return DecodedContent("array", _as_records(raw, "array"))
    if not isinstance(raw, dict):
        raise UpstreamShapeError(
            f"payload is {type(raw).__name__}, expected object or list",
            _preview(raw),
        )

    known_field_seen = False
    for name in LIST_FIELDS:
        if name in raw:
            known_field_seen = True
            decoded = _decode_list_field(raw[name], name, depth)
            if decoded is not None:
                return decoded
    if "extract_result" in raw:
        known_field_seen = True
        decoded = _decode_extract_result(raw["extract_result"], depth)
        if decoded is not None:
            return decoded
    if "content" in raw:
        known_field_seen = True
        decoded = _decode_mcp_text(raw["content"], depth)
        if decoded is not None:
            return decoded

    # A sign-in response may carry any extra keys alongside link_id.
    if known_field_seen or not raw or "link_id" in raw or set(raw) <= _METADATA_KEYS:
        return DecodedContent("empty")
    raise UpstreamShapeError(
        f"payload matches no known variant (keys: {sorted(raw)[:10]})",
        _preview(raw),
    )


def decode_payload(raw: Any) -> DecodedContent:
    """Extract raw records from a tool payload.

    Precedence: JSON string, bare list, then the first non-empty of
    ``books``, ``purchases``, ``purchase_history``, ``orders``,
    ``extract_result[0].content``, ``content[0].text``.

    Args:
        raw: Tool result (dict, list, JSON string, or None).

    Returns:
        DecodedContent tagged with the matching variant.

    Raises:
        UpstreamShapeError: If the payload matches no known variant.
    """
    return _decode(raw, 0)


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------


def _first_present(item: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, "", [], {}):
            return value
    return None


def coerce_date(value: Any) -> date | None:
    """Parse a date from the formats brands use; None if unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def coerce_text(value: Any) -> str:
    """Render a scalar as text; lists/objects and None become ""."""
    if value is None or isinstance(value, (dict, list)):
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    return str(value).strip()


def coerce_text_list(value: Any, nested_key: str | None = None) -> list[str]:
    """Coerce a scalar or list into a list of non-empty strings.

    Args:
        value: String, list of strings, or list of objects.
        nested_key: Key to read from object items (e.g. "name", "url").

    Returns:
        List of strings with blanks dropped.
    """
    if value is None:
        return []
    if isinstance(value, str):
        if value.strip().startswith("["):
            try:
                return coerce_text_list(json.loads(value), nested_key)
            except json.JSONDecodeError:
                pass
        return [value.strip()] if value.strip() else []
    if not isinstance(value, list):
        text = coerce_text(value)
        return [text] if text else []
    result: list[str] = []
    for entry in value:
        if isinstance(entry, dict):
            keys = (nested_key,) if nested_key else ()
            entry = _first_present(entry, keys + ("name", "title", "url", "src"))
        text = coerce_text(entry)
        if text:
            result.append(text)
    return result


def map_record(brand: BrandConfig, item: dict[str, Any]) -> PurchaseHistoryRecord:
    """Map one raw record onto the canonical model using brand aliases.

    Missing or malformed fields fall back to empty defaults.
    """
    return PurchaseHistoryRecord(
        brand_id=brand.brand_id,
        brand=brand.brand_name,
        order_date=coerce_date(_first_present(item, brand.aliases_for("order_date"))),
        order_total=coerce_text(_first_present(item, brand.aliases_for("order_total"))),
        order_id=coerce_text(_first_present(item, brand.aliases_for("order_id"))),
        product_names=coerce_text_list(
            _first_present(item, brand.aliases_for("product_names")), "name",
        ),
        image_urls=coerce_text_list(
            _first_present(item, brand.aliases_for("image_urls")), "url",
        ),
    )


def normalize_purchase_history(brand: BrandConfig, raw: Any) -> list[PurchaseHistoryRecord]:
    """Decode and map a purchase-history payload.

    Args:
        brand: Brand the payload came from.
        raw: Tool result in any supported shape.

    Returns:
        Canonical records, in upstream order.

    Raises:
        UpstreamShapeError: If the payload shape is not recognized.
    """
    decoded = decode_payload(raw)
    records = [map_record(brand, item) for item in decoded.items]
    logger.debug(
        "Normalized %d %s record(s) from '%s' variant",
        len(records), brand.brand_id, decoded.variant,
    )
    return records


def normalize_order_details(brand: BrandConfig, order_id: str, raw: Any) -> OrderDetails:
    """Normalize a per-order detail payload.

    Detail tools return either a single order object or a list whose items
    each describe one product. Names and images from every item are merged.

    Raises:
        UpstreamShapeError: If the payload shape is not recognized.
    """
    if isinstance(raw, dict) and not any(
        key in raw for key in (*LIST_FIELDS, "extract_result", "content")
    ):
        items = [raw] if set(raw) - _METADATA_KEYS else []
    else:
        items = decode_payload(raw).items

    names: list[str] = []
    images: list[str] = []
    for item in items:
        record = map_record(brand, item)
        names.extend(record.product_names)
        images.extend(record.image_urls)
    return OrderDetails(order_id=order_id, product_names=names, image_urls=images)


def filter_unique_orders(records: list[PurchaseHistoryRecord]) -> list[PurchaseHistoryRecord]:
    """Drop records whose (brand, order_id, first product name) was already seen.

    The first occurrence wins and order is preserved.
    """
    seen: set[tuple[str, str, str]] = set()
    unique: list[PurchaseHistoryRecord] = []
    for record in records:
        key = record.dedup_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique
