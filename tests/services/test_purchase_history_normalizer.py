"""Tests for purchase-history payload decoding and normalization."""

import json
from datetime import date

import pytest

from src.errors import UpstreamShapeError
from src.models import PurchaseHistoryRecord
from src.services.brand_constants import get_brand
from src.services.purchase_history_normalizer import (
    coerce_date,
    coerce_text_list,
    decode_payload,
    filter_unique_orders,
    normalize_order_details,
    normalize_purchase_history,
)

AMAZON = get_brand("amazon")
GOODREADS = get_brand("goodreads")
WAYFAIR = get_brand("wayfair")

AMAZON_ITEMS = [
    {
        "order_id": "A1",
        "order_date": "2024-01-01",
        "order_total": "$10",
        "product_names": ["X"],
        "image_urls": ["img1"],
    },
]


def _record(order_id: str, first_product: str, brand: str = "Amazon") -> PurchaseHistoryRecord:
    return PurchaseHistoryRecord(
        brand_id=brand.lower(), brand=brand, order_id=order_id, product_names=[first_product],
    )


class TestDecodeVariants:
    """Payload variant detection."""

    def test_bare_list(self):
        decoded = decode_payload(AMAZON_ITEMS)
        assert decoded.variant == "array"
        assert decoded.items == AMAZON_ITEMS

    @pytest.mark.parametrize("field", ["books", "purchases", "purchase_history", "orders"])
    def test_known_list_fields(self, field):
        decoded = decode_payload({field: AMAZON_ITEMS})
        assert decoded.variant == field
        assert decoded.items == AMAZON_ITEMS

    def test_list_field_precedence(self):
        decoded = decode_payload({"orders": [{"id": "o"}], "purchases": [{"id": "p"}]})
        assert decoded.variant == "purchases"

    def test_empty_list_field_falls_through_to_next(self):
        decoded = decode_payload({"books": [], "orders": AMAZON_ITEMS})
        assert decoded.variant == "orders"

    def test_extract_result(self):
        decoded = decode_payload({"extract_result": [{"content": AMAZON_ITEMS}]})
        assert decoded.variant == "extract_result"
        assert decoded.items == AMAZON_ITEMS

    def test_mcp_text_wrapping_extract_result(self):
        inner = json.dumps({"extract_result": [{"content": AMAZON_ITEMS}]})
        decoded = decode_payload({"content": [{"text": inner}]})
        assert decoded.items == AMAZON_ITEMS

    def test_mcp_text_with_list(self):
        decoded = decode_payload({"content": [{"text": json.dumps(AMAZON_ITEMS)}]})
        assert decoded.variant == "mcp_text"
        assert decoded.items == AMAZON_ITEMS

    def test_json_string_field(self):
        decoded = decode_payload({"purchases": json.dumps(AMAZON_ITEMS)})
        assert decoded.items == AMAZON_ITEMS

    def test_json_string_payload(self):
        decoded = decode_payload(json.dumps({"purchases": AMAZON_ITEMS}))
        assert decoded.items == AMAZON_ITEMS

    @pytest.mark.parametrize("raw", [None, "", {}, {"purchases": []}])
    def test_empty(self, raw):
        assert decode_payload(raw).is_empty

    def test_link_only_payload_is_empty(self):
        decoded = decode_payload({"link_id": "L1", "url": "https://gg/link/L1", "message": "sign in"})
        assert decoded.variant == "empty"

    def test_sign_in_payload_with_extra_keys_is_empty(self):
        decoded = decode_payload({
            "link_id": "L1", "url": "https://gg/link/L1", "signin_id": "S1", "expires_in": 300,
        })
        assert decoded.variant == "empty"


class TestDecodeErrors:
    """Unrecognized shapes fail loudly."""

    def test_unknown_keys(self):
        with pytest.raises(UpstreamShapeError):
            decode_payload({"weird": 1})

    def test_invalid_json_text(self):
        with pytest.raises(UpstreamShapeError):
            decode_payload({"content": [{"text": "not json"}]})

    def test_non_list_field(self):
        with pytest.raises(UpstreamShapeError):
            decode_payload({"purchases": {"order_id": "A1"}})

    def test_non_object_items(self):
        with pytest.raises(UpstreamShapeError):
            decode_payload({"purchases": ["A1", "A2"]})

    def test_scalar_payload(self):
        with pytest.raises(UpstreamShapeError):
            decode_payload(42)


class TestNormalize:
    """Mapping raw items onto PurchaseHistoryRecord."""

    def test_amazon_scenario(self):
        records = normalize_purchase_history(AMAZON, {"purchases": AMAZON_ITEMS})

        assert len(records) == 1
        record = records[0]
        assert record.brand == "Amazon"
        assert record.brand_id == "amazon"
        assert record.order_id == "A1"
        assert record.order_date == date(2024, 1, 1)
        assert record.order_total == "$10"
        assert record.product_names == ["X"]
        assert record.image_urls == ["img1"]

    def test_string_and_array_forms_are_equivalent(self):
        from_string = normalize_purchase_history(AMAZON, json.dumps(AMAZON_ITEMS))
        from_array = normalize_purchase_history(AMAZON, AMAZON_ITEMS)
        assert from_string == from_array

    def test_missing_fields_get_defaults(self):
        records = normalize_purchase_history(AMAZON, [{"order_id": 17}])
        record = records[0]
        assert record.order_id == "17"
        assert record.order_date is None
        assert record.order_total == ""
        assert record.product_names == []
        assert record.image_urls == []

    def test_goodreads_aliases(self):
        books = [{"title": "Dune", "date_read": "March 5, 2023", "cover_image": "c.jpg"}]
        records = normalize_purchase_history(GOODREADS, {"books": books})
        assert records[0].brand == "Goodreads"
        assert records[0].product_names == ["Dune"]
        assert records[0].image_urls == ["c.jpg"]
        assert records[0].order_date == date(2023, 3, 5)

    def test_wayfair_prefers_order_number(self):
        records = normalize_purchase_history(
            WAYFAIR, {"orders": [{"order_number": "W-9", "id": "internal"}]},
        )
        assert records[0].order_id == "W-9"

    def test_product_objects_flattened(self):
        items = [{"order_id": "A2", "products": [{"name": "Lamp"}, {"name": "Rug"}],
                  "images": [{"url": "l.jpg"}]}]
        record = normalize_purchase_history(AMAZON, items)[0]
        assert record.product_names == ["Lamp", "Rug"]
        assert record.items() == [("Lamp", "l.jpg"), ("Rug", None)]


class TestCoercion:
    """Field coercion helpers."""

    @pytest.mark.parametrize("value,expected", [
        ("2024-01-01", date(2024, 1, 1)),
        ("2024-01-01T10:00:00Z", date(2024, 1, 1)),
        ("January 2, 2024", date(2024, 1, 2)),
        ("Jan 2, 2024", date(2024, 1, 2)),
        ("01/02/2024", date(2024, 1, 2)),
        ("someday", None),
        ("", None),
        (None, None),
        (20240101, None),
    ])
    def test_coerce_date(self, value, expected):
        assert coerce_date(value) == expected

    def test_coerce_text_list_from_json_string(self):
        assert coerce_text_list('["a", "b"]') == ["a", "b"]

    def test_coerce_text_list_drops_blanks(self):
        assert coerce_text_list(["a", "", None, " b "]) == ["a", "b"]


class TestOrderDetails:
    """Per-order detail normalization."""

    def test_single_object(self):
        details = normalize_order_details(
            WAYFAIR, "W-1", {"product_names": ["Sofa"], "image_urls": ["s.jpg"]},
        )
        assert details.order_id == "W-1"
        assert details.product_names == ["Sofa"]
        assert details.image_urls == ["s.jpg"]

    def test_list_of_items_merged(self):
        raw = {"content": [{"text": json.dumps([
            {"product_names": ["Sofa"], "image_urls": ["s.jpg"]},
            {"product_names": ["Chair"], "image_urls": ["c.jpg"]},
        ])}]}
        details = normalize_order_details(WAYFAIR, "W-1", raw)
        assert details.product_names == ["Sofa", "Chair"]
        assert details.image_urls == ["s.jpg", "c.jpg"]


class TestFilterUniqueOrders:
    """Dedup identity (brand, order_id, first product name)."""

    def test_first_occurrence_wins(self):
        first = _record("A1", "X")
        duplicate = first.model_copy(update={"order_total": "$99"})
        result = filter_unique_orders([first, duplicate])
        assert result == [first]

    def test_same_order_different_first_product_kept(self):
        records = [_record("A1", "X"), _record("A1", "Y")]
        assert filter_unique_orders(records) == records

    def test_same_order_different_brand_kept(self):
        records = [_record("1", "X", "Amazon"), _record("1", "X", "Wayfair")]
        assert filter_unique_orders(records) == records

    def test_order_preserved(self):
        records = [_record("B", "1"), _record("A", "1"), _record("B", "1"), _record("C", "1")]
        assert [r.order_id for r in filter_unique_orders(records)] == ["B", "A", "C"]
