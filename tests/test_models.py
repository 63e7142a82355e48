"""
Unit tests for the reconciliation models: payload parsing, money rounding and
the camelCase webhook response.

Run with: pytest tests/test_models.py -v
"""

from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from reconciliation.models import (
    CatalogEntry,
    IncomingOrder,
    MappingSummary,
    OrderLine,
    OrderRecord,
    OrderStatus,
    ReceiptLine,
    ReconcileResult,
    quantize_money,
)


# ── Money ─────────────────────────────────────────────────────────────────────


class TestQuantizeMoney:
    def test_rounds_half_up_to_cents(self):
        assert quantize_money(2.675) == Decimal("2.68")
        assert quantize_money("10") == Decimal("10.00")

    def test_none_is_zero(self):
        assert quantize_money(None) == Decimal("0.00")


# ── Incoming order ────────────────────────────────────────────────────────────


class TestIncomingOrder:
    def test_numeric_ids_become_strings(self, sample_order):
        order = IncomingOrder.model_validate(sample_order)
        assert order.id == "776113"
        assert order.items[0].id == "1"

    def test_total_alias_accepted(self):
        order = IncomingOrder.model_validate({"id": "A1", "items": [], "total": 12.5})
        assert order.total_price == Decimal("12.5")

    def test_missing_total_rejected(self):
        with pytest.raises(ValidationError):
            IncomingOrder.model_validate({"id": "A1", "items": []})

    def test_empty_items_is_reservation(self):
        order = IncomingOrder.model_validate({"id": "R1", "items": [], "total_price": 0})
        assert order.is_reservation

    def test_table_reservation_type(self):
        order = IncomingOrder.model_validate(
            {"id": "R2", "type": "table_reservation", "items": [{"name": "x"}], "total_price": 0}
        )
        assert order.is_reservation

    def test_status_absent_counts_as_accepted(self, sample_order):
        sample_order.pop("status")
        assert IncomingOrder.model_validate(sample_order).is_accepted

    def test_pending_status_not_accepted(self, sample_order):
        sample_order["status"] = "pending"
        assert not IncomingOrder.model_validate(sample_order).is_accepted

    def test_customer_name_fallback(self):
        order = IncomingOrder.model_validate({"id": "X", "items": [], "total_price": 0})
        assert order.customer_name == "Unknown Customer"

    def test_delivery_fee_summed(self, sample_order):
        order = IncomingOrder.model_validate(sample_order)
        assert order.delivery_fee == Decimal("15.00")

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValidationError):
            OrderLine(name="Tea", quantity=0)


class TestOrderLine:
    def test_line_kinds(self):
        assert OrderLine(name="Combo", type="promo_item").is_package
        assert OrderLine(name="10% off", type="promo_cart").is_cart_discount
        assert OrderLine(name="DELIVERY_FEE", type="item").is_delivery_fee

    def test_null_options_become_empty(self):
        assert OrderLine(name="Tea", options=None).options == []


# ── Ledger / catalog rows ─────────────────────────────────────────────────────


class TestOrderRecord:
    def test_from_order_captures_summary_columns(self, sample_order):
        order = IncomingOrder.model_validate(sample_order)
        record = OrderRecord.from_order(order, sample_order)

        assert record.status is OrderStatus.PENDING
        assert record.attempts == 0
        assert record.total == Decimal("70.00")
        assert record.delivery_fee == Decimal("15.00")
        assert record.customer_name == "Omar Hassan"
        assert record.line_items[0]["total_price"] == "55.00"


class TestCatalogEntry:
    def test_blank_size_is_none(self):
        entry = CatalogEntry(sku=10001, canonical_name="Tea", category="مشروبات",
                             source_item_name="Tea", size="  ", price=5)
        assert entry.size is None
        assert entry.sku == "10001"


class TestReceiptLine:
    def test_ledger_fragment(self):
        line = ReceiptLine(sku="10001", name="Tea", quantity=3, unit_price=Decimal("4.50"),
                           match_type="exact")
        assert line.ledger_fragment() == {
            "sku": "10001",
            "name": "Tea",
            "quantity": 3,
            "unit_price": "4.50",
            "total_price": "13.50",
            "match_type": "exact",
        }


# ── Webhook response ──────────────────────────────────────────────────────────


class TestReconcileResult:
    def test_camel_case_response(self):
        result = ReconcileResult(
            success=False,
            message="no items mapped",
            order_id="A1",
            event_type="no_items_mapped",
            mapping_results=MappingSummary(total_items=2, mapped_items=0, unmapped_items=2),
        )
        body = result.to_response()

        assert body["orderId"] == "A1"
        assert body["eventType"] == "no_items_mapped"
        assert body["mappingResults"]["mappedItems"] == 0
        assert "receiptNumber" not in body  # None fields dropped
