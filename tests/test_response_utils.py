"""
Unit tests for ledger record shaping.

Run with: pytest tests/test_response_utils.py -v
"""

from response_utils import optimize_order_response

RECORD = {
    "order_id": "776113",
    "status": "processed",
    "pos_receipt_number": "1-1001",
    "raw_order": {"id": 776113},
}


class TestOptimizeOrderResponse:
    def test_raw_order_dropped_by_default(self):
        assert optimize_order_response(RECORD) == {
            "order_id": "776113",
            "status": "processed",
            "pos_receipt_number": "1-1001",
        }

    def test_raw_order_on_request(self):
        assert optimize_order_response(RECORD, include_raw_order=True) == RECORD

    def test_field_selection(self):
        shaped = optimize_order_response(RECORD, fields="order_id, status")
        assert shaped == {"order_id": "776113", "status": "processed"}

    def test_selecting_raw_order_needs_the_flag(self):
        assert optimize_order_response(RECORD, fields="order_id,raw_order") == {"order_id": "776113"}
        assert optimize_order_response(
            RECORD, fields="order_id,raw_order", include_raw_order=True
        ) == {"order_id": "776113", "raw_order": {"id": 776113}}

    def test_blank_fields_keep_everything(self):
        assert optimize_order_response(RECORD, fields=" , ") == optimize_order_response(RECORD)

    def test_input_not_mutated(self):
        record = dict(RECORD)
        optimize_order_response(record, fields="status")
        assert record == RECORD
