"""
Response shaping for ledger records.

Ledger records carry the full raw GloriaFood payload; most callers only need
the summary columns, so the raw order is dropped unless asked for.
"""

from typing import Any, Optional


def optimize_order_response(
    order: dict[str, Any],
    fields: Optional[str] = None,
    include_raw_order: bool = False,
) -> dict[str, Any]:
    """
    Shape one ledger record for the API.

    Args:
        order: record.model_dump(mode="json")
        fields: comma-separated column names to keep (e.g. "order_id,status");
                None or blank keeps every column
        include_raw_order: keep the stored GloriaFood payload

    Examples:
        >>> optimize_order_response({"order_id": "9001", "status": "processed",
        ...                          "raw_order": {}}, fields="order_id,raw_order")
        {'order_id': '9001'}
    """
    wanted = {f.strip() for f in (fields or "").split(",") if f.strip()}

    return {
        k: v
        for k, v in order.items()
        if (not wanted or k in wanted) and (include_raw_order or k != "raw_order")
    }
