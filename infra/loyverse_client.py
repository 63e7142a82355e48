"""
Order → Receipt Sync — Loyverse POS Client

Thin async wrapper over the Loyverse REST API (v1.0, bearer token). Every call
goes through one httpx.AsyncClient with a bounded timeout; a timeout is a
failure like any other HTTP error.

Failures are translated into the reconciliation exceptions so the reconciler
never has to know about httpx:
  create_item                      → ItemCreationFailed
  create_discount / update_discount → DiscountSyncFailed
  create_receipt                   → ReceiptCreationFailed
  get_receipt_by_id / find_receipt_by_order (non-404 errors)
                                   → ReceiptVerificationAmbiguous
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

import httpx

from reconciliation.errors import (
    DiscountSyncFailed,
    ItemCreationFailed,
    ReceiptCreationFailed,
    ReceiptVerificationAmbiguous,
)
from reconciliation.models import DiscountKind, PosReceipt, PromoRecord, ReceiptDraft

logger = logging.getLogger(__name__)

# Loyverse discount types for our two promotion kinds
_DISCOUNT_TYPES = {
    DiscountKind.PERCENT_OF_TOTAL: "FIXED_PERCENT",
    DiscountKind.FIXED_AMOUNT: "FIXED_AMOUNT",
}


NOTE_ORDER_PREFIX = "Order ID: "


def _money(value: Decimal) -> float:
    return float(value)


def _note_order_ids(note: Optional[str]) -> set[str]:
    """Order ids from the `Order ID: <id>` lines of a receipt note (whole-line match)."""
    return {
        line.strip().removeprefix(NOTE_ORDER_PREFIX).strip()
        for line in (note or "").splitlines()
        if line.strip().startswith(NOTE_ORDER_PREFIX)
    }


class LoyverseClient:
    """
    POS adapter used by the Item Resolver, Discount Resolver and Reconciler.

    Usage:
        client = LoyverseClient(token, base_url, store_id=..., timeout=30.0)
        receipt = await client.create_receipt(draft)
        await client.close()
    """

    PAGE_LIMIT = 250
    # Bounded scans when looking a receipt / customer up without an index
    MAX_SCAN_PAGES = 4

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.loyverse.com/v1.0",
        store_id: str = "",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.store_id = store_id
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self.http_client.request(
            method, f"{self.base_url}{path}", headers=self._headers, **kwargs
        )
        response.raise_for_status()
        return response

    # ── Catalog ──────────────────────────────────────────────────────────────

    async def create_item(
        self, name: str, price: Decimal, sku: str, category_id: Optional[str] = None
    ) -> dict[str, Any]:
        """Create a single-variant item. Returns {"item_id", "variant_id", "sku"}."""
        payload = {
            "item_name": name,
            "description": name,
            "category_id": category_id,
            "track_stock": False,
            "sold_by_weight": False,
            "is_composite": False,
            "use_production": False,
            "form": "SQUARE",
            "color": "GREY",
            "variants": [
                {
                    "sku": sku,
                    "default_pricing_type": "FIXED",
                    "default_price": _money(price),
                }
            ],
        }
        try:
            response = await self._request("POST", "/items", json=payload)
        except httpx.HTTPError as exc:
            logger.error("Loyverse create_item failed for %s (SKU %s): %s", name, sku, exc)
            raise ItemCreationFailed(f"POS refused item '{name}': {exc}") from exc

        data = response.json()
        variants = data.get("variants") or [{}]
        logger.info("Loyverse item created: %s (SKU %s, id %s)", name, sku, data.get("id"))
        return {
            "item_id": data.get("id"),
            "variant_id": variants[0].get("variant_id"),
            "sku": sku,
        }

    async def find_item_by_sku(self, sku: str) -> Optional[dict[str, Any]]:
        """Return {"item_id", "variant_id", "sku", "item_name"} or None."""
        response = await self._request("GET", "/variants", params={"sku": sku})
        for variant in response.json().get("variants", []):
            if str(variant.get("sku")) != sku:
                continue
            item_id = variant.get("item_id")
            item_name = None
            if item_id:
                item = (await self._request("GET", f"/items/{item_id}")).json()
                item_name = item.get("item_name")
            return {
                "item_id": item_id,
                "variant_id": variant.get("variant_id"),
                "sku": sku,
                "item_name": item_name,
            }
        return None

    # ── Receipts ─────────────────────────────────────────────────────────────

    async def create_receipt(self, draft: ReceiptDraft) -> PosReceipt:
        """
        Post a receipt for one order. Line prices are taken from the draft
        verbatim; lines without a variant id are looked up by SKU first.
        """
        try:
            line_items = []
            for line in draft.lines:
                variant_id = line.variant_id
                if not variant_id:
                    found = await self.find_item_by_sku(line.sku)
                    if found is None:
                        raise ReceiptCreationFailed(
                            f"SKU {line.sku} ({line.name}) does not exist in the POS"
                        )
                    variant_id = found["variant_id"]
                line_items.append(
                    {
                        "variant_id": variant_id,
                        "quantity": line.quantity,
                        "price": _money(line.unit_price),
                        "line_note": line.note or "",
                    }
                )

            payload: dict[str, Any] = {
                "store_id": self.store_id or None,
                "order": draft.order_id,
                "source": f"GloriaFood - {draft.order_type or 'pickup'}",
                "line_items": line_items,
                "payments": [
                    {"payment_type_id": draft.tender.id, "money": _money(draft.total)}
                ],
                "customer_id": draft.customer_id,
                "note": draft.note,
            }
            if draft.receipt_date:
                payload["receipt_date"] = draft.receipt_date
            if draft.discount is not None:
                payload["total_discounts"] = [
                    {"id": draft.discount.pos_discount_id, "scope": "RECEIPT"}
                ]

            response = await self._request("POST", "/receipts", json=payload)
        except httpx.HTTPError as exc:
            logger.error("Loyverse create_receipt failed for order %s: %s", draft.order_id, exc)
            raise ReceiptCreationFailed(f"POS rejected receipt: {exc}") from exc

        data = response.json()
        receipt_number = data.get("receipt_number")
        if not receipt_number:
            raise ReceiptCreationFailed("POS response carried no receipt_number")
        # Loyverse identifies receipts by number; keep a separate id when present
        return PosReceipt(id=str(data.get("id") or receipt_number), receipt_number=str(receipt_number))

    async def get_receipt_by_id(self, receipt_id: str) -> Optional[dict[str, Any]]:
        """Fetch a receipt; None when the POS answers 404."""
        try:
            response = await self.http_client.get(
                f"{self.base_url}/receipts/{receipt_id}", headers=self._headers
            )
            if response.status_code == 404:
                return None
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ReceiptVerificationAmbiguous(
                f"Could not verify receipt {receipt_id}: {exc}"
            ) from exc
        return response.json()

    async def find_receipt_by_order(self, order_id: str) -> Optional[dict[str, Any]]:
        """
        Find the receipt created for an order by its `order` reference (or the
        `Order ID: <id>` line in the note). Scans the most recent pages only.
        """
        params: dict[str, Any] = {"limit": self.PAGE_LIMIT}
        try:
            for _ in range(self.MAX_SCAN_PAGES):
                data = (await self._request("GET", "/receipts", params=params)).json()
                for receipt in data.get("receipts", []):
                    if str(receipt.get("order") or "") == order_id:
                        return receipt
                    if order_id in _note_order_ids(receipt.get("note")):
                        return receipt
                cursor = data.get("cursor")
                if not cursor:
                    break
                params = {"limit": self.PAGE_LIMIT, "cursor": cursor}
        except httpx.HTTPError as exc:
            raise ReceiptVerificationAmbiguous(
                f"Could not search receipts for order {order_id}: {exc}"
            ) from exc
        return None

    # ── Customers ────────────────────────────────────────────────────────────

    async def find_or_create_customer(
        self,
        name: str,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        address: Optional[str] = None,
    ) -> Optional[str]:
        """Return the POS customer id, matching by phone or email before creating."""
        if phone or email:
            params: dict[str, Any] = {"limit": self.PAGE_LIMIT}
            if email:
                params["email"] = email
            for _ in range(self.MAX_SCAN_PAGES):
                data = (await self._request("GET", "/customers", params=params)).json()
                for customer in data.get("customers", []):
                    phone_match = phone and customer.get("phone_number") == phone
                    email_match = email and (customer.get("email") or "").lower() == email.lower()
                    if phone_match or email_match:
                        logger.info("Matched POS customer %s for %s", customer.get("id"), name)
                        return customer.get("id")
                cursor = data.get("cursor")
                if not cursor:
                    break
                params = {**params, "cursor": cursor}

        payload = {
            "name": name,
            "phone_number": phone,
            "email": email,
            "address": address or "",
            "note": "Created from GloriaFood order",
        }
        data = (await self._request("POST", "/customers", json=payload)).json()
        logger.info("Created POS customer %s for %s", data.get("id"), name)
        return data.get("id")

    # ── Discounts ────────────────────────────────────────────────────────────

    def _discount_payload(self, record: PromoRecord) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": _DISCOUNT_TYPES[record.kind],
            "name": record.name,
            "restricted_access": False,
        }
        if self.store_id:
            payload["stores"] = [self.store_id]
        if record.kind is DiscountKind.FIXED_AMOUNT:
            payload["discount_amount"] = _money(record.value)
        else:
            payload["discount_percent"] = _money(record.value)
        return payload

    async def create_discount(self, record: PromoRecord) -> str:
        try:
            response = await self._request("POST", "/discounts", json=self._discount_payload(record))
        except httpx.HTTPError as exc:
            raise DiscountSyncFailed(f"POS refused discount '{record.name}': {exc}") from exc
        discount_id = response.json().get("id")
        if not discount_id:
            raise DiscountSyncFailed(f"POS returned no id for discount '{record.name}'")
        logger.info("Loyverse discount created: %s → %s", record.promo_id, discount_id)
        return discount_id

    async def update_discount(self, record: PromoRecord) -> str:
        """Loyverse updates a discount by POSTing it again with its id."""
        payload = {"id": record.pos_discount_id, **self._discount_payload(record)}
        try:
            response = await self._request("POST", "/discounts", json=payload)
        except httpx.HTTPError as exc:
            raise DiscountSyncFailed(
                f"POS refused update of discount '{record.name}': {exc}"
            ) from exc
        return response.json().get("id") or record.pos_discount_id

    # ── Tenders ──────────────────────────────────────────────────────────────

    async def list_tender_types(self) -> list[dict[str, Any]]:
        """All payment types: [{"id", "name", "type"}, ...]."""
        response = await self._request("GET", "/payment_types")
        return response.json().get("payment_types", [])

    async def close(self) -> None:
        await self.http_client.aclose()
