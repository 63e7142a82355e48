"""
Shared fixtures: in-memory stand-ins for the Postgres stores and the Loyverse
client, so reconciler / resolver tests run without any external connectivity.
SQL itself is covered in test_stores.py against a mocked psycopg pool.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx
import pytest

from reconciliation.discount_resolver import DiscountResolver
from reconciliation.errors import (
    DiscountSyncFailed,
    ItemCreationFailed,
    ReceiptCreationFailed,
)
from reconciliation.item_resolver import ItemResolver
from reconciliation.models import (
    CatalogEntry,
    OrderRecord,
    OrderStatus,
    PosReceipt,
    PromoRecord,
    ReceiptDraft,
)
from reconciliation.reconciler import ReceiptReconciler


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class FakeCatalogStore:
    def __init__(self, entries: Optional[list[CatalogEntry]] = None):
        self.entries: dict[tuple[str, str], CatalogEntry] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        for e in entries or []:
            self.entries[(e.source_item_name, e.size or "")] = e
        self._seq = max((int(e.sku) for e in self.entries.values()), default=10000)

    async def find_exact(self, name, size, conn=None):
        return self.entries.get((name, size or ""))

    async def find_by_name(self, name):
        matches = sorted(
            (e for (n, _), e in self.entries.items() if n == name),
            key=lambda e: (e.size is not None, e.sku),
        )
        return matches[0] if matches else None

    async def get(self, sku):
        return next((e for e in self.entries.values() if e.sku == sku), None)

    async def insert_if_absent(self, entry, conn=None):
        key = (entry.source_item_name, entry.size or "")
        await asyncio.sleep(0)
        return self.entries.setdefault(key, entry)

    async def next_sku(self, conn=None):
        self._seq += 1
        return str(self._seq)

    async def list_entries(self, limit=100, offset=0):
        return list(self.entries.values())[offset:offset + limit]

    async def update_entry(self, sku, price=None, canonical_name=None):
        for key, e in self.entries.items():
            if e.sku == sku:
                updated = e.model_copy(update={
                    "price": price if price is not None else e.price,
                    "canonical_name": canonical_name or e.canonical_name,
                })
                self.entries[key] = updated
                return updated
        return None

    @asynccontextmanager
    async def key_lock(self, name, size):
        lock = self._locks.setdefault((name, size or ""), asyncio.Lock())
        async with lock:
            yield


class FakePromoStore:
    def __init__(self):
        self.records: dict[str, PromoRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def get(self, promo_id):
        return self.records.get(promo_id)

    async def upsert(self, record, conn=None):
        existing = self.records.get(record.promo_id)
        if existing is not None and record.pos_discount_id is None:
            record = record.model_copy(update={"pos_discount_id": existing.pos_discount_id})
        self.records[record.promo_id] = record
        return record

    async def set_pos_discount_id(self, promo_id, pos_discount_id, conn=None):
        self.records[promo_id] = self.records[promo_id].model_copy(
            update={"pos_discount_id": pos_discount_id}
        )

    @asynccontextmanager
    async def key_lock(self, promo_id):
        lock = self._locks.setdefault(promo_id, asyncio.Lock())
        async with lock:
            yield


class FakeLedger:
    """Same conditional-transition semantics as OrderLedger, in a dict."""

    def __init__(self):
        self.records: dict[str, OrderRecord] = {}

    def _update(self, order_id, **changes) -> OrderRecord:
        changes.setdefault("updated_at", _now())
        record = self.records[order_id].model_copy(update=changes)
        self.records[order_id] = record
        return record

    def age(self, order_id: str, seconds: float) -> None:
        """Pretend the record was last touched `seconds` ago."""
        self.records[order_id] = self.records[order_id].model_copy(
            update={"updated_at": _now() - timedelta(seconds=seconds)}
        )

    async def get(self, order_id):
        return self.records.get(order_id)

    async def insert_pending(self, record):
        if record.order_id in self.records:
            return None
        stamped = record.model_copy(update={"created_at": _now(), "updated_at": _now()})
        self.records[record.order_id] = stamped
        return stamped

    async def mark_processed(self, order_id, receipt_id, receipt_number, line_items=None):
        record = self.records.get(order_id)
        if record is None or record.status is not OrderStatus.PENDING:
            return None
        return self._update(
            order_id,
            status=OrderStatus.PROCESSED,
            pos_receipt_id=receipt_id,
            pos_receipt_number=receipt_number,
            line_items=line_items if line_items is not None else record.line_items,
            last_error=None,
            processed_at=_now(),
        )

    async def mark_failed(self, order_id, error, count_attempt=True):
        record = self.records.get(order_id)
        if record is None or record.status not in (OrderStatus.PENDING, OrderStatus.PROCESSED):
            return None
        return self._update(
            order_id,
            status=OrderStatus.FAILED,
            last_error=error,
            attempts=record.attempts + (1 if count_attempt else 0),
        )

    async def mark_duplicate(self, order_id):
        record = self.records.get(order_id)
        if record is None or record.status is not OrderStatus.PROCESSED:
            return None
        return self._update(order_id, status=OrderStatus.DUPLICATE)

    async def reopen(self, order_id, max_attempts, force=False):
        record = self.records.get(order_id)
        if record is None or record.status is not OrderStatus.FAILED:
            return None
        if record.attempts >= max_attempts and not force:
            return None
        return self._update(order_id, status=OrderStatus.PENDING)

    async def take_over(self, order_id, lease_seconds):
        record = self.records.get(order_id)
        if record is None or record.status is not OrderStatus.PENDING:
            return None
        if record.updated_at > _now() - timedelta(seconds=lease_seconds):
            return None
        return self._update(order_id)

    async def due_for_retry(self, max_attempts, base_delay_seconds, limit=50):
        now = _now()
        return [
            r.order_id
            for r in self.records.values()
            if r.status is OrderStatus.FAILED
            and r.attempts < max_attempts
            and r.updated_at <= now - timedelta(seconds=base_delay_seconds * 2 ** (max(r.attempts, 1) - 1))
        ][:limit]

    async def recent(self, limit=20):
        return sorted(self.records.values(), key=lambda r: r.created_at, reverse=True)[:limit]

    async def failed(self, limit=100):
        return [r for r in self.records.values() if r.status is OrderStatus.FAILED][:limit]

    async def stats(self):
        counts = {s.value: 0 for s in OrderStatus}
        for r in self.records.values():
            counts[r.status.value] += 1
        total = len(self.records)
        return {
            "total": total,
            **counts,
            "success_rate": round(counts["processed"] / total * 100, 2) if total else 0.0,
        }


class FakeLoyverse:
    """Records every call; individual operations can be made to fail."""

    def __init__(self):
        self.items: dict[str, dict[str, Any]] = {}
        self.receipts: dict[str, dict[str, Any]] = {}
        self.drafts: list[ReceiptDraft] = []
        self.discounts: dict[str, PromoRecord] = {}
        self.discount_updates: list[PromoRecord] = []
        self.customers: list[dict[str, Any]] = []
        self.tenders = [
            {"id": "tender-cash", "name": "Cash", "type": "CASH"},
            {"id": "tender-card", "name": "Card", "type": "NONINTEGRATEDCARD"},
        ]
        self.fail_create_item = False
        self.fail_create_receipt = False
        self.fail_discount = False
        self.fail_customer = False
        self._receipt_no = 1000

    async def create_item(self, name, price, sku, category_id=None):
        await asyncio.sleep(0)
        if self.fail_create_item:
            raise ItemCreationFailed(f"POS refused item '{name}'")
        self.items[sku] = {"item_id": f"item-{sku}", "variant_id": f"var-{sku}", "sku": sku,
                           "name": name, "price": price}
        return {"item_id": f"item-{sku}", "variant_id": f"var-{sku}", "sku": sku}

    async def find_item_by_sku(self, sku):
        return self.items.get(sku)

    async def create_receipt(self, draft):
        if self.fail_create_receipt:
            raise ReceiptCreationFailed("POS rejected receipt: 500")
        self._receipt_no += 1
        number = f"1-{self._receipt_no}"
        self.drafts.append(draft)
        self.receipts[number] = {"receipt_number": number, "order": draft.order_id, "note": draft.note}
        return PosReceipt(id=number, receipt_number=number)

    async def get_receipt_by_id(self, receipt_id):
        return self.receipts.get(receipt_id)

    async def find_receipt_by_order(self, order_id):
        return next((r for r in self.receipts.values() if r["order"] == order_id), None)

    async def find_or_create_customer(self, name, phone=None, email=None, address=None):
        if self.fail_customer:
            raise httpx.ConnectError("customers endpoint down")
        for c in self.customers:
            if (phone and c["phone"] == phone) or (email and c["email"] == email):
                return c["id"]
        customer = {"id": f"cust-{len(self.customers) + 1}", "name": name, "phone": phone, "email": email}
        self.customers.append(customer)
        return customer["id"]

    async def create_discount(self, record):
        if self.fail_discount:
            raise DiscountSyncFailed(f"POS refused discount '{record.name}'")
        discount_id = f"disc-{len(self.discounts) + 1}"
        self.discounts[discount_id] = record
        return discount_id

    async def update_discount(self, record):
        if self.fail_discount:
            raise DiscountSyncFailed(f"POS refused update of discount '{record.name}'")
        self.discount_updates.append(record)
        return record.pos_discount_id

    async def list_tender_types(self):
        return list(self.tenders)

    async def close(self):
        pass


# ── Fixtures ──────────────────────────────────────────────────────────────────

SEED_CATALOG = [
    CatalogEntry(sku="10001", canonical_name="قهوة تركي", category="مشروبات",
                 source_item_name="قهوة تركي", size=None, price=Decimal("25.00")),
    CatalogEntry(sku="10002", canonical_name="قهوة تركي كبير", category="مشروبات",
                 source_item_name="قهوة تركي", size="كبير", price=Decimal("30.00")),
    CatalogEntry(sku="10003", canonical_name="Delivery Fee", category="خدمات",
                 source_item_name="Delivery Fee", size=None, price=Decimal("15.00")),
]


@pytest.fixture
def catalog() -> FakeCatalogStore:
    return FakeCatalogStore(SEED_CATALOG)


@pytest.fixture
def promos() -> FakePromoStore:
    return FakePromoStore()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def pos() -> FakeLoyverse:
    return FakeLoyverse()


@pytest.fixture
def item_resolver(catalog, pos) -> ItemResolver:
    return ItemResolver(catalog, pos, default_category="مشروبات")


@pytest.fixture
def discount_resolver(promos, pos) -> DiscountResolver:
    return DiscountResolver(promos, pos)


@pytest.fixture
def reconciler(ledger, item_resolver, discount_resolver, pos) -> ReceiptReconciler:
    return ReceiptReconciler(
        ledger,
        item_resolver,
        discount_resolver,
        pos,
        max_attempts=3,
        pending_lease_seconds=120,
        delivery_fee_item_name="Delivery Fee",
        fallback_tender_id="tender-fallback",
    )


@pytest.fixture
def sample_order() -> dict[str, Any]:
    """Two coffees (one sized via option) plus a delivery fee."""
    return {
        "id": 776113,
        "type": "delivery",
        "status": "accepted",
        "client_first_name": "Omar",
        "client_last_name": "Hassan",
        "client_phone": "+201001234567",
        "client_email": "omar@example.com",
        "client_address": "12 Nile St",
        "instructions": "Ring twice",
        "total_price": 70.0,
        "items": [
            {"id": 1, "name": "قهوة تركي", "type": "item", "price": 27.5, "quantity": 2,
             "options": [{"name": "كبير", "group_name": "Size", "price": 0}]},
            {"id": 2, "name": "DELIVERY_FEE", "type": "delivery_fee", "price": 15, "quantity": 1},
        ],
    }
