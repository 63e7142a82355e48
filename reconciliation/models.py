"""
Order → Receipt Sync — Models

Pydantic models shared by the ledger, the resolvers and the reconciler.
Field names on the ledger-side models intentionally match the Postgres columns
in `order_ledger`, `catalog_entries` and `promo_records` so rows validate
straight into models.

Incoming GloriaFood payloads are parsed leniently: ids arrive as ints or
strings, prices as floats. All money is held as `Decimal` rounded to cents.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

CENT = Decimal("0.01")

SIZE_GROUP_NAMES = {"size", "الحجم", "حجم"}


def quantize_money(value: Any) -> Decimal:
    """Round a money value to cents (half-up, like the POS does)."""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    DUPLICATE = "duplicate"


class MatchType(str, Enum):
    EXACT = "exact"
    NAME_ONLY = "name_only"
    AUTO_CREATED = "auto_created"


class DiscountKind(str, Enum):
    PERCENT_OF_TOTAL = "percent_of_total"
    FIXED_AMOUNT = "fixed_amount"


# ── Order Source (GloriaFood) payload ────────────────────────────────────────


class LineOption(BaseModel):
    """A modifier / option attached to an order line (size, extras)."""

    name: str
    group_name: Optional[str] = None
    type: Optional[str] = None
    price: Decimal = Decimal("0")
    quantity: int = 1

    @property
    def is_size_group(self) -> bool:
        return (
            (self.type or "").strip().lower() == "size"
            or (self.group_name or "").strip().lower() in SIZE_GROUP_NAMES
        )


class OrderLine(BaseModel):
    """One line of an incoming order. `type` distinguishes items from promos and fees."""

    id: Optional[str] = None
    name: str
    type: str = "item"
    type_id: Optional[str] = None
    parent_id: Optional[str] = None
    price: Decimal = Decimal("0")
    quantity: int = Field(default=1, gt=0)
    instructions: Optional[str] = None
    options: list[LineOption] = Field(default_factory=list)

    # Cart-level promo fields (type == "promo_cart")
    cart_discount_rate: Optional[Decimal] = None
    cart_discount: Optional[Decimal] = None
    item_discount: Optional[Decimal] = None

    @field_validator("id", "type_id", "parent_id", mode="before")
    @classmethod
    def coerce_ids(cls, v: object) -> Optional[str]:
        """GloriaFood sends numeric ids; the ledger keys everything by string."""
        if v is None or v == "":
            return None
        return str(v)

    @field_validator("options", mode="before")
    @classmethod
    def none_options(cls, v: object) -> object:
        return v or []

    @property
    def is_package(self) -> bool:
        return self.type == "promo_item"

    @property
    def is_cart_discount(self) -> bool:
        return self.type == "promo_cart"

    @property
    def is_delivery_fee(self) -> bool:
        return self.type == "delivery_fee" or self.name == "DELIVERY_FEE"


class IncomingOrder(BaseModel):
    """
    A single order as delivered by the GloriaFood webhook.

    `items` is required (an empty list is a reservation / info event);
    `total_price` also accepts the shorter `total` key used by test tooling.
    """

    id: str
    type: Optional[str] = None
    status: Optional[str] = None
    client_first_name: Optional[str] = None
    client_last_name: Optional[str] = None
    client_phone: Optional[str] = None
    client_email: Optional[str] = None
    client_address: Optional[str] = None
    instructions: Optional[str] = None
    items: list[OrderLine]
    total_price: Decimal = Field(validation_alias=AliasChoices("total_price", "total"))
    sub_total_price: Optional[Decimal] = None
    tax_value: Optional[Decimal] = None
    accepted_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: object) -> str:
        if v is None or str(v).strip() == "":
            raise ValueError("order id is required")
        return str(v)

    @property
    def customer_name(self) -> str:
        full = f"{self.client_first_name or ''} {self.client_last_name or ''}".strip()
        return full or "Unknown Customer"

    @property
    def is_reservation(self) -> bool:
        return self.type == "table_reservation" or not self.items

    @property
    def is_accepted(self) -> bool:
        # Payloads without a status (manual replays, tests) are treated as accepted
        return self.status is None or self.status.lower() == "accepted"

    @property
    def is_pickup(self) -> bool:
        return (self.type or "").lower() == "pickup"

    @property
    def delivery_fee(self) -> Decimal:
        return sum(
            (quantize_money(line.price) * line.quantity for line in self.items if line.is_delivery_fee),
            Decimal("0.00"),
        )


# ── Catalog ──────────────────────────────────────────────────────────────────


class CatalogEntry(BaseModel):
    """Row of `catalog_entries`: (source item name, size) → POS SKU."""

    sku: str
    canonical_name: str
    category: str
    source_item_name: str
    size: Optional[str] = None
    price: Decimal

    @field_validator("sku", mode="before")
    @classmethod
    def coerce_sku(cls, v: object) -> str:
        return str(v)

    @field_validator("size", mode="before")
    @classmethod
    def blank_size_is_none(cls, v: object) -> Optional[str]:
        if v is None or str(v).strip() == "":
            return None
        return str(v).strip()


class ResolvedItem(BaseModel):
    entry: CatalogEntry
    match_type: MatchType
    pos_item_id: Optional[str] = None
    variant_id: Optional[str] = None


# ── Promotions ───────────────────────────────────────────────────────────────


class PromoRecord(BaseModel):
    """Row of `promo_records`, keyed by the stable GloriaFood promo type id."""

    promo_id: str
    pos_discount_id: Optional[str] = None
    kind: DiscountKind
    value: Decimal
    name: str


# ── Ledger ───────────────────────────────────────────────────────────────────


class OrderRecord(BaseModel):
    """Row of `order_ledger`. The single source of truth for 'was this order receipted'."""

    order_id: str
    raw_order: dict[str, Any]
    pos_receipt_id: Optional[str] = None
    pos_receipt_number: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    order_type: Optional[str] = None
    subtotal: Decimal = Decimal("0.00")
    tax: Decimal = Decimal("0.00")
    delivery_fee: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")
    line_items: list[dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: IncomingOrder, raw_order: dict[str, Any]) -> "OrderRecord":
        """Build the initial pending record for a never-seen order."""
        return cls(
            order_id=order.id,
            raw_order=raw_order,
            customer_name=order.customer_name,
            customer_phone=order.client_phone,
            customer_email=order.client_email,
            order_type=order.type,
            subtotal=quantize_money(order.sub_total_price if order.sub_total_price is not None else order.total_price),
            tax=quantize_money(order.tax_value),
            delivery_fee=order.delivery_fee,
            total=quantize_money(order.total_price),
            line_items=[
                {
                    "name": line.name,
                    "type": line.type,
                    "quantity": line.quantity,
                    "unit_price": str(quantize_money(line.price)),
                    "total_price": str(quantize_money(line.price) * line.quantity),
                }
                for line in order.items
            ],
        )


# ── Receipt plan (what the reconciler hands to the POS client) ───────────────


class ReceiptLine(BaseModel):
    sku: str
    variant_id: Optional[str] = None
    name: str
    quantity: int
    unit_price: Decimal
    note: Optional[str] = None
    match_type: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return quantize_money(self.unit_price * self.quantity)

    def ledger_fragment(self) -> dict[str, Any]:
        """JSON-serialisable form stored in `order_ledger.line_items`."""
        return {
            "sku": self.sku,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "total_price": str(self.line_total),
            "match_type": self.match_type,
        }


class ReceiptDiscount(BaseModel):
    pos_discount_id: str
    name: str
    kind: DiscountKind
    value: Decimal


class Tender(BaseModel):
    id: Optional[str] = None
    name: str = "Cash"
    name_based: bool = False


class ReceiptDraft(BaseModel):
    order_id: str
    order_type: Optional[str] = None
    receipt_date: Optional[str] = None
    lines: list[ReceiptLine]
    discount: Optional[ReceiptDiscount] = None
    tender: Tender
    total: Decimal
    customer_id: Optional[str] = None
    note: str = ""


class PosReceipt(BaseModel):
    id: str
    receipt_number: str


# ── Results ──────────────────────────────────────────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UnmappedItem(_CamelModel):
    name: str
    size: Optional[str] = None
    error: Optional[str] = None


class MappingSummary(_CamelModel):
    total_items: int = 0
    mapped_items: int = 0
    unmapped_items: int = 0
    unmapped_items_list: list[UnmappedItem] = Field(default_factory=list)
    promo_groups: int = 0


class ReconcileResult(_CamelModel):
    """Outcome of one order, returned to the webhook caller (camelCase on the wire)."""

    success: bool
    message: str
    order_id: Optional[str] = None
    event_type: str
    status: Optional[OrderStatus] = None
    receipt_id: Optional[str] = None
    receipt_number: Optional[str] = None
    customer_id: Optional[str] = None
    attempts: Optional[int] = None
    mapping_results: Optional[MappingSummary] = None
    errors: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
