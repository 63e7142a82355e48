"""
Order → Receipt Sync — Receipt Reconciler

Turns one GloriaFood order into exactly one Loyverse receipt, exactly once,
under duplicate webhook deliveries, concurrent workers and partial failures.

Flow for a single order:
  1. Reservations / info events      → customer upsert only, no ledger write
  2. Orders not yet accepted         → acknowledged, no ledger write
  3. Ledger claim                    → new / processed / failed / pending / duplicate
  4. Tender                          → decided before any catalog writes
  5. Lines                           → packages noted, promos → Discount Resolver,
                                       items → Item Resolver, delivery fee last
  6. Customer upsert                 → best effort
  7. Receipt                         → POS; ledger `processed` on confirmation

Failure semantics:
  - Discount sync or receipt creation fails → ledger `failed` (+1 attempt);
    retried by webhook replay, explicit retry or the scheduled sweep.
  - A single line fails to resolve → reported as unmapped; the order goes on.
  - No purchasable line resolves → ledger `failed`, eventType no_items_mapped.
  - Customer upsert fails → logged; the receipt is created without customer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from reconciliation.errors import (
    DiscountSyncFailed,
    ItemCreationFailed,
    MappingMiss,
    OrderValidationError,
    ReceiptCreationFailed,
    ReceiptVerificationAmbiguous,
    ReconciliationError,
)
from reconciliation.models import (
    IncomingOrder,
    MappingSummary,
    OrderLine,
    OrderRecord,
    OrderStatus,
    ReceiptDiscount,
    ReceiptDraft,
    ReceiptLine,
    ReconcileResult,
    Tender,
    UnmappedItem,
    quantize_money,
)

logger = logging.getLogger(__name__)


@dataclass
class ReceiptPlan:
    """Everything resolved from an order's lines before the POS is called."""

    lines: list[ReceiptLine] = field(default_factory=list)
    discount: Optional[ReceiptDiscount] = None
    package_notes: list[str] = field(default_factory=list)
    summary: MappingSummary = field(default_factory=MappingSummary)


def parse_order(raw_order: dict[str, Any]) -> IncomingOrder:
    """Validate a webhook order body. Raises OrderValidationError (HTTP 400)."""
    if not isinstance(raw_order, dict):
        raise OrderValidationError("Order must be a JSON object")
    if raw_order.get("id") in (None, ""):
        raise OrderValidationError("Order has no id")
    if not isinstance(raw_order.get("items"), list):
        raise OrderValidationError(f"Order {raw_order['id']} has no items list")
    try:
        return IncomingOrder.model_validate(raw_order)
    except ValidationError as exc:
        raise OrderValidationError(f"Order {raw_order['id']} is malformed: {exc}") from exc


class ReceiptReconciler:
    """
    Usage:
        reconciler = ReceiptReconciler(ledger, item_resolver, discount_resolver, loyverse)
        result = await reconciler.handle_order(order_id, raw_order)
    """

    def __init__(
        self,
        ledger,
        item_resolver,
        discount_resolver,
        pos,
        *,
        max_attempts: int = 3,
        pending_lease_seconds: float = 120.0,
        delivery_fee_item_name: str = "Delivery Fee",
        skip_autocreate_on_named_tender: bool = False,
        fallback_tender_id: str = "",
    ):
        self.ledger = ledger
        self.items = item_resolver
        self.discounts = discount_resolver
        self.pos = pos
        self.max_attempts = max_attempts
        self.pending_lease_seconds = pending_lease_seconds
        self.delivery_fee_item_name = delivery_fee_item_name
        self.skip_autocreate_on_named_tender = skip_autocreate_on_named_tender
        self.fallback_tender_id = fallback_tender_id

    # ── Entry points ──────────────────────────────────────────────────────────

    async def handle_payload(self, body: Any) -> dict[str, Any]:
        """
        Webhook body: either `{"orders": [...]}` or a single order object.

        Every order is validated before any is processed, so a malformed
        batch is rejected as a whole.
        """
        if not isinstance(body, dict):
            raise OrderValidationError("Payload must be a JSON object")

        if "orders" in body:
            raw_orders = body["orders"]
            if not isinstance(raw_orders, list):
                raise OrderValidationError("'orders' must be a list")
            for raw in raw_orders:
                parse_order(raw)
            results = [await self.handle_order(str(raw["id"]), raw) for raw in raw_orders]
            return {
                "success": all(r.success for r in results),
                "message": f"Processed {len(results)} order(s)",
                "results": [r.to_response() for r in results],
            }

        if "id" in body:
            result = await self.handle_order(str(body["id"]), body)
            return result.to_response()

        raise OrderValidationError("Payload must contain 'orders' or an order 'id'")

    async def handle_order(self, order_id: str, raw_order: dict[str, Any]) -> ReconcileResult:
        order = parse_order({**raw_order, "id": order_id})

        if order.is_reservation:
            return await self._handle_reservation(order)

        if not order.is_accepted:
            logger.info("Order %s has status %r — not processed", order.id, order.status)
            return ReconcileResult(
                success=True,
                message=f"Order status '{order.status}' is not processed",
                order_id=order.id,
                event_type="order_not_accepted",
            )

        record, early = await self._claim(order, raw_order)
        if early is not None:
            return early
        return await self._process(order, record)

    async def retry(self, order_id: str, force: bool = False) -> ReconcileResult:
        """Reprocess a failed order from its stored payload (explicit or scheduled retry)."""
        record = await self.ledger.get(order_id)
        if record is None:
            return ReconcileResult(
                success=False,
                message="Order not found",
                order_id=order_id,
                event_type="order_not_found",
            )
        if record.status is not OrderStatus.FAILED:
            return ReconcileResult(
                success=False,
                message=f"Only failed orders can be retried (order is {record.status.value})",
                order_id=order_id,
                event_type="retry_rejected",
                status=record.status,
                attempts=record.attempts,
            )

        reopened = await self.ledger.reopen(order_id, self.max_attempts, force=force)
        if reopened is None:
            return self._retry_limit_result(record)

        logger.info("Retrying order %s (attempts so far: %d)", order_id, reopened.attempts)
        return await self._process(parse_order(reopened.raw_order), reopened)

    # ── Ledger claim ──────────────────────────────────────────────────────────

    async def _claim(
        self, order: IncomingOrder, raw_order: dict[str, Any]
    ) -> tuple[Optional[OrderRecord], Optional[ReconcileResult]]:
        """
        Decide whether this worker owns the order.

        Returns (record, None) when processing should go ahead, or
        (None, result) when the order is answered without processing.
        """
        record = await self.ledger.get(order.id)

        if record is None:
            inserted = await self.ledger.insert_pending(OrderRecord.from_order(order, raw_order))
            if inserted is not None:
                logger.info("New order %s recorded as pending", order.id)
                return inserted, None
            record = await self.ledger.get(order.id)
            if record is None:
                raise ReconciliationError(f"Ledger lost order {order.id} after insert conflict")

        if record.status is OrderStatus.DUPLICATE:
            return None, self._duplicate_result(record)

        if record.status is OrderStatus.PROCESSED:
            if await self._find_pos_receipt(record) is not None:
                duplicate = await self.ledger.mark_duplicate(order.id)
                logger.info("Order %s replayed after processing — marked duplicate", order.id)
                return None, self._duplicate_result(duplicate or record)
            logger.warning("Order %s is processed but its receipt is missing in the POS", order.id)
            record = await self.ledger.mark_failed(
                order.id, "receipt missing in POS", count_attempt=False
            ) or await self.ledger.get(order.id)

        if record.status is OrderStatus.FAILED:
            reopened = await self.ledger.reopen(order.id, self.max_attempts)
            if reopened is not None:
                logger.info("Reopened failed order %s (attempts: %d)", order.id, reopened.attempts)
                return reopened, None
            current = await self.ledger.get(order.id)
            if current is not None and current.status is OrderStatus.FAILED:
                return None, self._retry_limit_result(current)
            return None, self._in_progress_result(order.id)

        if record.status is OrderStatus.PENDING:
            taken = await self.ledger.take_over(order.id, self.pending_lease_seconds)
            if taken is None:
                return None, self._in_progress_result(order.id)

            logger.warning("Taking over stale pending order %s", order.id)
            existing = await self._find_pos_receipt(taken)
            if existing is not None:
                receipt_number = str(existing.get("receipt_number") or "")
                receipt_id = str(existing.get("id") or receipt_number)
                backfilled = await self.ledger.mark_processed(order.id, receipt_id, receipt_number)
                logger.info("Stale order %s already had POS receipt %s — backfilled", order.id, receipt_number)
                return None, self._duplicate_result(backfilled or taken, receipt_id, receipt_number)
            return taken, None

        return None, self._in_progress_result(order.id)

    async def _find_pos_receipt(self, record: OrderRecord) -> Optional[dict[str, Any]]:
        """Look the order's receipt up in the POS. An inconclusive lookup counts as not found."""
        try:
            if record.pos_receipt_id:
                receipt = await self.pos.get_receipt_by_id(record.pos_receipt_id)
                if receipt is not None:
                    return receipt
            return await self.pos.find_receipt_by_order(record.order_id)
        except ReceiptVerificationAmbiguous as exc:
            logger.warning("Receipt verification for %s inconclusive: %s", record.order_id, exc)
            return None

    # ── Processing ────────────────────────────────────────────────────────────

    async def _process(self, order: IncomingOrder, record: OrderRecord) -> ReconcileResult:
        try:
            tender = await self._determine_tender(order)
            suppress_writes = self.skip_autocreate_on_named_tender and tender.name_based

            try:
                plan = await self._build_plan(order, suppress_writes)
            except DiscountSyncFailed as exc:
                return await self._fail(order.id, f"discount sync failed: {exc}", "order_failed")

            if not plan.lines or plan.summary.mapped_items == 0:
                return await self._fail(
                    order.id, "no items mapped", "no_items_mapped", plan.summary
                )

            customer_id = await self._upsert_customer(order)

            draft = ReceiptDraft(
                order_id=order.id,
                order_type=order.type,
                receipt_date=order.accepted_at,
                lines=plan.lines,
                discount=plan.discount,
                tender=tender,
                total=quantize_money(order.total_price),
                customer_id=customer_id,
                note=self._build_note(order, plan),
            )

            try:
                receipt = await self.pos.create_receipt(draft)
            except ReceiptCreationFailed as exc:
                return await self._fail(order.id, str(exc), "order_failed", plan.summary)

        except ReconciliationError:
            raise
        except Exception as exc:
            # Leave the order retryable instead of waiting out the pending lease
            logger.exception("Unexpected error processing order %s", order.id)
            await self.ledger.mark_failed(order.id, f"unexpected error: {exc}")
            raise

        processed = await self.ledger.mark_processed(
            order.id,
            receipt.id,
            receipt.receipt_number,
            [line.ledger_fragment() for line in plan.lines],
        )
        logger.info("Order %s → POS receipt %s", order.id, receipt.receipt_number)

        return ReconcileResult(
            success=True,
            message="Order processed",
            order_id=order.id,
            event_type="order_processed",
            status=OrderStatus.PROCESSED,
            receipt_id=receipt.id,
            receipt_number=receipt.receipt_number,
            customer_id=customer_id,
            attempts=processed.attempts if processed else record.attempts,
            mapping_results=plan.summary,
            errors=[u.error for u in plan.summary.unmapped_items_list if u.error],
        )

    async def _fail(
        self,
        order_id: str,
        error: str,
        event_type: str,
        summary: Optional[MappingSummary] = None,
    ) -> ReconcileResult:
        failed = await self.ledger.mark_failed(order_id, error)
        logger.error("Order %s failed: %s", order_id, error)
        return ReconcileResult(
            success=False,
            message=error,
            order_id=order_id,
            event_type=event_type,
            status=OrderStatus.FAILED,
            attempts=failed.attempts if failed else None,
            mapping_results=summary,
            errors=[error],
        )

    async def _build_plan(self, order: IncomingOrder, suppress_writes: bool) -> ReceiptPlan:
        plan = ReceiptPlan()

        package_ids = {line.id for line in order.items if line.is_package and line.id}
        children: dict[str, list[OrderLine]] = {}
        for line in order.items:
            if line.parent_id and line.parent_id in package_ids:
                children.setdefault(line.parent_id, []).append(line)

        deferred_fees: list[OrderLine] = []

        for line in order.items:
            if line.is_package:
                plan.package_notes.append(self._package_note(line, children.get(line.id or "", [])))
                plan.summary.promo_groups += 1
                continue
            if line.parent_id and line.parent_id in package_ids:
                continue

            if line.is_cart_discount:
                if suppress_writes:
                    logger.info("Skipping promotion %r — tender is name-based", line.name)
                    continue
                promo = await self.discounts.resolve_cart_discount(line)
                plan.discount = ReceiptDiscount(
                    pos_discount_id=promo.pos_discount_id,
                    name=promo.name,
                    kind=promo.kind,
                    value=promo.value,
                )
                continue

            if line.is_delivery_fee:
                deferred_fees.append(line)
                continue

            plan.summary.total_items += 1
            receipt_line = await self._resolve_item_line(line, plan.summary, suppress_writes)
            if receipt_line is not None:
                plan.lines.append(receipt_line)
                plan.summary.mapped_items += 1

        for fee in deferred_fees:
            fee_line = await self._resolve_delivery_fee(fee, plan.summary, suppress_writes)
            if fee_line is not None:
                plan.lines.append(fee_line)

        plan.summary.unmapped_items = len(plan.summary.unmapped_items_list)
        return plan

    async def _resolve_item_line(
        self, line: OrderLine, summary: MappingSummary, suppress_writes: bool
    ) -> Optional[ReceiptLine]:
        try:
            resolved = await self.items.resolve_line(line, auto_create=not suppress_writes)
        except (MappingMiss, ItemCreationFailed) as exc:
            logger.warning("Line %r not mapped: %s", line.name, exc)
            summary.unmapped_items_list.append(UnmappedItem(name=line.name, error=str(exc)))
            return None

        return ReceiptLine(
            sku=resolved.entry.sku,
            variant_id=resolved.variant_id,
            name=resolved.entry.canonical_name,
            quantity=line.quantity,
            unit_price=quantize_money(line.price),
            note=line.instructions,
            match_type=resolved.match_type.value,
        )

    async def _resolve_delivery_fee(
        self, line: OrderLine, summary: MappingSummary, suppress_writes: bool
    ) -> Optional[ReceiptLine]:
        price = quantize_money(line.price)
        try:
            resolved = await self.items.resolve(
                self.delivery_fee_item_name,
                None,
                create_price=None if suppress_writes else price,
            )
        except (MappingMiss, ItemCreationFailed) as exc:
            logger.warning("Delivery fee not mapped: %s", exc)
            summary.unmapped_items_list.append(UnmappedItem(name=line.name, error=str(exc)))
            return None

        return ReceiptLine(
            sku=resolved.entry.sku,
            variant_id=resolved.variant_id,
            name=resolved.entry.canonical_name,
            quantity=line.quantity,
            unit_price=price,
            match_type=resolved.match_type.value,
        )

    @staticmethod
    def _package_note(package: OrderLine, children: list[OrderLine]) -> str:
        contents = ", ".join(
            f"{c.quantity}x {c.name}" if c.quantity > 1 else c.name for c in children
        )
        price = quantize_money(package.price)
        return f"Package: {package.name} ({contents}) - {price}" if contents else f"Package: {package.name} - {price}"

    # ── Tender & customer ─────────────────────────────────────────────────────

    async def _determine_tender(self, order: IncomingOrder) -> Tender:
        """
        Cash by default. A pickup order whose client first name equals a
        tender's name is paid with that tender (staff / COD accounts).
        Never raises: a failed listing falls back to the configured tender.
        """
        try:
            tenders = await self.pos.list_tender_types()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Tender listing failed (%s) — using fallback tender", exc)
            return Tender(id=self.fallback_tender_id or None, name="Cash")

        first_name = (order.client_first_name or "").strip().lower()
        if order.is_pickup and first_name:
            for tender in tenders:
                if (tender.get("name") or "").strip().lower() == first_name:
                    logger.info("Order %s paid with name-based tender %r", order.id, tender.get("name"))
                    return Tender(id=tender.get("id"), name=tender.get("name"), name_based=True)

        cash = next((t for t in tenders if t.get("type") == "CASH"), None)
        chosen = cash or (tenders[0] if tenders else None)
        if chosen is None:
            return Tender(id=self.fallback_tender_id or None, name="Cash")
        return Tender(id=chosen.get("id"), name=chosen.get("name") or "Cash")

    async def _upsert_customer(self, order: IncomingOrder) -> Optional[str]:
        if not (order.client_phone or order.client_email):
            return None
        try:
            return await self.pos.find_or_create_customer(
                order.customer_name,
                phone=order.client_phone,
                email=order.client_email,
                address=order.client_address,
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Customer upsert failed for order %s: %s", order.id, exc)
            return None

    async def _handle_reservation(self, order: IncomingOrder) -> ReconcileResult:
        customer_id = await self._upsert_customer(order)
        logger.info("Table reservation %s — customer %s", order.id, customer_id)
        return ReconcileResult(
            success=True,
            message="Table reservation recorded",
            order_id=order.id,
            event_type="table_reservation",
            customer_id=customer_id,
        )

    # ── Receipt note & canned results ─────────────────────────────────────────

    @staticmethod
    def _build_note(order: IncomingOrder, plan: ReceiptPlan) -> str:
        parts: list[str] = []
        if order.instructions:
            parts.append(f"Order Notes: {order.instructions}")
        if order.type:
            parts.append(f"Order Type: {order.type.upper()}")
        parts.append(f"Customer: {order.customer_name}")
        if order.client_phone:
            parts.append(f"Customer Phone: {order.client_phone}")
        if order.client_email:
            parts.append(f"Customer Email: {order.client_email}")
        if order.client_address:
            parts.append(f"Delivery Address: {order.client_address}")
        parts.extend(plan.package_notes)
        for unmapped in plan.summary.unmapped_items_list:
            parts.append(f"Unmapped: {unmapped.name}")
        parts.append(f"Order ID: {order.id}")
        return "\n".join(parts)

    @staticmethod
    def _duplicate_result(
        record: OrderRecord,
        receipt_id: Optional[str] = None,
        receipt_number: Optional[str] = None,
    ) -> ReconcileResult:
        return ReconcileResult(
            success=True,
            message="Order already processed",
            order_id=record.order_id,
            event_type="duplicate_order",
            status=record.status,
            receipt_id=receipt_id or record.pos_receipt_id,
            receipt_number=receipt_number or record.pos_receipt_number,
            attempts=record.attempts,
        )

    def _retry_limit_result(self, record: OrderRecord) -> ReconcileResult:
        return ReconcileResult(
            success=False,
            message=f"Retry limit reached ({record.attempts}/{self.max_attempts})",
            order_id=record.order_id,
            event_type="retry_limit_reached",
            status=OrderStatus.FAILED,
            attempts=record.attempts,
            errors=[record.last_error] if record.last_error else [],
        )

    @staticmethod
    def _in_progress_result(order_id: str) -> ReconcileResult:
        return ReconcileResult(
            success=True,
            message="Order is being processed",
            order_id=order_id,
            event_type="order_in_progress",
            status=OrderStatus.PENDING,
        )
