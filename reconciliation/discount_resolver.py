"""
Order → Receipt Sync — Discount Resolver

Turns a GloriaFood cart-level promotion line into a POS discount, keyed by the
promotion's stable type id so every order using the same promotion shares one
promo record and one POS discount.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from reconciliation.errors import DiscountSyncFailed
from reconciliation.models import DiscountKind, OrderLine, PromoRecord, quantize_money

logger = logging.getLogger(__name__)

# Below this rate GloriaFood is describing a fixed-amount promotion
FIXED_AMOUNT_RATE_THRESHOLD = Decimal("0.01")


def classify(line: OrderLine) -> tuple[DiscountKind, Decimal]:
    """(kind, value): percent value is rate × 100; fixed amount is always positive."""
    rate = line.cart_discount_rate or Decimal("0")
    if rate < FIXED_AMOUNT_RATE_THRESHOLD:
        amount = line.cart_discount or line.item_discount or Decimal("0")
        return DiscountKind.FIXED_AMOUNT, quantize_money(abs(amount))
    return DiscountKind.PERCENT_OF_TOTAL, quantize_money(rate * 100)


class DiscountResolver:
    def __init__(self, promos, pos):
        self.promos = promos
        self.pos = pos

    async def resolve_cart_discount(self, line: OrderLine) -> PromoRecord:
        """
        Upsert the promo record and make sure the POS discount matches it.

        Returns the record with `pos_discount_id` populated.

        Raises:
            DiscountSyncFailed: no usable promo id, or the POS call failed.
        """
        promo_id = line.type_id
        if not promo_id:
            if not line.id:
                raise DiscountSyncFailed(f"Promotion '{line.name}' carries no id")
            logger.warning(
                "Promotion %r has no type_id — keying by per-order id %s", line.name, line.id
            )
            promo_id = line.id

        kind, value = classify(line)

        async with self.promos.key_lock(promo_id) as conn:
            record = await self.promos.upsert(
                PromoRecord(promo_id=promo_id, kind=kind, value=value, name=line.name),
                conn=conn,
            )

            if record.pos_discount_id:
                await self.pos.update_discount(record)
                logger.info("Updated POS discount %s for promo %s", record.pos_discount_id, promo_id)
            else:
                pos_discount_id = await self.pos.create_discount(record)
                await self.promos.set_pos_discount_id(promo_id, pos_discount_id, conn=conn)
                record = record.model_copy(update={"pos_discount_id": pos_discount_id})

        return record
