"""
Order → Receipt Sync — Item Resolver

Maps a GloriaFood item (free-text, often Arabic, optionally sized) to a POS
SKU via the Catalog Mapping Table:

  1. exact      — (name, size) matches an entry; a sized lookup never falls
                  back to the unsized entry
  2. name_only  — opt-in (diagnostics): name matches, unsized entry preferred
  3. auto_create — opt-in (price given): create the POS item, then the entry

Auto-creation holds a per-(name, size) advisory lock and re-checks the exact
match under it, so concurrent first sightings of the same item create exactly
one POS item and one catalog entry.
"""

from __future__ import annotations

import logging
import re
import time
from decimal import Decimal
from typing import Optional

import psycopg

from reconciliation.errors import MappingMiss
from reconciliation.models import (
    CatalogEntry,
    MatchType,
    OrderLine,
    ResolvedItem,
    quantize_money,
)

logger = logging.getLogger(__name__)

# Known size words → the localized token stored in the catalog
SIZE_TOKENS = {
    "large": "كبير",
    "medium": "وسط",
    "small": "صغير",
    "كبير": "كبير",
    "وسط": "وسط",
    "صغير": "صغير",
}

_SIZE_IN_NAME = re.compile(
    r"[\(\[]?\b(" + "|".join(SIZE_TOKENS) + r")\b[\)\]]?",
    re.IGNORECASE,
)


def normalize_size_token(text: str) -> Optional[str]:
    return SIZE_TOKENS.get(text.strip().lower())


def extract_size(line: OrderLine) -> tuple[str, Optional[str], Decimal]:
    """
    Split an order line into (lookup name, size, size surcharge).

    A size option wins over anything in the name and keeps its own text; a
    size word inside the item name is stripped from the lookup name and
    normalised to the localized token.
    """
    name = line.name.strip()

    for option in line.options:
        if option.is_size_group or normalize_size_token(option.name):
            return name, option.name.strip(), quantize_money(option.price)

    match = _SIZE_IN_NAME.search(name)
    if match:
        size = SIZE_TOKENS[match.group(1).lower()]
        stripped = _SIZE_IN_NAME.sub(" ", name, count=1)
        stripped = re.sub(r"\s+", " ", stripped).strip(" -")
        if stripped:
            return stripped, size, Decimal("0.00")

    return name, None, Decimal("0.00")


class ItemResolver:
    """
    Usage:
        resolver = ItemResolver(catalog_store, loyverse_client, default_category="مشروبات")
        item = await resolver.resolve_line(order_line)
    """

    def __init__(self, catalog, pos, default_category: str = "مشروبات"):
        self.catalog = catalog
        self.pos = pos
        self.default_category = default_category

    async def resolve(
        self,
        source_item_name: str,
        size: Optional[str],
        *,
        allow_name_only: bool = False,
        create_price: Optional[Decimal] = None,
    ) -> ResolvedItem:
        """
        Resolve (name, size) to a catalog entry.

        Raises:
            MappingMiss: nothing matched and no auto-create price was given.
            ItemCreationFailed: the POS refused the new item.
        """
        entry = await self.catalog.find_exact(source_item_name, size)
        if entry is not None:
            return ResolvedItem(entry=entry, match_type=MatchType.EXACT)

        if allow_name_only:
            entry = await self.catalog.find_by_name(source_item_name)
            if entry is not None:
                return ResolvedItem(entry=entry, match_type=MatchType.NAME_ONLY)

        if create_price is None:
            raise MappingMiss(source_item_name, size)

        return await self._auto_create(source_item_name, size, quantize_money(create_price))

    async def resolve_line(self, line: OrderLine, *, auto_create: bool = True) -> ResolvedItem:
        name, size, surcharge = extract_size(line)
        create_price = quantize_money(line.price) + surcharge if auto_create else None
        return await self.resolve(name, size, create_price=create_price)

    # ── Private ───────────────────────────────────────────────────────────────

    async def _auto_create(self, name: str, size: Optional[str], price: Decimal) -> ResolvedItem:
        async with self.catalog.key_lock(name, size) as conn:
            existing = await self.catalog.find_exact(name, size, conn=conn)
            if existing is not None:
                # Lost the race to another worker; its entry is ours now
                return ResolvedItem(entry=existing, match_type=MatchType.EXACT)

            sku = await self._allocate_sku(conn)
            display_name = f"{name} {size}" if size else name

            logger.info("No mapping for %r (%s) — creating POS item SKU %s", name, size, sku)
            created = await self.pos.create_item(display_name, price, sku)

            stored = await self.catalog.insert_if_absent(
                CatalogEntry(
                    sku=sku,
                    canonical_name=display_name,
                    category=self.default_category,
                    source_item_name=name,
                    size=size,
                    price=price,
                ),
                conn=conn,
            )

        variant_id = created.get("variant_id") if stored.sku == sku else None
        return ResolvedItem(
            entry=stored,
            match_type=MatchType.AUTO_CREATED,
            pos_item_id=created.get("item_id"),
            variant_id=variant_id,
        )

    async def _allocate_sku(self, conn=None) -> str:
        try:
            return await self.catalog.next_sku(conn=conn)
        except psycopg.Error as exc:
            token = str(int(time.time() * 1000))
            logger.warning("SKU sequence unavailable (%s) — using timestamp SKU %s", exc, token)
            return token
