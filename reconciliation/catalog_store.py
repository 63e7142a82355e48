"""
Order → Receipt Sync — Catalog Mapping Table

Persistent map from (source item name, size) to a POS SKU, backed by the
`catalog_entries` table. Entries are append-only: the Item Resolver inserts
them on miss, and only price / canonical name corrections update them.

Lookup key: (source_item_name, COALESCE(size, '')) — a NULL size is its own
key, distinct from every sized variant.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Optional

import psycopg_pool
from psycopg import AsyncConnection
from psycopg.rows import dict_row

from reconciliation.db import advisory_lock, borrow
from reconciliation.models import CatalogEntry

logger = logging.getLogger(__name__)

_COLUMNS = "sku, canonical_name, category, source_item_name, size, price"


class CatalogStore:
    """Async access to `catalog_entries` through the shared pool."""

    LOCK_NAMESPACE = "catalog_entries"

    def __init__(self, pool: psycopg_pool.AsyncConnectionPool):
        self.pool = pool

    async def find_exact(
        self, name: str, size: Optional[str], conn: Optional[AsyncConnection] = None
    ) -> Optional[CatalogEntry]:
        """Exact (name, size) match. A sized lookup never falls back to the unsized entry."""
        async with borrow(self.pool, conn) as active:
            async with active.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    f"""
                    SELECT {_COLUMNS}
                    FROM catalog_entries
                    WHERE source_item_name = %s
                      AND COALESCE(size, '') = COALESCE(%s, '')
                    LIMIT 1
                    """,
                    (name, size),
                )
                row = await cur.fetchone()
        return CatalogEntry(**row) if row else None

    async def find_by_name(self, name: str) -> Optional[CatalogEntry]:
        """Name-only match; the unsized entry wins, then the lowest SKU."""
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    f"""
                    SELECT {_COLUMNS}
                    FROM catalog_entries
                    WHERE source_item_name = %s
                    ORDER BY (size IS NULL) DESC, sku
                    LIMIT 1
                    """,
                    (name,),
                )
                row = await cur.fetchone()
        return CatalogEntry(**row) if row else None

    async def get(self, sku: str) -> Optional[CatalogEntry]:
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    f"SELECT {_COLUMNS} FROM catalog_entries WHERE sku = %s",
                    (sku,),
                )
                row = await cur.fetchone()
        return CatalogEntry(**row) if row else None

    async def insert_if_absent(
        self, entry: CatalogEntry, conn: Optional[AsyncConnection] = None
    ) -> CatalogEntry:
        """
        Insert a new entry unless the lookup key (or SKU) already exists.

        Returns the stored entry: ours if the insert won, otherwise the one
        that was already there under the same (name, size).
        """
        async with borrow(self.pool, conn) as active:
            async with active.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    f"""
                    INSERT INTO catalog_entries ({_COLUMNS})
                    VALUES (%(sku)s, %(canonical_name)s, %(category)s,
                            %(source_item_name)s, %(size)s, %(price)s)
                    ON CONFLICT DO NOTHING
                    RETURNING {_COLUMNS}
                    """,
                    entry.model_dump(),
                )
                row = await cur.fetchone()

        if row:
            logger.info(
                "Catalog entry created: %s → SKU %s", entry.canonical_name, entry.sku
            )
            return CatalogEntry(**row)

        existing = await self.find_exact(entry.source_item_name, entry.size, conn=conn)
        if existing is None:
            # Conflict on the SKU alone: the counter handed out a taken value
            raise ValueError(f"SKU {entry.sku} already belongs to another catalog entry")
        return existing

    async def next_sku(self, conn: Optional[AsyncConnection] = None) -> str:
        """Next value of `catalog_sku_seq` (seeded from the highest numeric SKU)."""
        async with borrow(self.pool, conn) as active:
            async with active.cursor(row_factory=dict_row) as cur:
                await cur.execute("SELECT nextval('catalog_sku_seq') AS sku")
                row = await cur.fetchone()
        return str(row["sku"])

    async def list_entries(self, limit: int = 100, offset: int = 0) -> list[CatalogEntry]:
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    f"""
                    SELECT {_COLUMNS}
                    FROM catalog_entries
                    ORDER BY source_item_name, COALESCE(size, '')
                    LIMIT %s OFFSET %s
                    """,
                    (limit, offset),
                )
                rows = await cur.fetchall()
        return [CatalogEntry(**r) for r in rows]

    async def update_entry(
        self,
        sku: str,
        price: Optional[Decimal] = None,
        canonical_name: Optional[str] = None,
    ) -> Optional[CatalogEntry]:
        """Price / canonical-name correction. Lookup keys are never rewritten."""
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    f"""
                    UPDATE catalog_entries
                    SET price = COALESCE(%s, price),
                        canonical_name = COALESCE(%s, canonical_name)
                    WHERE sku = %s
                    RETURNING {_COLUMNS}
                    """,
                    (price, canonical_name, sku),
                )
                row = await cur.fetchone()
            await conn.commit()
        return CatalogEntry(**row) if row else None

    @asynccontextmanager
    async def key_lock(self, name: str, size: Optional[str]) -> AsyncIterator[AsyncConnection]:
        """
        Serialise auto-creation for one (name, size) key across workers.

        Yields the lock-holding connection; pass it as `conn=` to every
        store call made while the lock is held.
        """
        key = f"{name}\x1f{size or ''}"
        async with advisory_lock(self.pool, self.LOCK_NAMESPACE, key) as conn:
            yield conn
