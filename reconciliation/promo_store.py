"""
Order → Receipt Sync — Promo table

`promo_records` links a GloriaFood promotion (by its stable type id) to the
POS discount that represents it. The POS discount id is filled in lazily and
is never overwritten with NULL by a later upsert.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import psycopg_pool
from psycopg import AsyncConnection
from psycopg.rows import dict_row

from reconciliation.db import advisory_lock, borrow
from reconciliation.models import PromoRecord

_COLUMNS = "promo_id, pos_discount_id, kind, value, name"


class PromoStore:
    LOCK_NAMESPACE = "promo_records"

    def __init__(self, pool: psycopg_pool.AsyncConnectionPool):
        self.pool = pool

    async def get(self, promo_id: str) -> Optional[PromoRecord]:
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    f"SELECT {_COLUMNS} FROM promo_records WHERE promo_id = %s",
                    (promo_id,),
                )
                row = await cur.fetchone()
        return PromoRecord(**row) if row else None

    async def upsert(
        self, record: PromoRecord, conn: Optional[AsyncConnection] = None
    ) -> PromoRecord:
        """Insert or refresh kind/value/name; an existing pos_discount_id survives."""
        async with borrow(self.pool, conn) as active:
            async with active.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    f"""
                    INSERT INTO promo_records ({_COLUMNS}, updated_at)
                    VALUES (%(promo_id)s, %(pos_discount_id)s, %(kind)s, %(value)s, %(name)s, now())
                    ON CONFLICT (promo_id) DO UPDATE
                    SET kind = EXCLUDED.kind,
                        value = EXCLUDED.value,
                        name = EXCLUDED.name,
                        pos_discount_id = COALESCE(EXCLUDED.pos_discount_id,
                                                   promo_records.pos_discount_id),
                        updated_at = now()
                    RETURNING {_COLUMNS}
                    """,
                    {
                        "promo_id": record.promo_id,
                        "pos_discount_id": record.pos_discount_id,
                        "kind": record.kind.value,
                        "value": record.value,
                        "name": record.name,
                    },
                )
                row = await cur.fetchone()
        return PromoRecord(**row)

    async def set_pos_discount_id(
        self, promo_id: str, pos_discount_id: str, conn: Optional[AsyncConnection] = None
    ) -> None:
        async with borrow(self.pool, conn) as active:
            async with active.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE promo_records
                    SET pos_discount_id = %s, updated_at = now()
                    WHERE promo_id = %s
                    """,
                    (pos_discount_id, promo_id),
                )

    @asynccontextmanager
    async def key_lock(self, promo_id: str) -> AsyncIterator[AsyncConnection]:
        """Serialise POS discount sync for one promo; yields the lock-holding connection."""
        async with advisory_lock(self.pool, self.LOCK_NAMESPACE, promo_id) as conn:
            yield conn
