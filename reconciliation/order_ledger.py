"""
Order → Receipt Sync — Order Ledger

`order_ledger` is the single source of truth for whether an order has been
receipted. Every state transition is one SQL statement whose WHERE clause
carries the expected current state, so two workers racing on the same order
can never both win:

    (absent) ──insert_pending──▶ pending ──mark_processed──▶ processed ──mark_duplicate──▶ duplicate
                                   │  ▲                          │
                         mark_failed  reopen / take_over         └─mark_failed (receipt missing)
                                   ▼  │
                                 failed

Records are never deleted.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import psycopg_pool
from psycopg.rows import dict_row

from reconciliation.models import OrderRecord, OrderStatus

logger = logging.getLogger(__name__)

_COLUMNS = """
    order_id, raw_order, pos_receipt_id, pos_receipt_number, status, attempts,
    last_error, customer_name, customer_phone, customer_email, order_type,
    subtotal, tax, delivery_fee, total, line_items, created_at, updated_at,
    processed_at
"""


class OrderLedger:
    """Async access to `order_ledger` through the shared pool."""

    def __init__(self, pool: psycopg_pool.AsyncConnectionPool):
        self.pool = pool

    async def _fetch_one(self, sql: str, params: Any) -> Optional[OrderRecord]:
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(sql, params)
                row = await cur.fetchone()
            await conn.commit()
        return OrderRecord(**row) if row else None

    async def _fetch_all(self, sql: str, params: Any) -> list[OrderRecord]:
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(sql, params)
                rows = await cur.fetchall()
        return [OrderRecord(**r) for r in rows]

    # ── Reads ────────────────────────────────────────────────────────────────

    async def get(self, order_id: str) -> Optional[OrderRecord]:
        return await self._fetch_one(
            f"SELECT {_COLUMNS} FROM order_ledger WHERE order_id = %s",
            (order_id,),
        )

    async def recent(self, limit: int = 20) -> list[OrderRecord]:
        return await self._fetch_all(
            f"SELECT {_COLUMNS} FROM order_ledger ORDER BY created_at DESC LIMIT %s",
            (limit,),
        )

    async def failed(self, limit: int = 100) -> list[OrderRecord]:
        return await self._fetch_all(
            f"""
            SELECT {_COLUMNS} FROM order_ledger
            WHERE status = 'failed'
            ORDER BY updated_at DESC
            LIMIT %s
            """,
            (limit,),
        )

    async def due_for_retry(
        self, max_attempts: int, base_delay_seconds: float, limit: int = 50
    ) -> list[str]:
        """
        Failed orders whose backoff has elapsed: base × 2^(attempts-1) seconds
        since the last failure, and still under the attempt ceiling.
        """
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT order_id FROM order_ledger
                    WHERE status = 'failed'
                      AND attempts < %(max_attempts)s
                      AND updated_at <= now() - make_interval(
                            secs => %(base)s * power(2, GREATEST(attempts, 1) - 1))
                    ORDER BY updated_at
                    LIMIT %(limit)s
                    """,
                    {"max_attempts": max_attempts, "base": base_delay_seconds, "limit": limit},
                )
                rows = await cur.fetchall()
        return [r["order_id"] for r in rows]

    async def stats(self) -> dict[str, Any]:
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT
                        COUNT(*)                                        AS total,
                        COUNT(*) FILTER (WHERE status = 'processed')    AS processed,
                        COUNT(*) FILTER (WHERE status = 'failed')       AS failed,
                        COUNT(*) FILTER (WHERE status = 'pending')      AS pending,
                        COUNT(*) FILTER (WHERE status = 'duplicate')    AS duplicate,
                        COALESCE(SUM(total) FILTER (WHERE status = 'processed'), 0) AS processed_total
                    FROM order_ledger
                    """
                )
                row = await cur.fetchone()

        total = row["total"] or 0
        processed = row["processed"] or 0
        return {
            "total": total,
            "processed": processed,
            "failed": row["failed"] or 0,
            "pending": row["pending"] or 0,
            "duplicate": row["duplicate"] or 0,
            "processed_total": str(row["processed_total"]),
            "success_rate": round(processed / total * 100, 2) if total else 0.0,
        }

    # ── Transitions ──────────────────────────────────────────────────────────

    async def insert_pending(self, record: OrderRecord) -> Optional[OrderRecord]:
        """
        Atomic insert-if-absent. Returns the new row, or None when another
        worker inserted the same order_id first (caller re-reads and branches).
        """
        inserted = await self._fetch_one(
            f"""
            INSERT INTO order_ledger (
                order_id, raw_order, status, attempts, customer_name,
                customer_phone, customer_email, order_type, subtotal, tax,
                delivery_fee, total, line_items
            ) VALUES (
                %(order_id)s, %(raw_order)s::jsonb, 'pending', 0, %(customer_name)s,
                %(customer_phone)s, %(customer_email)s, %(order_type)s, %(subtotal)s, %(tax)s,
                %(delivery_fee)s, %(total)s, %(line_items)s::jsonb
            )
            ON CONFLICT (order_id) DO NOTHING
            RETURNING {_COLUMNS}
            """,
            {
                "order_id": record.order_id,
                "raw_order": json.dumps(record.raw_order, default=str),
                "customer_name": record.customer_name,
                "customer_phone": record.customer_phone,
                "customer_email": record.customer_email,
                "order_type": record.order_type,
                "subtotal": record.subtotal,
                "tax": record.tax,
                "delivery_fee": record.delivery_fee,
                "total": record.total,
                "line_items": json.dumps(record.line_items),
            },
        )
        if inserted is None:
            logger.info("Ledger insert lost race for order %s", record.order_id)
        return inserted

    async def mark_processed(
        self,
        order_id: str,
        receipt_id: str,
        receipt_number: Optional[str],
        line_items: Optional[list[dict[str, Any]]] = None,
    ) -> Optional[OrderRecord]:
        """pending → processed. Only ever called after the POS confirmed the receipt."""
        record = await self._fetch_one(
            f"""
            UPDATE order_ledger
            SET status = 'processed',
                pos_receipt_id = %(receipt_id)s,
                pos_receipt_number = %(receipt_number)s,
                line_items = COALESCE(%(line_items)s::jsonb, line_items),
                last_error = NULL,
                processed_at = now(),
                updated_at = now()
            WHERE order_id = %(order_id)s AND status = 'pending'
            RETURNING {_COLUMNS}
            """,
            {
                "order_id": order_id,
                "receipt_id": receipt_id,
                "receipt_number": receipt_number,
                "line_items": json.dumps(line_items) if line_items is not None else None,
            },
        )
        if record is None:
            logger.warning("mark_processed: order %s was not pending", order_id)
        return record

    async def mark_failed(
        self, order_id: str, error: str, count_attempt: bool = True
    ) -> Optional[OrderRecord]:
        """
        pending|processed → failed. `attempts` is bumped once per failed
        attempt; a processed order whose receipt vanished is not an attempt.
        """
        return await self._fetch_one(
            f"""
            UPDATE order_ledger
            SET status = 'failed',
                last_error = %(error)s,
                attempts = attempts + %(inc)s,
                updated_at = now()
            WHERE order_id = %(order_id)s AND status IN ('pending', 'processed')
            RETURNING {_COLUMNS}
            """,
            {"order_id": order_id, "error": error[:2000], "inc": 1 if count_attempt else 0},
        )

    async def mark_duplicate(self, order_id: str) -> Optional[OrderRecord]:
        """processed → duplicate (terminal). Receipt fields are left untouched."""
        return await self._fetch_one(
            f"""
            UPDATE order_ledger
            SET status = 'duplicate', updated_at = now()
            WHERE order_id = %s AND status = 'processed'
            RETURNING {_COLUMNS}
            """,
            (order_id,),
        )

    async def reopen(
        self, order_id: str, max_attempts: int, force: bool = False
    ) -> Optional[OrderRecord]:
        """
        failed → pending, only while attempts < max_attempts (or forced).
        Returns None if the order was not failed or the ceiling was reached,
        or if a concurrent retry already reopened it.
        """
        return await self._fetch_one(
            f"""
            UPDATE order_ledger
            SET status = 'pending', updated_at = now()
            WHERE order_id = %(order_id)s
              AND status = 'failed'
              AND (attempts < %(max_attempts)s OR %(force)s)
            RETURNING {_COLUMNS}
            """,
            {"order_id": order_id, "max_attempts": max_attempts, "force": force},
        )

    async def take_over(self, order_id: str, lease_seconds: float) -> Optional[OrderRecord]:
        """
        Claim a `pending` record whose owner has gone quiet for longer than
        the lease. Refreshing `updated_at` is the claim; only one caller wins.
        """
        return await self._fetch_one(
            f"""
            UPDATE order_ledger
            SET updated_at = now()
            WHERE order_id = %(order_id)s
              AND status = 'pending'
              AND updated_at < now() - make_interval(secs => %(lease)s)
            RETURNING {_COLUMNS}
            """,
            {"order_id": order_id, "lease": lease_seconds},
        )
