"""
Order → Receipt Sync — Postgres connection pool and advisory locks

One AsyncConnectionPool per process, shared by the ledger, catalog and promo
stores. Rows come back as dicts (dict_row) so they validate straight into the
pydantic models.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import psycopg
import psycopg_pool
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)

# ── Connection pool (module-level singleton, shared across requests) ──────────
# Created lazily on first use via get_pool(). min keeps warm connections during
# quiet hours; max bounds parallel webhook deliveries at peak.
_pool: psycopg_pool.AsyncConnectionPool | None = None
_pool_lock: asyncio.Lock | None = None


async def get_pool(
    conninfo: str, min_size: int = 2, max_size: int = 10
) -> psycopg_pool.AsyncConnectionPool:
    """
    Return (or lazily create) the shared ledger connection pool.

    Guarded by an asyncio.Lock so concurrent first requests do not open two
    pools. The lock itself is created lazily in the running event loop.
    """
    global _pool, _pool_lock

    if _pool is not None and not _pool.closed:
        return _pool

    if _pool_lock is None:
        _pool_lock = asyncio.Lock()

    async with _pool_lock:
        # Another task may have created it while we waited
        if _pool is None or _pool.closed:
            logger.info(
                "Creating ledger connection pool (min=%d, max=%d)...", min_size, max_size
            )
            _pool = psycopg_pool.AsyncConnectionPool(
                conninfo=conninfo,
                min_size=min_size,
                max_size=max_size,
                timeout=30.0,
                kwargs={"row_factory": dict_row},
                open=False,
            )
            await _pool.open()
            logger.info("Ledger connection pool opened successfully")

    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None and not _pool.closed:
        logger.info("Closing ledger connection pool...")
        await _pool.close()
    _pool = None


@asynccontextmanager
async def advisory_lock(
    pool: psycopg_pool.AsyncConnectionPool, namespace: str, key: str
) -> AsyncIterator[psycopg.AsyncConnection]:
    """
    Hold a transaction-scoped Postgres advisory lock on (namespace, key).

    Serialises work on one key across workers and processes: the lock is
    released when the transaction ends, including on error or disconnect.

    Yields the connection holding the lock. Store calls made inside the
    critical section must run on it (their `conn=` argument); a holder that
    checks out a second connection can starve the pool once every
    connection belongs to a holder or a waiter.
    """
    async with pool.connection() as conn:
        async with conn.transaction():
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s), hashtext(%s))",
                    (namespace, key),
                )
            yield conn


@asynccontextmanager
async def borrow(
    pool: psycopg_pool.AsyncConnectionPool,
    conn: Optional[psycopg.AsyncConnection] = None,
) -> AsyncIterator[psycopg.AsyncConnection]:
    """
    Connection for one store call.

    Without `conn`, checks one out of the pool and commits on success.
    With `conn` (a lock holder's connection), runs in a savepoint on it and
    leaves the commit to the enclosing transaction.
    """
    if conn is not None:
        async with conn.transaction():
            yield conn
        return
    async with pool.connection() as pooled:
        yield pooled
        await pooled.commit()
