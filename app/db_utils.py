"""
Database utility functions for route handlers.

Maps ledger connectivity failures to HTTP errors so every route answers the
same way when Postgres is down: 503 for connectivity, 500 for anything else
the database raises.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import HTTPException, Request
from psycopg import Error as PsycopgError
from psycopg import OperationalError
from psycopg_pool import PoolTimeout

logger = logging.getLogger(__name__)


def require_state(request: Request, name: str):
    """
    Fetch a lifespan-created component (ledger, reconciler, ...) from app.state.

    Raises HTTPException(503) when it was never created, i.e. the database
    pool could not be opened at startup.
    """
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(status_code=503, detail="Database temporarily unavailable")
    return component


@asynccontextmanager
async def database_errors() -> AsyncGenerator[None, None]:
    """
    Wrap store calls in a route.

    Usage:
        async with database_errors():
            record = await ledger.get(order_id)

    Raises:
        HTTPException(503): connection refused / dropped, or pool exhausted
        HTTPException(500): any other database error
    """
    try:
        yield
    except (OperationalError, PoolTimeout) as exc:
        logger.error("Ledger database unavailable: %s", exc)
        raise HTTPException(status_code=503, detail="Database temporarily unavailable") from exc
    except PsycopgError as exc:
        logger.error("Unexpected database error: %s", exc)
        raise HTTPException(status_code=500, detail="Database error") from exc
