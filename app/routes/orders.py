"""
Order ledger routes — inspection and manual retry.

All reads come straight from `order_ledger`; money columns are returned as
decimal strings.
"""

import logging

import httpx
from fastapi import APIRouter, HTTPException, Query, Request

from db_utils import database_errors, require_state
from reconciliation.errors import OrderValidationError
from response_utils import optimize_order_response

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/stats")
async def order_stats(request: Request):
    """Counts per status, processed revenue and success rate."""
    ledger = require_state(request, "ledger")
    async with database_errors():
        return await ledger.stats()


@router.get("/recent")
async def recent_orders(
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
    fields: str | None = None,
):
    ledger = require_state(request, "ledger")
    async with database_errors():
        records = await ledger.recent(limit)
    orders = [optimize_order_response(r.model_dump(mode="json"), fields) for r in records]
    return {"count": len(orders), "orders": orders}


@router.get("/failed")
async def failed_orders(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    fields: str | None = None,
):
    """Failed orders, most recently failed first, with their last error."""
    ledger = require_state(request, "ledger")
    async with database_errors():
        records = await ledger.failed(limit)
    orders = [optimize_order_response(r.model_dump(mode="json"), fields) for r in records]
    return {"count": len(orders), "orders": orders}


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    request: Request,
    fields: str | None = None,
    include_raw_order: bool = False,
):
    """
    Fetch one ledger record.

    Query parameters:
        fields: comma-separated subset (e.g. "order_id,status,pos_receipt_number")
        include_raw_order: include the stored GloriaFood payload (default: False)
    """
    ledger = require_state(request, "ledger")
    async with database_errors():
        record = await ledger.get(order_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
    return optimize_order_response(record.model_dump(mode="json"), fields, include_raw_order)


@router.post("/{order_id}/retry")
async def retry_order(order_id: str, request: Request, force: bool = False):
    """
    Reprocess a failed order from its stored payload.

    `force=true` reopens it even past the attempt ceiling.
    """
    reconciler = require_state(request, "reconciler")
    async with database_errors():
        result = await reconciler.retry(order_id, force=force)

    if result.event_type == "order_not_found":
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
    if result.event_type == "retry_rejected":
        raise HTTPException(status_code=409, detail=result.message)
    return result.to_response()


@router.post("/{order_id}/replay")
async def replay_order(order_id: str, request: Request):
    """
    Fetch the order from GloriaFood and run it through the webhook path, for
    orders whose webhook delivery never arrived.
    """
    reconciler = require_state(request, "reconciler")
    gloriafood = request.app.state.gloriafood

    try:
        raw_order = await gloriafood.get_order(order_id)
    except httpx.HTTPStatusError as exc:
        if exc.response.status_code == 404:
            raise HTTPException(status_code=404, detail=f"Order {order_id} not found in GloriaFood") from exc
        raise HTTPException(status_code=502, detail="GloriaFood request failed") from exc
    except httpx.HTTPError as exc:
        logger.error("GloriaFood get_order(%s) failed: %s", order_id, exc)
        raise HTTPException(status_code=502, detail="GloriaFood unreachable") from exc

    try:
        async with database_errors():
            result = await reconciler.handle_order(order_id, raw_order)
    except OrderValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return result.to_response()
