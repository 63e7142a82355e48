"""
GloriaFood webhook endpoint.

Every handled outcome (processed, duplicate, in progress, failed, retry limit,
reservation, not accepted) is a 200 with a JSON body describing it; GloriaFood
only needs to know the delivery was received. Non-200s are reserved for:
  400 — payload has neither `orders` nor `id`, or an order has no items list
  401 — signature verification is required and failed
  503 — ledger database unreachable
  500 — anything unexpected
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from db_utils import database_errors, require_state
from middleware.auth import verify_webhook_signature
from reconciliation.errors import OrderValidationError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook", dependencies=[Depends(verify_webhook_signature)])
async def receive_orders(request: Request):
    """Accept a single order object or `{"orders": [...]}`."""
    try:
        body = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Body is not valid JSON") from exc

    reconciler = require_state(request, "reconciler")

    try:
        async with database_errors():
            return await reconciler.handle_payload(body)
    except OrderValidationError as exc:
        logger.warning("Rejected webhook payload: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Webhook processing failed")
        raise HTTPException(status_code=500, detail=f"Internal error: {type(exc).__name__}") from exc
