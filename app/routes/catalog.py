"""
Catalog mapping routes.

Read access to `catalog_entries`, a diagnostic resolver that never creates
anything, and price / name corrections. Lookup keys (source item name, size)
are immutable.
"""

import logging
from decimal import Decimal

import httpx
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field, model_validator

from db_utils import database_errors, require_state
from reconciliation.errors import MappingMiss

logger = logging.getLogger(__name__)

router = APIRouter()


class CatalogCorrection(BaseModel):
    """PATCH body: at least one of price / canonical_name."""
    price: Decimal | None = Field(None, ge=0, max_digits=12, decimal_places=2)
    canonical_name: str | None = Field(None, min_length=1, max_length=200)

    @model_validator(mode="after")
    def require_one(self):
        if self.price is None and self.canonical_name is None:
            raise ValueError("Provide price and/or canonical_name")
        return self


@router.get("")
async def list_catalog(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
):
    catalog = require_state(request, "catalog")
    async with database_errors():
        entries = await catalog.list_entries(limit, offset)
    return {
        "count": len(entries),
        "offset": offset,
        "entries": [e.model_dump(mode="json") for e in entries],
    }


@router.get("/resolve")
async def resolve_item(
    request: Request,
    name: str = Query(..., min_length=1),
    size: str | None = None,
    allow_name_only: bool = False,
):
    """Show which entry an item would map to. Never auto-creates."""
    resolver = require_state(request, "item_resolver")
    try:
        async with database_errors():
            resolved = await resolver.resolve(name, size or None, allow_name_only=allow_name_only)
    except MappingMiss as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {
        "match_type": resolved.match_type.value,
        "entry": resolved.entry.model_dump(mode="json"),
    }


@router.get("/menu")
async def source_menu(request: Request):
    """GloriaFood's current menu, for comparing against the catalog."""
    gloriafood = request.app.state.gloriafood
    try:
        return await gloriafood.get_menu()
    except httpx.HTTPError as exc:
        logger.error("GloriaFood get_menu failed: %s", exc)
        raise HTTPException(status_code=502, detail="GloriaFood unreachable") from exc


@router.patch("/{sku}")
async def correct_entry(sku: str, correction: CatalogCorrection, request: Request):
    catalog = require_state(request, "catalog")
    async with database_errors():
        entry = await catalog.update_entry(
            sku, price=correction.price, canonical_name=correction.canonical_name
        )
    if entry is None:
        raise HTTPException(status_code=404, detail=f"SKU {sku} not found")
    logger.info("Catalog entry %s corrected: %s", sku, correction.model_dump(exclude_none=True))
    return entry.model_dump(mode="json")
