"""
Order → Receipt Sync
FastAPI service that turns GloriaFood orders into Loyverse receipts.

- POST /webhook        GloriaFood order webhook (single order or {"orders": [...]})
- /orders/*            ledger inspection and manual retry
- /catalog/*           catalog mapping inspection and corrections
- GET /health          database connectivity

Run: PYTHONPATH=.:app uvicorn main:app
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware

from config.settings import get_settings
from infra.gloriafood_client import GloriaFoodClient
from infra.loyverse_client import LoyverseClient
from reconciliation.catalog_store import CatalogStore
from reconciliation.db import close_pool, get_pool
from reconciliation.discount_resolver import DiscountResolver
from reconciliation.item_resolver import ItemResolver
from reconciliation.order_ledger import OrderLedger
from reconciliation.promo_store import PromoStore
from reconciliation.reconciler import ReceiptReconciler
from reconciliation.retry_scheduler import RetryScheduler
from routes import catalog, orders, webhook

logger = logging.getLogger(__name__)

SERVICE_NAME = "order-receipt-sync"
VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Order → Receipt Sync starting...")

    # Pool failure logs an error but does NOT crash the app; /health reports it
    # and routes answer 503 until the database is reachable.
    try:
        pool = await get_pool(settings.database_url, settings.db_pool_min, settings.db_pool_max)
    except Exception as exc:
        logger.error("Failed to open ledger connection pool: %s — DB routes will fail", exc)
        pool = None

    loyverse = LoyverseClient(
        settings.loyverse_access_token,
        settings.loyverse_base_url,
        store_id=settings.loyverse_store_id,
        timeout=settings.http_timeout_seconds,
    )
    gloriafood = GloriaFoodClient(
        api_key=settings.gloriafood_api_key,
        base_url=settings.gloriafood_base_url,
        webhook_secret=settings.gloriafood_webhook_secret,
        timeout=settings.http_timeout_seconds,
    )

    app.state.pool = pool
    app.state.loyverse = loyverse
    app.state.gloriafood = gloriafood
    app.state.signature_required = settings.webhook_signature_required
    app.state.reconciler = None
    app.state.catalog = None
    app.state.item_resolver = None
    app.state.ledger = None
    retry_task = None

    if pool is not None:
        ledger = OrderLedger(pool)
        catalog_store = CatalogStore(pool)
        item_resolver = ItemResolver(catalog_store, loyverse, settings.default_category)
        reconciler = ReceiptReconciler(
            ledger,
            item_resolver,
            DiscountResolver(PromoStore(pool), loyverse),
            loyverse,
            max_attempts=settings.max_processing_attempts,
            pending_lease_seconds=settings.pending_lease_seconds,
            delivery_fee_item_name=settings.delivery_fee_item_name,
            skip_autocreate_on_named_tender=settings.skip_autocreate_on_named_tender,
            fallback_tender_id=settings.loyverse_fallback_tender_id,
        )
        app.state.ledger = ledger
        app.state.catalog = catalog_store
        app.state.item_resolver = item_resolver
        app.state.reconciler = reconciler

        if settings.retry_sweep_enabled:
            scheduler = RetryScheduler(
                ledger,
                reconciler,
                max_attempts=settings.max_processing_attempts,
                base_delay_seconds=settings.retry_base_delay_seconds,
                interval_seconds=settings.retry_sweep_interval_seconds,
            )
            retry_task = asyncio.create_task(scheduler.run_forever())
            logger.info(
                "Retry sweep every %ss (max attempts %d)",
                settings.retry_sweep_interval_seconds,
                settings.max_processing_attempts,
            )

    yield

    if retry_task is not None:
        retry_task.cancel()
        try:
            await retry_task
        except asyncio.CancelledError:
            pass

    await loyverse.close()
    await gloriafood.close()
    await close_pool()

    logger.info("Order → Receipt Sync shutting down.")


app = FastAPI(
    title="Order → Receipt Sync",
    description="Reconciles GloriaFood orders into Loyverse receipts, exactly once",
    version=VERSION,
    lifespan=lifespan,
)

# Order listings with raw payloads get large; compress anything over 500 bytes
app.add_middleware(GZipMiddleware, minimum_size=500, compresslevel=6)

app.include_router(webhook.router, tags=["Webhook"])
app.include_router(orders.router, prefix="/orders", tags=["Orders"])
app.include_router(catalog.router, prefix="/catalog", tags=["Catalog"])


@app.get("/health")
async def health(request: Request):
    """
    Health check with database connectivity verification.

    Returns:
        - status: "healthy" or "degraded"
        - database: connection status
    """
    health_status = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": VERSION,
        "database": "unknown",
    }

    pool = getattr(request.app.state, "pool", None)
    if pool is None:
        health_status["database"] = "pool_not_initialized"
        health_status["status"] = "degraded"
        return health_status

    try:
        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1 AS health_check")
                result = await cur.fetchone()
        if result:
            health_status["database"] = "connected"
        else:
            health_status["database"] = "unhealthy"
            health_status["status"] = "degraded"
    except Exception as exc:
        logger.error("Health check: database connection failed: %s", exc)
        health_status["database"] = f"disconnected: {type(exc).__name__}"
        health_status["status"] = "degraded"

    return health_status
