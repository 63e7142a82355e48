"""
Order → Receipt Sync — Scheduled retry sweep

Background task started by the app lifespan. Every sweep interval it asks the
ledger for failed orders whose exponential backoff has elapsed
(base × 2^(attempts-1) seconds) and which are still under the attempt ceiling,
and hands each to the reconciler's retry path.
"""

from __future__ import annotations

import asyncio
import logging

from reconciliation.models import ReconcileResult

logger = logging.getLogger(__name__)


class RetryScheduler:
    def __init__(
        self,
        ledger,
        reconciler,
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 5.0,
        interval_seconds: float = 60.0,
        batch_size: int = 50,
    ):
        self.ledger = ledger
        self.reconciler = reconciler
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size

    async def sweep(self) -> list[ReconcileResult]:
        """Retry every due order once. Returns the per-order results."""
        due = await self.ledger.due_for_retry(
            self.max_attempts, self.base_delay_seconds, limit=self.batch_size
        )
        if not due:
            return []

        logger.info("Retry sweep: %d failed order(s) due", len(due))
        results = []
        for order_id in due:
            try:
                result = await self.reconciler.retry(order_id)
            except Exception as exc:
                logger.error("Scheduled retry of %s raised: %s", order_id, exc)
                continue
            logger.info(
                "Scheduled retry of %s → %s (%s)", order_id, result.event_type, result.message
            )
            results.append(result)
        return results

    async def run_forever(self) -> None:
        """Sweep loop; cancelled by the lifespan on shutdown."""
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Retry sweep failed: %s — next sweep in %ss", exc, self.interval_seconds)
            await asyncio.sleep(self.interval_seconds)
