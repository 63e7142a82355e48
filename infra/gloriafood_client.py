"""
Order → Receipt Sync — GloriaFood Order Source Client

Fetches orders and the menu from GloriaFood and verifies webhook signatures.
Webhook bodies are signed with HMAC-SHA256 over the raw request bytes using
the shared webhook secret; the signature header carries the hex digest.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class GloriaFoodClient:
    def __init__(
        self,
        api_key: str = "",
        base_url: str = "https://api.gloriafood.com",
        webhook_secret: str = "",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.webhook_secret = webhook_secret
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def get_order(self, order_id: str) -> dict[str, Any]:
        """Fetch one order by id (used to replay an order the webhook lost)."""
        response = await self.http_client.get(
            f"{self.base_url}/orders/{order_id}", headers=self._headers
        )
        response.raise_for_status()
        return response.json()

    async def get_menu(self) -> dict[str, Any]:
        response = await self.http_client.get(f"{self.base_url}/menu", headers=self._headers)
        response.raise_for_status()
        return response.json()

    def verify(self, payload: bytes, signature: Optional[str]) -> bool:
        """
        Check the webhook signature against HMAC-SHA256(secret, payload).

        With no secret configured every payload is accepted (logged), so
        local development works without signing.
        """
        if not self.webhook_secret:
            logger.warning("Webhook secret not configured — skipping signature verification")
            return True
        if not signature:
            return False

        expected = hmac.new(
            self.webhook_secret.encode(), payload, hashlib.sha256
        ).hexdigest()
        # Accept "sha256=<hex>" as well as the bare digest
        provided = signature.split("=", 1)[1] if signature.startswith("sha256=") else signature
        return hmac.compare_digest(expected, provided.strip().lower())

    async def close(self) -> None:
        await self.http_client.aclose()
