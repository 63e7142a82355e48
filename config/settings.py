"""
Order → Receipt Sync — Application Settings

All config is read from environment variables. No secrets in code.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    # ── Ledger database (Postgres) ──────────────────────────────────────────
    database_url: str = field(
        default_factory=lambda: _require("DATABASE_URL")
    )
    db_pool_min: int = field(
        default_factory=lambda: int(os.environ.get("DB_POOL_MIN", "2"))
    )
    db_pool_max: int = field(
        default_factory=lambda: int(os.environ.get("DB_POOL_MAX", "10"))
    )

    # ── Loyverse (POS) ──────────────────────────────────────────────────────
    loyverse_access_token: str = field(
        default_factory=lambda: _require("LOYVERSE_ACCESS_TOKEN")
    )
    loyverse_base_url: str = field(
        default_factory=lambda: os.environ.get("LOYVERSE_BASE_URL", "https://api.loyverse.com/v1.0")
    )
    loyverse_store_id: str = field(
        default_factory=lambda: os.environ.get("LOYVERSE_STORE_ID", "")
    )
    # Used when the payment_types listing itself fails
    loyverse_fallback_tender_id: str = field(
        default_factory=lambda: os.environ.get("LOYVERSE_FALLBACK_TENDER_ID", "")
    )

    # ── GloriaFood (order source) ───────────────────────────────────────────
    gloriafood_base_url: str = field(
        default_factory=lambda: os.environ.get("GLORIAFOOD_BASE_URL", "https://api.gloriafood.com")
    )
    gloriafood_api_key: str = field(
        default_factory=lambda: os.environ.get("GLORIAFOOD_API_KEY", "")
    )
    gloriafood_webhook_secret: str = field(
        default_factory=lambda: os.environ.get("GLORIAFOOD_WEBHOOK_SECRET", "")
    )
    webhook_signature_required: bool = field(
        default_factory=lambda: _env_bool("WEBHOOK_SIGNATURE_REQUIRED", "false")
    )

    # ── Outbound HTTP ───────────────────────────────────────────────────────
    http_timeout_seconds: float = field(
        default_factory=lambda: float(os.environ.get("HTTP_TIMEOUT_SECONDS", "30"))
    )

    # ── Reconciliation policy ───────────────────────────────────────────────
    max_processing_attempts: int = field(
        default_factory=lambda: int(os.environ.get("MAX_PROCESSING_ATTEMPTS", "3"))
    )
    retry_base_delay_seconds: float = field(
        default_factory=lambda: float(os.environ.get("RETRY_BASE_DELAY_SECONDS", "5"))
    )
    retry_sweep_interval_seconds: float = field(
        default_factory=lambda: float(os.environ.get("RETRY_SWEEP_INTERVAL_SECONDS", "60"))
    )
    retry_sweep_enabled: bool = field(
        default_factory=lambda: _env_bool("RETRY_SWEEP_ENABLED", "true")
    )
    pending_lease_seconds: float = field(
        default_factory=lambda: float(os.environ.get("PENDING_LEASE_SECONDS", "120"))
    )
    delivery_fee_item_name: str = field(
        default_factory=lambda: os.environ.get("DELIVERY_FEE_ITEM_NAME", "Delivery Fee")
    )
    default_category: str = field(
        default_factory=lambda: os.environ.get("DEFAULT_CATEGORY", "مشروبات")
    )
    # Staff / COD orders are flagged by a tender whose name equals the client's
    # first name; with this on, such orders never create catalog items or promos.
    skip_autocreate_on_named_tender: bool = field(
        default_factory=lambda: _env_bool("SKIP_AUTOCREATE_ON_NAMED_TENDER", "false")
    )

    log_level: str = field(
        default_factory=lambda: os.environ.get("LOG_LEVEL", "INFO").upper()
    )


def _require(name: str) -> str:
    """Read a required environment variable; raise clearly if missing."""
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(
            f"Required environment variable '{name}' is not set."
        )
    return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the singleton Settings instance (cached after first call)."""
    return Settings()
