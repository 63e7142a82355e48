"""
Order → Receipt Sync — Exceptions

Everything the reconciler can raise while handling an order derives from
ReconciliationError. The reconciler decides per type whether the ledger
goes to `failed` (retryable) or the caller gets a 400 (never retried).
"""

from __future__ import annotations

from typing import Optional


class ReconciliationError(Exception):
    """Base class for all reconciliation failures."""


class OrderValidationError(ReconciliationError):
    """The incoming payload is malformed. Surfaces as HTTP 400; not retried."""


class MappingMiss(ReconciliationError):
    """No catalog entry for (name, size) and auto-creation was not requested."""

    def __init__(self, name: str, size: Optional[str] = None):
        self.name = name
        self.size = size
        label = f"{name} ({size})" if size else name
        super().__init__(f"No catalog mapping for '{label}'")


class ItemCreationFailed(ReconciliationError):
    """The POS refused (or timed out) creating a catalog item."""


class DiscountSyncFailed(ReconciliationError):
    """Creating or updating the POS discount for a promotion failed."""


class ReceiptCreationFailed(ReconciliationError):
    """The POS did not confirm receipt creation."""


class ReceiptVerificationAmbiguous(ReconciliationError):
    """
    The POS could not say whether a receipt exists (lookup errored).

    Callers treat this as "not found" so the order is retried rather than
    silently marked duplicate.
    """
