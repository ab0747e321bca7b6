"""
Marketplace Ledger

This module provides:
- Atomic balance transfers with an append-only transaction history
- Purchase guard: one purchase per buyer and artifact
- Bundle checkout with partial fulfilment and course enrollment
- Gifts, top-ups, verification subscriptions and referral payouts
- Idempotent requests and per-account audit
"""

from .errors import (
    LedgerServiceError,
    InsufficientFundsError,
    AlreadyOwnedError,
    AlreadyEnrolledError,
    ArtifactNotFoundError,
    AccountNotFoundError,
    PersistenceFailureError,
    RaceLostError,
)
from .models import (
    TransactionKind,
    Account,
    Transaction,
    Purchase,
    TransferResult,
    PurchaseResult,
)
from .service import LedgerService
from .storage import InMemoryStorage

__all__ = [
    "LedgerServiceError",
    "InsufficientFundsError",
    "AlreadyOwnedError",
    "AlreadyEnrolledError",
    "ArtifactNotFoundError",
    "AccountNotFoundError",
    "PersistenceFailureError",
    "RaceLostError",
    "TransactionKind",
    "Account",
    "Transaction",
    "Purchase",
    "TransferResult",
    "PurchaseResult",
    "LedgerService",
    "InMemoryStorage",
]
