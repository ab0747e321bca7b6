from decimal import Decimal
from typing import Any, Optional


class LedgerServiceError(Exception):
    code = "LEDGER_ERROR"
    status_code = 400

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class InsufficientFundsError(LedgerServiceError):
    code = "INSUFFICIENT_FUNDS"

    def __init__(self, account_id, balance: Decimal, required: Decimal):
        self.account_id = account_id
        self.balance = balance
        self.required = required
        self.shortfall = required - balance
        super().__init__(
            f"Insufficient balance: you need ${self.shortfall:,.2f} more "
            f"(balance ${balance:,.2f}, required ${required:,.2f})",
            context={
                "account_id": str(account_id),
                "balance": str(balance),
                "required": str(required),
                "shortfall": str(self.shortfall),
            },
        )


class AlreadyOwnedError(LedgerServiceError):
    code = "ALREADY_OWNED"
    status_code = 409


class AlreadyEnrolledError(AlreadyOwnedError):
    code = "ALREADY_ENROLLED"


class AlreadySubscribedError(AlreadyOwnedError):
    code = "ALREADY_SUBSCRIBED"


class ArtifactNotFoundError(LedgerServiceError):
    code = "ARTIFACT_NOT_FOUND"
    status_code = 404


class AccountNotFoundError(LedgerServiceError):
    code = "ACCOUNT_NOT_FOUND"
    status_code = 404


class AccountExistsError(LedgerServiceError):
    code = "ACCOUNT_EXISTS"
    status_code = 409


class PersistenceFailureError(LedgerServiceError):
    code = "PERSISTENCE_FAILURE"
    status_code = 503


class RaceLostError(LedgerServiceError):
    code = "RACE_LOST"
    status_code = 409


class InvalidTransferError(LedgerServiceError):
    code = "INVALID_TRANSFER"


class InvalidAmountError(InvalidTransferError):
    code = "INVALID_AMOUNT"


class EmptyBundleError(LedgerServiceError):
    code = "EMPTY_BUNDLE"


class PriceChangedError(LedgerServiceError):
    code = "PRICE_CHANGED"
    status_code = 409


class IdempotencyConflictError(LedgerServiceError):
    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409


class ForbiddenError(LedgerServiceError):
    code = "FORBIDDEN"
    status_code = 403


class BalanceConflictError(PersistenceFailureError):
    """A compare-and-swap on a balance lost to a concurrent writer."""

    code = "BALANCE_CONFLICT"


class DuplicateRecordError(PersistenceFailureError):
    """The store refused a row that violates a uniqueness constraint."""

    code = "DUPLICATE_RECORD"
