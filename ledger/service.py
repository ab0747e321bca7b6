import hashlib
import json
import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from typing import Callable, Optional, TypeVar
from uuid import UUID, uuid4

from pydantic import BaseModel

from .config import Settings, get_settings
from .errors import (
    AccountExistsError,
    AccountNotFoundError,
    AlreadyEnrolledError,
    AlreadyOwnedError,
    AlreadySubscribedError,
    ArtifactNotFoundError,
    BalanceConflictError,
    DuplicateRecordError,
    EmptyBundleError,
    IdempotencyConflictError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidTransferError,
    PersistenceFailureError,
    PriceChangedError,
    RaceLostError,
)
from .models import (
    Account,
    AccountAudit,
    AccountBalance,
    ArtifactType,
    Bundle,
    BundlePurchaseResult,
    Course,
    Enrollment,
    EnrollmentResult,
    IdempotencyRecord,
    LedgerHistoryResponse,
    MarketplaceFile,
    Notification,
    Purchase,
    PurchaseResult,
    Transaction,
    TransactionKind,
    TransferResult,
    VerificationResult,
    utcnow,
)
from .stats import project_account_stats
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# Leg kind for the credited side when it differs from the debited side.
_PAYEE_KIND = {TransactionKind.PURCHASE: TransactionKind.SALE}

ResultT = TypeVar("ResultT", bound=BaseModel)


def to_money(value) -> Decimal:
    """Parse a caller-supplied amount; anything finer than a cent is rejected."""
    try:
        amount = Decimal(str(value))
        cents = amount.quantize(CENT) if amount.is_finite() else None
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(f"Invalid amount: {value!r}") from e
    if cents is None:
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if amount != cents:
        raise InvalidAmountError(
            f"Amounts are limited to whole cents, got {value!r}", context={"amount": str(value)}
        )
    return cents


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def bundle_price(bundle: Bundle) -> Decimal:
    discount = Decimal(str(bundle.discount_percentage))
    return round_money(Decimal(str(bundle.original_price)) * (1 - discount / 100))


def split_evenly(total: Decimal, parts: int) -> list[Decimal]:
    """Split ``total`` into ``parts`` cent amounts; the last one absorbs the remainder."""
    share = (total / parts).quantize(CENT, rounding=ROUND_DOWN)
    shares = [share] * parts
    shares[-1] = total - share * (parts - 1)
    return shares


def format_money(amount: Decimal) -> str:
    return f"${amount:,.2f}"


def _fingerprint(operation: str, payload: dict) -> str:
    raw = json.dumps({"operation": operation, **payload}, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def build_storage(settings: Settings):
    if settings.database_url:
        from .sql import SqlStorage
        return SqlStorage(settings.database_url, echo=settings.sql_echo)
    return InMemoryStorage()


class LedgerService:
    """Single entry point for every balance-affecting action.

    Each operation runs as one unit of work against the storage: either all
    balance changes, transaction legs and ownership records commit together or
    none of them do. Display counters and notifications are written afterwards,
    best-effort, in their own unit of work.
    """

    def __init__(self, storage=None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.storage = storage if storage is not None else build_storage(self.settings)

    # Accounts

    def open_account(
        self,
        username: str,
        is_admin_unlimited: bool = False,
        account_id: Optional[UUID] = None,
    ) -> Account:
        account = Account(
            id=account_id or uuid4(),
            username=username,
            balance=ZERO,
            is_admin_unlimited=is_admin_unlimited,
        )
        starting_balance = to_money(self.settings.starting_balance)

        def run(uow) -> Account:
            try:
                uow.add_account(account)
            except DuplicateRecordError as e:
                raise AccountExistsError(f"Account {account.id} already exists") from e
            if starting_balance > 0:
                self._transfer(uow, None, account.id, starting_balance, TransactionKind.TOPUP, "Opening balance")
            return uow.get_account(account.id)

        opened = self._atomic(run)
        logger.info("Opened account %s (%s) with balance %s", opened.id, username, opened.balance)
        return opened

    def get_account(self, account_id: UUID) -> Account:
        with self.storage.atomic() as uow:
            return self._require_account(uow, account_id)

    def get_balance(self, account_id: UUID) -> AccountBalance:
        with self.storage.atomic() as uow:
            account = self._require_account(uow, account_id)
            entries = uow.list_transactions(account_id)

        return AccountBalance(
            account_id=account_id,
            balance=account.balance,
            is_unlimited=account.is_admin_unlimited,
            display_balance="∞" if account.is_admin_unlimited else format_money(account.balance),
            total_entries=len(entries),
            last_transaction_at=max((e.created_at for e in entries), default=None),
        )

    def get_history(self, account_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.storage.atomic() as uow:
            account = self._require_account(uow, account_id)
            entries = list(reversed(uow.list_transactions(account_id)))

        return LedgerHistoryResponse(
            account_id=account_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            current_balance=account.balance,
        )

    def get_purchases(self, buyer_id: UUID) -> list[Purchase]:
        with self.storage.atomic() as uow:
            self._require_account(uow, buyer_id)
            return uow.list_purchases(buyer_id)

    def get_notifications(self, account_id: UUID) -> list[Notification]:
        with self.storage.atomic() as uow:
            self._require_account(uow, account_id)
            return uow.list_notifications(account_id)

    def audit_account(self, account_id: UUID) -> AccountAudit:
        """Replay the account's transaction log and compare it with the stored balance."""
        with self.storage.atomic() as uow:
            account = self._require_account(uow, account_id)
            entries = uow.list_transactions(account_id)

        discrepancies = []
        running = ZERO
        for entry in entries:
            running += entry.amount
            if entry.balance_after != running:
                discrepancies.append(
                    f"Transaction {entry.id}: balance_after {entry.balance_after} != running total {running}"
                )
        if running != account.balance:
            discrepancies.append(f"Balance {account.balance} != ledger total {running}")
        if running < 0:
            discrepancies.append(f"Ledger total is negative ({running})")

        if discrepancies:
            logger.warning("Audit of account %s found %d discrepancies", account_id, len(discrepancies))

        return AccountAudit(
            account_id=account_id,
            balance=account.balance,
            ledger_total=running,
            total_entries=len(entries),
            is_unlimited=account.is_admin_unlimited,
            consistent=not discrepancies,
            discrepancies=discrepancies,
        )

    def rebuild_stats(self, account_id: UUID) -> Account:
        def run(uow) -> Account:
            self._require_account(uow, account_id)
            stats = project_account_stats(uow.list_transactions(account_id), uow.list_purchases(account_id))
            uow.update_account(account_id, **stats)
            return uow.get_account(account_id)

        return self._atomic(run)

    # Catalogue

    def register_file(self, seller_id: UUID, title: str, price) -> MarketplaceFile:
        file = MarketplaceFile(seller_id=seller_id, title=title, price=self._non_negative(price))

        def run(uow) -> MarketplaceFile:
            self._require_account(uow, seller_id)
            uow.add_file(file)
            return file

        registered = self._atomic(run)
        self._best_effort("files_uploaded counter", lambda uow: uow.increment("account", seller_id, "files_uploaded", 1))
        return registered

    def set_file_price(self, file_id: UUID, price) -> MarketplaceFile:
        new_price = self._non_negative(price)

        def run(uow) -> MarketplaceFile:
            if uow.get_file(file_id) is None:
                raise ArtifactNotFoundError(f"File {file_id} not found")
            uow.update_file(file_id, price=new_price)
            return uow.get_file(file_id)

        return self._atomic(run)

    def create_bundle(
        self,
        creator_id: UUID,
        title: str,
        file_ids: list[UUID],
        original_price,
        discount_percentage=Decimal("0"),
    ) -> Bundle:
        discount = Decimal(str(discount_percentage))
        if not Decimal("0") <= discount <= Decimal("100"):
            raise InvalidAmountError(f"Discount must be between 0 and 100, got {discount}")
        bundle = Bundle(
            creator_id=creator_id,
            title=title,
            original_price=self._non_negative(original_price),
            discount_percentage=discount,
            file_ids=list(dict.fromkeys(file_ids)),
        )

        def run(uow) -> Bundle:
            self._require_account(uow, creator_id)
            for file_id in bundle.file_ids:
                if uow.get_file(file_id) is None:
                    raise ArtifactNotFoundError(f"File {file_id} not found")
            uow.add_bundle(bundle)
            return bundle

        return self._atomic(run)

    def create_course(self, creator_id: UUID, title: str, price=ZERO) -> Course:
        course = Course(creator_id=creator_id, title=title, price=self._non_negative(price))

        def run(uow) -> Course:
            self._require_account(uow, creator_id)
            uow.add_course(course)
            return course

        return self._atomic(run)

    # Transfers

    def transfer(
        self,
        payer_id: Optional[UUID],
        payee_id: Optional[UUID],
        amount,
        kind: TransactionKind,
        description: str,
        reference_id: Optional[UUID] = None,
        payee_description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        amount = self._positive(amount)
        kind = TransactionKind(kind)
        payload = {
            "payer_id": payer_id, "payee_id": payee_id, "amount": amount,
            "kind": kind.value, "reference_id": reference_id,
        }
        result = self._idempotent(
            "transfer", idempotency_key, payload, TransferResult,
            lambda uow: self._transfer(
                uow, payer_id, payee_id, amount, kind, description, reference_id, payee_description
            ),
        )
        if not result.replayed:
            logger.info("Transfer %s committed: %s -> %s %s (%s)", result.transfer_id, payer_id, payee_id, amount, kind.value)
        return result

    def gift(
        self,
        payee_id: UUID,
        amount,
        payer_id: Optional[UUID] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        amount = self._positive(amount)
        description = description or ("Gift from Admin" if payer_id is None else "Gift")
        result = self._idempotent(
            "gift", idempotency_key,
            {"payer_id": payer_id, "payee_id": payee_id, "amount": amount},
            TransferResult,
            lambda uow: self._transfer(uow, payer_id, payee_id, amount, TransactionKind.GIFT, description),
        )
        if not result.replayed:
            sender = " from Admin" if payer_id is None else ""
            self._notify([Notification(
                account_id=payee_id, kind="gift", title="You received a gift!",
                message=f"You received {format_money(amount)}{sender}!",
            )])
        return result

    def topup(
        self,
        account_id: UUID,
        amount,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        amount = self._positive(amount)
        return self._idempotent(
            "topup", idempotency_key,
            {"account_id": account_id, "amount": amount},
            TransferResult,
            lambda uow: self._transfer(
                uow, None, account_id, amount, TransactionKind.TOPUP, description or "Balance top-up"
            ),
        )

    def pay_referral(
        self,
        referrer_id: UUID,
        referred_id: UUID,
        amount,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        amount = self._positive(amount)
        if referrer_id == referred_id:
            raise InvalidTransferError("An account cannot refer itself")

        def run(uow) -> TransferResult:
            referred = self._require_account(uow, referred_id)
            return self._transfer(
                uow, None, referrer_id, amount, TransactionKind.REFERRAL,
                f"Referral commission for {referred.username}",
                counterparty_id=referred_id,
            )

        result = self._idempotent(
            "referral", idempotency_key,
            {"referrer_id": referrer_id, "referred_id": referred_id, "amount": amount},
            TransferResult, run,
        )
        if not result.replayed:
            self._best_effort(
                "referral earnings counter",
                lambda uow: uow.increment("account", referrer_id, "total_referral_earnings", amount),
            )
            self._notify([Notification(
                account_id=referrer_id, kind="referral", title="Referral reward",
                message=f"You earned {format_money(amount)} for a successful referral!",
                reference_id=referred_id,
            )])
        return result

    # Verification subscription

    def subscribe_verification(self, account_id: UUID, idempotency_key: Optional[str] = None) -> VerificationResult:
        price = to_money(self.settings.verification_price)
        period = timedelta(days=self.settings.verification_period_days)

        def run(uow) -> VerificationResult:
            account = self._require_account(uow, account_id)
            now = utcnow()
            if account.has_active_verification(now):
                raise AlreadySubscribedError(
                    "Verification is already active",
                    context={"verification_expires_at": account.verification_expires_at.isoformat()
                             if account.verification_expires_at else None},
                )
            transfer = None
            balance = account.balance
            if price > 0:
                transfer = self._transfer(
                    uow, account_id, None, price, TransactionKind.VERIFICATION,
                    "Verification badge subscription (1 month)",
                )
                balance = transfer.payer_balance
            expires_at = now + period
            uow.update_account(account_id, is_verified=True, verification_expires_at=expires_at)
            return VerificationResult(
                account_id=account_id,
                is_verified=True,
                verification_expires_at=expires_at,
                transfer=transfer,
                balance=balance,
                message="Verification active",
            )

        result = self._idempotent("verification", idempotency_key, {"account_id": account_id}, VerificationResult, run)
        if not result.replayed:
            self._notify([Notification(
                account_id=account_id, kind="verification", title="Verification Active!",
                message="You are now a verified member!",
            )])
        return result

    def cancel_verification(self, account_id: UUID) -> VerificationResult:
        def run(uow) -> VerificationResult:
            account = self._require_account(uow, account_id)
            uow.update_account(account_id, is_verified=False, verification_expires_at=None)
            message = "Verification cancelled" if account.is_verified else "Verification was not active"
            return VerificationResult(
                account_id=account_id, is_verified=False, balance=account.balance, message=message,
            )

        return self._atomic(run)

    # Purchases

    def purchase(
        self,
        buyer_id: UUID,
        artifact_id: UUID,
        idempotency_key: Optional[str] = None,
        expected_price=None,
    ) -> PurchaseResult:
        if expected_price is not None:
            expected_price = to_money(expected_price)
        result = self._idempotent(
            "purchase", idempotency_key,
            {"buyer_id": buyer_id, "artifact_id": artifact_id, "expected_price": expected_price},
            PurchaseResult,
            lambda uow: self._purchase(uow, buyer_id, artifact_id, expected_price),
        )
        if not result.replayed:
            self._after_file_purchase(result)
        return result

    def purchase_bundle(
        self,
        buyer_id: UUID,
        bundle_id: UUID,
        idempotency_key: Optional[str] = None,
    ) -> BundlePurchaseResult:
        result = self._idempotent(
            "bundle_purchase", idempotency_key,
            {"buyer_id": buyer_id, "bundle_id": bundle_id},
            BundlePurchaseResult,
            lambda uow: self._purchase_bundle(uow, buyer_id, bundle_id),
        )
        if not result.replayed:
            self._after_bundle_purchase(result, buyer_id)
        return result

    def enroll_course(
        self,
        account_id: UUID,
        course_id: UUID,
        idempotency_key: Optional[str] = None,
    ) -> EnrollmentResult:
        result = self._idempotent(
            "course_enroll", idempotency_key,
            {"account_id": account_id, "course_id": course_id},
            EnrollmentResult,
            lambda uow: self._enroll_course(uow, account_id, course_id),
        )
        if not result.replayed:
            self._after_enrollment(result)
        return result

    def _purchase(self, uow, buyer_id: UUID, artifact_id: UUID, expected_price: Optional[Decimal]) -> PurchaseResult:
        file = uow.get_file(artifact_id)
        if file is None or not file.is_active:
            raise ArtifactNotFoundError(f"File {artifact_id} not found", context={"artifact_id": str(artifact_id)})
        buyer = self._require_account(uow, buyer_id)
        if file.seller_id == buyer_id:
            raise InvalidTransferError("You cannot purchase your own file")
        if uow.find_purchase(buyer_id, artifact_id):
            raise AlreadyOwnedError("You already own this file", context={"artifact_id": str(artifact_id)})

        price = file.price
        if expected_price is not None and expected_price != price:
            raise PriceChangedError(
                f"The price of \"{file.title}\" changed from {format_money(expected_price)} to {format_money(price)}",
                context={"expected_price": str(expected_price), "current_price": str(price)},
            )

        transfer = None
        buyer_balance = buyer.balance
        if price > 0:
            transfer = self._transfer(
                uow, buyer_id, file.seller_id, price, TransactionKind.PURCHASE,
                f'Purchased "{file.title}"', file.id, payee_description=f'Sold "{file.title}"',
            )
            buyer_balance = transfer.payer_balance

        purchase = Purchase(
            buyer_id=buyer_id,
            seller_id=file.seller_id,
            artifact_id=artifact_id,
            artifact_type=ArtifactType.FILE,
            amount=price,
            transfer_id=transfer.transfer_id if transfer else None,
        )
        self._add_purchase(uow, purchase)
        return PurchaseResult(
            purchase=purchase,
            transfer=transfer,
            buyer_balance=buyer_balance,
            message=f'Purchased "{file.title}"',
        )

    def _purchase_bundle(self, uow, buyer_id: UUID, bundle_id: UUID) -> BundlePurchaseResult:
        bundle = uow.get_bundle(bundle_id)
        if bundle is None:
            raise ArtifactNotFoundError(f"Bundle {bundle_id} not found", context={"bundle_id": str(bundle_id)})
        buyer = self._require_account(uow, buyer_id)
        if bundle.creator_id == buyer_id:
            raise InvalidTransferError("You cannot purchase your own bundle")

        file_ids = list(dict.fromkeys(bundle.file_ids))
        if not file_ids:
            raise EmptyBundleError("Bundle has no items", context={"bundle_id": str(bundle_id)})
        for file_id in file_ids:
            if uow.get_file(file_id) is None:
                raise ArtifactNotFoundError(f"File {file_id} in bundle {bundle_id} not found")

        owned = uow.owned_artifact_ids(buyer_id, file_ids)
        new_file_ids = [f for f in file_ids if f not in owned]
        if not new_file_ids:
            raise AlreadyOwnedError("You already own all files in this bundle", context={"bundle_id": str(bundle_id)})

        price = bundle_price(bundle)
        shares = dict(zip(file_ids, split_evenly(price, len(file_ids))))
        charge = sum((shares[f] for f in new_file_ids), ZERO)

        transfer = None
        buyer_balance = buyer.balance
        if charge > 0:
            transfer = self._transfer(
                uow, buyer_id, bundle.creator_id, charge, TransactionKind.PURCHASE,
                f'Purchased bundle "{bundle.title}"', bundle.id,
                payee_description=f'Sold bundle "{bundle.title}"',
            )
            buyer_balance = transfer.payer_balance

        purchases = []
        for file_id in new_file_ids:
            purchase = Purchase(
                buyer_id=buyer_id,
                seller_id=bundle.creator_id,
                artifact_id=file_id,
                artifact_type=ArtifactType.FILE,
                bundle_id=bundle.id,
                amount=shares[file_id],
                transfer_id=transfer.transfer_id if transfer else None,
            )
            self._add_purchase(uow, purchase)
            purchases.append(purchase)

        return BundlePurchaseResult(
            bundle_id=bundle.id,
            purchases=purchases,
            skipped_artifact_ids=[f for f in file_ids if f in owned],
            bundle_price=price,
            amount_charged=charge,
            transfer=transfer,
            buyer_balance=buyer_balance,
            message=f"Added {len(purchases)} files from \"{bundle.title}\"",
        )

    def _enroll_course(self, uow, account_id: UUID, course_id: UUID) -> EnrollmentResult:
        course = uow.get_course(course_id)
        if course is None:
            raise ArtifactNotFoundError(f"Course {course_id} not found", context={"course_id": str(course_id)})
        account = self._require_account(uow, account_id)
        if uow.find_enrollment(course_id, account_id):
            raise AlreadyEnrolledError("You are already enrolled in this course", context={"course_id": str(course_id)})
        if course.creator_id == account_id:
            raise InvalidTransferError("You cannot enroll in your own course")

        transfer = None
        balance = account.balance
        if course.price > 0:
            transfer = self._transfer(
                uow, account_id, course.creator_id, course.price, TransactionKind.PURCHASE,
                f'Enrolled in "{course.title}"', course.id,
                payee_description=f'Course enrollment "{course.title}"',
            )
            balance = transfer.payer_balance

        enrollment = Enrollment(
            course_id=course_id,
            account_id=account_id,
            amount=course.price,
            transfer_id=transfer.transfer_id if transfer else None,
        )
        try:
            uow.add_enrollment(enrollment)
        except DuplicateRecordError as e:
            raise RaceLostError("A concurrent request already enrolled you in this course") from e

        return EnrollmentResult(
            enrollment=enrollment,
            transfer=transfer,
            buyer_balance=balance,
            message=f'Enrolled in "{course.title}"',
        )

    def _add_purchase(self, uow, purchase: Purchase) -> None:
        try:
            uow.add_purchase(purchase)
        except DuplicateRecordError as e:
            raise RaceLostError(
                "A concurrent request already completed this purchase",
                context={"artifact_id": str(purchase.artifact_id)},
            ) from e

    # Post-commit projections

    def _after_file_purchase(self, result: PurchaseResult) -> None:
        purchase = result.purchase

        def bump(uow):
            uow.increment("account", purchase.buyer_id, "total_purchases", 1)
            uow.increment("account", purchase.seller_id, "total_sales", purchase.amount)
            uow.increment("file", purchase.artifact_id, "download_count", 1)

        self._best_effort("purchase counters", bump)
        self._notify([
            Notification(
                account_id=purchase.buyer_id, kind="purchase", title="Purchase Successful",
                message=f"{result.message} for {format_money(purchase.amount)}",
                reference_id=purchase.artifact_id,
            ),
            Notification(
                account_id=purchase.seller_id, kind="sale", title="New Sale!",
                message=f"Your file was purchased for {format_money(purchase.amount)}",
                reference_id=purchase.artifact_id,
            ),
        ])
        logger.info("Purchase %s: %s bought %s for %s", purchase.id, purchase.buyer_id, purchase.artifact_id, purchase.amount)

    def _after_bundle_purchase(self, result: BundlePurchaseResult, buyer_id: UUID) -> None:
        seller_id = result.purchases[0].seller_id

        def bump(uow):
            uow.increment("bundle", result.bundle_id, "total_sales", 1)
            uow.increment("account", buyer_id, "total_purchases", len(result.purchases))
            uow.increment("account", seller_id, "total_sales", result.amount_charged)
            for purchase in result.purchases:
                uow.increment("file", purchase.artifact_id, "download_count", 1)

        self._best_effort("bundle counters", bump)
        self._notify([
            Notification(
                account_id=buyer_id, kind="purchase", title="Bundle Purchased",
                message=f"{result.message} for {format_money(result.amount_charged)}",
                reference_id=result.bundle_id,
            ),
            Notification(
                account_id=seller_id, kind="sale", title="New Bundle Sale!",
                message=f"Your bundle was purchased for {format_money(result.amount_charged)}",
                reference_id=result.bundle_id,
            ),
        ])
        logger.info(
            "Bundle %s: %s bought %d files for %s", result.bundle_id, buyer_id, len(result.purchases), result.amount_charged
        )

    def _after_enrollment(self, result: EnrollmentResult) -> None:
        enrollment = result.enrollment
        creator_id = result.transfer.payee_id if result.transfer else None

        def bump(uow):
            uow.increment("course", enrollment.course_id, "enrolled_count", 1)
            if creator_id is not None:
                uow.increment("account", creator_id, "total_sales", enrollment.amount)

        self._best_effort("course counters", bump)
        self._notify([Notification(
            account_id=enrollment.account_id, kind="course", title="Enrollment Confirmed",
            message=result.message, reference_id=enrollment.course_id,
        )])

    def _best_effort(self, what: str, fn: Callable) -> None:
        try:
            with self.storage.atomic() as uow:
                fn(uow)
        except Exception:
            logger.warning("Best-effort update of %s failed; ledger state is unaffected", what, exc_info=True)

    def _notify(self, notifications: list[Notification]) -> None:
        def write(uow):
            for notification in notifications:
                uow.add_notification(notification)

        self._best_effort("notifications", write)

    # Core

    def _transfer(
        self,
        uow,
        payer_id: Optional[UUID],
        payee_id: Optional[UUID],
        amount: Decimal,
        kind: TransactionKind,
        description: str,
        reference_id: Optional[UUID] = None,
        payee_description: Optional[str] = None,
        counterparty_id: Optional[UUID] = None,
    ) -> TransferResult:
        if payer_id is None and payee_id is None:
            raise InvalidTransferError("A transfer needs a payer or a payee")
        if payer_id is not None and payer_id == payee_id:
            raise InvalidTransferError("Cannot transfer to the same account")

        # Lock rows in a fixed order so two transfers between the same
        # accounts cannot deadlock.
        accounts = {}
        for account_id in sorted((i for i in (payer_id, payee_id) if i is not None), key=str):
            accounts[account_id] = self._require_account(uow, account_id, for_update=True)
        payer = accounts.get(payer_id)
        payee = accounts.get(payee_id)

        transfer_id = uuid4()
        now = utcnow()
        legs = []

        payer_balance = None
        if payer is not None:
            payer_balance = payer.balance
            if not payer.is_admin_unlimited:
                if payer.balance < amount:
                    logger.warning("Insufficient funds on %s: balance %s, required %s", payer.id, payer.balance, amount)
                    raise InsufficientFundsError(payer.id, payer.balance, amount)
                payer_balance = payer.balance - amount
                self._set_balance(uow, payer, payer_balance)
                legs.append(Transaction(
                    account_id=payer.id,
                    kind=kind,
                    amount=-amount,
                    balance_after=payer_balance,
                    description=description,
                    counterparty_id=payee_id or counterparty_id,
                    reference_id=reference_id,
                    transfer_id=transfer_id,
                    created_at=now,
                ))

        payee_balance = None
        if payee is not None:
            payee_balance = payee.balance + amount
            self._set_balance(uow, payee, payee_balance)
            legs.append(Transaction(
                account_id=payee.id,
                kind=_PAYEE_KIND.get(kind, kind),
                amount=amount,
                balance_after=payee_balance,
                description=payee_description or description,
                counterparty_id=payer_id or counterparty_id,
                reference_id=reference_id,
                transfer_id=transfer_id,
                created_at=now,
            ))

        for leg in legs:
            uow.add_transaction(leg)

        return TransferResult(
            transfer_id=transfer_id,
            kind=kind,
            amount=amount,
            payer_id=payer_id,
            payee_id=payee_id,
            payer_balance=payer_balance,
            payee_balance=payee_balance,
            transactions=legs,
        )

    def _set_balance(self, uow, account: Account, new_balance: Decimal) -> None:
        if not uow.compare_and_set_balance(account.id, account.balance, new_balance):
            raise BalanceConflictError(
                f"Balance of {account.id} changed concurrently", context={"account_id": str(account.id)}
            )

    def _atomic(self, fn: Callable[..., ResultT]) -> ResultT:
        attempts = self.settings.max_conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with self.storage.atomic() as uow:
                    return fn(uow)
            except BalanceConflictError as e:
                if attempt == attempts:
                    logger.error("Giving up after %d balance conflicts: %s", attempts, e)
                    raise PersistenceFailureError("The ledger is busy, please try again") from e
                logger.warning("Balance conflict (attempt %d/%d), retrying: %s", attempt, attempts, e)

    def _idempotent(
        self,
        operation: str,
        key: Optional[str],
        payload: dict,
        result_type: type[ResultT],
        fn: Callable[..., ResultT],
    ) -> ResultT:
        if key is None:
            return self._atomic(fn)
        fingerprint = _fingerprint(operation, payload)

        def run(uow) -> ResultT:
            record = uow.get_idempotency(key)
            if record is not None:
                if record.operation != operation or record.fingerprint != fingerprint:
                    raise IdempotencyConflictError(
                        f"Idempotency key {key!r} was already used for a different request",
                        context={"idempotency_key": key, "operation": record.operation},
                    )
                logger.info("Replaying %s for idempotency key %r", operation, key)
                return result_type.model_validate(record.response).model_copy(update={"replayed": True})

            result = fn(uow)
            try:
                uow.put_idempotency(IdempotencyRecord(
                    key=key, operation=operation, fingerprint=fingerprint,
                    response=result.model_dump(mode="json"),
                ))
            except DuplicateRecordError as e:
                raise RaceLostError(f"A concurrent request with idempotency key {key!r} won") from e
            return result

        return self._atomic(run)

    def _require_account(self, uow, account_id: UUID, for_update: bool = False) -> Account:
        account = uow.get_account(account_id, for_update=for_update)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found", context={"account_id": str(account_id)})
        return account

    def _positive(self, amount) -> Decimal:
        value = to_money(amount)
        if value <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {amount}")
        return value

    def _non_negative(self, amount) -> Decimal:
        value = to_money(amount)
        if value < 0:
            raise InvalidAmountError(f"Amount cannot be negative, got {amount}")
        return value
