import copy
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Callable, Iterator, Optional
from uuid import UUID

from .errors import DuplicateRecordError
from .models import (
    Account,
    Transaction,
    Purchase,
    MarketplaceFile,
    Bundle,
    Course,
    Enrollment,
    Notification,
    IdempotencyRecord,
)


class InMemoryStorage:
    """Process-local store.

    Every unit of work holds one re-entrant lock. Each write first records how
    to undo itself (the previous row, or the key it inserted); an exception
    inside ``atomic()`` replays that undo log newest first, so a failed
    operation leaves nothing behind. Rows the unit of work never wrote are not
    copied.
    """

    def __init__(self):
        self.accounts: dict[UUID, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        self.purchases: dict[UUID, dict] = {}
        self.files: dict[UUID, dict] = {}
        self.bundles: dict[UUID, dict] = {}
        self.courses: dict[UUID, dict] = {}
        self.enrollments: dict[UUID, dict] = {}
        self.notifications: dict[UUID, dict] = {}
        self.idempotency_index: dict[str, dict] = {}
        self._lock = threading.RLock()
        self._undo: Optional[list[Callable[[], None]]] = None
        self._touched: set = set()

    @contextmanager
    def atomic(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            if self._undo is not None:
                # Nested: joins the enclosing unit of work.
                yield self
                return
            self._undo, self._touched = [], set()
            try:
                yield self
            except BaseException:
                for undo in reversed(self._undo):
                    undo()
                raise
            finally:
                self._undo, self._touched = None, set()

    def _touch(self, table: dict, key) -> None:
        """Remember the current state of ``table[key]`` once per unit of work."""
        if self._undo is None or (id(table), key) in self._touched:
            return
        self._touched.add((id(table), key))
        if key in table:
            previous = copy.deepcopy(table[key])
            self._undo.append(lambda: table.__setitem__(key, previous))
        else:
            self._undo.append(lambda: table.pop(key, None))

    # Accounts

    def get_account(self, account_id: UUID, for_update: bool = False) -> Optional[Account]:
        row = self.accounts.get(account_id)
        return Account(**row) if row else None

    def add_account(self, account: Account) -> None:
        if account.id in self.accounts:
            raise DuplicateRecordError(f"Account {account.id} already exists")
        self._touch(self.accounts, account.id)
        self.accounts[account.id] = account.model_dump()

    def update_account(self, account_id: UUID, **fields) -> None:
        fields.pop("balance", None)
        self._touch(self.accounts, account_id)
        self.accounts[account_id].update(fields)

    def compare_and_set_balance(self, account_id: UUID, expected: Decimal, new: Decimal) -> bool:
        row = self.accounts.get(account_id)
        if row is None or row["balance"] != expected:
            return False
        self._touch(self.accounts, account_id)
        row["balance"] = new
        return True

    def increment(self, entity: str, entity_id: UUID, field: str, by) -> None:
        table = {"account": self.accounts, "file": self.files,
                 "bundle": self.bundles, "course": self.courses}[entity]
        self._touch(table, entity_id)
        row = table[entity_id]
        row[field] = row[field] + by

    # Transactions

    def add_transaction(self, transaction: Transaction) -> None:
        self._touch(self.transactions, transaction.id)
        self.transactions[transaction.id] = transaction.model_dump()

    def list_transactions(self, account_id: UUID) -> list[Transaction]:
        return [
            Transaction(**row) for row in self.transactions.values()
            if row["account_id"] == account_id
        ]

    # Catalogue

    def get_file(self, file_id: UUID) -> Optional[MarketplaceFile]:
        row = self.files.get(file_id)
        return MarketplaceFile(**row) if row else None

    def add_file(self, file: MarketplaceFile) -> None:
        self._touch(self.files, file.id)
        self.files[file.id] = file.model_dump()

    def update_file(self, file_id: UUID, **fields) -> None:
        self._touch(self.files, file_id)
        self.files[file_id].update(fields)

    def get_bundle(self, bundle_id: UUID) -> Optional[Bundle]:
        row = self.bundles.get(bundle_id)
        return Bundle(**row) if row else None

    def add_bundle(self, bundle: Bundle) -> None:
        self._touch(self.bundles, bundle.id)
        self.bundles[bundle.id] = bundle.model_dump()

    def get_course(self, course_id: UUID) -> Optional[Course]:
        row = self.courses.get(course_id)
        return Course(**row) if row else None

    def add_course(self, course: Course) -> None:
        self._touch(self.courses, course.id)
        self.courses[course.id] = course.model_dump()

    # Ownership

    def find_purchase(self, buyer_id: UUID, artifact_id: UUID) -> Optional[Purchase]:
        for row in self.purchases.values():
            if row["buyer_id"] == buyer_id and row["artifact_id"] == artifact_id:
                return Purchase(**row)
        return None

    def owned_artifact_ids(self, buyer_id: UUID, artifact_ids: list[UUID]) -> set[UUID]:
        wanted = set(artifact_ids)
        return {
            row["artifact_id"] for row in self.purchases.values()
            if row["buyer_id"] == buyer_id and row["artifact_id"] in wanted
        }

    def list_purchases(self, buyer_id: UUID) -> list[Purchase]:
        return [Purchase(**row) for row in self.purchases.values() if row["buyer_id"] == buyer_id]

    def add_purchase(self, purchase: Purchase) -> None:
        if self.find_purchase(purchase.buyer_id, purchase.artifact_id):
            raise DuplicateRecordError(
                f"Purchase of {purchase.artifact_id} by {purchase.buyer_id} already exists"
            )
        self._touch(self.purchases, purchase.id)
        self.purchases[purchase.id] = purchase.model_dump()

    def find_enrollment(self, course_id: UUID, account_id: UUID) -> Optional[Enrollment]:
        for row in self.enrollments.values():
            if row["course_id"] == course_id and row["account_id"] == account_id:
                return Enrollment(**row)
        return None

    def add_enrollment(self, enrollment: Enrollment) -> None:
        if self.find_enrollment(enrollment.course_id, enrollment.account_id):
            raise DuplicateRecordError(
                f"Enrollment of {enrollment.account_id} in {enrollment.course_id} already exists"
            )
        self._touch(self.enrollments, enrollment.id)
        self.enrollments[enrollment.id] = enrollment.model_dump()

    # Notifications

    def add_notification(self, notification: Notification) -> None:
        self._touch(self.notifications, notification.id)
        self.notifications[notification.id] = notification.model_dump()

    def list_notifications(self, account_id: UUID) -> list[Notification]:
        return [
            Notification(**row) for row in self.notifications.values()
            if row["account_id"] == account_id
        ]

    # Idempotency

    def get_idempotency(self, key: str) -> Optional[IdempotencyRecord]:
        row = self.idempotency_index.get(key)
        return IdempotencyRecord(**row) if row else None

    def put_idempotency(self, record: IdempotencyRecord) -> None:
        if record.key in self.idempotency_index:
            raise DuplicateRecordError(f"Idempotency key {record.key} already used")
        self._touch(self.idempotency_index, record.key)
        self.idempotency_index[record.key] = record.model_dump()
