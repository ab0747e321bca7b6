"""
Relational storage backed by SQLAlchemy.

Each unit of work is one database transaction. Accounts touched by a transfer
are read with ``SELECT ... FOR UPDATE`` and balances are written with a
compare-and-swap on the previous value; ownership rows carry unique
constraints so two racing purchases cannot both commit.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    create_engine,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import DuplicateRecordError, PersistenceFailureError
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

logger = logging.getLogger(__name__)

Base = declarative_base()

Money = Numeric(14, 2)
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
Sequence = BigInteger().with_variant(Integer, "sqlite")


class AccountRow(Base):
    __tablename__ = "accounts"
    id = Column(Uuid, primary_key=True)
    username = Column(String(64), nullable=False, index=True)
    balance = Column(Money, nullable=False, default=Decimal("0.00"))
    is_admin_unlimited = Column(Boolean, nullable=False, default=False)
    is_verified = Column(Boolean, nullable=False, default=False)
    verification_expires_at = Column(DateTime(timezone=True))
    files_uploaded = Column(Integer, nullable=False, default=0)
    total_sales = Column(Money, nullable=False, default=Decimal("0.00"))
    total_purchases = Column(Integer, nullable=False, default=0)
    messages_sent = Column(Integer, nullable=False, default=0)
    total_referral_earnings = Column(Money, nullable=False, default=Decimal("0.00"))
    created_at = Column(DateTime(timezone=True), nullable=False)


class TransactionRow(Base):
    __tablename__ = "transactions"
    seq = Column(Sequence, primary_key=True, autoincrement=True)
    id = Column(Uuid, nullable=False, unique=True)
    account_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False, index=True)
    kind = Column(String(16), nullable=False)
    amount = Column(Money, nullable=False)
    balance_after = Column(Money, nullable=False)
    description = Column(String(512), nullable=False)
    counterparty_id = Column(Uuid)
    reference_id = Column(Uuid)
    transfer_id = Column(Uuid, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class FileRow(Base):
    __tablename__ = "files"
    id = Column(Uuid, primary_key=True)
    seller_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False)
    title = Column(String(255), nullable=False)
    price = Column(Money, nullable=False)
    download_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class BundleRow(Base):
    __tablename__ = "bundles"
    id = Column(Uuid, primary_key=True)
    creator_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False)
    title = Column(String(255), nullable=False)
    original_price = Column(Money, nullable=False)
    discount_percentage = Column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    total_sales = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)


class BundleItemRow(Base):
    __tablename__ = "bundle_items"
    bundle_id = Column(Uuid, ForeignKey("bundles.id"), primary_key=True)
    file_id = Column(Uuid, ForeignKey("files.id"), primary_key=True)
    position = Column(Integer, nullable=False)


class CourseRow(Base):
    __tablename__ = "courses"
    id = Column(Uuid, primary_key=True)
    creator_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False)
    title = Column(String(255), nullable=False)
    price = Column(Money, nullable=False)
    enrolled_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)


class PurchaseRow(Base):
    __tablename__ = "purchases"
    __table_args__ = (UniqueConstraint("buyer_id", "artifact_id", name="uq_purchase_buyer_artifact"),)
    id = Column(Uuid, primary_key=True)
    buyer_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False)
    seller_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False)
    artifact_id = Column(Uuid, nullable=False)
    artifact_type = Column(String(16), nullable=False)
    bundle_id = Column(Uuid)
    amount = Column(Money, nullable=False)
    transfer_id = Column(Uuid)
    created_at = Column(DateTime(timezone=True), nullable=False)


class EnrollmentRow(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("course_id", "account_id", name="uq_enrollment_course_account"),)
    id = Column(Uuid, primary_key=True)
    course_id = Column(Uuid, ForeignKey("courses.id"), nullable=False)
    account_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False)
    amount = Column(Money, nullable=False)
    transfer_id = Column(Uuid)
    created_at = Column(DateTime(timezone=True), nullable=False)


class NotificationRow(Base):
    __tablename__ = "notifications"
    id = Column(Uuid, primary_key=True)
    account_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False, index=True)
    kind = Column(String(32), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(String(1024), nullable=False)
    reference_id = Column(Uuid)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class IdempotencyRow(Base):
    __tablename__ = "idempotency_keys"
    key = Column(String(255), primary_key=True)
    operation = Column(String(64), nullable=False)
    fingerprint = Column(String(64), nullable=False)
    response = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


_ENTITY_ROWS = {"account": AccountRow, "file": FileRow, "bundle": BundleRow, "course": CourseRow}


def _row_to_dict(row) -> dict:
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        # SQLite hands back naive datetimes even for timezone-aware columns.
        if isinstance(value, datetime) and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        data[column.key] = value
    data.pop("seq", None)
    return data


class SqlUnitOfWork:
    def __init__(self, session: Session):
        self.session = session

    def _flush(self, what: str) -> None:
        try:
            self.session.flush()
        except IntegrityError as e:
            raise DuplicateRecordError(f"{what} already exists") from e

    # Accounts

    def get_account(self, account_id: UUID, for_update: bool = False) -> Optional[Account]:
        stmt = select(AccountRow).where(AccountRow.id == account_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        row = self.session.execute(stmt).scalar_one_or_none()
        return Account(**_row_to_dict(row)) if row else None

    def add_account(self, account: Account) -> None:
        self.session.add(AccountRow(**account.model_dump()))
        self._flush(f"Account {account.id}")

    def update_account(self, account_id: UUID, **fields) -> None:
        fields.pop("balance", None)
        self.session.execute(update(AccountRow).where(AccountRow.id == account_id).values(**fields))

    def compare_and_set_balance(self, account_id: UUID, expected: Decimal, new: Decimal) -> bool:
        result = self.session.execute(
            update(AccountRow)
            .where(AccountRow.id == account_id, AccountRow.balance == expected)
            .values(balance=new)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def increment(self, entity: str, entity_id: UUID, field: str, by) -> None:
        row_cls = _ENTITY_ROWS[entity]
        column = getattr(row_cls, field)
        self.session.execute(
            update(row_cls)
            .where(row_cls.id == entity_id)
            .values({field: column + by})
            .execution_options(synchronize_session=False)
        )

    # Transactions

    def add_transaction(self, transaction: Transaction) -> None:
        self.session.add(TransactionRow(**{**transaction.model_dump(), "kind": transaction.kind.value}))
        self._flush(f"Transaction {transaction.id}")

    def list_transactions(self, account_id: UUID) -> list[Transaction]:
        rows = self.session.execute(
            select(TransactionRow).where(TransactionRow.account_id == account_id).order_by(TransactionRow.seq)
        ).scalars()
        return [Transaction(**_row_to_dict(row)) for row in rows]

    # Catalogue

    def get_file(self, file_id: UUID) -> Optional[MarketplaceFile]:
        row = self.session.get(FileRow, file_id, populate_existing=True)
        return MarketplaceFile(**_row_to_dict(row)) if row else None

    def add_file(self, file: MarketplaceFile) -> None:
        self.session.add(FileRow(**file.model_dump()))
        self._flush(f"File {file.id}")

    def update_file(self, file_id: UUID, **fields) -> None:
        self.session.execute(update(FileRow).where(FileRow.id == file_id).values(**fields))

    def get_bundle(self, bundle_id: UUID) -> Optional[Bundle]:
        row = self.session.get(BundleRow, bundle_id, populate_existing=True)
        if row is None:
            return None
        file_ids = self.session.execute(
            select(BundleItemRow.file_id).where(BundleItemRow.bundle_id == bundle_id).order_by(BundleItemRow.position)
        ).scalars().all()
        return Bundle(**_row_to_dict(row), file_ids=list(file_ids))

    def add_bundle(self, bundle: Bundle) -> None:
        data = bundle.model_dump()
        file_ids = data.pop("file_ids")
        self.session.add(BundleRow(**data))
        self._flush(f"Bundle {bundle.id}")
        for position, file_id in enumerate(file_ids):
            self.session.add(BundleItemRow(bundle_id=bundle.id, file_id=file_id, position=position))
        self._flush(f"Items of bundle {bundle.id}")

    def get_course(self, course_id: UUID) -> Optional[Course]:
        row = self.session.get(CourseRow, course_id, populate_existing=True)
        return Course(**_row_to_dict(row)) if row else None

    def add_course(self, course: Course) -> None:
        self.session.add(CourseRow(**course.model_dump()))
        self._flush(f"Course {course.id}")

    # Ownership

    def find_purchase(self, buyer_id: UUID, artifact_id: UUID) -> Optional[Purchase]:
        row = self.session.execute(
            select(PurchaseRow).where(PurchaseRow.buyer_id == buyer_id, PurchaseRow.artifact_id == artifact_id)
        ).scalar_one_or_none()
        return Purchase(**_row_to_dict(row)) if row else None

    def owned_artifact_ids(self, buyer_id: UUID, artifact_ids: list[UUID]) -> set[UUID]:
        if not artifact_ids:
            return set()
        rows = self.session.execute(
            select(PurchaseRow.artifact_id).where(
                PurchaseRow.buyer_id == buyer_id, PurchaseRow.artifact_id.in_(artifact_ids)
            )
        ).scalars()
        return set(rows)

    def list_purchases(self, buyer_id: UUID) -> list[Purchase]:
        rows = self.session.execute(
            select(PurchaseRow).where(PurchaseRow.buyer_id == buyer_id).order_by(PurchaseRow.created_at)
        ).scalars()
        return [Purchase(**_row_to_dict(row)) for row in rows]

    def add_purchase(self, purchase: Purchase) -> None:
        self.session.add(PurchaseRow(**{**purchase.model_dump(), "artifact_type": purchase.artifact_type.value}))
        self._flush(f"Purchase of {purchase.artifact_id} by {purchase.buyer_id}")

    def find_enrollment(self, course_id: UUID, account_id: UUID) -> Optional[Enrollment]:
        row = self.session.execute(
            select(EnrollmentRow).where(EnrollmentRow.course_id == course_id, EnrollmentRow.account_id == account_id)
        ).scalar_one_or_none()
        return Enrollment(**_row_to_dict(row)) if row else None

    def add_enrollment(self, enrollment: Enrollment) -> None:
        self.session.add(EnrollmentRow(**enrollment.model_dump()))
        self._flush(f"Enrollment of {enrollment.account_id} in {enrollment.course_id}")

    # Notifications

    def add_notification(self, notification: Notification) -> None:
        self.session.add(NotificationRow(**notification.model_dump()))
        self._flush(f"Notification {notification.id}")

    def list_notifications(self, account_id: UUID) -> list[Notification]:
        rows = self.session.execute(
            select(NotificationRow).where(NotificationRow.account_id == account_id).order_by(NotificationRow.created_at)
        ).scalars()
        return [Notification(**_row_to_dict(row)) for row in rows]

    # Idempotency

    def get_idempotency(self, key: str) -> Optional[IdempotencyRecord]:
        row = self.session.get(IdempotencyRow, key)
        return IdempotencyRecord(**_row_to_dict(row)) if row else None

    def put_idempotency(self, record: IdempotencyRecord) -> None:
        self.session.add(IdempotencyRow(**record.model_dump()))
        self._flush(f"Idempotency key {record.key}")


class SqlStorage:
    def __init__(self, url: str, echo: bool = False):
        kwargs = {"echo": echo, "pool_pre_ping": True}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        Base.metadata.create_all(bind=self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def atomic(self) -> Iterator[SqlUnitOfWork]:
        session = self._session_factory()
        try:
            with session.begin():
                yield SqlUnitOfWork(session)
        except IntegrityError as e:
            raise DuplicateRecordError("Conflicting row written concurrently") from e
        except SQLAlchemyError as e:
            logger.error("Ledger store rejected the unit of work: %s", e)
            raise PersistenceFailureError("The ledger store is unavailable, please try again") from e
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
