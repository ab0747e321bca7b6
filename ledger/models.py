from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4
from pydantic import BaseModel, Field, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionKind(str, Enum):
    PURCHASE = "purchase"
    SALE = "sale"
    GIFT = "gift"
    TOPUP = "topup"
    VERIFICATION = "verification"
    REFERRAL = "referral"


class ArtifactType(str, Enum):
    FILE = "file"
    COURSE = "course"


class Account(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    username: str
    balance: Decimal = Decimal("0.00")
    is_admin_unlimited: bool = False
    is_verified: bool = False
    verification_expires_at: Optional[datetime] = None
    files_uploaded: int = 0
    total_sales: Decimal = Decimal("0.00")
    total_purchases: int = 0
    messages_sent: int = 0
    total_referral_earnings: Decimal = Decimal("0.00")
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)

    def has_active_verification(self, now: datetime) -> bool:
        if not self.is_verified:
            return False
        return self.verification_expires_at is None or self.verification_expires_at > now


class Transaction(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    account_id: UUID
    kind: TransactionKind
    amount: Decimal
    balance_after: Decimal
    description: str
    counterparty_id: Optional[UUID] = None
    reference_id: Optional[UUID] = None
    transfer_id: UUID
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class Purchase(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    buyer_id: UUID
    seller_id: UUID
    artifact_id: UUID
    artifact_type: ArtifactType = ArtifactType.FILE
    bundle_id: Optional[UUID] = None
    amount: Decimal
    transfer_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class MarketplaceFile(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    seller_id: UUID
    title: str
    price: Decimal
    download_count: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class Bundle(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    creator_id: UUID
    title: str
    original_price: Decimal
    discount_percentage: Decimal = Decimal("0")
    file_ids: list[UUID] = Field(default_factory=list)
    total_sales: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class Course(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    creator_id: UUID
    title: str
    price: Decimal = Decimal("0.00")
    enrolled_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class Enrollment(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    course_id: UUID
    account_id: UUID
    amount: Decimal = Decimal("0.00")
    transfer_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class Notification(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    account_id: UUID
    kind: str
    title: str
    message: str
    reference_id: Optional[UUID] = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class IdempotencyRecord(BaseModel):
    key: str
    operation: str
    fingerprint: str
    response: dict
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


# Requests

class OpenAccountRequest(BaseModel):
    username: str = Field(..., min_length=3)
    is_admin_unlimited: bool = False


class PurchaseRequest(BaseModel):
    artifact_id: UUID
    expected_price: Optional[Decimal] = Field(
        default=None, ge=0, description="Price shown to the buyer; rejected if it no longer matches"
    )
    idempotency_key: Optional[str] = Field(default=None, description="Unique key to prevent duplicate charges")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "artifact_id": "550e8400-e29b-41d4-a716-446655440000",
            "expected_price": 100.00,
            "idempotency_key": "buy-550e8400-1",
        }
    })


class BundlePurchaseRequest(BaseModel):
    bundle_id: UUID
    idempotency_key: Optional[str] = None


class CourseEnrollRequest(BaseModel):
    course_id: UUID
    idempotency_key: Optional[str] = None


class GiftRequest(BaseModel):
    recipient_id: UUID
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = None
    idempotency_key: Optional[str] = None


class TopupRequest(BaseModel):
    account_id: UUID
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = None
    idempotency_key: Optional[str] = None


class VerificationRequest(BaseModel):
    idempotency_key: Optional[str] = None


class ReferralPayoutRequest(BaseModel):
    referrer_id: UUID
    referred_id: UUID
    amount: Decimal = Field(..., gt=0)
    idempotency_key: Optional[str] = None


class RegisterFileRequest(BaseModel):
    title: str
    price: Decimal = Field(..., ge=0)


class CreateBundleRequest(BaseModel):
    title: str
    file_ids: list[UUID]
    original_price: Decimal = Field(..., ge=0)
    discount_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)


class CreateCourseRequest(BaseModel):
    title: str
    price: Decimal = Field(default=Decimal("0.00"), ge=0)


# Responses

class TransferResult(BaseModel):
    transfer_id: UUID
    kind: TransactionKind
    amount: Decimal
    payer_id: Optional[UUID] = None
    payee_id: Optional[UUID] = None
    payer_balance: Optional[Decimal] = None
    payee_balance: Optional[Decimal] = None
    transactions: list[Transaction] = Field(default_factory=list)
    replayed: bool = False


class PurchaseResult(BaseModel):
    purchase: Purchase
    transfer: Optional[TransferResult] = None
    buyer_balance: Decimal
    replayed: bool = False
    message: str


class BundlePurchaseResult(BaseModel):
    bundle_id: UUID
    purchases: list[Purchase]
    skipped_artifact_ids: list[UUID] = Field(default_factory=list)
    bundle_price: Decimal
    amount_charged: Decimal
    transfer: Optional[TransferResult] = None
    buyer_balance: Decimal
    replayed: bool = False
    message: str


class EnrollmentResult(BaseModel):
    enrollment: Enrollment
    transfer: Optional[TransferResult] = None
    buyer_balance: Decimal
    replayed: bool = False
    message: str


class VerificationResult(BaseModel):
    account_id: UUID
    is_verified: bool
    verification_expires_at: Optional[datetime] = None
    transfer: Optional[TransferResult] = None
    balance: Decimal
    replayed: bool = False
    message: str


class AccountBalance(BaseModel):
    account_id: UUID
    balance: Decimal
    is_unlimited: bool
    display_balance: str
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    account_id: UUID
    entries: list[Transaction]
    total_count: int
    current_balance: Decimal


class AccountAudit(BaseModel):
    account_id: UUID
    balance: Decimal
    ledger_total: Decimal
    total_entries: int
    is_unlimited: bool
    consistent: bool
    discrepancies: list[str] = Field(default_factory=list)
