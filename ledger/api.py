import logging
import time
from typing import Any, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import configure_logging, get_settings
from .errors import ForbiddenError, LedgerServiceError, PersistenceFailureError
from .models import (
    Account,
    AccountAudit,
    AccountBalance,
    Bundle,
    BundlePurchaseRequest,
    BundlePurchaseResult,
    Course,
    CourseEnrollRequest,
    CreateBundleRequest,
    CreateCourseRequest,
    EnrollmentResult,
    GiftRequest,
    LedgerHistoryResponse,
    MarketplaceFile,
    Notification,
    OpenAccountRequest,
    Purchase,
    PurchaseRequest,
    PurchaseResult,
    ReferralPayoutRequest,
    RegisterFileRequest,
    TopupRequest,
    TransferResult,
    VerificationRequest,
    VerificationResult,
)
from .service import LedgerService

logger = logging.getLogger(__name__)

settings = get_settings()
configure_logging(settings)

app = FastAPI(
    title="Marketplace Ledger API",
    description="Balance transfers, purchases and checkouts with an append-only transaction history",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = LedgerService(settings=settings)


class ErrorDetail(BaseModel):
    code: str
    message: str
    context: Optional[dict[str, Any]] = None


class StandardErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    timestamp: float


def error_response(status_code: int, code: str, message: str, context: Optional[dict] = None) -> JSONResponse:
    body = StandardErrorResponse(
        error=ErrorDetail(code=code, message=message, context=context or None),
        timestamp=time.time(),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(LedgerServiceError)
async def ledger_error_handler(request: Request, exc: LedgerServiceError):
    if isinstance(exc, PersistenceFailureError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        # Never report a store failure as anything but "did not happen".
        return error_response(exc.status_code, exc.code, "Something went wrong, please try again.")
    logger.warning("%s %s rejected: %s - %s", request.method, request.url.path, exc.code, exc.message)
    return error_response(exc.status_code, exc.code, exc.message, exc.context)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")
    logger.warning("Validation error on %s: %s", field, message)
    return error_response(
        status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR",
        f"Validation error on field '{field}': {message}", {"field": field},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unexpected error on %s %s", request.method, request.url.path)
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_SERVER_ERROR",
        "An unexpected error occurred. Please try again later.",
    )


def get_ledger_service() -> LedgerService:
    return ledger_service


def current_account_id(x_account_id: UUID = Header(..., description="Authenticated account id")) -> UUID:
    return x_account_id


def current_admin_id(
    account_id: UUID = Depends(current_account_id),
    service: LedgerService = Depends(get_ledger_service),
) -> UUID:
    if not service.get_account(account_id).is_admin_unlimited:
        raise ForbiddenError("Only administrators can do this")
    return account_id


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "marketplace-ledger"}


@app.post("/accounts", response_model=Account, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
def open_account(
    request: OpenAccountRequest,
    x_account_id: Optional[UUID] = Header(default=None),
    service: LedgerService = Depends(get_ledger_service),
) -> Account:
    if request.is_admin_unlimited:
        if x_account_id is None or not service.get_account(x_account_id).is_admin_unlimited:
            raise ForbiddenError("Only administrators can open unlimited accounts")
    return service.open_account(request.username, is_admin_unlimited=request.is_admin_unlimited)


@app.get("/accounts/{account_id}", response_model=Account, tags=["Accounts"])
def get_account(account_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> Account:
    return service.get_account(account_id)


@app.get("/accounts/{account_id}/balance", response_model=AccountBalance, tags=["Accounts"])
def get_balance(account_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> AccountBalance:
    return service.get_balance(account_id)


@app.get("/accounts/{account_id}/transactions", response_model=LedgerHistoryResponse, tags=["Accounts"])
def get_transactions(
    account_id: UUID,
    limit: int = 50,
    offset: int = 0,
    service: LedgerService = Depends(get_ledger_service),
) -> LedgerHistoryResponse:
    return service.get_history(account_id, limit, offset)


@app.get("/accounts/{account_id}/purchases", response_model=list[Purchase], tags=["Accounts"])
def get_purchases(account_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> list[Purchase]:
    return service.get_purchases(account_id)


@app.get("/accounts/{account_id}/notifications", response_model=list[Notification], tags=["Accounts"])
def get_notifications(account_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> list[Notification]:
    return service.get_notifications(account_id)


@app.get("/accounts/{account_id}/audit", response_model=AccountAudit, tags=["Accounts"])
def audit_account(account_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> AccountAudit:
    return service.audit_account(account_id)


@app.post("/accounts/{account_id}/stats/rebuild", response_model=Account, tags=["Accounts"])
def rebuild_stats(
    account_id: UUID,
    admin_id: UUID = Depends(current_admin_id),
    service: LedgerService = Depends(get_ledger_service),
) -> Account:
    return service.rebuild_stats(account_id)


@app.post("/files", response_model=MarketplaceFile, status_code=status.HTTP_201_CREATED, tags=["Catalogue"])
def register_file(
    request: RegisterFileRequest,
    account_id: UUID = Depends(current_account_id),
    service: LedgerService = Depends(get_ledger_service),
) -> MarketplaceFile:
    return service.register_file(account_id, request.title, request.price)


@app.post("/bundles", response_model=Bundle, status_code=status.HTTP_201_CREATED, tags=["Catalogue"])
def create_bundle(
    request: CreateBundleRequest,
    account_id: UUID = Depends(current_account_id),
    service: LedgerService = Depends(get_ledger_service),
) -> Bundle:
    return service.create_bundle(
        account_id, request.title, request.file_ids, request.original_price, request.discount_percentage
    )


@app.post("/courses", response_model=Course, status_code=status.HTTP_201_CREATED, tags=["Catalogue"])
def create_course(
    request: CreateCourseRequest,
    account_id: UUID = Depends(current_account_id),
    service: LedgerService = Depends(get_ledger_service),
) -> Course:
    return service.create_course(account_id, request.title, request.price)


@app.post("/purchase", response_model=PurchaseResult, tags=["Checkout"])
def purchase(
    request: PurchaseRequest,
    account_id: UUID = Depends(current_account_id),
    service: LedgerService = Depends(get_ledger_service),
) -> PurchaseResult:
    return service.purchase(
        account_id, request.artifact_id,
        idempotency_key=request.idempotency_key, expected_price=request.expected_price,
    )


@app.post("/bundle-purchase", response_model=BundlePurchaseResult, tags=["Checkout"])
def bundle_purchase(
    request: BundlePurchaseRequest,
    account_id: UUID = Depends(current_account_id),
    service: LedgerService = Depends(get_ledger_service),
) -> BundlePurchaseResult:
    return service.purchase_bundle(account_id, request.bundle_id, idempotency_key=request.idempotency_key)


@app.post("/course-enroll", response_model=EnrollmentResult, tags=["Checkout"])
def course_enroll(
    request: CourseEnrollRequest,
    account_id: UUID = Depends(current_account_id),
    service: LedgerService = Depends(get_ledger_service),
) -> EnrollmentResult:
    return service.enroll_course(account_id, request.course_id, idempotency_key=request.idempotency_key)


@app.post("/gifts", response_model=TransferResult, tags=["Balance"])
def gift(
    request: GiftRequest,
    admin_id: UUID = Depends(current_admin_id),
    service: LedgerService = Depends(get_ledger_service),
) -> TransferResult:
    return service.gift(
        request.recipient_id, request.amount,
        description=request.description, idempotency_key=request.idempotency_key,
    )


@app.post("/topups", response_model=TransferResult, tags=["Balance"])
def topup(
    request: TopupRequest,
    admin_id: UUID = Depends(current_admin_id),
    service: LedgerService = Depends(get_ledger_service),
) -> TransferResult:
    return service.topup(
        request.account_id, request.amount,
        description=request.description, idempotency_key=request.idempotency_key,
    )


@app.post("/verification", response_model=VerificationResult, tags=["Balance"])
def subscribe_verification(
    request: VerificationRequest,
    account_id: UUID = Depends(current_account_id),
    service: LedgerService = Depends(get_ledger_service),
) -> VerificationResult:
    return service.subscribe_verification(account_id, idempotency_key=request.idempotency_key)


@app.delete("/verification", response_model=VerificationResult, tags=["Balance"])
def cancel_verification(
    account_id: UUID = Depends(current_account_id),
    service: LedgerService = Depends(get_ledger_service),
) -> VerificationResult:
    return service.cancel_verification(account_id)


@app.post("/referrals/payout", response_model=TransferResult, tags=["Balance"])
def referral_payout(
    request: ReferralPayoutRequest,
    admin_id: UUID = Depends(current_admin_id),
    service: LedgerService = Depends(get_ledger_service),
) -> TransferResult:
    return service.pay_referral(
        request.referrer_id, request.referred_id, request.amount, idempotency_key=request.idempotency_key
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
