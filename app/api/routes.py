"""
API Routes - Wallet, pricing and payment endpoints.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    get_current_user,
    get_ledger,
    get_payment_provider,
    require_role,
)
from app.config import settings
from app.db.session import get_read_db, get_write_db
from app.exceptions import (
    DataIntegrityError,
    InvalidWithdrawalStateError,
    PaymentProviderError,
    WebhookVerificationError,
    WriteVerificationError,
)
from app.models.api import (
    CreateCustomerRequest,
    CustomerResponse,
    HealthResponse,
    MonthlyEarningsItem,
    PricingResponse,
    PurchaseRequest,
    PurchaseResponse,
    StudentDashboardStatsResponse,
    StudentStatsResponse,
    TeacherStatsResponse,
    TransactionItem,
    TransactionListResponse,
    TransactionType,
    UserRole,
    WalletResponse,
    WebhookAckResponse,
)
from app.models.domain import CurrentUser, TransactionData
from app.services.ledger import TokenLedger
from app.services.pricing import PricingService, tokens_to_usd
from app.services.stripe_provider import StripeProvider
from app.services.token_purchase import TokenPurchaseService
from app.services.wallet import WalletService

logger = get_logger(__name__)

router = APIRouter()


def _transaction_item(tx: TransactionData) -> TransactionItem:
    return TransactionItem(
        transaction_id=tx.transaction_id,
        transaction_type=tx.transaction_type,
        amount_tokens=tx.amount_tokens,
        amount_usd=tx.amount_usd,
        balance_after=tx.balance_after,
        description=tx.description,
        related_entity_type=tx.related_entity_type,
        related_entity_id=tx.related_entity_id,
        created_at=tx.created_at.isoformat(),
    )


# =============================================================================
# Wallet Endpoints
# =============================================================================


@router.get("/api/wallet", response_model=WalletResponse)
async def get_wallet(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
    ledger: TokenLedger = Depends(get_ledger),
) -> WalletResponse:
    """
    Get the caller's wallet, creating an empty one on first access.

    Write operation - requires primary database.
    """
    service = WalletService(db, ledger)
    wallet = await service.get_wallet(user.user_id, user.role)

    if wallet is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Wallet temporarily unavailable",
        )

    return WalletResponse(
        wallet_id=wallet.wallet_id,
        user_id=wallet.user_id,
        balance=wallet.balance,
        locked_balance=wallet.locked_balance,
        balance_usd=tokens_to_usd(wallet.user_type, wallet.balance),
        created_at=wallet.created_at.isoformat(),
        updated_at=wallet.updated_at.isoformat(),
    )


@router.get("/api/wallet/transactions", response_model=TransactionListResponse)
async def get_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    transaction_type: TransactionType | None = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> TransactionListResponse:
    """Caller's token transactions, newest first."""
    service = WalletService(db)
    transactions = await service.get_transactions(
        user.user_id, limit=limit, offset=offset, transaction_type=transaction_type
    )

    return TransactionListResponse(
        transactions=[_transaction_item(tx) for tx in transactions],
        limit=limit,
        offset=offset,
        has_more=len(transactions) == limit,
    )


@router.get(
    "/api/wallet/stats",
    response_model=StudentStatsResponse | TeacherStatsResponse,
)
async def get_wallet_stats(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> StudentStatsResponse | TeacherStatsResponse:
    """Spending stats for students and parents, earnings stats for teachers."""
    service = WalletService(db)
    now = datetime.now(UTC)

    if user.is_teacher:
        teacher_stats = await service.get_teacher_stats(user.user_id, now)
        return TeacherStatsResponse(
            total_earnings=teacher_stats.total_earnings,
            this_month_earnings=teacher_stats.this_month_earnings,
            last_month_earnings=teacher_stats.last_month_earnings,
            pending_withdrawals=teacher_stats.pending_withdrawals,
            total_sessions=teacher_stats.total_sessions,
            average_session_value=teacher_stats.average_session_value,
            earnings_growth_percentage=teacher_stats.earnings_growth_percentage,
        )

    student_stats = await service.get_student_stats(user.user_id, now)
    return StudentStatsResponse(
        total_spent=student_stats.total_spent,
        this_month_spent=student_stats.this_month_spent,
        last_month_spent=student_stats.last_month_spent,
        total_classes=student_stats.total_classes,
        average_class_cost=student_stats.average_class_cost,
        spending_growth_percentage=student_stats.spending_growth_percentage,
    )


@router.get("/api/wallet/monthly-earnings", response_model=list[MonthlyEarningsItem])
async def get_monthly_earnings(
    user: CurrentUser = Depends(require_role(UserRole.TEACHER)),
    db: AsyncSession = Depends(get_read_db),
) -> list[MonthlyEarningsItem]:
    """Teacher earnings per calendar month, oldest first, last 12 months."""
    service = WalletService(db)
    months = await service.get_monthly_earnings(user.user_id)
    return [
        MonthlyEarningsItem(
            month=m.month,
            year=m.year,
            earnings=m.earnings,
            sessions=m.sessions,
        )
        for m in months
    ]


@router.get("/api/student/dashboard/stats", response_model=StudentDashboardStatsResponse)
async def get_student_dashboard_stats(
    user: CurrentUser = Depends(require_role(UserRole.STUDENT, UserRole.PARENT)),
    db: AsyncSession = Depends(get_write_db),
    ledger: TokenLedger = Depends(get_ledger),
) -> StudentDashboardStatsResponse:
    """Balance plus session counters for the student dashboard."""
    service = WalletService(db, ledger)
    stats = await service.get_student_dashboard_stats(user.user_id, datetime.now(UTC))
    return StudentDashboardStatsResponse(
        token_balance=stats.token_balance,
        balance_usd=stats.balance_usd,
        total_sessions=stats.total_sessions,
        completed_sessions=stats.completed_sessions,
        upcoming_sessions=stats.upcoming_sessions,
        total_spent=stats.total_spent,
    )


@router.get("/api/pricing/{user_type}", response_model=PricingResponse)
async def get_pricing(
    user_type: UserRole,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> PricingResponse:
    """Active token pricing for a user type."""
    pricing = await PricingService(db).get_token_pricing(user_type)
    if pricing is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active pricing for {user_type.value}",
        )

    return PricingResponse(
        user_type=pricing.user_type,
        tokens_per_dollar=pricing.tokens_per_dollar,
        dollars_per_token=pricing.dollars_per_token,
    )


# =============================================================================
# Payment Endpoints
# =============================================================================


@router.post(
    "/api/create-payment-intent",
    response_model=PurchaseResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment_intent(
    request: PurchaseRequest,
    user: CurrentUser = Depends(require_role(UserRole.STUDENT, UserRole.PARENT)),
    db: AsyncSession = Depends(get_write_db),
    ledger: TokenLedger = Depends(get_ledger),
    provider: StripeProvider = Depends(get_payment_provider),
) -> PurchaseResponse:
    """
    Create a payment intent for buying tokens at the student rate.

    Tokens are credited by the webhook once the payment succeeds.
    """
    service = TokenPurchaseService(db, ledger, provider)

    try:
        result = await service.create_purchase(
            user,
            tokens=request.tokens,
            currency=request.currency,
            receipt_email=request.receipt_email,
        )
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable",
        ) from exc

    return PurchaseResponse(
        payment_intent_id=result.payment_id,
        client_secret=result.client_secret,
        amount_minor=result.amount_minor,
        currency=result.currency,
        tokens=request.tokens,
        publishable_key=settings.stripe_publishable_key,
    )


@router.post("/api/create-customer", response_model=CustomerResponse)
async def create_customer(
    request: CreateCustomerRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
    ledger: TokenLedger = Depends(get_ledger),
    provider: StripeProvider = Depends(get_payment_provider),
) -> CustomerResponse:
    """Get or create the caller's payment provider customer."""
    service = TokenPurchaseService(db, ledger, provider)

    try:
        customer_id = await service.create_customer(user, request.email, request.name)
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable",
        ) from exc
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return CustomerResponse(customer_id=customer_id)


@router.post("/api/stripe-webhook", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    ledger: TokenLedger = Depends(get_ledger),
    provider: StripeProvider = Depends(get_payment_provider),
) -> WebhookAckResponse:
    """
    Handle Stripe webhook events.

    Authenticated by the Stripe-Signature header, not a bearer token.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        event = await provider.verify_webhook(payload, signature)
    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        ) from exc

    service = TokenPurchaseService(db, ledger, provider)
    try:
        outcome = await service.handle_webhook_event(event)
    except DataIntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc
    except InvalidWithdrawalStateError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc

    logger.info("stripe_webhook_handled", event_id=event.event_id, outcome=outcome)
    return WebhookAckResponse(received=True, event_type=event.event_type)


# =============================================================================
# Health Endpoint
# =============================================================================


@router.get("/api/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
