"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class UserRole(str, Enum):
    """Marketplace role carried in the bearer token."""

    STUDENT = "student"
    TEACHER = "teacher"
    PARENT = "parent"
    ADMIN = "admin"


class TransactionType(str, Enum):
    """Token transaction type enumeration."""

    PURCHASE = "purchase"
    DEDUCTION = "deduction"
    REFUND = "refund"
    BONUS = "bonus"
    EARNING = "earning"
    WITHDRAWAL = "withdrawal"
    FEE = "fee"


class SessionStatus(str, Enum):
    """Class session lifecycle status."""

    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class WithdrawalStatus(str, Enum):
    """Withdrawal request status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WithdrawalProvider(str, Enum):
    """Payout channel for a withdrawal request."""

    STRIPE = "stripe"
    MPESA = "mpesa"
    BANK_TRANSFER = "bank_transfer"


class SessionFailureReason(str, Enum):
    """Why a lifecycle operation was refused."""

    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_STATE = "invalid_state"
    INSUFFICIENT_TOKENS = "insufficient_tokens"
    NO_TRACKER = "no_tracker"
    UNAVAILABLE = "unavailable"


# ============================================================================
# Wallet Models
# ============================================================================


class WalletResponse(BaseModel):
    """GET /api/wallet response."""

    wallet_id: UUID
    user_id: UUID
    balance: int
    locked_balance: int
    balance_usd: Decimal = Field(..., description="Balance valued at the caller's role rate")
    created_at: str  # ISO 8601 timestamp
    updated_at: str


class TransactionItem(BaseModel):
    """Single token transaction in a history listing."""

    transaction_id: UUID
    transaction_type: TransactionType
    amount_tokens: int
    amount_usd: Decimal
    balance_after: int
    description: str
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    created_at: str


class TransactionListResponse(BaseModel):
    """GET /api/wallet/transactions response."""

    transactions: list[TransactionItem]
    limit: int
    offset: int
    has_more: bool


class StudentStatsResponse(BaseModel):
    """Spending summary for a student wallet."""

    total_spent: Decimal
    this_month_spent: Decimal
    last_month_spent: Decimal
    total_classes: int
    average_class_cost: Decimal
    spending_growth_percentage: float


class TeacherStatsResponse(BaseModel):
    """Earnings summary for a teacher wallet."""

    total_earnings: Decimal
    this_month_earnings: Decimal
    last_month_earnings: Decimal
    pending_withdrawals: Decimal
    total_sessions: int
    average_session_value: Decimal
    earnings_growth_percentage: float


class MonthlyEarningsItem(BaseModel):
    """One calendar month of teacher earnings."""

    month: str
    year: int
    earnings: Decimal
    sessions: int


class PricingResponse(BaseModel):
    """GET /api/pricing/{user_type} response."""

    user_type: UserRole
    tokens_per_dollar: Decimal
    dollars_per_token: Decimal


# ============================================================================
# Class Session Models
# ============================================================================


class StartSessionRequest(BaseModel):
    """POST /api/sessions/{session_id}/start request body."""

    student_id: UUID
    class_id: UUID | None = None
    meeting_id: str | None = Field(
        None,
        max_length=255,
        description="External meeting identifier; only sessions with one are charged",
    )
    title: str | None = Field(None, max_length=255)


class CompleteSessionRequest(BaseModel):
    """POST /api/sessions/{session_id}/complete request body."""

    notes: str | None = Field(None, max_length=5000)


class CancelSessionRequest(BaseModel):
    """POST /api/sessions/{session_id}/cancel request body."""

    reason: str | None = Field(None, max_length=1000)


class SessionResponse(BaseModel):
    """Class session snapshot."""

    session_id: UUID
    teacher_id: UUID
    student_id: UUID
    class_id: UUID | None = None
    status: SessionStatus
    meeting_id: str | None = None
    tokens_charged: int
    duration_minutes: int | None = None
    actual_start: str | None = None
    actual_end: str | None = None
    tokens_deducted_at: str | None = None
    tokens_credited_at: str | None = None
    tokens_refunded_at: str | None = None
    teacher_earning_usd: Decimal | None = None


class TrackerResponse(BaseModel):
    """Session time tracker row."""

    tracker_id: UUID
    session_id: UUID
    start_time: str
    pause_time: str | None = None
    resume_time: str | None = None
    total_active_seconds: int
    total_paused_seconds: int
    is_active: bool


class SessionActionResponse(BaseModel):
    """Result of a lifecycle transition."""

    success: bool
    error: str | None = None
    session: SessionResponse | None = None
    tracker_id: UUID | None = None
    credited_tokens: int = 0
    refunded_tokens: int = 0


class SessionDurationResponse(BaseModel):
    """GET /api/sessions/{session_id}/duration response."""

    total_seconds: int
    active_seconds: int
    paused_seconds: int
    is_active: bool
    completion_unlocked: bool
    display: str


class TimeHistoryResponse(BaseModel):
    """GET /api/sessions/{session_id}/time-history response."""

    trackers: list[TrackerResponse]


class SessionClockFrame(BaseModel):
    """One frame of the /ws/sessions/{session_id}/clock stream."""

    session_id: UUID
    status: SessionStatus
    active_seconds: int
    paused_seconds: int
    total_seconds: int
    is_active: bool
    completion_unlocked: bool
    display: str
    final: bool = False


class SessionListResponse(BaseModel):
    """GET /api/teacher/sessions response."""

    sessions: list[SessionResponse]
    limit: int
    offset: int


class TeacherSessionStatsResponse(BaseModel):
    """GET /api/teacher/session-stats response."""

    total_sessions: int
    total_hours: float
    total_earnings: Decimal
    average_session_length: float


class StudentDashboardStatsResponse(BaseModel):
    """GET /api/student/dashboard/stats response."""

    token_balance: int
    balance_usd: Decimal
    total_sessions: int
    completed_sessions: int
    upcoming_sessions: int
    total_spent: Decimal


# ============================================================================
# Withdrawal Models
# ============================================================================


class CreateWithdrawalRequest(BaseModel):
    """POST /api/withdrawals request body."""

    amount_usd: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    payment_method_id: str = Field(..., min_length=1, max_length=255)
    provider: WithdrawalProvider = WithdrawalProvider.STRIPE


class ProcessWithdrawalRequest(BaseModel):
    """POST /api/process-withdrawal request body."""

    request_id: UUID


class WithdrawalResponse(BaseModel):
    """Single withdrawal request."""

    request_id: UUID
    amount_usd: Decimal
    tokens_to_convert: int
    conversion_rate: Decimal
    status: WithdrawalStatus
    provider: WithdrawalProvider
    provider_transaction_id: str | None = None
    failure_reason: str | None = None
    created_at: str
    processed_at: str | None = None
    completed_at: str | None = None


class WithdrawalListResponse(BaseModel):
    """GET /api/withdrawals response."""

    requests: list[WithdrawalResponse]


# ============================================================================
# Payment Models
# ============================================================================


class PurchaseRequest(BaseModel):
    """POST /api/create-payment-intent request body."""

    tokens: int = Field(..., gt=0, le=100_000)
    currency: str = Field("USD", min_length=3, max_length=3)
    receipt_email: str | None = Field(None, max_length=255)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Ensure currency is uppercase ISO 4217 code."""
        return v.upper()


class PurchaseResponse(BaseModel):
    """POST /api/create-payment-intent response."""

    payment_intent_id: str
    client_secret: str
    amount_minor: int
    currency: str
    tokens: int
    publishable_key: str


class CreateCustomerRequest(BaseModel):
    """POST /api/create-customer request body."""

    email: str = Field(..., min_length=3, max_length=255)
    name: str | None = Field(None, max_length=255)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Reject obviously malformed addresses before calling the provider."""
        v = v.strip().lower()
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("email must be a valid address")
        return v


class CustomerResponse(BaseModel):
    """POST /api/create-customer response."""

    customer_id: str


class WebhookAckResponse(BaseModel):
    """POST /api/stripe-webhook response."""

    received: bool = True
    event_type: str | None = None


class HealthResponse(BaseModel):
    """GET /api/health response."""

    status: str
    database: str
    timestamp: str
