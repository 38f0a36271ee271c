"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from app.models.api import (
    SessionFailureReason,
    SessionStatus,
    TransactionType,
    UserRole,
    WithdrawalProvider,
    WithdrawalStatus,
)


@dataclass(frozen=True)
class CurrentUser:
    """Authenticated caller, passed explicitly into every service call."""

    user_id: UUID
    role: UserRole
    email: str | None = None
    name: str | None = None

    @property
    def is_teacher(self) -> bool:
        return self.role == UserRole.TEACHER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


@dataclass(frozen=True)
class LedgerIntent:
    """Domain model for a balance mutation before persistence - immutable intent."""

    user_id: UUID
    amount_tokens: int
    transaction_type: TransactionType
    description: str
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    idempotency_key: str | None = None

    def __post_init__(self) -> None:
        """Validate ledger constraints."""
        if self.amount_tokens <= 0:
            raise ValueError(f"Token amount must be positive: {self.amount_tokens}")
        if not self.description:
            raise ValueError("Description cannot be empty")


@dataclass(frozen=True)
class WalletData:
    """Immutable wallet snapshot."""

    wallet_id: UUID
    user_id: UUID
    user_type: UserRole
    balance: int
    locked_balance: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class TransactionData:
    """Immutable token transaction after persistence."""

    transaction_id: UUID
    wallet_id: UUID
    user_id: UUID
    transaction_type: TransactionType
    amount_tokens: int
    amount_usd: Decimal
    token_rate: Decimal
    balance_before: int
    balance_after: int
    description: str
    related_entity_type: str | None
    related_entity_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class ClassSessionData:
    """Immutable class session snapshot."""

    session_id: UUID
    teacher_id: UUID
    student_id: UUID
    class_id: UUID | None
    title: str | None
    status: SessionStatus
    meeting_id: str | None
    tokens_charged: int
    scheduled_start: datetime
    scheduled_end: datetime
    actual_start: datetime | None
    actual_end: datetime | None
    duration_minutes: int | None
    tokens_deducted_at: datetime | None
    tokens_credited_at: datetime | None
    tokens_refunded_at: datetime | None
    teacher_earning_usd: Decimal | None
    student_cost_usd: Decimal | None
    notes: str | None
    created_at: datetime

    @property
    def is_charged_session(self) -> bool:
        """Only sessions taught over an external meeting are billed to the student."""
        return bool(self.meeting_id)


@dataclass(frozen=True)
class TrackerData:
    """Immutable session time tracker snapshot."""

    tracker_id: UUID
    session_id: UUID
    start_time: datetime
    pause_time: datetime | None
    resume_time: datetime | None
    total_paused_seconds: int
    total_active_seconds: int
    is_active: bool
    created_at: datetime


@dataclass(frozen=True)
class SessionDuration:
    """Elapsed time of a session at a given instant."""

    total_seconds: int
    active_seconds: int
    paused_seconds: int
    is_active: bool
    completion_unlocked: bool


@dataclass(frozen=True)
class SessionResult:
    """Outcome of a lifecycle operation. Failures carry a user-facing message."""

    success: bool
    error: str | None = None
    reason: SessionFailureReason | None = None
    session: ClassSessionData | None = None
    tracker: TrackerData | None = None
    credited_tokens: int = 0
    refunded_tokens: int = 0

    @classmethod
    def failed(
        cls, error: str, reason: SessionFailureReason = SessionFailureReason.UNAVAILABLE
    ) -> "SessionResult":
        return cls(success=False, error=error, reason=reason)


@dataclass(frozen=True)
class CompletionOutcome:
    """What the ledger did when a session was completed."""

    session: ClassSessionData
    deducted_tokens: int = 0
    credited_tokens: int = 0
    already_credited: bool = False


@dataclass(frozen=True)
class CancellationOutcome:
    """What the ledger did when a session was cancelled."""

    session: ClassSessionData
    refunded_tokens: int = 0


@dataclass(frozen=True)
class TokenPricingData:
    """Active pricing row for a user type."""

    user_type: UserRole
    tokens_per_dollar: Decimal
    dollars_per_token: Decimal


@dataclass(frozen=True)
class WithdrawalData:
    """Immutable withdrawal request snapshot."""

    request_id: UUID
    user_id: UUID
    wallet_id: UUID
    payment_method_id: str
    amount_usd: Decimal
    tokens_to_convert: int
    conversion_rate: Decimal
    status: WithdrawalStatus
    provider: WithdrawalProvider
    provider_transaction_id: str | None
    failure_reason: str | None
    created_at: datetime
    processed_at: datetime | None
    completed_at: datetime | None


@dataclass(frozen=True)
class StudentWalletStats:
    """Spending summary for a student."""

    total_spent: Decimal = Decimal("0")
    this_month_spent: Decimal = Decimal("0")
    last_month_spent: Decimal = Decimal("0")
    total_classes: int = 0
    average_class_cost: Decimal = Decimal("0")
    spending_growth_percentage: float = 0.0


@dataclass(frozen=True)
class TeacherWalletStats:
    """Earnings summary for a teacher."""

    total_earnings: Decimal = Decimal("0")
    this_month_earnings: Decimal = Decimal("0")
    last_month_earnings: Decimal = Decimal("0")
    pending_withdrawals: Decimal = Decimal("0")
    total_sessions: int = 0
    average_session_value: Decimal = Decimal("0")
    earnings_growth_percentage: float = 0.0


@dataclass(frozen=True)
class MonthlyEarnings:
    """Teacher earnings for one calendar month."""

    month: str
    year: int
    earnings: Decimal = Decimal("0")
    sessions: int = 0


@dataclass(frozen=True)
class TeacherSessionStats:
    """Aggregates over a teacher's completed sessions."""

    total_sessions: int = 0
    total_hours: float = 0.0
    total_earnings: Decimal = Decimal("0")
    average_session_length: float = 0.0


@dataclass(frozen=True)
class StudentDashboardStats:
    """Wallet and session counters for the student dashboard."""

    token_balance: int = 0
    balance_usd: Decimal = Decimal("0")
    total_sessions: int = 0
    completed_sessions: int = 0
    upcoming_sessions: int = 0
    total_spent: Decimal = Decimal("0")
