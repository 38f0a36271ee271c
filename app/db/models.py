"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Wallet(Base):
    """
    ORM model for wallets table.

    One token balance per user. Created lazily on first access.
    """

    __tablename__ = "wallets"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    user_type: Mapped[str] = mapped_column(String(20), nullable=False, default="student")

    # Token balances
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    locked_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallet_balance_non_negative"),
        CheckConstraint("locked_balance >= 0", name="ck_wallet_locked_non_negative"),
        UniqueConstraint("user_id", name="uq_wallet_user"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Wallet(id={self.id}, user_id={self.user_id}, balance={self.balance})>"


class TokenTransaction(Base):
    """
    ORM model for token_transactions table.

    Immutable, append-only ledger of every balance-affecting event.
    """

    __tablename__ = "token_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    wallet_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("wallets.id"), nullable=False, index=True
    )
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)

    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    token_rate: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)

    # Balance snapshots (denormalized for auditing)
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    description: Mapped[str] = mapped_column(String, nullable=False)
    related_entity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    related_entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_tokens > 0", name="ck_token_tx_amount_positive"),
        CheckConstraint("balance_after >= 0", name="ck_token_tx_balance_non_negative"),
        CheckConstraint(
            "transaction_type IN ('purchase', 'deduction', 'refund', 'bonus', "
            "'earning', 'withdrawal', 'fee')",
            name="ck_token_tx_type",
        ),
        UniqueConstraint("idempotency_key", name="uq_token_tx_idempotency"),
        Index("idx_token_tx_user_created", "user_id", "created_at"),
        Index(
            "idx_token_tx_related",
            "related_entity_type",
            "related_entity_id",
            postgresql_where=(related_entity_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<TokenTransaction(id={self.id}, type={self.transaction_type}, "
            f"amount={self.amount_tokens}, balance_after={self.balance_after})>"
        )


class ClassSession(Base):
    """
    ORM model for class_sessions table.

    One tutoring appointment, the unit of billing. The tokens_*_at columns
    guard against charging, crediting or refunding a session twice.
    """

    __tablename__ = "class_sessions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    teacher_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    student_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    class_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="scheduled")

    scheduled_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    scheduled_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actual_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # External meeting identifier; sessions without one are never charged
    meeting_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    tokens_charged: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    tokens_deducted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    tokens_credited_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    tokens_refunded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    teacher_earning_usd: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    student_cost_usd: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("tokens_charged >= 0", name="ck_session_tokens_non_negative"),
        CheckConstraint(
            "status IN ('scheduled', 'in_progress', 'paused', 'completed', 'cancelled', 'no_show')",
            name="ck_session_status",
        ),
        Index("idx_sessions_teacher_status", "teacher_id", "status"),
        Index("idx_sessions_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ClassSession(id={self.id}, teacher_id={self.teacher_id}, "
            f"student_id={self.student_id}, status={self.status})>"
        )


class SessionTimeTracker(Base):
    """
    ORM model for session_time_tracker table.

    One row per session, mutated in place on pause/resume/stop.
    """

    __tablename__ = "session_time_tracker"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    session_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("class_sessions.id"), nullable=False
    )
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    pause_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resume_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_paused_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_active_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("total_paused_seconds >= 0", name="ck_tracker_paused_non_negative"),
        CheckConstraint("total_active_seconds >= 0", name="ck_tracker_active_non_negative"),
        Index("idx_tracker_session_created", "session_id", "created_at"),
    )


class WithdrawalRequest(Base):
    """
    ORM model for withdrawal_requests table.

    conversion_rate is captured at creation and never rewritten.
    """

    __tablename__ = "withdrawal_requests"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    wallet_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("wallets.id"), nullable=False
    )
    payment_method_id: Mapped[str] = mapped_column(String(255), nullable=False)

    amount_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tokens_to_convert: Mapped[int] = mapped_column(BigInteger, nullable=False)
    conversion_rate: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    provider: Mapped[str] = mapped_column(String(20), nullable=False, default="stripe")
    provider_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_usd > 0", name="ck_withdrawal_amount_positive"),
        CheckConstraint("tokens_to_convert > 0", name="ck_withdrawal_tokens_positive"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="ck_withdrawal_status",
        ),
        CheckConstraint(
            "provider IN ('stripe', 'mpesa', 'bank_transfer')", name="ck_withdrawal_provider"
        ),
    )


class TokenPricing(Base):
    """ORM model for token_pricing table (lookup keyed by user_type)."""

    __tablename__ = "token_pricing"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_type: Mapped[str] = mapped_column(String(20), nullable=False)
    tokens_per_dollar: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    dollars_per_token: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index(
            "uq_token_pricing_active_user_type",
            "user_type",
            unique=True,
            postgresql_where=(is_active.is_(True)),
        ),
    )


class PaymentCustomer(Base):
    """ORM model for payment_customers table (user -> provider customer id)."""

    __tablename__ = "payment_customers"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False, default="stripe")
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_payment_customer_user"),)
