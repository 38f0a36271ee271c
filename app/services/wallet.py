"""
Wallet Service - Balance lookups, transaction history and wallet statistics.

NO DICTIONARIES - All results are strongly typed domain models.

Read paths never raise on database failure: the wallet accessor returns None
and list/stat queries return empty results, after logging the cause.
"""

from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from decimal import Decimal
from itertools import groupby
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import ClassSession, TokenTransaction, WithdrawalRequest
from app.exceptions import BillingError
from app.models.api import SessionStatus, TransactionType, UserRole, WithdrawalStatus
from app.models.domain import (
    MonthlyEarnings,
    StudentDashboardStats,
    StudentWalletStats,
    TeacherWalletStats,
    TransactionData,
    WalletData,
)
from app.services.ledger import (
    CLASS_SESSION_ENTITY,
    SqlTokenLedger,
    TokenLedger,
    transaction_to_domain,
)
from app.services.pricing import (
    tokens_to_usd,
    tokens_to_usd_for_student,
    tokens_to_usd_for_teacher,
)

logger = get_logger(__name__)

# Upper bound on rows pulled for in-memory statistics
STATS_TRANSACTION_LIMIT = 1000
MONTHLY_EARNINGS_WINDOW = 12


def _month_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, 1, tzinfo=now.tzinfo or UTC)


def _previous_month_start(now: datetime) -> datetime:
    if now.month == 1:
        return datetime(now.year - 1, 12, 1, tzinfo=now.tzinfo or UTC)
    return datetime(now.year, now.month - 1, 1, tzinfo=now.tzinfo or UTC)


def _growth_percentage(current: Decimal, previous: Decimal) -> float:
    """Month-over-month change in percent; 0 when there is no previous value."""
    if previous <= 0:
        return 0.0
    return float((current - previous) / previous * 100)


def _monthly_split(
    transactions: Iterable[TransactionData],
    now: datetime,
    to_usd: Callable[[int], Decimal],
) -> tuple[Decimal, Decimal, Decimal, int]:
    """
    Sum USD value over all time, this month and last month.

    Returns (total, this_month, last_month, count).
    """
    this_start = _month_start(now)
    last_start = _previous_month_start(now)

    total = Decimal("0")
    this_month = Decimal("0")
    last_month = Decimal("0")
    count = 0
    for tx in transactions:
        usd = to_usd(tx.amount_tokens)
        total += usd
        count += 1
        if tx.created_at >= this_start:
            this_month += usd
        elif tx.created_at >= last_start:
            last_month += usd
    return total, this_month, last_month, count


def summarize_student_spending(
    transactions: Iterable[TransactionData], now: datetime
) -> StudentWalletStats:
    """Spending statistics over class-session deductions, valued at the student rate."""
    deductions = [
        tx
        for tx in transactions
        if tx.transaction_type == TransactionType.DEDUCTION
        and tx.related_entity_type == CLASS_SESSION_ENTITY
    ]
    total, this_month, last_month, count = _monthly_split(
        deductions, now, tokens_to_usd_for_student
    )
    return StudentWalletStats(
        total_spent=total,
        this_month_spent=this_month,
        last_month_spent=last_month,
        total_classes=count,
        average_class_cost=(total / count).quantize(Decimal("0.01")) if count else Decimal("0"),
        spending_growth_percentage=_growth_percentage(this_month, last_month),
    )


def summarize_teacher_earnings(
    transactions: Iterable[TransactionData],
    pending_withdrawals: Decimal,
    now: datetime,
) -> TeacherWalletStats:
    """Earnings statistics over earning transactions, valued at the teacher rate."""
    earnings = [tx for tx in transactions if tx.transaction_type == TransactionType.EARNING]
    total, this_month, last_month, count = _monthly_split(
        earnings, now, tokens_to_usd_for_teacher
    )
    return TeacherWalletStats(
        total_earnings=total,
        this_month_earnings=this_month,
        last_month_earnings=last_month,
        pending_withdrawals=pending_withdrawals,
        total_sessions=count,
        average_session_value=(total / count).quantize(Decimal("0.01")) if count else Decimal("0"),
        earnings_growth_percentage=_growth_percentage(this_month, last_month),
    )


def group_monthly_earnings(transactions: Iterable[TransactionData]) -> list[MonthlyEarnings]:
    """Earning transactions bucketed by calendar month, oldest first, last 12 months."""
    earnings = sorted(
        (tx for tx in transactions if tx.transaction_type == TransactionType.EARNING),
        key=lambda tx: tx.created_at,
    )
    buckets: list[MonthlyEarnings] = []
    for _, group in groupby(earnings, key=lambda tx: (tx.created_at.year, tx.created_at.month)):
        month_txs = list(group)
        first = month_txs[0].created_at
        buckets.append(
            MonthlyEarnings(
                month=first.strftime("%b"),
                year=first.year,
                earnings=sum(
                    (tokens_to_usd_for_teacher(tx.amount_tokens) for tx in month_txs),
                    Decimal("0"),
                ),
                sessions=len(month_txs),
            )
        )
    return buckets[-MONTHLY_EARNINGS_WINDOW:]


class WalletService:
    """Wallet accessor and statistics for the current user."""

    def __init__(self, session: AsyncSession, ledger: TokenLedger | None = None) -> None:
        self.session = session
        self.ledger = ledger or SqlTokenLedger(session)

    async def get_wallet(self, user_id: UUID, user_type: UserRole) -> WalletData | None:
        """
        Get or create the user's wallet.

        Returns None when the wallet cannot be read or created, so callers
        can tell "unavailable" apart from a zero balance.
        """
        try:
            return await self.ledger.create_user_token_wallet(user_id, user_type)
        except (SQLAlchemyError, BillingError) as exc:
            logger.error("wallet_lookup_failed", user_id=str(user_id), error=str(exc))
            return None

    async def get_transactions(
        self,
        user_id: UUID,
        limit: int = 50,
        offset: int = 0,
        transaction_type: TransactionType | None = None,
    ) -> list[TransactionData]:
        """Newest-first transaction history. Empty on failure."""
        stmt = (
            select(TokenTransaction)
            .where(TokenTransaction.user_id == user_id)
            .order_by(TokenTransaction.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        if transaction_type is not None:
            stmt = stmt.where(TokenTransaction.transaction_type == transaction_type.value)

        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("transaction_history_failed", user_id=str(user_id), error=str(exc))
            return []
        return [transaction_to_domain(row) for row in result.scalars().all()]

    async def get_student_stats(self, user_id: UUID, now: datetime) -> StudentWalletStats:
        transactions = await self.get_transactions(
            user_id, limit=STATS_TRANSACTION_LIMIT, transaction_type=TransactionType.DEDUCTION
        )
        return summarize_student_spending(transactions, now)

    async def get_teacher_stats(self, user_id: UUID, now: datetime) -> TeacherWalletStats:
        transactions = await self.get_transactions(
            user_id, limit=STATS_TRANSACTION_LIMIT, transaction_type=TransactionType.EARNING
        )
        pending = await self._pending_withdrawal_total(user_id)
        return summarize_teacher_earnings(transactions, pending, now)

    async def get_monthly_earnings(self, user_id: UUID) -> list[MonthlyEarnings]:
        transactions = await self.get_transactions(
            user_id, limit=STATS_TRANSACTION_LIMIT, transaction_type=TransactionType.EARNING
        )
        return group_monthly_earnings(transactions)

    async def get_student_dashboard_stats(
        self, user_id: UUID, now: datetime
    ) -> StudentDashboardStats:
        """Wallet balance plus session counters for the student dashboard."""
        wallet = await self.get_wallet(user_id, UserRole.STUDENT)
        spending = await self.get_student_stats(user_id, now)

        stmt = select(
            func.count(ClassSession.id),
            func.count(ClassSession.id).filter(
                ClassSession.status == SessionStatus.COMPLETED.value
            ),
            func.count(ClassSession.id).filter(
                ClassSession.status == SessionStatus.SCHEDULED.value,
                ClassSession.scheduled_start > now,
            ),
        ).where(ClassSession.student_id == user_id)
        try:
            result = await self.session.execute(stmt)
            total, completed, upcoming = result.one()
        except SQLAlchemyError as exc:
            logger.error("student_session_counts_failed", user_id=str(user_id), error=str(exc))
            total, completed, upcoming = 0, 0, 0

        balance = wallet.balance if wallet else 0
        return StudentDashboardStats(
            token_balance=balance,
            balance_usd=tokens_to_usd(UserRole.STUDENT, balance),
            total_sessions=total,
            completed_sessions=completed,
            upcoming_sessions=upcoming,
            total_spent=spending.total_spent,
        )

    async def _pending_withdrawal_total(self, user_id: UUID) -> Decimal:
        """USD held in pending or processing withdrawal requests."""
        stmt = select(func.coalesce(func.sum(WithdrawalRequest.amount_usd), 0)).where(
            WithdrawalRequest.user_id == user_id,
            WithdrawalRequest.status.in_(
                [WithdrawalStatus.PENDING.value, WithdrawalStatus.PROCESSING.value]
            ),
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("pending_withdrawals_failed", user_id=str(user_id), error=str(exc))
            return Decimal("0")
        return Decimal(result.scalar_one())
