"""
Token Ledger - Atomic wallet balance mutations with write verification.

NO DICTIONARIES - All operations use strongly typed domain models.

Every balance change locks the wallet row (SELECT FOR UPDATE), appends a
token_transactions row carrying the before/after snapshot, and verifies
both writes before commit. The class-session procedures additionally stamp
the tokens_deducted_at / tokens_credited_at / tokens_refunded_at guards in
the same transaction, which makes them safe to invoke more than once.
"""

import math
from datetime import datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import ClassSession, TokenTransaction, Wallet
from app.exceptions import (
    DataIntegrityError,
    InsufficientTokensError,
    InvalidSessionStateError,
    SessionNotFoundError,
    WalletNotFoundError,
    WriteVerificationError,
)
from app.models.api import SessionStatus, TransactionType, UserRole
from app.models.domain import (
    CancellationOutcome,
    ClassSessionData,
    CompletionOutcome,
    LedgerIntent,
    TransactionData,
    WalletData,
)
from app.observability.metrics import metrics
from app.services.pricing import (
    STUDENT_COST_PER_TOKEN,
    TEACHER_EARNING_PER_TOKEN,
    teacher_credit_for_active_seconds,
    tokens_to_usd,
    tokens_to_usd_for_student,
    tokens_to_usd_for_teacher,
)

logger = get_logger(__name__)

DEBIT_TYPES = frozenset(
    {TransactionType.DEDUCTION, TransactionType.WITHDRAWAL, TransactionType.FEE}
)
CLASS_SESSION_ENTITY = "class_session"


class TokenLedger(Protocol):
    """
    Balance-mutating procedures the rest of the service depends on.

    Implementations must mutate the balance and append the transaction row
    atomically, and must honour the session guard timestamps.
    """

    async def create_user_token_wallet(self, user_id: UUID, user_type: UserRole) -> WalletData:
        """Get or create the wallet for a user."""
        ...

    async def deduct_tokens(self, intent: LedgerIntent) -> TransactionData:
        """Remove tokens from a wallet."""
        ...

    async def credit_tokens(
        self, intent: LedgerIntent, user_type: UserRole = UserRole.STUDENT
    ) -> TransactionData:
        """Add tokens to a wallet, creating it with user_type if absent."""
        ...

    async def start_class_session(self, session_id: UUID, now: datetime) -> ClassSessionData:
        """Move a session to in_progress and charge the student if due."""
        ...

    async def complete_class_session(
        self, session_id: UUID, active_seconds: int, notes: str | None, now: datetime
    ) -> CompletionOutcome:
        """Move a session to completed, charging the student and crediting the teacher if due."""
        ...

    async def cancel_class_session(
        self, session_id: UUID, reason: str | None, now: datetime
    ) -> CancellationOutcome:
        """Move a session to cancelled, refunding the student if charged."""
        ...


def wallet_to_domain(wallet: Wallet) -> WalletData:
    """Convert ORM wallet to domain model."""
    return WalletData(
        wallet_id=wallet.id,
        user_id=wallet.user_id,
        user_type=UserRole(wallet.user_type),
        balance=wallet.balance,
        locked_balance=wallet.locked_balance,
        created_at=wallet.created_at,
        updated_at=wallet.updated_at,
    )


def transaction_to_domain(tx: TokenTransaction) -> TransactionData:
    """Convert ORM token transaction to domain model."""
    return TransactionData(
        transaction_id=tx.id,
        wallet_id=tx.wallet_id,
        user_id=tx.user_id,
        transaction_type=TransactionType(tx.transaction_type),
        amount_tokens=tx.amount_tokens,
        amount_usd=tx.amount_usd,
        token_rate=tx.token_rate,
        balance_before=tx.balance_before,
        balance_after=tx.balance_after,
        description=tx.description,
        related_entity_type=tx.related_entity_type,
        related_entity_id=tx.related_entity_id,
        created_at=tx.created_at,
    )


def session_to_domain(row: ClassSession) -> ClassSessionData:
    """Convert ORM class session to domain model."""
    return ClassSessionData(
        session_id=row.id,
        teacher_id=row.teacher_id,
        student_id=row.student_id,
        class_id=row.class_id,
        title=row.title,
        status=SessionStatus(row.status),
        meeting_id=row.meeting_id,
        tokens_charged=row.tokens_charged,
        scheduled_start=row.scheduled_start,
        scheduled_end=row.scheduled_end,
        actual_start=row.actual_start,
        actual_end=row.actual_end,
        duration_minutes=row.duration_minutes,
        tokens_deducted_at=row.tokens_deducted_at,
        tokens_credited_at=row.tokens_credited_at,
        tokens_refunded_at=row.tokens_refunded_at,
        teacher_earning_usd=row.teacher_earning_usd,
        student_cost_usd=row.student_cost_usd,
        notes=row.notes,
        created_at=row.created_at,
    )


class SqlTokenLedger:
    """
    PostgreSQL-backed TokenLedger.

    All write operations follow the pattern:
    1. Lock the wallet (and session) rows
    2. Execute write and flush
    3. Read back and verify
    4. Commit
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger with database session."""
        self.session = session

    # ========================================================================
    # Wallet Procedures
    # ========================================================================

    async def create_user_token_wallet(self, user_id: UUID, user_type: UserRole) -> WalletData:
        """
        Get existing wallet or create an empty one (upsert).

        Raises:
            WriteVerificationError: Wallet missing after insert
        """
        wallet = await self._find_wallet(user_id)
        if wallet is not None:
            return wallet_to_domain(wallet)

        wallet = await self._insert_wallet(user_id, user_type)
        await self.session.commit()
        return wallet_to_domain(wallet)

    async def deduct_tokens(self, intent: LedgerIntent) -> TransactionData:
        """
        Remove tokens from a wallet.

        Raises:
            InsufficientTokensError: Balance below amount (a missing wallet has balance 0)
        """
        if intent.transaction_type not in DEBIT_TYPES:
            raise DataIntegrityError(f"{intent.transaction_type.value} is not a debit type")

        tx = await self._post(intent, create_as=None)
        await self.session.commit()
        return tx

    async def credit_tokens(
        self, intent: LedgerIntent, user_type: UserRole = UserRole.STUDENT
    ) -> TransactionData:
        """
        Add tokens to a wallet (purchase, refund, bonus, earning).

        Creates the wallet with user_type when the user has none yet.
        """
        if intent.transaction_type in DEBIT_TYPES:
            raise DataIntegrityError(f"{intent.transaction_type.value} is not a credit type")

        tx = await self._post(intent, create_as=user_type)
        await self.session.commit()
        return tx

    # ========================================================================
    # Class Session Procedures
    # ========================================================================

    async def start_class_session(self, session_id: UUID, now: datetime) -> ClassSessionData:
        """
        Start a scheduled session.

        The student is charged tokens_charged only when the session has a
        meeting_id and tokens_deducted_at is unset.

        Raises:
            SessionNotFoundError: Session doesn't exist
            InvalidSessionStateError: Session is not scheduled
            InsufficientTokensError: Student balance below tokens_charged
        """
        row = await self._lock_session_for_update(session_id)
        if row is None:
            raise SessionNotFoundError(session_id)

        if row.status != SessionStatus.SCHEDULED.value:
            raise InvalidSessionStateError(session_id, row.status, "start")

        await self._charge_student_if_due(row, now)

        row.status = SessionStatus.IN_PROGRESS.value
        row.actual_start = now
        await self.session.flush()

        verified = await self._verify_session(row, SessionStatus.IN_PROGRESS)
        await self.session.commit()
        return session_to_domain(verified)

    async def complete_class_session(
        self, session_id: UUID, active_seconds: int, notes: str | None, now: datetime
    ) -> CompletionOutcome:
        """
        Complete a running or paused session.

        Charges the student if a charged session was never deducted, then
        credits the teacher floor(active_seconds / 3600 * 10) tokens once the
        one-hour threshold is reached and tokens_credited_at is unset. Calling
        this on an already completed session returns without writing.

        Raises:
            SessionNotFoundError: Session doesn't exist
            InvalidSessionStateError: Session is scheduled or cancelled
        """
        row = await self._lock_session_for_update(session_id)
        if row is None:
            raise SessionNotFoundError(session_id)

        if row.status == SessionStatus.COMPLETED.value:
            logger.info("session_already_completed", session_id=str(session_id))
            return CompletionOutcome(
                session=session_to_domain(row),
                already_credited=row.tokens_credited_at is not None,
            )

        if row.status not in (SessionStatus.IN_PROGRESS.value, SessionStatus.PAUSED.value):
            raise InvalidSessionStateError(session_id, row.status, "complete")

        deducted = await self._charge_student_if_due(row, now)

        credited = 0
        already_credited = False
        credit = teacher_credit_for_active_seconds(active_seconds)
        if credit > 0 and row.tokens_credited_at is not None:
            already_credited = True
            logger.info("session_already_credited", session_id=str(session_id))
        elif credit > 0:
            await self._post(
                LedgerIntent(
                    user_id=row.teacher_id,
                    amount_tokens=credit,
                    transaction_type=TransactionType.EARNING,
                    description="Class session earnings",
                    related_entity_type=CLASS_SESSION_ENTITY,
                    related_entity_id=str(row.id),
                    idempotency_key=f"class_session:{row.id}:earning",
                ),
                create_as=UserRole.TEACHER,
            )
            row.tokens_credited_at = now
            row.teacher_earning_usd = tokens_to_usd_for_teacher(credit)
            credited = credit
        else:
            logger.info(
                "session_below_credit_threshold",
                session_id=str(session_id),
                active_seconds=active_seconds,
            )

        row.status = SessionStatus.COMPLETED.value
        row.actual_end = now
        row.duration_minutes = math.ceil(active_seconds / 60)
        if notes is not None:
            row.notes = notes
        await self.session.flush()

        verified = await self._verify_session(row, SessionStatus.COMPLETED)
        await self.session.commit()

        return CompletionOutcome(
            session=session_to_domain(verified),
            deducted_tokens=deducted,
            credited_tokens=credited,
            already_credited=already_credited,
        )

    async def cancel_class_session(
        self, session_id: UUID, reason: str | None, now: datetime
    ) -> CancellationOutcome:
        """
        Cancel a session, refunding a deducted charge exactly once.

        Raises:
            SessionNotFoundError: Session doesn't exist
            InvalidSessionStateError: Session already completed
        """
        row = await self._lock_session_for_update(session_id)
        if row is None:
            raise SessionNotFoundError(session_id)

        if row.status == SessionStatus.CANCELLED.value:
            logger.info("session_already_cancelled", session_id=str(session_id))
            return CancellationOutcome(session=session_to_domain(row))

        if row.status in (SessionStatus.COMPLETED.value, SessionStatus.NO_SHOW.value):
            raise InvalidSessionStateError(session_id, row.status, "cancel")

        refunded = 0
        if row.tokens_deducted_at is not None and row.tokens_refunded_at is None:
            description = f"Refund: {reason}" if reason else "Refund: Session cancelled"
            await self._post(
                LedgerIntent(
                    user_id=row.student_id,
                    amount_tokens=row.tokens_charged,
                    transaction_type=TransactionType.REFUND,
                    description=description,
                    related_entity_type=CLASS_SESSION_ENTITY,
                    related_entity_id=str(row.id),
                    idempotency_key=f"class_session:{row.id}:refund",
                ),
                create_as=UserRole.STUDENT,
            )
            row.tokens_refunded_at = now
            refunded = row.tokens_charged

        row.status = SessionStatus.CANCELLED.value
        if reason is not None:
            row.notes = reason
        await self.session.flush()

        verified = await self._verify_session(row, SessionStatus.CANCELLED)
        await self.session.commit()

        return CancellationOutcome(session=session_to_domain(verified), refunded_tokens=refunded)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _charge_student_if_due(self, row: ClassSession, now: datetime) -> int:
        """Deduct tokens_charged from the student once, for sessions with a meeting."""
        if not row.meeting_id or row.tokens_deducted_at is not None or row.tokens_charged <= 0:
            return 0

        await self._post(
            LedgerIntent(
                user_id=row.student_id,
                amount_tokens=row.tokens_charged,
                transaction_type=TransactionType.DEDUCTION,
                description="Class session payment",
                related_entity_type=CLASS_SESSION_ENTITY,
                related_entity_id=str(row.id),
                idempotency_key=f"class_session:{row.id}:deduction",
            ),
            create_as=None,
        )
        row.tokens_deducted_at = now
        row.student_cost_usd = tokens_to_usd_for_student(row.tokens_charged)
        return row.tokens_charged

    async def _post(self, intent: LedgerIntent, create_as: UserRole | None) -> TransactionData:
        """
        Apply one balance mutation and append its transaction row. No commit.

        A repeated idempotency key returns the original transaction unchanged.
        """
        if intent.idempotency_key:
            existing = await self._find_transaction_by_idempotency(intent.idempotency_key)
            if existing is not None:
                logger.info(
                    "ledger_idempotent_replay",
                    idempotency_key=intent.idempotency_key,
                    transaction_id=str(existing.id),
                )
                return transaction_to_domain(existing)

        wallet = await self._lock_wallet_for_update(intent.user_id)
        if wallet is None:
            if create_as is None:
                if intent.transaction_type in DEBIT_TYPES:
                    raise InsufficientTokensError(0, intent.amount_tokens)
                raise WalletNotFoundError(intent.user_id)
            await self._insert_wallet(intent.user_id, create_as)
            wallet = await self._lock_wallet_for_update(intent.user_id)
            if wallet is None:
                raise WalletNotFoundError(intent.user_id)

        balance_before = wallet.balance
        if intent.transaction_type in DEBIT_TYPES:
            if balance_before < intent.amount_tokens:
                raise InsufficientTokensError(balance_before, intent.amount_tokens)
            balance_after = balance_before - intent.amount_tokens
        else:
            balance_after = balance_before + intent.amount_tokens

        role = UserRole(wallet.user_type)
        tx = TokenTransaction(
            wallet_id=wallet.id,
            user_id=intent.user_id,
            transaction_type=intent.transaction_type.value,
            amount_tokens=intent.amount_tokens,
            amount_usd=tokens_to_usd(role, intent.amount_tokens),
            token_rate=(
                TEACHER_EARNING_PER_TOKEN if role == UserRole.TEACHER else STUDENT_COST_PER_TOKEN
            ),
            balance_before=balance_before,
            balance_after=balance_after,
            description=intent.description,
            related_entity_type=intent.related_entity_type,
            related_entity_id=intent.related_entity_id,
            idempotency_key=intent.idempotency_key,
            status="completed",
        )
        self.session.add(tx)
        await self.session.flush()

        verified_tx = await self.session.get(TokenTransaction, tx.id)
        if verified_tx is None:
            raise WriteVerificationError(f"Transaction {tx.id} not found after insert")

        wallet.balance = balance_after
        await self.session.flush()

        verified_wallet = await self.session.get(Wallet, wallet.id)
        if verified_wallet is None:
            raise WriteVerificationError(f"Wallet {wallet.id} disappeared after update")

        if verified_wallet.balance != balance_after:
            raise DataIntegrityError(
                f"Balance mismatch: expected {balance_after}, got {verified_wallet.balance}"
            )

        metrics.record_token_transaction(intent.transaction_type.value, intent.amount_tokens)
        logger.info(
            "ledger_transaction_posted",
            user_id=str(intent.user_id),
            transaction_type=intent.transaction_type.value,
            amount_tokens=intent.amount_tokens,
            balance_before=balance_before,
            balance_after=balance_after,
            related_entity_id=intent.related_entity_id,
        )
        return transaction_to_domain(verified_tx)

    async def _insert_wallet(self, user_id: UUID, user_type: UserRole) -> Wallet:
        """Insert an empty wallet inside a savepoint, tolerating a concurrent insert."""
        wallet = Wallet(user_id=user_id, user_type=user_type.value, balance=0, locked_balance=0)
        try:
            async with self.session.begin_nested():
                self.session.add(wallet)
                await self.session.flush()
        except IntegrityError:
            # Race condition - wallet created by another request
            logger.info("wallet_creation_race", user_id=str(user_id))
            existing = await self._find_wallet(user_id)
            if existing is None:
                raise WriteVerificationError("Wallet creation failed due to race condition")
            return existing

        verified = await self.session.get(Wallet, wallet.id)
        if verified is None:
            raise WriteVerificationError(f"Wallet {wallet.id} not found after insert")

        metrics.wallets_created_total.inc()
        logger.info("wallet_created", user_id=str(user_id), user_type=user_type.value)
        return verified

    async def _verify_session(self, row: ClassSession, status: SessionStatus) -> ClassSession:
        verified = await self.session.get(ClassSession, row.id)
        if verified is None:
            raise WriteVerificationError(f"Session {row.id} disappeared after update")
        if verified.status != status.value:
            raise DataIntegrityError(
                f"Session status mismatch: expected {status.value}, got {verified.status}"
            )
        return verified

    async def _find_wallet(self, user_id: UUID) -> Wallet | None:
        """Find wallet by owner."""
        stmt = select(Wallet).where(Wallet.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_wallet_for_update(self, user_id: UUID) -> Wallet | None:
        """Lock wallet row for update (SELECT FOR UPDATE)."""
        stmt = select(Wallet).where(Wallet.user_id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_session_for_update(self, session_id: UUID) -> ClassSession | None:
        """Lock class session row for update (SELECT FOR UPDATE)."""
        stmt = select(ClassSession).where(ClassSession.id == session_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_transaction_by_idempotency(
        self, idempotency_key: str
    ) -> TokenTransaction | None:
        """Find transaction by idempotency key."""
        stmt = select(TokenTransaction).where(TokenTransaction.idempotency_key == idempotency_key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
