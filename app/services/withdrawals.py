"""
Withdrawal Service - Teacher token-to-cash payouts.

NO DICTIONARIES - All operations return strongly typed domain models.

A request records the conversion rate and the token amount at creation;
later processing always pays out the stored amount and debits the stored
tokens, whatever the configured payout rate is by then.

    pending --process--> processing --payout ok--> completed
                                    --payout error--> failed (tokens returned)
    pending --cancel--> cancelled
"""

import math
from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import Wallet, WithdrawalRequest
from app.exceptions import (
    BillingError,
    InsufficientTokensError,
    InvalidWithdrawalStateError,
    PaymentProviderError,
    WalletNotFoundError,
    WithdrawalNotFoundError,
    WriteVerificationError,
)
from app.models.api import TransactionType, UserRole, WithdrawalProvider, WithdrawalStatus
from app.models.domain import CurrentUser, LedgerIntent, WithdrawalData
from app.observability.metrics import metrics
from app.services.ledger import SqlTokenLedger, TokenLedger
from app.services.payment_provider import PaymentProvider, PayoutRequest

logger = get_logger(__name__)

WITHDRAWAL_ENTITY = "withdrawal_request"


def withdrawal_to_domain(row: WithdrawalRequest) -> WithdrawalData:
    """Convert ORM withdrawal request to domain model."""
    return WithdrawalData(
        request_id=row.id,
        user_id=row.user_id,
        wallet_id=row.wallet_id,
        payment_method_id=row.payment_method_id,
        amount_usd=row.amount_usd,
        tokens_to_convert=row.tokens_to_convert,
        conversion_rate=row.conversion_rate,
        status=WithdrawalStatus(row.status),
        provider=WithdrawalProvider(row.provider),
        provider_transaction_id=row.provider_transaction_id,
        failure_reason=row.failure_reason,
        created_at=row.created_at,
        processed_at=row.processed_at,
        completed_at=row.completed_at,
    )


def tokens_for_withdrawal(amount_usd: Decimal, conversion_rate: Decimal) -> int:
    """Tokens a payout of amount_usd consumes, rounded up to a whole token."""
    return math.ceil(Decimal(amount_usd) / conversion_rate)


class WithdrawalService:
    """Creates, processes and cancels teacher withdrawal requests."""

    def __init__(
        self,
        session: AsyncSession,
        ledger: TokenLedger | None = None,
        provider: PaymentProvider | None = None,
    ) -> None:
        self.session = session
        self.ledger = ledger or SqlTokenLedger(session)
        self.provider = provider

    async def create_request(
        self,
        user: CurrentUser,
        amount_usd: Decimal,
        payment_method_id: str,
        provider: WithdrawalProvider = WithdrawalProvider.STRIPE,
    ) -> WithdrawalData:
        """
        Record a pending withdrawal at the current payout rate.

        Args:
            user: Requesting teacher
            amount_usd: Cash amount to pay out
            payment_method_id: Provider destination (connected account, phone, IBAN)
            provider: Payout channel

        Returns:
            The pending request

        Raises:
            ValueError: Amount is not positive
            WalletNotFoundError: Teacher has no wallet
            InsufficientTokensError: Balance is worth less than amount_usd
        """
        if amount_usd <= 0:
            raise ValueError(f"Withdrawal amount must be positive: {amount_usd}")

        wallet = await self._find_wallet(user.user_id)
        if wallet is None:
            raise WalletNotFoundError(user.user_id)

        conversion_rate = settings.teacher_earning_per_token
        tokens = tokens_for_withdrawal(amount_usd, conversion_rate)
        if wallet.balance < tokens:
            raise InsufficientTokensError(wallet.balance, tokens)

        row = WithdrawalRequest(
            user_id=user.user_id,
            wallet_id=wallet.id,
            payment_method_id=payment_method_id,
            amount_usd=amount_usd,
            tokens_to_convert=tokens,
            conversion_rate=conversion_rate,
            status=WithdrawalStatus.PENDING.value,
            provider=provider.value,
        )
        self.session.add(row)
        await self.session.flush()

        verified = await self.session.get(WithdrawalRequest, row.id)
        if verified is None:
            raise WriteVerificationError(f"Withdrawal {row.id} not found after insert")

        await self.session.commit()
        metrics.record_withdrawal(WithdrawalStatus.PENDING.value)
        logger.info(
            "withdrawal_requested",
            request_id=str(verified.id),
            user_id=str(user.user_id),
            amount_usd=str(amount_usd),
            tokens_to_convert=tokens,
            conversion_rate=str(conversion_rate),
        )
        return withdrawal_to_domain(verified)

    async def list_requests(
        self, user_id: UUID, limit: int = 50, offset: int = 0
    ) -> list[WithdrawalData]:
        """User's withdrawal requests, newest first."""
        stmt = (
            select(WithdrawalRequest)
            .where(WithdrawalRequest.user_id == user_id)
            .order_by(WithdrawalRequest.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [withdrawal_to_domain(row) for row in result.scalars().all()]

    async def process_request(self, request_id: UUID) -> WithdrawalData:
        """
        Debit the stored tokens and pay out the stored amount.

        A rejected payout marks the request failed and returns the tokens
        to the teacher. An unaffordable request is marked failed without
        touching the provider.

        Raises:
            WithdrawalNotFoundError: Request doesn't exist
            InvalidWithdrawalStateError: Request is not pending
            PaymentProviderError: No payout provider is configured
        """
        if self.provider is None:
            raise PaymentProviderError("No payout provider configured")

        row = await self._lock_request_for_update(request_id)
        if row is None:
            raise WithdrawalNotFoundError(request_id)
        if row.status != WithdrawalStatus.PENDING.value:
            raise InvalidWithdrawalStateError(
                request_id, row.status, WithdrawalStatus.PROCESSING.value
            )

        row.status = WithdrawalStatus.PROCESSING.value
        row.processed_at = datetime.now(UTC)
        await self.session.commit()
        metrics.record_withdrawal(WithdrawalStatus.PROCESSING.value)

        debit_key = f"withdrawal:{request_id}"
        try:
            await self.ledger.deduct_tokens(
                LedgerIntent(
                    user_id=row.user_id,
                    amount_tokens=row.tokens_to_convert,
                    transaction_type=TransactionType.WITHDRAWAL,
                    description=f"Withdrawal of ${row.amount_usd}",
                    related_entity_type=WITHDRAWAL_ENTITY,
                    related_entity_id=str(request_id),
                    idempotency_key=debit_key,
                )
            )
        except InsufficientTokensError as exc:
            await self.session.rollback()
            logger.warning(
                "withdrawal_insufficient_tokens",
                request_id=str(request_id),
                balance=exc.balance,
                required=exc.required,
            )
            return await self._mark_failed(request_id, "Insufficient token balance")
        except (BillingError, SQLAlchemyError) as exc:
            # The debit never committed; the request must not stay in processing
            await self.session.rollback()
            logger.error(
                "withdrawal_debit_failed",
                request_id=str(request_id),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return await self._mark_failed(request_id, "Token debit failed")

        try:
            payout = await self.provider.create_payout(
                PayoutRequest(
                    amount_minor=int(row.amount_usd * 100),
                    currency="USD",
                    destination=row.payment_method_id,
                    metadata_user_id=str(row.user_id),
                    metadata_withdrawal_id=str(request_id),
                    idempotency_key=debit_key,
                )
            )
        except PaymentProviderError as exc:
            await self.ledger.credit_tokens(
                LedgerIntent(
                    user_id=row.user_id,
                    amount_tokens=row.tokens_to_convert,
                    transaction_type=TransactionType.REFUND,
                    description="Withdrawal reversed",
                    related_entity_type=WITHDRAWAL_ENTITY,
                    related_entity_id=str(request_id),
                    idempotency_key=f"{debit_key}:reversal",
                ),
                user_type=UserRole.TEACHER,
            )
            return await self._mark_failed(request_id, exc.message)

        row = await self._lock_request_for_update(request_id)
        if row is None:
            raise WithdrawalNotFoundError(request_id)
        row.provider_transaction_id = payout.payout_id
        row.status = WithdrawalStatus.COMPLETED.value
        row.completed_at = datetime.now(UTC)
        await self.session.flush()

        verified = await self._verify_status(row, WithdrawalStatus.COMPLETED)
        await self.session.commit()

        metrics.record_withdrawal(WithdrawalStatus.COMPLETED.value)
        logger.info(
            "withdrawal_completed",
            request_id=str(request_id),
            payout_id=payout.payout_id,
            amount_usd=str(verified.amount_usd),
            tokens_to_convert=verified.tokens_to_convert,
        )
        return withdrawal_to_domain(verified)

    async def cancel_request(self, user: CurrentUser, request_id: UUID) -> WithdrawalData:
        """
        Cancel a pending request. No tokens have moved yet.

        Raises:
            WithdrawalNotFoundError: Request doesn't exist or belongs to someone else
            InvalidWithdrawalStateError: Request has left pending
        """
        row = await self._lock_request_for_update(request_id)
        if row is None or (row.user_id != user.user_id and not user.is_admin):
            raise WithdrawalNotFoundError(request_id)
        if row.status != WithdrawalStatus.PENDING.value:
            raise InvalidWithdrawalStateError(
                request_id, row.status, WithdrawalStatus.CANCELLED.value
            )

        row.status = WithdrawalStatus.CANCELLED.value
        await self.session.flush()
        verified = await self._verify_status(row, WithdrawalStatus.CANCELLED)
        await self.session.commit()

        metrics.record_withdrawal(WithdrawalStatus.CANCELLED.value)
        logger.info("withdrawal_cancelled", request_id=str(request_id), user_id=str(user.user_id))
        return withdrawal_to_domain(verified)

    async def mark_completed_by_transfer(
        self, request_id: UUID, transfer_id: str
    ) -> WithdrawalData | None:
        """
        Confirm a payout reported by the provider webhook.

        Returns None when the request is unknown. Already completed requests
        are returned unchanged.
        """
        row = await self._lock_request_for_update(request_id)
        if row is None:
            logger.warning("transfer_for_unknown_withdrawal", request_id=str(request_id))
            return None

        if row.status == WithdrawalStatus.COMPLETED.value:
            return withdrawal_to_domain(row)

        if row.status != WithdrawalStatus.PROCESSING.value:
            raise InvalidWithdrawalStateError(
                request_id, row.status, WithdrawalStatus.COMPLETED.value
            )

        row.provider_transaction_id = transfer_id
        row.status = WithdrawalStatus.COMPLETED.value
        row.completed_at = datetime.now(UTC)
        await self.session.flush()
        verified = await self._verify_status(row, WithdrawalStatus.COMPLETED)
        await self.session.commit()

        metrics.record_withdrawal(WithdrawalStatus.COMPLETED.value)
        logger.info("withdrawal_confirmed", request_id=str(request_id), transfer_id=transfer_id)
        return withdrawal_to_domain(verified)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _mark_failed(self, request_id: UUID, reason: str) -> WithdrawalData:
        row = await self._lock_request_for_update(request_id)
        if row is None:
            raise WithdrawalNotFoundError(request_id)
        row.status = WithdrawalStatus.FAILED.value
        row.failure_reason = reason
        await self.session.flush()
        verified = await self._verify_status(row, WithdrawalStatus.FAILED)
        await self.session.commit()

        metrics.record_withdrawal(WithdrawalStatus.FAILED.value)
        logger.error("withdrawal_failed", request_id=str(request_id), reason=reason)
        return withdrawal_to_domain(verified)

    async def _verify_status(
        self, row: WithdrawalRequest, status: WithdrawalStatus
    ) -> WithdrawalRequest:
        verified = await self.session.get(WithdrawalRequest, row.id)
        if verified is None:
            raise WriteVerificationError(f"Withdrawal {row.id} disappeared after update")
        if verified.status != status.value:
            raise WriteVerificationError(
                f"Withdrawal status mismatch: expected {status.value}, got {verified.status}"
            )
        return verified

    async def _find_wallet(self, user_id: UUID) -> Wallet | None:
        stmt = select(Wallet).where(Wallet.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_request_for_update(self, request_id: UUID) -> WithdrawalRequest | None:
        """Lock withdrawal request row for update (SELECT FOR UPDATE)."""
        stmt = (
            select(WithdrawalRequest).where(WithdrawalRequest.id == request_id).with_for_update()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
