"""
Token Purchase Service - Card payments for student tokens and provider webhooks.

NO DICTIONARIES - All data uses strongly typed models.

Tokens are credited only from the provider's payment_intent.succeeded
webhook, never from the client. The credit is keyed on the payment id so a
redelivered webhook cannot credit twice.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import PaymentCustomer
from app.exceptions import DataIntegrityError, WriteVerificationError
from app.models.api import TransactionType, UserRole
from app.models.domain import CurrentUser, LedgerIntent
from app.observability.metrics import metrics
from app.services.ledger import TokenLedger
from app.services.payment_provider import (
    CustomerRequest,
    PaymentIntent,
    PaymentProvider,
    PaymentResult,
    WebhookEvent,
)
from app.services.pricing import tokens_to_usd_for_student
from app.services.withdrawals import WithdrawalService

logger = get_logger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
TRANSFER_CREATED = "transfer.created"
PAYMENT_ENTITY = "payment_intent"


class TokenPurchaseService:
    """Creates payment intents for token purchases and applies webhook results."""

    def __init__(
        self,
        session: AsyncSession,
        ledger: TokenLedger,
        provider: PaymentProvider,
        provider_name: str = "stripe",
    ) -> None:
        self.session = session
        self.ledger = ledger
        self.provider = provider
        self.provider_name = provider_name

    async def create_purchase(
        self,
        user: CurrentUser,
        tokens: int,
        currency: str = "USD",
        receipt_email: str | None = None,
    ) -> PaymentResult:
        """
        Start a card payment for tokens at the student rate.

        Raises:
            ValueError: tokens is not positive
            PaymentProviderError: Provider rejected the intent
        """
        if tokens <= 0:
            raise ValueError(f"Token amount must be positive: {tokens}")

        amount_minor = int(tokens_to_usd_for_student(tokens) * 100)
        # Timestamp in the key allows repeated purchase attempts
        current_timestamp = int(datetime.now(UTC).timestamp())

        intent = PaymentIntent(
            amount_minor=amount_minor,
            currency=currency,
            description=f"Purchase {tokens} tokens",
            customer_email=receipt_email or user.email,
            metadata_user_id=str(user.user_id),
            metadata_tokens=tokens,
            idempotency_key=f"purchase-{user.user_id}-{tokens}-{current_timestamp}",
        )
        result = await self.provider.create_payment_intent(intent)

        logger.info(
            "token_purchase_started",
            user_id=str(user.user_id),
            payment_id=result.payment_id,
            tokens=tokens,
            amount_minor=amount_minor,
        )
        return result

    async def create_customer(self, user: CurrentUser, email: str, name: str | None) -> str:
        """
        Get or register the user's provider customer id.

        Raises:
            PaymentProviderError: Provider rejected the customer
        """
        existing = await self._find_customer(user.user_id)
        if existing is not None:
            return existing.customer_id

        customer_id = await self.provider.create_customer(
            CustomerRequest(email=email, name=name, metadata_user_id=str(user.user_id))
        )

        row = PaymentCustomer(
            user_id=user.user_id,
            provider=self.provider_name,
            customer_id=customer_id,
            email=email,
        )
        self.session.add(row)
        await self.session.flush()

        verified = await self.session.get(PaymentCustomer, row.id)
        if verified is None:
            raise WriteVerificationError(f"Payment customer {row.id} not found after insert")
        await self.session.commit()

        logger.info("payment_customer_saved", user_id=str(user.user_id), customer_id=customer_id)
        return customer_id

    async def handle_webhook_event(self, event: WebhookEvent) -> str:
        """
        Apply a verified provider event.

        Returns:
            What was done: "credited", "withdrawal_completed", "acknowledged" or "ignored"

        Raises:
            DataIntegrityError: A payment event is missing its user or token metadata
        """
        metrics.record_webhook_event(event.event_type)
        logger.info(
            "payment_webhook_received",
            event_id=event.event_id,
            event_type=event.event_type,
            object_id=event.object_id,
        )

        if event.event_type == PAYMENT_SUCCEEDED:
            await self._credit_purchase(event)
            return "credited"

        if event.event_type == PAYMENT_FAILED:
            logger.warning(
                "payment_failed",
                event_id=event.event_id,
                payment_id=event.object_id,
                user_id=event.metadata_user_id,
            )
            return "acknowledged"

        if event.event_type == TRANSFER_CREATED and event.metadata_withdrawal_id:
            withdrawals = WithdrawalService(self.session, self.ledger)
            await withdrawals.mark_completed_by_transfer(
                UUID(event.metadata_withdrawal_id), event.object_id
            )
            return "withdrawal_completed"

        logger.info("payment_webhook_ignored", event_id=event.event_id, event_type=event.event_type)
        return "ignored"

    async def _credit_purchase(self, event: WebhookEvent) -> None:
        if not event.metadata_user_id or not event.metadata_tokens:
            logger.error("payment_webhook_missing_metadata", event_id=event.event_id)
            raise DataIntegrityError(f"Payment {event.object_id} is missing purchase metadata")

        try:
            user_id = UUID(event.metadata_user_id)
            tokens = int(event.metadata_tokens)
        except ValueError as exc:
            raise DataIntegrityError(f"Payment {event.object_id} has malformed metadata") from exc

        tx = await self.ledger.credit_tokens(
            LedgerIntent(
                user_id=user_id,
                amount_tokens=tokens,
                transaction_type=TransactionType.PURCHASE,
                description=f"Purchased {tokens} tokens",
                related_entity_type=PAYMENT_ENTITY,
                related_entity_id=event.object_id,
                idempotency_key=f"stripe-{event.object_id}",
            ),
            user_type=UserRole.STUDENT,
        )
        logger.info(
            "token_purchase_credited",
            user_id=str(user_id),
            payment_id=event.object_id,
            tokens=tokens,
            balance_after=tx.balance_after,
        )

    async def _find_customer(self, user_id: UUID) -> PaymentCustomer | None:
        stmt = select(PaymentCustomer).where(
            PaymentCustomer.user_id == user_id,
            PaymentCustomer.provider == self.provider_name,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
