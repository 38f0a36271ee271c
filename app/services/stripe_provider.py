"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

import stripe
from structlog import get_logger

from app.exceptions import PaymentProviderError, WebhookVerificationError
from app.services.payment_provider import (
    CustomerRequest,
    PaymentIntent,
    PaymentResult,
    PayoutRequest,
    PayoutResult,
    WebhookEvent,
)

logger = get_logger(__name__)


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.api_key = api_key

    async def create_payment_intent(self, intent: PaymentIntent) -> PaymentResult:
        """
        Create a Stripe PaymentIntent for a token purchase.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info(
                "creating_stripe_payment_intent",
                amount_minor=intent.amount_minor,
                currency=intent.currency,
                tokens=intent.metadata_tokens,
                idempotency_key=intent.idempotency_key,
            )

            payment_intent = stripe.PaymentIntent.create(
                amount=intent.amount_minor,
                currency=intent.currency.lower(),
                description=intent.description,
                receipt_email=intent.customer_email,
                metadata={
                    "user_id": intent.metadata_user_id,
                    "tokens": str(intent.metadata_tokens),
                },
                automatic_payment_methods={"enabled": True},
                idempotency_key=intent.idempotency_key,
            )

            logger.info(
                "stripe_payment_intent_created",
                payment_intent_id=payment_intent.id,
                status=payment_intent.status,
            )

            return PaymentResult(
                payment_id=payment_intent.id,
                client_secret=payment_intent.client_secret or "",
                status=payment_intent.status,
                amount_minor=payment_intent.amount,
                currency=payment_intent.currency.upper(),
            )

        except stripe.StripeError as exc:
            logger.error(
                "stripe_payment_intent_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe payment failed: {exc}") from exc

    async def create_customer(self, request: CustomerRequest) -> str:
        """
        Create a Stripe Customer.

        Returns:
            Stripe customer ID

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info("creating_stripe_customer", user_id=request.metadata_user_id)

            customer = stripe.Customer.create(
                email=request.email,
                name=request.name,
                metadata={"user_id": request.metadata_user_id},
            )

            logger.info("stripe_customer_created", customer_id=customer.id)

            customer_id: str = customer.id
            return customer_id

        except stripe.StripeError as exc:
            logger.error(
                "stripe_customer_failed",
                user_id=request.metadata_user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe customer creation failed: {exc}") from exc

    async def create_payout(self, request: PayoutRequest) -> PayoutResult:
        """
        Transfer a withdrawal to the teacher's connected account.

        Raises:
            PaymentProviderError: If Stripe rejects the transfer
        """
        try:
            logger.info(
                "creating_stripe_transfer",
                amount_minor=request.amount_minor,
                withdrawal_id=request.metadata_withdrawal_id,
            )

            transfer = stripe.Transfer.create(
                amount=request.amount_minor,
                currency=request.currency.lower(),
                destination=request.destination,
                metadata={
                    "user_id": request.metadata_user_id,
                    "withdrawal_id": request.metadata_withdrawal_id,
                    "type": "withdrawal",
                },
                idempotency_key=request.idempotency_key,
            )

            logger.info(
                "stripe_transfer_created",
                transfer_id=transfer.id,
                amount_minor=transfer.amount,
            )

            return PayoutResult(
                payout_id=transfer.id,
                status="paid",
                amount_minor=transfer.amount,
                currency=transfer.currency.upper(),
            )

        except stripe.StripeError as exc:
            logger.error(
                "stripe_transfer_failed",
                withdrawal_id=request.metadata_withdrawal_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe transfer failed: {exc}") from exc

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Returns:
            Parsed webhook event

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        try:
            logger.info("verifying_stripe_webhook", signature_present=bool(signature))

            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )

            logger.info(
                "stripe_webhook_verified",
                event_id=event.id,
                event_type=event.type,
            )

            # PaymentIntent or Transfer depending on event type
            obj = event.data.object
            metadata = obj.get("metadata") or {}
            currency = obj.get("currency")

            return WebhookEvent(
                event_id=event.id,
                event_type=event.type,
                object_id=obj.id,
                status=obj.get("status"),
                amount_minor=obj.get("amount"),
                currency=currency.upper() if currency else None,
                metadata_user_id=metadata.get("user_id"),
                metadata_tokens=metadata.get("tokens"),
                metadata_withdrawal_id=metadata.get("withdrawal_id"),
            )

        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except (ValueError, AttributeError, KeyError) as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc
