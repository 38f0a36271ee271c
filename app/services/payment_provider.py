"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class PaymentIntent:
    """
    Provider-agnostic payment intent.

    Represents a request to charge a student or parent for tokens.
    """

    amount_minor: int
    currency: str
    description: str
    customer_email: str | None
    metadata_user_id: str
    metadata_tokens: int
    idempotency_key: str


@dataclass(frozen=True)
class PaymentResult:
    """
    Provider-agnostic payment result.

    Returned after successful payment creation.
    """

    payment_id: str  # Provider-specific payment ID
    client_secret: str  # For client-side payment confirmation
    status: str
    amount_minor: int
    currency: str


@dataclass(frozen=True)
class CustomerRequest:
    """Request to register a paying user with the provider."""

    email: str
    name: str | None
    metadata_user_id: str


@dataclass(frozen=True)
class PayoutRequest:
    """
    Provider-agnostic payout.

    Sends a teacher's withdrawal to the destination they registered.
    """

    amount_minor: int
    currency: str
    destination: str
    metadata_user_id: str
    metadata_withdrawal_id: str
    idempotency_key: str


@dataclass(frozen=True)
class PayoutResult:
    """Provider-agnostic payout result."""

    payout_id: str
    status: str
    amount_minor: int
    currency: str


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event.

    object_id is the payment intent id for payment events and the transfer
    id for payout events.
    """

    event_id: str
    event_type: str
    object_id: str
    status: str | None
    amount_minor: int | None
    currency: str | None
    metadata_user_id: str | None
    metadata_tokens: str | None
    metadata_withdrawal_id: str | None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any payment provider (Stripe, M-Pesa, bank transfer, etc.) must implement
    this interface so token purchases and payouts stay provider-agnostic.
    """

    async def create_payment_intent(self, intent: PaymentIntent) -> PaymentResult:
        """
        Create a payment intent with the provider.

        Args:
            intent: Payment intent details

        Returns:
            Payment result with provider-specific payment ID and client secret

        Raises:
            PaymentProviderError: If payment creation fails
        """
        ...

    async def create_customer(self, request: CustomerRequest) -> str:
        """
        Register a customer with the provider.

        Returns:
            Provider customer ID

        Raises:
            PaymentProviderError: If customer creation fails
        """
        ...

    async def create_payout(self, request: PayoutRequest) -> PayoutResult:
        """
        Send money to a teacher.

        Raises:
            PaymentProviderError: If the payout is rejected
        """
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse webhook event from provider.

        Args:
            payload: Raw webhook payload
            signature: Webhook signature for verification

        Returns:
            Parsed webhook event

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...
