"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class BillingError(Exception):
    """Base exception for all billing errors."""

    pass


class InsufficientTokensError(BillingError):
    """Raised when a wallet holds fewer tokens than an operation needs."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient tokens. Balance: {balance}, Required: {required}")


class WalletNotFoundError(BillingError):
    """Raised when a user has no wallet and one cannot be created."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"Wallet not found for user {user_id}")


class SessionNotFoundError(BillingError):
    """Raised when a class session doesn't exist."""

    def __init__(self, session_id: UUID) -> None:
        self.session_id = session_id
        super().__init__(f"Class session not found: {session_id}")


class SessionOwnershipError(BillingError):
    """Raised when a user acts on a session that belongs to another teacher."""

    def __init__(self, session_id: UUID, user_id: UUID) -> None:
        self.session_id = session_id
        self.user_id = user_id
        super().__init__(f"User {user_id} does not own session {session_id}")


class InvalidSessionStateError(BillingError):
    """Raised when a lifecycle transition is not allowed from the current status."""

    def __init__(self, session_id: UUID, status: str, operation: str) -> None:
        self.session_id = session_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} session {session_id} in status {status}")


class TrackerNotFoundError(BillingError):
    """Raised when a session has no time tracker row."""

    def __init__(self, session_id: UUID) -> None:
        self.session_id = session_id
        super().__init__(f"No time tracker for session {session_id}")


class WithdrawalNotFoundError(BillingError):
    """Raised when a withdrawal request doesn't exist."""

    def __init__(self, request_id: UUID) -> None:
        self.request_id = request_id
        super().__init__(f"Withdrawal request not found: {request_id}")


class InvalidWithdrawalStateError(BillingError):
    """Raised when a withdrawal request cannot move to the requested status."""

    def __init__(self, request_id: UUID, status: str, target: str) -> None:
        self.request_id = request_id
        self.status = status
        self.target = target
        super().__init__(f"Withdrawal {request_id} cannot move from {status} to {target}")


class WriteVerificationError(BillingError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(BillingError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class PaymentProviderError(BillingError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(BillingError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class AuthenticationError(BillingError):
    """Raised when a bearer token is missing, expired or malformed."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
