"""
FastAPI Dependencies - Authentication, authorization and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

from collections.abc import Awaitable, Callable
from typing import Any
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.session import get_write_db
from app.exceptions import AuthenticationError
from app.models.api import UserRole
from app.models.domain import CurrentUser
from app.services.ledger import SqlTokenLedger, TokenLedger
from app.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================================
# User JWT Authentication
# ============================================================================


def decode_token(token: str) -> CurrentUser:
    """
    Verify a bearer JWT and build the caller identity.

    Expected claims: sub (user UUID), role, optional email and name.

    Raises:
        AuthenticationError: Signature, expiry, audience or claims invalid
    """
    kwargs: dict[str, Any] = {
        "algorithms": [settings.jwt_algorithm],
        "leeway": settings.jwt_leeway_seconds,
    }
    if settings.jwt_audience:
        kwargs["audience"] = settings.jwt_audience
    else:
        kwargs["options"] = {"verify_aud": False}

    try:
        payload = jwt.decode(token, settings.jwt_secret, **kwargs)
    except jwt.PyJWTError as exc:
        raise AuthenticationError(str(exc)) from exc

    try:
        user_id = UUID(str(payload.get("sub")))
        role = UserRole(str(payload.get("role", "")).strip().lower())
    except ValueError as exc:
        raise AuthenticationError("Token is missing a valid sub or role claim") from exc

    return CurrentUser(
        user_id=user_id,
        role=role,
        email=payload.get("email"),
        name=payload.get("name"),
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CurrentUser:
    """
    FastAPI dependency to authenticate the caller from Authorization: Bearer.

    Usage:
        @router.get("/api/wallet")
        async def get_wallet(user: CurrentUser = Depends(get_current_user)):
            pass

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_token(credentials.credentials)
    except AuthenticationError as exc:
        logger.warning("bearer_token_rejected", error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def get_user_from_websocket(websocket: WebSocket) -> CurrentUser:
    """
    Authenticate a websocket from its ?token= query parameter.

    Raises:
        AuthenticationError: Token missing or invalid
    """
    token = websocket.query_params.get("token")
    if not token:
        raise AuthenticationError("Missing token")
    return decode_token(token)


def require_role(*roles: UserRole) -> Callable[..., Awaitable[CurrentUser]]:
    """
    FastAPI dependency factory restricting an endpoint to some roles.

    Admins pass every role check.

    Usage:
        @router.post("/api/sessions/{session_id}/start")
        async def start(user: CurrentUser = Depends(require_role(UserRole.TEACHER))):
            pass
    """
    allowed = frozenset(roles)

    async def role_checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in allowed and not user.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(sorted(r.value for r in allowed))}",
            )
        return user

    return role_checker


# ============================================================================
# Service Wiring
# ============================================================================


def get_ledger(db: AsyncSession = Depends(get_write_db)) -> TokenLedger:
    """Token ledger bound to the request's write session."""
    return SqlTokenLedger(db)


def get_payment_provider() -> StripeProvider:
    """
    Stripe provider from settings.

    Raises:
        HTTPException 503 if Stripe is not configured
    """
    if not settings.stripe_configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
    )
