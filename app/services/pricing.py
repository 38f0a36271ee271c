"""
Pricing - Token/USD conversion and duration billing rules.

NO DICTIONARIES - Rates are typed constants, money is Decimal.

Students buy tokens at $0.10 each; teachers earn $0.04 per token. The two
rates are deliberately not inverses: the spread is the platform margin.
"""

import math
from decimal import ROUND_FLOOR, Decimal
from fractions import Fraction

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import TokenPricing
from app.models.api import UserRole
from app.models.domain import TokenPricingData

logger = get_logger(__name__)

STUDENT_TOKENS_PER_DOLLAR = 10
TEACHER_TOKENS_PER_DOLLAR = 25
CLASS_TOKENS_REQUIRED = 10
STUDENT_COST_PER_TOKEN = Decimal("0.10")
TEACHER_EARNING_PER_TOKEN = Decimal("0.04")

# Active time a session needs before the teacher is paid for it
COMPLETION_THRESHOLD_SECONDS = 3600
TOKENS_PER_HOUR = 10

_CENTS = Decimal("0.01")


def calculate_tokens_for_duration(minutes: int | float) -> int:
    """
    Tokens billed for a duration, rounded up to the next whole token.

    Args:
        minutes: Duration in minutes (non-negative)

    Returns:
        ceil(minutes / 60 * 10)
    """
    if minutes < 0:
        raise ValueError(f"Duration must be non-negative: {minutes}")
    return math.ceil(Fraction(minutes) * TOKENS_PER_HOUR / 60)


def tokens_to_usd_for_student(tokens: int) -> Decimal:
    """USD a student pays for the given tokens."""
    return (Decimal(tokens) * STUDENT_COST_PER_TOKEN).quantize(_CENTS)


def tokens_to_usd_for_teacher(tokens: int) -> Decimal:
    """USD a teacher receives for the given tokens."""
    return (Decimal(tokens) * TEACHER_EARNING_PER_TOKEN).quantize(_CENTS)


def tokens_to_usd(user_type: UserRole, tokens: int) -> Decimal:
    """Value tokens at the rate of the holder's role."""
    if user_type == UserRole.TEACHER:
        return tokens_to_usd_for_teacher(tokens)
    return tokens_to_usd_for_student(tokens)


def usd_to_tokens(user_type: UserRole, usd: Decimal) -> int:
    """
    Whole tokens a USD amount buys (student) or converts to (teacher).

    Fractional tokens are floored.
    """
    rate = TEACHER_TOKENS_PER_DOLLAR if user_type == UserRole.TEACHER else STUDENT_TOKENS_PER_DOLLAR
    return int((Decimal(usd) * rate).to_integral_value(rounding=ROUND_FLOOR))


def teacher_credit_for_active_seconds(active_seconds: int) -> int:
    """
    Tokens credited to a teacher for a completed session.

    Nothing is earned below the one-hour threshold; above it the credit is
    floor(active_seconds / 3600 * 10).
    """
    if active_seconds < COMPLETION_THRESHOLD_SECONDS:
        return 0
    return active_seconds * TOKENS_PER_HOUR // 3600


def is_completion_unlocked(active_seconds: int) -> bool:
    """True once a session has accumulated enough active time to pay out."""
    return active_seconds >= COMPLETION_THRESHOLD_SECONDS


def format_duration(seconds: int) -> str:
    """Render seconds as HH:MM:SS."""
    hours, remainder = divmod(max(seconds, 0), 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class PricingService:
    """Read access to the token_pricing lookup table."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_token_pricing(self, user_type: UserRole) -> TokenPricingData | None:
        """
        Get the active pricing row for a user type.

        Returns None when no active row exists or the lookup fails.
        """
        stmt = select(TokenPricing).where(
            TokenPricing.user_type == user_type.value,
            TokenPricing.is_active.is_(True),
        )
        try:
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            logger.error("token_pricing_lookup_failed", user_type=user_type.value, error=str(exc))
            return None

        if row is None:
            logger.warning("token_pricing_not_found", user_type=user_type.value)
            return None

        return TokenPricingData(
            user_type=UserRole(row.user_type),
            tokens_per_dollar=row.tokens_per_dollar,
            dollars_per_token=row.dollars_per_token,
        )
