"""
Tests for token pricing and duration billing rules.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from hypothesis import given
from hypothesis import strategies as st
from sqlalchemy.exc import OperationalError

from app.db.models import TokenPricing
from app.models.api import UserRole
from app.services.pricing import (
    PricingService,
    calculate_tokens_for_duration,
    format_duration,
    is_completion_unlocked,
    teacher_credit_for_active_seconds,
    tokens_to_usd,
    tokens_to_usd_for_student,
    tokens_to_usd_for_teacher,
    usd_to_tokens,
)
from conftest import make_result


class TestDurationTokens:
    """Tests for calculate_tokens_for_duration."""

    def test_one_hour_is_ten_tokens(self):
        assert calculate_tokens_for_duration(60) == 10

    def test_rounds_up_partial_tokens(self):
        """61 minutes is 10.17 tokens, billed as 11."""
        assert calculate_tokens_for_duration(61) == 11

    def test_zero_minutes(self):
        assert calculate_tokens_for_duration(0) == 0

    def test_fractional_minutes(self):
        assert calculate_tokens_for_duration(0.5) == 1

    def test_negative_duration_rejected(self):
        with pytest.raises(ValueError, match="non-negative"):
            calculate_tokens_for_duration(-1)

    @given(st.integers(min_value=0, max_value=100_000))
    def test_never_underbills(self, minutes: int):
        tokens = calculate_tokens_for_duration(minutes)
        assert tokens * 6 >= minutes
        assert (tokens - 1) * 6 < minutes or tokens == 0


class TestConversion:
    """Tests for token/USD conversion at the two role rates."""

    def test_student_rate(self):
        assert tokens_to_usd_for_student(10) == Decimal("1.00")

    def test_teacher_rate(self):
        assert tokens_to_usd_for_teacher(10) == Decimal("0.40")

    def test_rates_are_not_inverses(self):
        """Platform margin: a student dollar is worth more tokens to a teacher."""
        assert tokens_to_usd_for_student(100) > tokens_to_usd_for_teacher(100)

    def test_tokens_to_usd_by_role(self):
        assert tokens_to_usd(UserRole.TEACHER, 25) == Decimal("1.00")
        assert tokens_to_usd(UserRole.STUDENT, 25) == Decimal("2.50")
        assert tokens_to_usd(UserRole.PARENT, 25) == Decimal("2.50")

    def test_usd_to_tokens_floors(self):
        assert usd_to_tokens(UserRole.STUDENT, Decimal("1.05")) == 10
        assert usd_to_tokens(UserRole.TEACHER, Decimal("1.00")) == 25

    @given(st.integers(min_value=0, max_value=10_000_000))
    def test_student_round_trip(self, tokens: int):
        usd = tokens_to_usd_for_student(tokens)
        assert usd_to_tokens(UserRole.STUDENT, usd) == tokens


class TestTeacherCredit:
    """Tests for the one-hour completion threshold."""

    def test_below_threshold_earns_nothing(self):
        assert teacher_credit_for_active_seconds(3599) == 0
        assert is_completion_unlocked(3599) is False

    def test_exactly_one_hour_earns_ten(self):
        assert teacher_credit_for_active_seconds(3600) == 10
        assert is_completion_unlocked(3600) is True

    def test_floors_above_threshold(self):
        """90 minutes is 15 tokens; 95 minutes is 15.8, floored."""
        assert teacher_credit_for_active_seconds(5400) == 15
        assert teacher_credit_for_active_seconds(5700) == 15

    @given(st.integers(min_value=3600, max_value=1_000_000))
    def test_credit_never_exceeds_billed_time(self, seconds: int):
        assert teacher_credit_for_active_seconds(seconds) <= seconds * 10 / 3600


class TestFormatDuration:
    def test_formats_hours_minutes_seconds(self):
        assert format_duration(3725) == "01:02:05"

    def test_zero(self):
        assert format_duration(0) == "00:00:00"

    def test_negative_clamped(self):
        assert format_duration(-5) == "00:00:00"


class TestPricingService:
    """Tests for the token_pricing lookup."""

    @pytest.mark.asyncio
    async def test_returns_active_row(self, db_session: AsyncMock):
        row = TokenPricing(
            user_type="teacher",
            tokens_per_dollar=Decimal("25"),
            dollars_per_token=Decimal("0.04"),
            is_active=True,
        )
        db_session.execute = AsyncMock(return_value=make_result(row))

        pricing = await PricingService(db_session).get_token_pricing(UserRole.TEACHER)

        assert pricing is not None
        assert pricing.user_type == UserRole.TEACHER
        assert pricing.dollars_per_token == Decimal("0.04")

    @pytest.mark.asyncio
    async def test_missing_row_returns_none(self, db_session: AsyncMock):
        pricing = await PricingService(db_session).get_token_pricing(UserRole.STUDENT)
        assert pricing is None

    @pytest.mark.asyncio
    async def test_database_error_returns_none(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("x")))
        pricing = await PricingService(db_session).get_token_pricing(UserRole.STUDENT)
        assert pricing is None
