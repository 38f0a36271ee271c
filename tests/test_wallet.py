"""
Tests for WalletService and the pure statistics helpers.
"""

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from app.exceptions import WriteVerificationError
from app.models.api import TransactionType, UserRole
from app.models.domain import WalletData
from app.services.wallet import (
    WalletService,
    group_monthly_earnings,
    summarize_student_spending,
    summarize_teacher_earnings,
)
from conftest import FIXED_NOW, create_mock_transaction, make_result, make_transaction_data

MARCH = datetime(2025, 3, 10, tzinfo=UTC)
FEBRUARY = datetime(2025, 2, 10, tzinfo=UTC)
JANUARY = datetime(2025, 1, 10, tzinfo=UTC)


class TestGetWallet:
    """Tests for the wallet accessor."""

    @pytest.mark.asyncio
    async def test_returns_wallet_from_ledger(self, db_session: AsyncMock, mock_ledger: AsyncMock):
        wallet = WalletData(
            wallet_id=uuid4(),
            user_id=uuid4(),
            user_type=UserRole.STUDENT,
            balance=30,
            locked_balance=0,
            created_at=FIXED_NOW,
            updated_at=FIXED_NOW,
        )
        mock_ledger.create_user_token_wallet.return_value = wallet

        result = await WalletService(db_session, mock_ledger).get_wallet(
            wallet.user_id, UserRole.STUDENT
        )

        assert result == wallet

    @pytest.mark.asyncio
    async def test_database_failure_returns_none(
        self, db_session: AsyncMock, mock_ledger: AsyncMock
    ):
        """Unavailable is distinguishable from an empty wallet."""
        mock_ledger.create_user_token_wallet.side_effect = OperationalError(
            "SELECT", {}, Exception("down")
        )

        result = await WalletService(db_session, mock_ledger).get_wallet(uuid4(), UserRole.STUDENT)

        assert result is None

    @pytest.mark.asyncio
    async def test_verification_failure_returns_none(
        self, db_session: AsyncMock, mock_ledger: AsyncMock
    ):
        mock_ledger.create_user_token_wallet.side_effect = WriteVerificationError("missing")

        result = await WalletService(db_session, mock_ledger).get_wallet(uuid4(), UserRole.TEACHER)

        assert result is None


class TestGetTransactions:
    @pytest.mark.asyncio
    async def test_maps_rows(self, db_session: AsyncMock, mock_ledger: AsyncMock):
        tx = create_mock_transaction(amount_tokens=50)
        db_session.execute = AsyncMock(return_value=make_result(rows=[tx]))

        result = await WalletService(db_session, mock_ledger).get_transactions(tx.user_id)

        assert len(result) == 1
        assert result[0].amount_tokens == 50
        assert result[0].transaction_type == TransactionType.PURCHASE

    @pytest.mark.asyncio
    async def test_empty_on_failure(self, db_session: AsyncMock, mock_ledger: AsyncMock):
        db_session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("x")))

        result = await WalletService(db_session, mock_ledger).get_transactions(uuid4())

        assert result == []


class TestStudentSpending:
    """Tests for summarize_student_spending."""

    def test_splits_by_month(self):
        transactions = [
            make_transaction_data(TransactionType.DEDUCTION, 10, MARCH),
            make_transaction_data(TransactionType.DEDUCTION, 10, MARCH),
            make_transaction_data(TransactionType.DEDUCTION, 10, FEBRUARY),
            make_transaction_data(TransactionType.DEDUCTION, 10, JANUARY),
        ]

        stats = summarize_student_spending(transactions, FIXED_NOW)

        assert stats.total_spent == Decimal("4.00")
        assert stats.this_month_spent == Decimal("2.00")
        assert stats.last_month_spent == Decimal("1.00")
        assert stats.total_classes == 4
        assert stats.average_class_cost == Decimal("1.00")
        assert stats.spending_growth_percentage == 100.0

    def test_ignores_non_session_deductions(self):
        transactions = [
            make_transaction_data(TransactionType.DEDUCTION, 10, MARCH),
            make_transaction_data(
                TransactionType.DEDUCTION, 10, MARCH, related_entity_type="other"
            ),
            make_transaction_data(TransactionType.PURCHASE, 100, MARCH),
        ]

        stats = summarize_student_spending(transactions, FIXED_NOW)

        assert stats.total_classes == 1

    def test_empty_history(self):
        stats = summarize_student_spending([], FIXED_NOW)
        assert stats.total_spent == Decimal("0")
        assert stats.average_class_cost == Decimal("0")
        assert stats.spending_growth_percentage == 0.0

    def test_january_compares_with_december(self):
        now = datetime(2025, 1, 20, tzinfo=UTC)
        transactions = [
            make_transaction_data(TransactionType.DEDUCTION, 10, datetime(2024, 12, 5, tzinfo=UTC))
        ]

        stats = summarize_student_spending(transactions, now)

        assert stats.last_month_spent == Decimal("1.00")
        assert stats.this_month_spent == Decimal("0")


class TestTeacherEarnings:
    """Tests for summarize_teacher_earnings."""

    def test_values_at_teacher_rate(self):
        transactions = [
            make_transaction_data(TransactionType.EARNING, 10, MARCH),
            make_transaction_data(TransactionType.EARNING, 15, FEBRUARY),
        ]

        stats = summarize_teacher_earnings(transactions, Decimal("5.00"), FIXED_NOW)

        assert stats.total_earnings == Decimal("1.00")
        assert stats.this_month_earnings == Decimal("0.40")
        assert stats.last_month_earnings == Decimal("0.60")
        assert stats.pending_withdrawals == Decimal("5.00")
        assert stats.total_sessions == 2
        assert stats.average_session_value == Decimal("0.50")

    def test_growth_percentage(self):
        transactions = [
            make_transaction_data(TransactionType.EARNING, 10, MARCH),
            make_transaction_data(TransactionType.EARNING, 20, FEBRUARY),
        ]

        stats = summarize_teacher_earnings(transactions, Decimal("0"), FIXED_NOW)

        assert stats.earnings_growth_percentage == -50.0


class TestMonthlyEarnings:
    """Tests for group_monthly_earnings."""

    def test_groups_oldest_first(self):
        transactions = [
            make_transaction_data(TransactionType.EARNING, 10, MARCH),
            make_transaction_data(TransactionType.EARNING, 10, JANUARY),
            make_transaction_data(TransactionType.EARNING, 15, MARCH),
            make_transaction_data(TransactionType.REFUND, 99, FEBRUARY),
        ]

        months = group_monthly_earnings(transactions)

        assert [(m.month, m.year) for m in months] == [("Jan", 2025), ("Mar", 2025)]
        assert months[1].earnings == Decimal("1.00")
        assert months[1].sessions == 2

    def test_keeps_last_twelve_months(self):
        transactions = [
            make_transaction_data(
                TransactionType.EARNING, 10, datetime(2023 + (m // 12), m % 12 + 1, 1, tzinfo=UTC)
            )
            for m in range(15)
        ]

        months = group_monthly_earnings(transactions)

        assert len(months) == 12
        assert (months[0].month, months[0].year) == ("Apr", 2023)
        assert (months[-1].month, months[-1].year) == ("Mar", 2024)
