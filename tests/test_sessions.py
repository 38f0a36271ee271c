"""
Tests for SessionLifecycleController.

The ledger is a double; these tests cover ownership, tracker arithmetic,
the balance pre-check and the error-to-result conversion.
"""

from datetime import timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from app.db.models import ClassSession, SessionTimeTracker
from app.exceptions import (
    InsufficientTokensError,
    InvalidSessionStateError,
    SessionNotFoundError,
    SessionOwnershipError,
    TrackerNotFoundError,
)
from app.models.api import SessionFailureReason, SessionStatus
from app.models.domain import CancellationOutcome, CompletionOutcome, CurrentUser
from app.services.sessions import SessionLifecycleController, failure_for
from conftest import (
    FIXED_NOW,
    create_mock_session,
    create_mock_tracker,
    make_result,
    make_session_data,
    track_writes,
)


def controller_for(db_session: AsyncMock, ledger: AsyncMock, now=FIXED_NOW):
    return SessionLifecycleController(db_session, ledger, clock=lambda: now)


# ============================================================================
# Failure Mapping
# ============================================================================


class TestFailureFor:
    """Tests for the error to user message mapping."""

    def test_insufficient_tokens(self):
        result = failure_for("start", InsufficientTokensError(5, 10))
        assert result.success is False
        assert result.error == "Student has insufficient tokens"
        assert result.reason == SessionFailureReason.INSUFFICIENT_TOKENS

    def test_not_found(self):
        result = failure_for("pause", SessionNotFoundError(uuid4()))
        assert result.reason == SessionFailureReason.NOT_FOUND

    def test_ownership(self):
        result = failure_for("pause", SessionOwnershipError(uuid4(), uuid4()))
        assert result.reason == SessionFailureReason.FORBIDDEN

    def test_invalid_state_uses_past_tense(self):
        result = failure_for("complete", InvalidSessionStateError(uuid4(), "scheduled", "complete"))
        assert result.error == "Session cannot be completed"
        assert result.reason == SessionFailureReason.INVALID_STATE

    def test_missing_tracker_on_resume(self):
        result = failure_for("resume", TrackerNotFoundError(uuid4()))
        assert result.error == "No paused session found"
        assert result.reason == SessionFailureReason.NO_TRACKER

    def test_unexpected_error_is_generic(self):
        result = failure_for("cancel", OperationalError("UPDATE", {}, Exception("down")))
        assert result.error == "Failed to cancel session"
        assert result.reason == SessionFailureReason.UNAVAILABLE


# ============================================================================
# Start
# ============================================================================


class TestStartSession:
    """Tests for start_session."""

    @pytest.mark.asyncio
    async def test_creates_session_and_tracker(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        session_id = uuid4()
        student_id = uuid4()
        db_session.execute = AsyncMock(side_effect=[make_result(None), make_result(50)])
        added = track_writes(db_session)
        mock_ledger.start_class_session.return_value = make_session_data(
            session_id=session_id, teacher_id=teacher.user_id, student_id=student_id
        )

        result = await controller_for(db_session, mock_ledger).start_session(
            teacher, session_id, student_id=student_id, meeting_id="meet-1"
        )

        assert result.success is True
        assert result.tracker is not None
        assert result.tracker.is_active is True
        created = [obj for obj in added if isinstance(obj, ClassSession)]
        assert created[0].teacher_id == teacher.user_id
        assert created[0].tokens_charged == 10
        assert any(isinstance(obj, SessionTimeTracker) for obj in added)
        mock_ledger.start_class_session.assert_awaited_once_with(session_id, FIXED_NOW)

    @pytest.mark.asyncio
    async def test_admin_cannot_create_session(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, admin: CurrentUser
    ):
        db_session.execute = AsyncMock(return_value=make_result(None))
        added = track_writes(db_session)

        result = await controller_for(db_session, mock_ledger).start_session(
            admin, uuid4(), student_id=uuid4(), meeting_id="meet-1"
        )

        assert result.success is False
        assert result.reason == SessionFailureReason.NOT_FOUND
        assert added == []
        mock_ledger.start_class_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_insufficient_balance_refused_before_ledger(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        db_session.execute = AsyncMock(side_effect=[make_result(None), make_result(5)])
        track_writes(db_session)

        result = await controller_for(db_session, mock_ledger).start_session(
            teacher, uuid4(), student_id=uuid4(), meeting_id="meet-1"
        )

        assert result.success is False
        assert result.reason == SessionFailureReason.INSUFFICIENT_TOKENS
        mock_ledger.start_class_session.assert_not_awaited()
        db_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_session_without_meeting_skips_balance_check(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        db_session.execute = AsyncMock(return_value=make_result(None))
        track_writes(db_session)
        mock_ledger.start_class_session.return_value = make_session_data(
            teacher_id=teacher.user_id, meeting_id=None, tokens_deducted_at=None
        )

        result = await controller_for(db_session, mock_ledger).start_session(
            teacher, uuid4(), student_id=uuid4()
        )

        assert result.success is True
        assert db_session.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_other_teachers_session_is_forbidden(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        row = create_mock_session()
        db_session.execute = AsyncMock(return_value=make_result(row))

        result = await controller_for(db_session, mock_ledger).start_session(
            teacher, row.id, student_id=row.student_id
        )

        assert result.success is False
        assert result.reason == SessionFailureReason.FORBIDDEN

    @pytest.mark.asyncio
    async def test_started_session_cannot_start_again(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        row = create_mock_session(teacher_id=teacher.user_id, status=SessionStatus.IN_PROGRESS)
        db_session.execute = AsyncMock(return_value=make_result(row))

        result = await controller_for(db_session, mock_ledger).start_session(
            teacher, row.id, student_id=row.student_id
        )

        assert result.success is False
        assert result.error == "Session cannot be started"


# ============================================================================
# Pause / Resume
# ============================================================================


class TestPauseResume:
    """Tests for pause_session and resume_session."""

    @pytest.mark.asyncio
    async def test_pause_freezes_active_seconds(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        row = create_mock_session(teacher_id=teacher.user_id, status=SessionStatus.IN_PROGRESS)
        tracker = create_mock_tracker(session_id=row.id, start_time=FIXED_NOW)
        db_session.execute = AsyncMock(side_effect=[make_result(row), make_result(tracker)])
        track_writes(db_session, {SessionTimeTracker: tracker})

        now = FIXED_NOW + timedelta(minutes=10)
        result = await controller_for(db_session, mock_ledger, now).pause_session(teacher, row.id)

        assert result.success is True
        assert result.tracker.total_active_seconds == 600
        assert result.tracker.is_active is False
        assert result.tracker.pause_time == now
        assert row.status == SessionStatus.PAUSED.value
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pause_requires_running_session(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        row = create_mock_session(teacher_id=teacher.user_id, status=SessionStatus.PAUSED)
        db_session.execute = AsyncMock(return_value=make_result(row))

        result = await controller_for(db_session, mock_ledger).pause_session(teacher, row.id)

        assert result.success is False
        assert result.reason == SessionFailureReason.INVALID_STATE

    @pytest.mark.asyncio
    async def test_resume_adds_pause_length(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        row = create_mock_session(teacher_id=teacher.user_id, status=SessionStatus.PAUSED)
        tracker = create_mock_tracker(
            session_id=row.id,
            total_active_seconds=600,
            pause_time=FIXED_NOW + timedelta(minutes=10),
            is_active=False,
        )
        db_session.execute = AsyncMock(side_effect=[make_result(row), make_result(tracker)])
        track_writes(db_session, {SessionTimeTracker: tracker})

        now = FIXED_NOW + timedelta(minutes=15)
        result = await controller_for(db_session, mock_ledger, now).resume_session(teacher, row.id)

        assert result.success is True
        assert result.tracker.total_paused_seconds == 300
        assert result.tracker.total_active_seconds == 600
        assert result.tracker.is_active is True
        assert row.status == SessionStatus.IN_PROGRESS.value

    @pytest.mark.asyncio
    async def test_resume_without_paused_tracker(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        row = create_mock_session(teacher_id=teacher.user_id, status=SessionStatus.PAUSED)
        db_session.execute = AsyncMock(side_effect=[make_result(row), make_result(None)])

        result = await controller_for(db_session, mock_ledger).resume_session(teacher, row.id)

        assert result.success is False
        assert result.error == "No paused session found"


# ============================================================================
# Complete
# ============================================================================


class TestCompleteSession:
    """Tests for complete_session."""

    async def _complete(self, db_session, mock_ledger, teacher, active_seconds: int):
        row = create_mock_session(teacher_id=teacher.user_id, status=SessionStatus.IN_PROGRESS)
        tracker = create_mock_tracker(session_id=row.id, start_time=FIXED_NOW)
        db_session.execute = AsyncMock(side_effect=[make_result(row), make_result(tracker)])
        mock_ledger.complete_class_session.return_value = CompletionOutcome(
            session=make_session_data(status=SessionStatus.COMPLETED),
            credited_tokens=10 if active_seconds >= 3600 else 0,
        )
        now = FIXED_NOW + timedelta(seconds=active_seconds)
        result = await controller_for(db_session, mock_ledger, now).complete_session(
            teacher, row.id, notes="Covered chapter 3"
        )
        return row, tracker, now, result

    @pytest.mark.asyncio
    async def test_duration_comes_from_tracker(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        row, tracker, now, result = await self._complete(db_session, mock_ledger, teacher, 3600)

        assert result.success is True
        assert result.credited_tokens == 10
        assert tracker.is_active is False
        assert tracker.total_active_seconds == 3600
        mock_ledger.complete_class_session.assert_awaited_once_with(
            row.id, 3600, "Covered chapter 3", now
        )

    @pytest.mark.asyncio
    async def test_one_second_short_of_an_hour(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        row, _, now, result = await self._complete(db_session, mock_ledger, teacher, 3599)

        assert result.success is True
        assert result.credited_tokens == 0
        mock_ledger.complete_class_session.assert_awaited_once_with(
            row.id, 3599, "Covered chapter 3", now
        )

    @pytest.mark.asyncio
    async def test_completing_twice_succeeds_without_writes(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        row = create_mock_session(teacher_id=teacher.user_id, status=SessionStatus.COMPLETED)
        db_session.execute = AsyncMock(return_value=make_result(row))

        result = await controller_for(db_session, mock_ledger).complete_session(teacher, row.id)

        assert result.success is True
        assert result.credited_tokens == 0
        mock_ledger.complete_class_session.assert_not_awaited()
        db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ledger_failure_becomes_result(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        row = create_mock_session(teacher_id=teacher.user_id, status=SessionStatus.IN_PROGRESS)
        tracker = create_mock_tracker(session_id=row.id)
        db_session.execute = AsyncMock(side_effect=[make_result(row), make_result(tracker)])
        mock_ledger.complete_class_session.side_effect = OperationalError(
            "UPDATE", {}, Exception("connection lost")
        )

        result = await controller_for(db_session, mock_ledger).complete_session(teacher, row.id)

        assert result.success is False
        assert result.error == "Failed to complete session"
        db_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_session(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        result = await controller_for(db_session, mock_ledger).complete_session(teacher, uuid4())

        assert result.success is False
        assert result.reason == SessionFailureReason.NOT_FOUND


# ============================================================================
# Cancel
# ============================================================================


class TestCancelSession:
    """Tests for cancel_session."""

    @pytest.mark.asyncio
    async def test_reports_refund(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        row = create_mock_session(teacher_id=teacher.user_id, status=SessionStatus.IN_PROGRESS)
        tracker = create_mock_tracker(session_id=row.id)
        db_session.execute = AsyncMock(side_effect=[make_result(row), make_result(tracker)])
        mock_ledger.cancel_class_session.return_value = CancellationOutcome(
            session=make_session_data(status=SessionStatus.CANCELLED), refunded_tokens=10
        )

        now = FIXED_NOW + timedelta(minutes=5)
        result = await controller_for(db_session, mock_ledger, now).cancel_session(
            teacher, row.id, reason="Student sick"
        )

        assert result.success is True
        assert result.refunded_tokens == 10
        assert tracker.is_active is False
        assert tracker.total_active_seconds == 300
        mock_ledger.cancel_class_session.assert_awaited_once_with(row.id, "Student sick", now)

    @pytest.mark.asyncio
    async def test_completed_session_cannot_cancel(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        row = create_mock_session(teacher_id=teacher.user_id, status=SessionStatus.COMPLETED)
        db_session.execute = AsyncMock(return_value=make_result(row))

        result = await controller_for(db_session, mock_ledger).cancel_session(teacher, row.id)

        assert result.success is False
        assert result.error == "Session cannot be cancelled"
        mock_ledger.cancel_class_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_admin_may_cancel_any_session(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, admin: CurrentUser
    ):
        row = create_mock_session(status=SessionStatus.SCHEDULED)
        db_session.execute = AsyncMock(side_effect=[make_result(row), make_result(None)])
        mock_ledger.cancel_class_session.return_value = CancellationOutcome(
            session=make_session_data(status=SessionStatus.CANCELLED)
        )

        result = await controller_for(db_session, mock_ledger).cancel_session(admin, row.id)

        assert result.success is True
        assert result.tracker is None


# ============================================================================
# Reads
# ============================================================================


class TestReads:
    """Tests for the read-only accessors."""

    @pytest.mark.asyncio
    async def test_student_can_view_own_session(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, student: CurrentUser
    ):
        row = create_mock_session(student_id=student.user_id)
        db_session.execute = AsyncMock(return_value=make_result(row))

        data = await controller_for(db_session, mock_ledger).get_session(student, row.id)

        assert data.session_id == row.id

    @pytest.mark.asyncio
    async def test_stranger_cannot_view_session(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, student: CurrentUser
    ):
        row = create_mock_session()
        db_session.execute = AsyncMock(return_value=make_result(row))

        with pytest.raises(SessionOwnershipError):
            await controller_for(db_session, mock_ledger).get_session(student, row.id)

    @pytest.mark.asyncio
    async def test_duration_without_tracker_is_zero(
        self, db_session: AsyncMock, mock_ledger: AsyncMock
    ):
        duration = await controller_for(db_session, mock_ledger).get_current_duration(uuid4())

        assert duration.total_seconds == 0
        assert duration.is_active is False
        assert duration.completion_unlocked is False

    @pytest.mark.asyncio
    async def test_duration_from_running_tracker(
        self, db_session: AsyncMock, mock_ledger: AsyncMock
    ):
        tracker = create_mock_tracker(start_time=FIXED_NOW, total_paused_seconds=120)
        db_session.execute = AsyncMock(return_value=make_result(tracker))

        now = FIXED_NOW + timedelta(hours=1)
        duration = await controller_for(db_session, mock_ledger, now).get_current_duration(
            tracker.session_id
        )

        assert duration.active_seconds == 3600
        assert duration.paused_seconds == 120
        assert duration.total_seconds == 3720
        assert duration.completion_unlocked is True

    @pytest.mark.asyncio
    async def test_duration_on_database_error_is_zero(
        self, db_session: AsyncMock, mock_ledger: AsyncMock
    ):
        db_session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("x")))

        duration = await controller_for(db_session, mock_ledger).get_current_duration(uuid4())

        assert duration.active_seconds == 0

    @pytest.mark.asyncio
    async def test_teacher_session_stats(self, db_session: AsyncMock, mock_ledger: AsyncMock):
        from decimal import Decimal

        db_session.execute = AsyncMock(
            return_value=make_result(rows=[(60, Decimal("0.40")), (90, Decimal("0.60"))])
        )

        stats = await controller_for(db_session, mock_ledger).get_teacher_session_stats(uuid4())

        assert stats.total_sessions == 2
        assert stats.total_hours == 2.5
        assert stats.total_earnings == Decimal("1.00")
        assert stats.average_session_length == 75.0

    @pytest.mark.asyncio
    async def test_teacher_sessions_empty_on_failure(
        self, db_session: AsyncMock, mock_ledger: AsyncMock
    ):
        db_session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("x")))

        sessions = await controller_for(db_session, mock_ledger).get_teacher_sessions(uuid4())

        assert sessions == []
