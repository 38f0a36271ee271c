"""
Tests for session lifecycle routes and the result-to-HTTP translation.
"""

from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from app.api.session_routes import action_response
from app.exceptions import SessionNotFoundError, SessionOwnershipError
from app.models.api import (
    CompleteSessionRequest,
    SessionFailureReason,
    SessionStatus,
    StartSessionRequest,
)
from app.models.domain import CurrentUser, SessionDuration, SessionResult, TeacherSessionStats
from conftest import make_session_data


class TestActionResponse:
    """Tests for action_response."""

    @pytest.mark.parametrize(
        ("reason", "status_code"),
        [
            (SessionFailureReason.NOT_FOUND, 404),
            (SessionFailureReason.FORBIDDEN, 403),
            (SessionFailureReason.INVALID_STATE, 409),
            (SessionFailureReason.INSUFFICIENT_TOKENS, 402),
            (SessionFailureReason.NO_TRACKER, 409),
            (SessionFailureReason.UNAVAILABLE, 503),
        ],
    )
    def test_failure_status_codes(self, reason: SessionFailureReason, status_code: int):
        with pytest.raises(HTTPException) as exc_info:
            action_response(SessionResult.failed("nope", reason))

        assert exc_info.value.status_code == status_code
        assert exc_info.value.detail == "nope"

    def test_success_carries_session(self):
        session = make_session_data(status=SessionStatus.COMPLETED)

        response = action_response(
            SessionResult(success=True, session=session, credited_tokens=10)
        )

        assert response.success is True
        assert response.session.session_id == session.session_id
        assert response.session.status == SessionStatus.COMPLETED
        assert response.credited_tokens == 10
        assert response.tracker_id is None


class TestLifecycleRoutes:
    @pytest.mark.asyncio
    async def test_start_passes_request_fields(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        from app.api.session_routes import start_session

        session_id = uuid4()
        student_id = uuid4()
        session = make_session_data(teacher_id=teacher.user_id, session_id=session_id)

        with patch("app.api.session_routes.SessionLifecycleController") as MockController:
            MockController.return_value.start_session = AsyncMock(
                return_value=SessionResult(success=True, session=session)
            )
            response = await start_session(
                session_id,
                StartSessionRequest(student_id=student_id, meeting_id="meet-1"),
                user=teacher,
                db=db_session,
                ledger=mock_ledger,
            )

        assert response.success is True
        kwargs = MockController.return_value.start_session.await_args.kwargs
        assert kwargs["student_id"] == student_id
        assert kwargs["meeting_id"] == "meet-1"

    @pytest.mark.asyncio
    async def test_complete_forwards_notes(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        from app.api.session_routes import complete_session

        session_id = uuid4()

        with patch("app.api.session_routes.SessionLifecycleController") as MockController:
            MockController.return_value.complete_session = AsyncMock(
                return_value=SessionResult(success=True, session=make_session_data())
            )
            await complete_session(
                session_id,
                CompleteSessionRequest(notes="Covered fractions"),
                user=teacher,
                db=db_session,
                ledger=mock_ledger,
            )

        MockController.return_value.complete_session.assert_awaited_once_with(
            teacher, session_id, "Covered fractions"
        )

    @pytest.mark.asyncio
    async def test_missing_tracker_is_409(
        self, db_session: AsyncMock, mock_ledger: AsyncMock, teacher: CurrentUser
    ):
        from app.api.session_routes import pause_session

        with patch("app.api.session_routes.SessionLifecycleController") as MockController:
            MockController.return_value.pause_session = AsyncMock(
                return_value=SessionResult.failed(
                    "No active tracker", SessionFailureReason.NO_TRACKER
                )
            )

            with pytest.raises(HTTPException) as exc_info:
                await pause_session(uuid4(), user=teacher, db=db_session, ledger=mock_ledger)

        assert exc_info.value.status_code == 409


class TestReadRoutes:
    @pytest.mark.asyncio
    async def test_stranger_gets_403(self, db_session: AsyncMock, student: CurrentUser):
        from app.api.session_routes import get_session

        with patch("app.api.session_routes.SessionLifecycleController") as MockController:
            MockController.return_value.get_session = AsyncMock(
                side_effect=SessionOwnershipError("s", "u")
            )

            with pytest.raises(HTTPException) as exc_info:
                await get_session(uuid4(), user=student, db=db_session)

        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_session_is_404(self, db_session: AsyncMock, student: CurrentUser):
        from app.api.session_routes import get_session_duration

        with patch("app.api.session_routes.SessionLifecycleController") as MockController:
            MockController.return_value.get_session = AsyncMock(
                side_effect=SessionNotFoundError("s")
            )

            with pytest.raises(HTTPException) as exc_info:
                await get_session_duration(uuid4(), user=student, db=db_session)

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_duration_display(self, db_session: AsyncMock, student: CurrentUser):
        from app.api.session_routes import get_session_duration

        with patch("app.api.session_routes.SessionLifecycleController") as MockController:
            MockController.return_value.get_session = AsyncMock(return_value=make_session_data())
            MockController.return_value.get_current_duration = AsyncMock(
                return_value=SessionDuration(
                    total_seconds=3700,
                    active_seconds=3600,
                    paused_seconds=100,
                    is_active=True,
                    completion_unlocked=True,
                )
            )
            response = await get_session_duration(uuid4(), user=student, db=db_session)

        assert response.active_seconds == 3600
        assert response.completion_unlocked is True
        assert response.display == "01:00:00"

    @pytest.mark.asyncio
    async def test_teacher_session_stats(self, db_session: AsyncMock, teacher: CurrentUser):
        from app.api.session_routes import get_teacher_session_stats

        with patch("app.api.session_routes.SessionLifecycleController") as MockController:
            MockController.return_value.get_teacher_session_stats = AsyncMock(
                return_value=TeacherSessionStats(total_sessions=2, total_hours=2.5)
            )
            response = await get_teacher_session_stats(
                start=None, end=None, user=teacher, db=db_session
            )

        assert response.total_sessions == 2
        assert response.total_hours == 2.5


class TestSessionRouteWiring:
    def test_student_cannot_start_session(
        self, client: TestClient, override_db: AsyncMock, as_user, student: CurrentUser
    ):
        as_user(student)

        response = client.post(
            f"/api/sessions/{uuid4()}/start", json={"student_id": str(uuid4())}
        )

        assert response.status_code == 403

    def test_admin_may_cancel(
        self, client: TestClient, override_db: AsyncMock, as_user, admin: CurrentUser
    ):
        as_user(admin)
        session = make_session_data(status=SessionStatus.CANCELLED)

        with patch("app.api.session_routes.SessionLifecycleController") as MockController:
            MockController.return_value.cancel_session = AsyncMock(
                return_value=SessionResult(success=True, session=session, refunded_tokens=10)
            )
            response = client.post(f"/api/sessions/{session.session_id}/cancel", json={})

        assert response.status_code == 200
        assert response.json()["refunded_tokens"] == 10
