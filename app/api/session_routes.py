"""
Session Routes - Class session lifecycle and teacher session reporting.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_current_user, get_ledger, require_role
from app.db.session import get_read_db, get_write_db
from app.exceptions import SessionNotFoundError, SessionOwnershipError
from app.models.api import (
    CancelSessionRequest,
    CompleteSessionRequest,
    SessionActionResponse,
    SessionDurationResponse,
    SessionFailureReason,
    SessionListResponse,
    SessionResponse,
    SessionStatus,
    StartSessionRequest,
    TeacherSessionStatsResponse,
    TimeHistoryResponse,
    TrackerResponse,
    UserRole,
)
from app.models.domain import ClassSessionData, CurrentUser, SessionResult, TrackerData
from app.services.ledger import TokenLedger
from app.services.pricing import format_duration
from app.services.sessions import SessionLifecycleController

router = APIRouter()

FAILURE_STATUS_CODES = {
    SessionFailureReason.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    SessionFailureReason.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    SessionFailureReason.INVALID_STATE: status.HTTP_409_CONFLICT,
    SessionFailureReason.INSUFFICIENT_TOKENS: status.HTTP_402_PAYMENT_REQUIRED,
    SessionFailureReason.NO_TRACKER: status.HTTP_409_CONFLICT,
    SessionFailureReason.UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def session_response(session: ClassSessionData) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        teacher_id=session.teacher_id,
        student_id=session.student_id,
        class_id=session.class_id,
        status=session.status,
        meeting_id=session.meeting_id,
        tokens_charged=session.tokens_charged,
        duration_minutes=session.duration_minutes,
        actual_start=_iso(session.actual_start),
        actual_end=_iso(session.actual_end),
        tokens_deducted_at=_iso(session.tokens_deducted_at),
        tokens_credited_at=_iso(session.tokens_credited_at),
        tokens_refunded_at=_iso(session.tokens_refunded_at),
        teacher_earning_usd=session.teacher_earning_usd,
    )


def tracker_response(tracker: TrackerData) -> TrackerResponse:
    return TrackerResponse(
        tracker_id=tracker.tracker_id,
        session_id=tracker.session_id,
        start_time=tracker.start_time.isoformat(),
        pause_time=_iso(tracker.pause_time),
        resume_time=_iso(tracker.resume_time),
        total_active_seconds=tracker.total_active_seconds,
        total_paused_seconds=tracker.total_paused_seconds,
        is_active=tracker.is_active,
    )


def action_response(result: SessionResult) -> SessionActionResponse:
    """Translate a lifecycle result, raising the matching HTTP error on failure."""
    if not result.success:
        reason = result.reason or SessionFailureReason.UNAVAILABLE
        raise HTTPException(status_code=FAILURE_STATUS_CODES[reason], detail=result.error)

    return SessionActionResponse(
        success=True,
        session=session_response(result.session) if result.session else None,
        tracker_id=result.tracker.tracker_id if result.tracker else None,
        credited_tokens=result.credited_tokens,
        refunded_tokens=result.refunded_tokens,
    )


async def _visible_session(
    controller: SessionLifecycleController, user: CurrentUser, session_id: UUID
) -> ClassSessionData:
    try:
        return await controller.get_session(user, session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Session not found"
        ) from exc
    except SessionOwnershipError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Session not found"
        ) from exc


# =============================================================================
# Lifecycle Endpoints
# =============================================================================


@router.post("/api/sessions/{session_id}/start", response_model=SessionActionResponse)
async def start_session(
    session_id: UUID,
    request: StartSessionRequest,
    user: CurrentUser = Depends(require_role(UserRole.TEACHER)),
    db: AsyncSession = Depends(get_write_db),
    ledger: TokenLedger = Depends(get_ledger),
) -> SessionActionResponse:
    """
    Start a session and its time tracker.

    Sessions with a meeting_id charge the student on start.
    """
    controller = SessionLifecycleController(db, ledger)
    result = await controller.start_session(
        user,
        session_id,
        student_id=request.student_id,
        class_id=request.class_id,
        meeting_id=request.meeting_id,
        title=request.title,
    )
    return action_response(result)


@router.post("/api/sessions/{session_id}/pause", response_model=SessionActionResponse)
async def pause_session(
    session_id: UUID,
    user: CurrentUser = Depends(require_role(UserRole.TEACHER)),
    db: AsyncSession = Depends(get_write_db),
    ledger: TokenLedger = Depends(get_ledger),
) -> SessionActionResponse:
    controller = SessionLifecycleController(db, ledger)
    return action_response(await controller.pause_session(user, session_id))


@router.post("/api/sessions/{session_id}/resume", response_model=SessionActionResponse)
async def resume_session(
    session_id: UUID,
    user: CurrentUser = Depends(require_role(UserRole.TEACHER)),
    db: AsyncSession = Depends(get_write_db),
    ledger: TokenLedger = Depends(get_ledger),
) -> SessionActionResponse:
    controller = SessionLifecycleController(db, ledger)
    return action_response(await controller.resume_session(user, session_id))


@router.post("/api/sessions/{session_id}/complete", response_model=SessionActionResponse)
async def complete_session(
    session_id: UUID,
    request: CompleteSessionRequest,
    user: CurrentUser = Depends(require_role(UserRole.TEACHER)),
    db: AsyncSession = Depends(get_write_db),
    ledger: TokenLedger = Depends(get_ledger),
) -> SessionActionResponse:
    """
    Complete a session. Duration is taken from the stored tracker.

    Repeating the call on a completed session succeeds without side effects.
    """
    controller = SessionLifecycleController(db, ledger)
    return action_response(await controller.complete_session(user, session_id, request.notes))


@router.post("/api/sessions/{session_id}/cancel", response_model=SessionActionResponse)
async def cancel_session(
    session_id: UUID,
    request: CancelSessionRequest,
    user: CurrentUser = Depends(require_role(UserRole.TEACHER)),
    db: AsyncSession = Depends(get_write_db),
    ledger: TokenLedger = Depends(get_ledger),
) -> SessionActionResponse:
    controller = SessionLifecycleController(db, ledger)
    return action_response(await controller.cancel_session(user, session_id, request.reason))


# =============================================================================
# Read Endpoints
# =============================================================================


@router.get("/api/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> SessionResponse:
    controller = SessionLifecycleController(db)
    return session_response(await _visible_session(controller, user, session_id))


@router.get("/api/sessions/{session_id}/duration", response_model=SessionDurationResponse)
async def get_session_duration(
    session_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> SessionDurationResponse:
    """Elapsed, active and paused seconds as of now."""
    controller = SessionLifecycleController(db)
    await _visible_session(controller, user, session_id)

    duration = await controller.get_current_duration(session_id)
    return SessionDurationResponse(
        total_seconds=duration.total_seconds,
        active_seconds=duration.active_seconds,
        paused_seconds=duration.paused_seconds,
        is_active=duration.is_active,
        completion_unlocked=duration.completion_unlocked,
        display=format_duration(duration.active_seconds),
    )


@router.get("/api/sessions/{session_id}/time-history", response_model=TimeHistoryResponse)
async def get_time_history(
    session_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> TimeHistoryResponse:
    controller = SessionLifecycleController(db)
    await _visible_session(controller, user, session_id)

    trackers = await controller.get_time_history(session_id)
    return TimeHistoryResponse(trackers=[tracker_response(t) for t in trackers])


@router.get("/api/teacher/sessions", response_model=SessionListResponse)
async def get_teacher_sessions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session_status: SessionStatus | None = Query(None, alias="status"),
    user: CurrentUser = Depends(require_role(UserRole.TEACHER)),
    db: AsyncSession = Depends(get_read_db),
) -> SessionListResponse:
    """Caller's sessions, newest first."""
    controller = SessionLifecycleController(db)
    sessions = await controller.get_teacher_sessions(
        user.user_id, limit=limit, offset=offset, status=session_status
    )
    return SessionListResponse(
        sessions=[session_response(s) for s in sessions],
        limit=limit,
        offset=offset,
    )


@router.get("/api/teacher/session-stats", response_model=TeacherSessionStatsResponse)
async def get_teacher_session_stats(
    start: datetime | None = None,
    end: datetime | None = None,
    user: CurrentUser = Depends(require_role(UserRole.TEACHER)),
    db: AsyncSession = Depends(get_read_db),
) -> TeacherSessionStatsResponse:
    """Totals over the caller's completed sessions, optionally within [start, end]."""
    controller = SessionLifecycleController(db)
    stats = await controller.get_teacher_session_stats(user.user_id, start, end)
    return TeacherSessionStatsResponse(
        total_sessions=stats.total_sessions,
        total_hours=stats.total_hours,
        total_earnings=stats.total_earnings,
        average_session_length=stats.average_session_length,
    )
