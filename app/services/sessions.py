"""
Session Lifecycle Controller - Start, pause, resume, complete and cancel class sessions.

NO DICTIONARIES - All operations return strongly typed SessionResult values.

Lifecycle operations never raise BillingError to the caller. Typed errors
from the ledger and the tracker are logged with their cause and converted
into a failed SessionResult with a short user-facing message. Billing
duration is always recomputed from the stored tracker row.

    scheduled --start--> in_progress --pause--> paused --resume--> in_progress
    in_progress|paused --complete--> completed
    scheduled|in_progress|paused --cancel--> cancelled
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import ClassSession, SessionTimeTracker, Wallet
from app.exceptions import (
    BillingError,
    DataIntegrityError,
    InsufficientTokensError,
    InvalidSessionStateError,
    SessionNotFoundError,
    SessionOwnershipError,
    TrackerNotFoundError,
    WriteVerificationError,
)
from app.models.api import SessionFailureReason, SessionStatus
from app.models.domain import (
    ClassSessionData,
    CurrentUser,
    SessionDuration,
    SessionResult,
    TeacherSessionStats,
    TrackerData,
)
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.ledger import SqlTokenLedger, TokenLedger, session_to_domain
from app.services.pricing import CLASS_TOKENS_REQUIRED
from app.services.time_tracker import SessionClock, utc_now

logger = get_logger(__name__)

DEFAULT_SESSION_LENGTH = timedelta(hours=1)

_PAST_TENSE = {
    "start": "started",
    "pause": "paused",
    "resume": "resumed",
    "complete": "completed",
    "cancel": "cancelled",
}


def tracker_to_domain(tracker: SessionTimeTracker) -> TrackerData:
    """Convert ORM tracker to domain model."""
    return TrackerData(
        tracker_id=tracker.id,
        session_id=tracker.session_id,
        start_time=tracker.start_time,
        pause_time=tracker.pause_time,
        resume_time=tracker.resume_time,
        total_paused_seconds=tracker.total_paused_seconds,
        total_active_seconds=tracker.total_active_seconds,
        is_active=tracker.is_active,
        created_at=tracker.created_at,
    )


def failure_for(operation: str, exc: Exception) -> SessionResult:
    """Map an internal error to the message and reason shown to the user."""
    if isinstance(exc, InsufficientTokensError):
        return SessionResult.failed(
            "Student has insufficient tokens", SessionFailureReason.INSUFFICIENT_TOKENS
        )
    if isinstance(exc, SessionNotFoundError):
        return SessionResult.failed("Session not found", SessionFailureReason.NOT_FOUND)
    if isinstance(exc, SessionOwnershipError):
        return SessionResult.failed("Session not found", SessionFailureReason.FORBIDDEN)
    if isinstance(exc, InvalidSessionStateError):
        return SessionResult.failed(
            f"Session cannot be {_PAST_TENSE.get(operation, operation)}",
            SessionFailureReason.INVALID_STATE,
        )
    if isinstance(exc, TrackerNotFoundError):
        message = "No paused session found" if operation == "resume" else "No active session found"
        return SessionResult.failed(message, SessionFailureReason.NO_TRACKER)
    return SessionResult.failed(f"Failed to {operation} session")


class SessionLifecycleController:
    """
    Drives class sessions through their lifecycle.

    Balance effects are delegated to the TokenLedger; this class owns the
    session row bootstrap, the time tracker row and ownership checks.
    """

    def __init__(
        self,
        session: AsyncSession,
        ledger: TokenLedger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session = session
        self.ledger = ledger or SqlTokenLedger(session)
        self.clock = clock

    # ========================================================================
    # Lifecycle Operations
    # ========================================================================

    async def start_session(
        self,
        user: CurrentUser,
        session_id: UUID,
        student_id: UUID,
        class_id: UUID | None = None,
        meeting_id: str | None = None,
        title: str | None = None,
    ) -> SessionResult:
        """
        Start a scheduled session and begin time tracking.

        The session row is created on first start by its teacher;
        admins can only start sessions that already exist. A session with a
        meeting_id charges the student tokens_charged; the student's balance
        is checked before the ledger is called.
        """

        async def action() -> SessionResult:
            now = self.clock()
            row = await self._find_session(session_id)
            if row is None:
                if user.is_admin:
                    # A new row takes the caller as its teacher
                    raise SessionNotFoundError(session_id)
                row = ClassSession(
                    id=session_id,
                    teacher_id=user.user_id,
                    student_id=student_id,
                    class_id=class_id,
                    title=title,
                    meeting_id=meeting_id,
                    status=SessionStatus.SCHEDULED.value,
                    scheduled_start=now,
                    scheduled_end=now + DEFAULT_SESSION_LENGTH,
                    tokens_charged=CLASS_TOKENS_REQUIRED,
                )
                self.session.add(row)
                await self.session.flush()
            else:
                self._ensure_owner(row, user)

            if row.status != SessionStatus.SCHEDULED.value:
                raise InvalidSessionStateError(session_id, row.status, "start")

            if row.meeting_id and row.tokens_deducted_at is None:
                balance = await self._student_balance(row.student_id)
                if balance < row.tokens_charged:
                    raise InsufficientTokensError(balance, row.tokens_charged)

            tracker = SessionTimeTracker(
                session_id=session_id,
                start_time=now,
                total_paused_seconds=0,
                total_active_seconds=0,
                is_active=True,
            )
            self.session.add(tracker)
            await self.session.flush()

            verified_tracker = await self.session.get(SessionTimeTracker, tracker.id)
            if verified_tracker is None:
                raise WriteVerificationError(f"Tracker {tracker.id} not found after insert")

            session_data = await self.ledger.start_class_session(session_id, now)

            logger.info(
                "session_started",
                session_id=str(session_id),
                teacher_id=str(session_data.teacher_id),
                student_id=str(session_data.student_id),
                charged=session_data.tokens_deducted_at is not None,
            )
            return SessionResult(
                success=True, session=session_data, tracker=tracker_to_domain(verified_tracker)
            )

        return await self._guarded("start", session_id, action)

    async def pause_session(self, user: CurrentUser, session_id: UUID) -> SessionResult:
        """Freeze active time. No balance effect."""

        async def action() -> SessionResult:
            now = self.clock()
            row = await self._get_owned_session(session_id, user)
            if row.status != SessionStatus.IN_PROGRESS.value:
                raise InvalidSessionStateError(session_id, row.status, "pause")

            tracker = await self._lock_tracker_for_update(session_id)
            if tracker is None or not tracker.is_active:
                raise TrackerNotFoundError(session_id)

            clock = self._clock_for(tracker)
            clock.pause(now)
            self._write_clock(tracker, clock)
            row.status = SessionStatus.PAUSED.value
            await self.session.flush()

            verified = await self._verify_tracker(tracker, expect_active=False)
            await self.session.commit()

            logger.info(
                "session_paused",
                session_id=str(session_id),
                active_seconds=verified.total_active_seconds,
            )
            return SessionResult(
                success=True, session=session_to_domain(row), tracker=tracker_to_domain(verified)
            )

        return await self._guarded("pause", session_id, action)

    async def resume_session(self, user: CurrentUser, session_id: UUID) -> SessionResult:
        """Accumulate the pause and restart active time."""

        async def action() -> SessionResult:
            now = self.clock()
            row = await self._get_owned_session(session_id, user)
            if row.status != SessionStatus.PAUSED.value:
                raise InvalidSessionStateError(session_id, row.status, "resume")

            tracker = await self._lock_tracker_for_update(session_id)
            if tracker is None or tracker.is_active or tracker.pause_time is None:
                raise TrackerNotFoundError(session_id)

            clock = self._clock_for(tracker)
            clock.resume(now)
            self._write_clock(tracker, clock)
            row.status = SessionStatus.IN_PROGRESS.value
            await self.session.flush()

            verified = await self._verify_tracker(tracker, expect_active=True)
            await self.session.commit()

            logger.info(
                "session_resumed",
                session_id=str(session_id),
                paused_seconds=verified.total_paused_seconds,
            )
            return SessionResult(
                success=True, session=session_to_domain(row), tracker=tracker_to_domain(verified)
            )

        return await self._guarded("resume", session_id, action)

    async def complete_session(
        self, user: CurrentUser, session_id: UUID, notes: str | None = None
    ) -> SessionResult:
        """
        Stop the tracker and settle the session.

        Completing an already completed session succeeds without writing.
        Sessions below the one-hour threshold complete with no teacher credit.
        """

        async def action() -> SessionResult:
            now = self.clock()
            row = await self._get_owned_session(session_id, user)

            if row.status == SessionStatus.COMPLETED.value:
                logger.info("session_already_completed", session_id=str(session_id))
                return SessionResult(success=True, session=session_to_domain(row))

            if row.status not in (SessionStatus.IN_PROGRESS.value, SessionStatus.PAUSED.value):
                raise InvalidSessionStateError(session_id, row.status, "complete")

            tracker = await self._lock_tracker_for_update(session_id)
            if tracker is None:
                raise TrackerNotFoundError(session_id)

            clock = self._clock_for(tracker)
            active_seconds = clock.stop(now)
            self._write_clock(tracker, clock)
            await self.session.flush()

            outcome = await self.ledger.complete_class_session(
                session_id, active_seconds, notes, now
            )
            metrics.record_session_completed(active_seconds)

            logger.info(
                "session_completed",
                session_id=str(session_id),
                active_seconds=active_seconds,
                duration_minutes=outcome.session.duration_minutes,
                deducted_tokens=outcome.deducted_tokens,
                credited_tokens=outcome.credited_tokens,
                already_credited=outcome.already_credited,
            )
            return SessionResult(
                success=True,
                session=outcome.session,
                tracker=tracker_to_domain(tracker),
                credited_tokens=outcome.credited_tokens,
            )

        return await self._guarded("complete", session_id, action)

    async def cancel_session(
        self, user: CurrentUser, session_id: UUID, reason: str | None = None
    ) -> SessionResult:
        """Cancel a session. A deducted charge is refunded exactly once."""

        async def action() -> SessionResult:
            now = self.clock()
            row = await self._get_owned_session(session_id, user)
            if row.status not in (
                SessionStatus.SCHEDULED.value,
                SessionStatus.IN_PROGRESS.value,
                SessionStatus.PAUSED.value,
            ):
                raise InvalidSessionStateError(session_id, row.status, "cancel")

            tracker = await self._lock_tracker_for_update(session_id)
            if tracker is not None and tracker.is_active:
                clock = self._clock_for(tracker)
                clock.stop(now)
                self._write_clock(tracker, clock)
                await self.session.flush()

            outcome = await self.ledger.cancel_class_session(session_id, reason, now)

            logger.info(
                "session_cancelled",
                session_id=str(session_id),
                refunded_tokens=outcome.refunded_tokens,
                reason=reason,
            )
            return SessionResult(
                success=True,
                session=outcome.session,
                tracker=tracker_to_domain(tracker) if tracker is not None else None,
                refunded_tokens=outcome.refunded_tokens,
            )

        return await self._guarded("cancel", session_id, action)

    # ========================================================================
    # Read Operations
    # ========================================================================

    async def get_session(self, user: CurrentUser, session_id: UUID) -> ClassSessionData:
        """
        Get a session visible to the user (its teacher, its student, or an admin).

        Raises:
            SessionNotFoundError: Session doesn't exist
            SessionOwnershipError: User is not a participant
        """
        row = await self._find_session(session_id)
        if row is None:
            raise SessionNotFoundError(session_id)
        if user.user_id not in (row.teacher_id, row.student_id) and not user.is_admin:
            raise SessionOwnershipError(session_id, user.user_id)
        return session_to_domain(row)

    async def get_current_duration(
        self, session_id: UUID, now: datetime | None = None
    ) -> SessionDuration:
        """Elapsed time from the stored tracker. All zeros when there is none."""
        empty = SessionDuration(
            total_seconds=0,
            active_seconds=0,
            paused_seconds=0,
            is_active=False,
            completion_unlocked=False,
        )
        try:
            tracker = await self._find_latest_tracker(session_id)
        except SQLAlchemyError as exc:
            logger.error("session_duration_failed", session_id=str(session_id), error=str(exc))
            return empty

        if tracker is None:
            return empty
        return self._clock_for(tracker).snapshot(now or self.clock())

    async def get_time_history(self, session_id: UUID) -> list[TrackerData]:
        """Tracker rows for a session, oldest first. Empty on failure."""
        stmt = (
            select(SessionTimeTracker)
            .where(SessionTimeTracker.session_id == session_id)
            .order_by(SessionTimeTracker.created_at.asc())
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("session_time_history_failed", session_id=str(session_id), error=str(exc))
            return []
        return [tracker_to_domain(row) for row in result.scalars().all()]

    async def get_teacher_sessions(
        self,
        teacher_id: UUID,
        limit: int = 50,
        offset: int = 0,
        status: SessionStatus | None = None,
    ) -> list[ClassSessionData]:
        """Teacher's sessions, newest first. Empty on failure."""
        stmt = (
            select(ClassSession)
            .where(ClassSession.teacher_id == teacher_id)
            .order_by(ClassSession.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        if status is not None:
            stmt = stmt.where(ClassSession.status == status.value)

        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("teacher_sessions_failed", teacher_id=str(teacher_id), error=str(exc))
            return []
        return [session_to_domain(row) for row in result.scalars().all()]

    async def get_teacher_session_stats(
        self,
        teacher_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> TeacherSessionStats:
        """
        Totals over a teacher's completed sessions, filtered on actual_start.

        Returns:
            Session count, hours taught, USD earned and mean length in minutes
        """
        stmt = select(ClassSession.duration_minutes, ClassSession.teacher_earning_usd).where(
            ClassSession.teacher_id == teacher_id,
            ClassSession.status == SessionStatus.COMPLETED.value,
        )
        if start is not None:
            stmt = stmt.where(ClassSession.actual_start >= start)
        if end is not None:
            stmt = stmt.where(ClassSession.actual_start <= end)

        try:
            result = await self.session.execute(stmt)
            rows = result.all()
        except SQLAlchemyError as exc:
            logger.error("teacher_session_stats_failed", teacher_id=str(teacher_id), error=str(exc))
            return TeacherSessionStats()

        total_sessions = len(rows)
        total_minutes = sum(minutes or 0 for minutes, _ in rows)
        total_earnings = sum((earned or Decimal("0") for _, earned in rows), Decimal("0"))
        return TeacherSessionStats(
            total_sessions=total_sessions,
            total_hours=total_minutes / 60,
            total_earnings=total_earnings,
            average_session_length=total_minutes / total_sessions if total_sessions else 0.0,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _guarded(
        self,
        operation: str,
        session_id: UUID,
        action: Callable[[], Awaitable[SessionResult]],
    ) -> SessionResult:
        """Run a lifecycle action, converting errors into a failed result."""
        with trace_operation(f"session.{operation}", session_id=str(session_id)) as span:
            try:
                result = await action()
            except (BillingError, SQLAlchemyError) as exc:
                await self.session.rollback()
                metrics.record_session_transition(operation, success=False)
                metrics.record_error(type(exc).__name__, f"session_{operation}")
                logger.warning(
                    "session_operation_failed",
                    operation=operation,
                    session_id=str(session_id),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                failure = failure_for(operation, exc)
                span.set_attribute("failure_reason", str(failure.reason.value))
                return failure

        metrics.record_session_transition(operation, success=True)
        return result

    def _ensure_owner(self, row: ClassSession, user: CurrentUser) -> None:
        if row.teacher_id != user.user_id and not user.is_admin:
            raise SessionOwnershipError(row.id, user.user_id)

    async def _get_owned_session(self, session_id: UUID, user: CurrentUser) -> ClassSession:
        row = await self._find_session(session_id)
        if row is None:
            raise SessionNotFoundError(session_id)
        self._ensure_owner(row, user)
        return row

    def _clock_for(self, tracker: SessionTimeTracker) -> SessionClock:
        return SessionClock.from_tracker(tracker_to_domain(tracker))

    def _write_clock(self, tracker: SessionTimeTracker, clock: SessionClock) -> None:
        tracker.start_time = clock.start_time
        tracker.total_active_seconds = clock.total_active_seconds
        tracker.total_paused_seconds = clock.total_paused_seconds
        tracker.pause_time = clock.pause_time
        tracker.resume_time = clock.resume_time
        tracker.is_active = clock.is_active

    async def _verify_tracker(
        self, tracker: SessionTimeTracker, expect_active: bool
    ) -> SessionTimeTracker:
        verified = await self.session.get(SessionTimeTracker, tracker.id)
        if verified is None:
            raise WriteVerificationError(f"Tracker {tracker.id} disappeared after update")
        if verified.is_active != expect_active:
            raise DataIntegrityError(
                f"Tracker active flag mismatch: expected {expect_active}, got {verified.is_active}"
            )
        return verified

    async def _student_balance(self, student_id: UUID) -> int:
        stmt = select(Wallet.balance).where(Wallet.user_id == student_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() or 0

    async def _find_session(self, session_id: UUID) -> ClassSession | None:
        """Find class session by id."""
        stmt = select(ClassSession).where(ClassSession.id == session_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_latest_tracker(self, session_id: UUID) -> SessionTimeTracker | None:
        stmt = (
            select(SessionTimeTracker)
            .where(SessionTimeTracker.session_id == session_id)
            .order_by(SessionTimeTracker.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_tracker_for_update(self, session_id: UUID) -> SessionTimeTracker | None:
        """Lock the session's latest tracker row (SELECT FOR UPDATE)."""
        stmt = (
            select(SessionTimeTracker)
            .where(SessionTimeTracker.session_id == session_id)
            .order_by(SessionTimeTracker.created_at.desc())
            .limit(1)
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
