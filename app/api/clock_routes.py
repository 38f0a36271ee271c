"""
Session Clock Stream - Live elapsed time over a websocket.

The stream sends one SessionClockFrame per tick, recomputed from the stored
tracker, and closes after the frame that shows the session completed or
cancelled. Connect with ?token=<bearer JWT>.
"""

import asyncio
from uuid import UUID

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import get_user_from_websocket
from app.config import settings
from app.db.session import get_read_db
from app.exceptions import (
    AuthenticationError,
    BillingError,
    SessionNotFoundError,
    SessionOwnershipError,
)
from app.models.api import SessionClockFrame, SessionStatus
from app.observability.metrics import metrics
from app.services.pricing import format_duration
from app.services.sessions import SessionLifecycleController
from app.services.time_tracker import SessionTicker

logger = get_logger(__name__)

router = APIRouter()

TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.CANCELLED, SessionStatus.NO_SHOW}
)

# Close codes: 4xxx mirror the HTTP status of the refusal
CLOSE_UNAUTHORIZED = 4401
CLOSE_FORBIDDEN = 4403
CLOSE_NOT_FOUND = 4404
CLOSE_INTERNAL_ERROR = 1011


@router.websocket("/ws/sessions/{session_id}/clock")
async def session_clock(
    websocket: WebSocket,
    session_id: UUID,
    db: AsyncSession = Depends(get_read_db),
) -> None:
    await websocket.accept()

    try:
        user = get_user_from_websocket(websocket)
    except AuthenticationError:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return

    controller = SessionLifecycleController(db)
    try:
        await controller.get_session(user, session_id)
    except SessionNotFoundError:
        await websocket.close(code=CLOSE_NOT_FOUND)
        return
    except SessionOwnershipError:
        await websocket.close(code=CLOSE_FORBIDDEN)
        return

    frames: asyncio.Queue[SessionClockFrame | None] = asyncio.Queue()

    async def tick() -> None:
        try:
            # End the previous read transaction so lifecycle commits are visible
            await db.rollback()
            session = await controller.get_session(user, session_id)
        except (BillingError, SQLAlchemyError) as exc:
            logger.warning(
                "session_clock_read_failed", session_id=str(session_id), error=str(exc)
            )
            await frames.put(None)
            return

        duration = await controller.get_current_duration(session_id)
        await frames.put(
            SessionClockFrame(
                session_id=session_id,
                status=session.status,
                active_seconds=duration.active_seconds,
                paused_seconds=duration.paused_seconds,
                total_seconds=duration.total_seconds,
                is_active=duration.is_active,
                completion_unlocked=duration.completion_unlocked,
                display=format_duration(duration.active_seconds),
                final=session.status in TERMINAL_STATUSES,
            )
        )

    async def tick_failed(exc: Exception) -> None:
        await frames.put(None)

    metrics.live_clock_streams.inc()
    logger.info("session_clock_opened", session_id=str(session_id), user_id=str(user.user_id))
    try:
        async with SessionTicker(
            tick, settings.session_clock_interval_seconds, on_error=tick_failed
        ):
            while True:
                frame = await frames.get()
                if frame is None:
                    await websocket.close(code=CLOSE_INTERNAL_ERROR)
                    return
                await websocket.send_json(frame.model_dump(mode="json"))
                if frame.final:
                    await websocket.close()
                    return
    except WebSocketDisconnect:
        logger.info("session_clock_disconnected", session_id=str(session_id))
    finally:
        metrics.live_clock_streams.dec()
