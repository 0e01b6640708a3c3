"""Live pipeline event stream.

``/ws/{session_id}`` first replays the session's retained events, then
forwards new ones as they are published. Connections to unknown sessions
are closed with code 4404. Clients may send ``{"type": "ping"}`` to keep
the connection alive; the stream ends when the session is closed.
"""

import asyncio
import contextlib

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.routes import get_session_manager
from errors import NotFoundError
from events import EventType, PipelineEvent

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

UNKNOWN_SESSION_CLOSE_CODE = 4404


async def _forward_events(
    websocket: WebSocket,
    queue: "asyncio.Queue[PipelineEvent]",
    replayed_until: float,
) -> None:
    while True:
        event = await queue.get()
        # Already sent during replay.
        if event.type != EventType.SESSION_CLOSED and event.timestamp <= replayed_until:
            continue
        await websocket.send_json(event.model_dump(mode="json"))
        if event.type == EventType.SESSION_CLOSED:
            return


async def _answer_pings(websocket: WebSocket, session_id: str) -> None:
    while True:
        command = await websocket.receive_json()
        if isinstance(command, dict) and command.get("type") == "ping":
            await websocket.send_json({"type": "pong", "timestamp": command.get("timestamp")})
        else:
            logger.debug("websocket_command_ignored", session_id=session_id)


@websocket_router.websocket("/ws/{session_id}")
async def stream_session_events(websocket: WebSocket, session_id: str) -> None:
    await websocket.accept()
    manager = get_session_manager()
    try:
        manager.get_session(session_id)
    except NotFoundError:
        logger.info("websocket_unknown_session", session_id=session_id)
        await websocket.close(code=UNKNOWN_SESSION_CLOSE_CODE)
        return

    event_bus = manager.event_bus
    # Subscribing before the replay means nothing published in between is lost.
    queue = event_bus.subscribe(session_id)
    logger.info("websocket_connected", session_id=session_id)

    try:
        replayed_until = 0.0
        for event in event_bus.get_event_history(session_id):
            await websocket.send_json(event.model_dump(mode="json"))
            replayed_until = event.timestamp

        tasks = [
            asyncio.create_task(_forward_events(websocket, queue, replayed_until)),
            asyncio.create_task(_answer_pings(websocket, session_id)),
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.error("websocket_stream_error", session_id=session_id, error=str(error))
    except WebSocketDisconnect:
        logger.info("websocket_disconnected", session_id=session_id)
    finally:
        event_bus.unsubscribe(session_id, queue)
