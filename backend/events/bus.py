"""Async event bus for pipeline pub/sub communication.

Components publish ``PipelineEvent`` objects; WebSocket handlers subscribe per
session. Events published before the first subscriber connects are buffered,
and a bounded history is kept for replay on reconnect.
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import EventType, PipelineEvent

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus keyed by session id.

    Subscriber registration is guarded by a threading.Lock; delivery happens
    through per-subscriber ``asyncio.Queue`` objects.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("sess_abc123def456")
        >>> await bus.publish(PipelineEvent(
        ...     type=EventType.EVALUATION_STARTED,
        ...     session_id="sess_abc123def456",
        ... ))
        >>> event = await queue.get()
        >>> await bus.close_session("sess_abc123def456")
    """

    # Maximum number of events to retain per session for replay on reconnect.
    MAX_HISTORY_PER_SESSION = 2000

    # Seconds to wait on a stalled subscriber before dropping the event for it.
    DELIVERY_TIMEOUT_SECONDS = 5.0

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[PipelineEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[PipelineEvent]] = defaultdict(list)
        self._event_history: dict[str, list[PipelineEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(self, session_id: str) -> asyncio.Queue[PipelineEvent]:
        """Register a new subscriber queue, flushing any buffered events into it."""
        queue: asyncio.Queue[PipelineEvent] = asyncio.Queue()

        with self._lock:
            self._subscribers[session_id].append(queue)
            subscriber_count = len(self._subscribers[session_id])
            buffered_events = self._event_buffer.pop(session_id, [])

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            session_id=session_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue[PipelineEvent]) -> None:
        """Remove a subscriber queue. Unknown queues are ignored."""
        with self._lock:
            queues = self._subscribers.get(session_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", session_id=session_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[session_id]
            remaining = len(queues)

        logger.info("subscriber_removed", session_id=session_id, subscriber_count=remaining)

    async def publish(self, event: PipelineEvent) -> None:
        """Deliver an event to every subscriber of its session.

        With no subscribers the event is buffered. Every event except the
        close sentinel is also recorded in the session history.
        """
        with self._lock:
            if event.type != EventType.SESSION_CLOSED:
                history = self._event_history[event.session_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_SESSION:
                    del history[: len(history) - self.MAX_HISTORY_PER_SESSION]

            subscribers = list(self._subscribers.get(event.session_id, []))
            if not subscribers:
                self._event_buffer[event.session_id].append(event)
                return

        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=self.DELIVERY_TIMEOUT_SECONDS)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    session_id=event.session_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            session_id=event.session_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    async def emit(
        self,
        event_type: EventType,
        session_id: str,
        source: str | None = None,
        **data: object,
    ) -> None:
        """Shorthand for publishing an event built from keyword data."""
        await self.publish(
            PipelineEvent(type=event_type, session_id=session_id, source=source, data=data)
        )

    def get_event_history(self, session_id: str) -> list[PipelineEvent]:
        with self._lock:
            return list(self._event_history.get(session_id, []))

    async def close_session(self, session_id: str) -> None:
        """Signal subscribers that the session stream has ended.

        Each subscriber receives a SESSION_CLOSED sentinel. Buffered events are
        dropped; history is kept for replay.
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(session_id, [])
            buffer_count = len(self._event_buffer.pop(session_id, []))

        for queue in queues_to_signal:
            await queue.put(
                PipelineEvent(
                    type=EventType.SESSION_CLOSED,
                    session_id=session_id,
                    data={"reason": "session_closed"},
                )
            )

        logger.info(
            "session_stream_closed",
            session_id=session_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=buffer_count,
        )

    def get_subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(session_id, []))

    def clear_event_history(self, session_id: str) -> None:
        with self._lock:
            self._event_history.pop(session_id, None)


_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Return the process-wide event bus, creating it on first use."""
    global _event_bus
    with _bus_lock:
        if _event_bus is None:
            _event_bus = EventBus()
        return _event_bus


def reset_event_bus() -> None:
    """Drop the process-wide event bus (used by tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
