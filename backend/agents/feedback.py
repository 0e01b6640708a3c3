"""Feedback loop: turns an insufficient evaluation into the worker's next turn."""

import structlog

from agents.prompts import build_feedback_message
from agents.worker import WorkerAgent
from config import settings
from errors import RelayError
from events.bus import EventBus
from events.types import EventType
from models.repository import SessionRepository
from models.session import EvaluationResult

logger = structlog.get_logger()


def should_send_feedback(result: EvaluationResult) -> bool:
    """Feedback is due iff the work is not complete and there is something to fix."""
    return not result.completed and bool(result.improvements)


class FeedbackLoop:
    """Resubmits evaluations below the completion bar to the worker.

    ``max_cycles`` caps automatic feedback turns per session; 0 disables the cap.
    """

    def __init__(
        self,
        repository: SessionRepository,
        event_bus: EventBus,
        worker: WorkerAgent,
        max_cycles: int | None = None,
    ) -> None:
        self.repository = repository
        self.event_bus = event_bus
        self.worker = worker
        self.max_cycles = settings.max_feedback_cycles if max_cycles is None else max_cycles

    async def process(self, session_id: str, result: EvaluationResult) -> bool:
        """Send feedback for ``result`` if it is due.

        Returns:
            True if a feedback message was submitted to the worker.
        """
        if not should_send_feedback(result):
            reason = "completed" if result.completed else "no_improvements"
            await self._skip(session_id, result, reason)
            return False

        if self.max_cycles and self.repository.get(session_id).feedback_cycles >= self.max_cycles:
            await self._skip(session_id, result, "cycle_limit_reached")
            return False

        cycle = self.repository.record_feedback_cycle(session_id)
        message = build_feedback_message(result)
        await self.event_bus.emit(
            EventType.FEEDBACK_SENT,
            session_id,
            source="feedback",
            score=result.score,
            improvements=len(result.improvements),
            cycle=cycle,
        )
        logger.info("feedback_sent", session_id=session_id, score=result.score, cycle=cycle)

        try:
            await self.worker.run_turn(session_id, message)
        except RelayError as e:
            # The message is already in the history; the model call failed.
            logger.error(
                "feedback_turn_failed",
                session_id=session_id,
                error_type=type(e).__name__,
                error=e.message,
            )
            await self.event_bus.emit(
                EventType.TASK_ERROR,
                session_id,
                source="feedback",
                phase="feedback_turn",
                error=e.message,
            )
        return True

    async def _skip(self, session_id: str, result: EvaluationResult, reason: str) -> None:
        logger.info("feedback_skipped", session_id=session_id, score=result.score, reason=reason)
        await self.event_bus.emit(
            EventType.FEEDBACK_SKIPPED,
            session_id,
            source="feedback",
            score=result.score,
            reason=reason,
        )
