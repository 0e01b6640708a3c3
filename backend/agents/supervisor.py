"""Supervisor: scores a live deployment against its design reference.

An evaluation captures the deployment (screenshot + DOM summary), fetches the
design image when one is available, asks the model for a structured verdict
and persists it. Model output that does not match the contract never raises
past this module: it becomes a zero-score result that keeps the raw text.
"""

import base64
import math
from typing import TYPE_CHECKING, Any

import structlog

from agents.prompts import SUPERVISOR_PROMPT, build_evaluation_request
from agents.utils import LLMClient, parse_json_output
from config import settings
from errors import ParseError, RelayError
from events.bus import EventBus
from events.types import EventType
from integrations.base import BrowserAutomation, DesignSource
from models.repository import SessionRepository
from models.session import CategoryScore, EvaluationResult, ImageBlock

if TYPE_CHECKING:
    from agents.feedback import FeedbackLoop

logger = structlog.get_logger()

# Category keys and their maximum points in the scoring contract.
CATEGORY_MAX_SCORES: dict[str, int] = {
    "designAccuracy": 40,
    "functionality": 30,
    "userExperience": 20,
    "codeQuality": 10,
}


def _coerce_score(value: Any) -> int:
    """Turn a model-provided score into an int within 0..100.

    Raises:
        ValueError: If the value is not a finite number.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Score is not numeric: {value!r}")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"Score is not finite: {value!r}")
    score = round(number)
    return max(0, min(100, score))


def _parse_categories(raw: Any) -> dict[str, CategoryScore]:
    if not isinstance(raw, dict):
        return {}
    categories: dict[str, CategoryScore] = {}
    for name, entry in raw.items():
        if not isinstance(entry, dict):
            continue
        try:
            score = float(entry.get("score") or 0)
            max_score = float(entry.get("maxScore") or CATEGORY_MAX_SCORES.get(name, 0))
        except (TypeError, ValueError):
            continue
        if not (math.isfinite(score) and math.isfinite(max_score)):
            continue
        notes = entry.get("comment") or entry.get("notes") or ""
        categories[str(name)] = CategoryScore(score=score, max_score=max_score, notes=str(notes))
    return categories


def failed_evaluation(
    raw_text: str, deployment_url: str | None = None
) -> EvaluationResult:
    """Zero-score result for output or runs that produced no usable verdict."""
    return EvaluationResult(
        score=0,
        overall_feedback=raw_text,
        improvements=[],
        raw_text=raw_text,
        parse_failed=True,
        deployment_url=deployment_url,
    )


def parse_evaluation(raw_text: str, deployment_url: str | None = None) -> EvaluationResult:
    """Parse the model's verdict defensively. Never raises.

    Accepts bare JSON, fenced JSON or a JSON object embedded in prose. Any
    other output, or an object without a numeric ``score``, yields
    ``failed_evaluation(raw_text)``. A ``completed``/``isCompleted`` flag
    in the output is ignored; completion is derived from the score.
    """
    raw_text = raw_text or ""
    try:
        data = parse_json_output(raw_text)
        score = _coerce_score(data.get("score"))
    except (ParseError, TypeError, ValueError) as e:
        logger.warning("evaluation_parse_failed", error=str(e), raw_preview=raw_text[:200])
        return failed_evaluation(raw_text, deployment_url)

    improvements = data.get("improvements") or []
    if not isinstance(improvements, list):
        improvements = [improvements]

    return EvaluationResult(
        score=score,
        categories=_parse_categories(data.get("categories")),
        overall_feedback=str(data.get("overallFeedback") or data.get("overall_feedback") or ""),
        improvements=[str(item) for item in improvements if str(item).strip()],
        raw_text=raw_text,
        deployment_url=deployment_url,
    )


class SupervisorEvaluator:
    """Evaluation controller.

    Attributes:
        repository: Session store the results are written to.
        event_bus: Receives EVALUATION_* events.
        llm_client: Model gateway used in vision mode.
        browser: Captures the live deployment.
        design_source: Optional source of the design reference image.
        feedback_loop: Receives every persisted result.
    """

    def __init__(
        self,
        repository: SessionRepository,
        event_bus: EventBus,
        llm_client: LLMClient,
        browser: BrowserAutomation,
        design_source: DesignSource | None = None,
        feedback_loop: "FeedbackLoop | None" = None,
        model: str | None = None,
    ) -> None:
        self.repository = repository
        self.event_bus = event_bus
        self.llm_client = llm_client
        self.browser = browser
        self.design_source = design_source
        self.feedback_loop = feedback_loop
        self.model = model or settings.supervisor_model

    async def evaluate(
        self,
        session_id: str,
        deployment_url: str,
        design_ref: str | None = None,
        raise_on_failure: bool = False,
    ) -> EvaluationResult:
        """Evaluate ``deployment_url`` for a session and persist the result.

        Args:
            session_id: Session being evaluated.
            deployment_url: Live URL to capture.
            design_ref: Design locator; defaults to the session's.
            raise_on_failure: Re-raise capture and model failures instead of
                recording them as a zero-score result.

        Raises:
            NotFoundError: If the session does not exist.
            UpstreamServiceError: Only when ``raise_on_failure`` is set.
        """
        session = self.repository.get(session_id)
        design_ref = design_ref or session.design_ref

        await self.event_bus.emit(
            EventType.EVALUATION_STARTED,
            session_id,
            source="supervisor",
            deployment_url=deployment_url,
            design_ref=design_ref,
        )
        logger.info(
            "evaluation_started",
            session_id=session_id,
            deployment_url=deployment_url,
            design_ref=design_ref,
        )

        try:
            raw_text = await self._run_model(session_id, deployment_url, design_ref)
        except RelayError as e:
            await self._emit_failure(session_id, deployment_url, e)
            if raise_on_failure:
                raise
            result = failed_evaluation(
                f"Evaluation of {deployment_url} failed: {e.message}", deployment_url
            )
        else:
            result = parse_evaluation(raw_text, deployment_url)

        self.repository.update_evaluation(session_id, result)
        await self.event_bus.emit(
            EventType.EVALUATION_RESULT,
            session_id,
            source="supervisor",
            score=result.score,
            completed=result.completed,
            improvements=result.improvements,
            parse_failed=result.parse_failed,
            deployment_url=deployment_url,
        )
        logger.info(
            "evaluation_complete",
            session_id=session_id,
            score=result.score,
            completed=result.completed,
            parse_failed=result.parse_failed,
        )

        if self.feedback_loop is not None:
            await self.feedback_loop.process(session_id, result)
        return result

    async def _run_model(
        self, session_id: str, deployment_url: str, design_ref: str | None
    ) -> str:
        snapshot = await self.browser.capture(deployment_url)
        images = [ImageBlock(data=base64.b64encode(snapshot.screenshot_png).decode("ascii"))]

        design_png = await self._design_image(session_id, design_ref)
        if design_png:
            images.append(ImageBlock(data=base64.b64encode(design_png).decode("ascii")))

        return await self.llm_client.generate_vision(
            SUPERVISOR_PROMPT,
            build_evaluation_request(
                deployment_url,
                design_ref,
                snapshot.dom.to_dict(),
                has_design_image=design_png is not None,
            ),
            images,
            model=self.model,
            max_tokens=settings.supervisor_max_tokens,
            session_id=session_id,
        )

    async def _design_image(self, session_id: str, design_ref: str | None) -> bytes | None:
        if self.design_source is None or not design_ref:
            return None
        try:
            return await self.design_source.reference_image(design_ref)
        except Exception as e:
            # Evaluation proceeds with the deployment screenshot alone.
            logger.warning(
                "design_image_unavailable",
                session_id=session_id,
                design_ref=design_ref,
                error=str(e),
            )
            return None

    async def _emit_failure(
        self, session_id: str, deployment_url: str, error: RelayError
    ) -> None:
        logger.error(
            "evaluation_failed",
            session_id=session_id,
            deployment_url=deployment_url,
            error_type=type(error).__name__,
            error=error.message,
        )
        await self.event_bus.emit(
            EventType.EVALUATION_FAILED,
            session_id,
            source="supervisor",
            deployment_url=deployment_url,
            error=error.message,
        )
