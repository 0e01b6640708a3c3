"""Tests for agents/supervisor.py -- evaluation parsing and the evaluator.

parse_evaluation is tested directly against the output shapes models
actually produce. SupervisorEvaluator runs against FakeBrowser,
FakeDesignSource and a MockLLMClient.
"""

from unittest.mock import AsyncMock, patch

import pytest
from litellm.exceptions import InternalServerError

from agents.supervisor import SupervisorEvaluator, failed_evaluation, parse_evaluation
from agents.utils import LLMClient
from errors import UpstreamServiceError
from events.bus import EventBus
from events.types import EventType
from models.repository import InMemorySessionRepository
from tests.conftest import (
    FakeBrowser,
    FakeDesignSource,
    collect_events,
    evaluation_json,
    make_mock_llm,
)

URL = "https://landing-page.vercel.app"
DESIGN = "https://www.figma.com/file/KEY123/Landing"


# =========================================================================
# parse_evaluation
# =========================================================================


class TestParseEvaluation:
    def test_bare_json(self) -> None:
        result = parse_evaluation(evaluation_json(85, ["Fix spacing"]), URL)
        assert result.score == 85
        assert result.completed is False
        assert result.improvements == ["Fix spacing"]
        assert result.categories["designAccuracy"].max_score == 40
        assert result.deployment_url == URL
        assert result.parse_failed is False

    def test_fenced_json_in_prose(self) -> None:
        raw = "Here is my verdict:\n```json\n" + evaluation_json(93) + "\n```\nThanks."
        result = parse_evaluation(raw)
        assert result.score == 93
        assert result.completed is True
        assert result.raw_text == raw

    def test_completion_flag_in_output_is_ignored(self) -> None:
        raw = '{"score": 40, "isCompleted": true, "completed": true, "improvements": ["x"]}'
        assert parse_evaluation(raw).completed is False

    def test_score_clamped_and_rounded(self) -> None:
        assert parse_evaluation('{"score": 150}').score == 100
        assert parse_evaluation('{"score": -3}').score == 0
        assert parse_evaluation('{"score": "89.6"}').score == 90

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "I could not evaluate this page.",
            '{"improvements": ["no score here"]}',
            '{"score": "high"}',
            '{"score": true}',
            '{"score": 1e999, "improvements": []}',
            '{"score": Infinity}',
            '{"score": "1e400"}',
            '{"score": NaN}',
        ],
    )
    def test_malformed_output_is_failed_result(self, raw: str) -> None:
        result = parse_evaluation(raw, URL)
        assert result.score == 0
        assert result.parse_failed is True
        assert result.completed is False
        assert result.improvements == []
        assert result.raw_text == raw

    def test_scalar_improvements_become_list(self) -> None:
        result = parse_evaluation('{"score": 50, "improvements": "Fix the footer"}')
        assert result.improvements == ["Fix the footer"]

    def test_failed_evaluation_helper(self) -> None:
        result = failed_evaluation("boom", URL)
        assert (result.score, result.parse_failed, result.deployment_url) == (0, True, URL)


# =========================================================================
# SupervisorEvaluator
# =========================================================================


def _make_evaluator(
    event_bus: EventBus,
    repository: InMemorySessionRepository,
    *responses: str,
    browser: FakeBrowser | None = None,
    design_source: FakeDesignSource | None = None,
    feedback_loop: AsyncMock | None = None,
):
    llm = make_mock_llm(*responses)
    evaluator = SupervisorEvaluator(
        repository,
        event_bus,
        llm,
        browser or FakeBrowser(),
        design_source=design_source,
        feedback_loop=feedback_loop,
    )
    return evaluator, llm


def _image_count(llm_call: dict) -> int:
    user = llm_call["messages"][-1]
    return sum(1 for part in user["content"] if part["type"] == "image_url")


class TestSupervisorEvaluator:
    async def test_result_persisted_and_forwarded(
        self, event_bus: EventBus, repository: InMemorySessionRepository
    ) -> None:
        session = repository.create(design_ref=DESIGN)
        feedback = AsyncMock()
        feedback.process = AsyncMock(return_value=True)
        evaluator, _ = _make_evaluator(
            event_bus, repository, evaluation_json(72, ["Match the hero font"]),
            feedback_loop=feedback,
        )

        result = await evaluator.evaluate(session.id, URL)

        assert result.score == 72
        stored = repository.get(session.id)
        assert stored.last_evaluation is not None
        assert stored.last_evaluation.score == 72
        assert stored.evaluated_urls == [URL]
        feedback.process.assert_awaited_once_with(session.id, result)

    async def test_screenshot_and_design_image_sent(
        self,
        event_bus: EventBus,
        repository: InMemorySessionRepository,
        browser: FakeBrowser,
        design_source: FakeDesignSource,
    ) -> None:
        session = repository.create(design_ref=DESIGN)
        evaluator, llm = _make_evaluator(
            event_bus, repository, evaluation_json(95),
            browser=browser, design_source=design_source,
        )

        await evaluator.evaluate(session.id, URL)

        assert browser.captured == [URL]
        assert _image_count(llm.call_history[0]) == 2
        assert llm.call_history[0]["temperature"] == 0.0

    async def test_design_image_failure_is_tolerated(
        self, event_bus: EventBus, repository: InMemorySessionRepository
    ) -> None:
        session = repository.create(design_ref=DESIGN)
        design_source = FakeDesignSource()
        design_source.reference_image = AsyncMock(  # type: ignore[method-assign]
            side_effect=UpstreamServiceError("Figma API error 403", service="figma")
        )
        evaluator, llm = _make_evaluator(
            event_bus, repository, evaluation_json(60, ["x"]), design_source=design_source
        )

        result = await evaluator.evaluate(session.id, URL)

        assert result.score == 60
        assert _image_count(llm.call_history[0]) == 1

    async def test_malformed_output_persisted_without_raising(
        self, event_bus: EventBus, repository: InMemorySessionRepository
    ) -> None:
        session = repository.create(design_ref=DESIGN)
        evaluator, _ = _make_evaluator(event_bus, repository, "Looks great to me!")

        result = await evaluator.evaluate(session.id, URL)

        assert result.parse_failed is True
        stored = repository.get(session.id).last_evaluation
        assert stored is not None
        assert stored.score == 0
        assert stored.raw_text == "Looks great to me!"

    async def test_capture_failure_recorded(
        self, event_bus: EventBus, repository: InMemorySessionRepository
    ) -> None:
        session = repository.create(design_ref=DESIGN)
        browser = FakeBrowser(error=UpstreamServiceError("Capture failed", service="browser"))
        evaluator, llm = _make_evaluator(event_bus, repository, browser=browser)

        result = await evaluator.evaluate(session.id, URL)

        assert result.score == 0
        assert result.parse_failed is True
        assert "Capture failed" in result.overall_feedback
        assert llm.call_history == []

        events = await collect_events(event_bus, session.id)
        types = [e.type for e in events]
        assert EventType.EVALUATION_FAILED in types
        assert types[-1] == EventType.EVALUATION_RESULT

    async def test_model_outage_recorded(
        self, event_bus: EventBus, repository: InMemorySessionRepository
    ) -> None:
        session = repository.create(design_ref=DESIGN)
        llm = LLMClient(event_bus=event_bus, default_model="gpt-4o", retry_attempts=1, retry_delay=0)
        evaluator = SupervisorEvaluator(repository, event_bus, llm, FakeBrowser())
        overloaded = AsyncMock(
            side_effect=InternalServerError(
                message="overloaded", llm_provider="anthropic", model="gpt-4o"
            )
        )

        with patch("agents.utils.acompletion", overloaded):
            result = await evaluator.evaluate(session.id, URL)

        assert result.score == 0
        assert result.parse_failed is True
        assert "overloaded" in result.overall_feedback
        stored = repository.get(session.id).last_evaluation
        assert stored is not None
        assert stored.score == 0

    async def test_capture_failure_raised_on_request(
        self, event_bus: EventBus, repository: InMemorySessionRepository
    ) -> None:
        session = repository.create(design_ref=DESIGN)
        browser = FakeBrowser(error=UpstreamServiceError("Capture failed", service="browser"))
        evaluator, _ = _make_evaluator(event_bus, repository, browser=browser)

        with pytest.raises(UpstreamServiceError):
            await evaluator.evaluate(session.id, URL, raise_on_failure=True)
        assert repository.get(session.id).last_evaluation is None

    async def test_events(
        self, event_bus: EventBus, repository: InMemorySessionRepository
    ) -> None:
        session = repository.create(design_ref=DESIGN)
        evaluator, _ = _make_evaluator(event_bus, repository, evaluation_json(91))

        await evaluator.evaluate(session.id, URL)

        events = await collect_events(event_bus, session.id)
        started = next(e for e in events if e.type == EventType.EVALUATION_STARTED)
        finished = next(e for e in events if e.type == EventType.EVALUATION_RESULT)
        assert started.data["design_ref"] == DESIGN
        assert finished.data["score"] == 91
        assert finished.data["completed"] is True
