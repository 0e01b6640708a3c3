"""Shared test fixtures for backend tests.

Provides an isolated EventBus, an in-memory session store, LLM response
factories and in-memory fakes for the repository host, hosting platform,
design source and browser so that tests never touch the network, a real
browser or an LLM API.
"""

import json
import sys
from dataclasses import dataclass, field
from typing import Any

import pytest
from fastapi import FastAPI

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from agents.worker import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.utils import LLMResponse, MockLLMClient, ToolCallData  # noqa: E402
from api.errors import register_exception_handlers  # noqa: E402
from api.routes import router, set_session_manager  # noqa: E402
from api.webhooks import webhook_router  # noqa: E402
from api.websocket import websocket_router  # noqa: E402
from errors import UpstreamServiceError  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import LLMMetrics, PipelineEvent  # noqa: E402
from integrations.base import (  # noqa: E402
    CommitInfo,
    DesignPage,
    DomSummary,
    HostingDeployment,
    PageSnapshot,
    RepoFile,
    RepoHandle,
)
from models.repository import InMemorySessionRepository  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus / Store
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    return EventBus()


@pytest.fixture()
def repository() -> InMemorySessionRepository:
    return InMemorySessionRepository()


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_llm_response(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
    finish_reason: str = "stop",
) -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(
        content=content,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else finish_reason,
        metrics=LLMMetrics(model="mock", input_tokens=10, output_tokens=20, latency_ms=100),
    )


def make_tool_call(name: str, args: dict[str, Any], call_id: str = "tc_1") -> ToolCallData:
    """Create a ToolCallData."""
    return ToolCallData(id=call_id, name=name, args=args)


def make_publish_call(
    project_name: str = "landing-page",
    files: list[dict[str, str]] | None = None,
    call_id: str = "tc_publish",
) -> ToolCallData:
    return make_tool_call(
        "publish_artifact",
        {
            "project_name": project_name,
            "files": files or [{"path": "index.html", "content": "<h1>Hello</h1>"}],
        },
        call_id=call_id,
    )


def evaluation_json(
    score: int,
    improvements: list[str] | None = None,
    overall: str = "Close to the design.",
) -> str:
    """Model output that satisfies the evaluation contract."""
    return json.dumps({
        "score": score,
        "categories": {
            "designAccuracy": {"score": min(40, score * 40 // 100), "maxScore": 40, "comment": "ok"},
            "functionality": {"score": min(30, score * 30 // 100), "maxScore": 30, "comment": "ok"},
        },
        "overallFeedback": overall,
        "improvements": improvements if improvements is not None else [],
    })


def make_mock_llm(*responses: LLMResponse | str) -> MockLLMClient:
    """MockLLMClient from responses; plain strings become text responses."""
    return MockLLMClient(
        responses=[
            make_llm_response(content=r) if isinstance(r, str) else r for r in responses
        ],
        retry_delay=0,
    )


# ---------------------------------------------------------------------------
# Event Collection Helper
# ---------------------------------------------------------------------------


async def collect_events(event_bus: EventBus, session_id: str) -> list[PipelineEvent]:
    """Subscribe to a session and drain all buffered events."""
    queue = event_bus.subscribe(session_id)
    events: list[PipelineEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


@dataclass
class FakeArtifactRepository:
    """In-memory repository host."""

    owner: str = "acme"
    repos: dict[str, dict[str, str]] = field(default_factory=dict)
    commits: dict[str, CommitInfo] = field(default_factory=dict)
    fail_put: bool = False

    async def create_or_reuse(
        self, project_name: str, description: str | None, existing: str | None
    ) -> RepoHandle:
        full_name = existing or f"{self.owner}/{project_name}"
        created = full_name not in self.repos
        self.repos.setdefault(full_name, {})
        return RepoHandle(
            full_name=full_name,
            html_url=f"https://github.com/{full_name}",
            created=created,
        )

    async def put_files(self, full_name: str, files: list[RepoFile]) -> int:
        if self.fail_put:
            raise UpstreamServiceError("GitHub API error 502", service="github")
        repo = self.repos.setdefault(full_name, {})
        for f in files:
            repo[f.path] = f.content
        self.commits[full_name] = CommitInfo(sha=f"sha{len(repo)}", message="Update files")
        return len(files)

    async def latest_commit(self, full_name: str) -> CommitInfo | None:
        return self.commits.get(full_name)


@dataclass
class FakeHosting:
    deployments: dict[str, HostingDeployment] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)

    async def latest_deployment(self, project_name: str) -> HostingDeployment | None:
        self.calls.append(project_name)
        return self.deployments.get(project_name)


@dataclass
class FakeDesignSource:
    pages: list[DesignPage] = field(default_factory=list)
    image: bytes | None = b"design-png"
    page_images: dict[str, bytes | None] = field(default_factory=dict)

    async def reference_image(self, design_ref: str) -> bytes | None:
        return self.image

    async def list_pages(self, design_ref: str) -> list[DesignPage]:
        return list(self.pages)

    async def page_image(self, design_ref: str, page_id: str) -> bytes | None:
        return self.page_images.get(page_id, b"page-png")


@dataclass
class FakeBrowser:
    captured: list[str] = field(default_factory=list)
    error: Exception | None = None

    async def capture(self, url: str) -> PageSnapshot:
        self.captured.append(url)
        if self.error is not None:
            raise self.error
        return PageSnapshot(
            screenshot_png=b"screenshot-png",
            dom=DomSummary(title="Landing", url=url, button_count=2, body_text="Hello"),
        )


def build_test_app(manager: Any) -> FastAPI:
    """FastAPI app with every router and the error handlers bound to ``manager``."""
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(webhook_router)
    app.include_router(websocket_router)
    set_session_manager(manager)
    return app


@pytest.fixture()
def artifact_repo() -> FakeArtifactRepository:
    return FakeArtifactRepository()


@pytest.fixture()
def hosting() -> FakeHosting:
    return FakeHosting()


@pytest.fixture()
def design_source() -> FakeDesignSource:
    return FakeDesignSource()


@pytest.fixture()
def browser() -> FakeBrowser:
    return FakeBrowser()
