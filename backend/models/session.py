"""Domain model for pipeline sessions.

A session is the unit of work that ties together a worker conversation, the
repository the worker publishes to, the hosting deployment built from that
repository, the design reference it is measured against, and the latest
supervisor evaluation.
"""

import re
import time
import uuid
from enum import StrEnum
from typing import Annotated, Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, computed_field

# Score at or above which a deployment counts as a faithful build of the design.
COMPLETION_THRESHOLD = 90

# Prefix of the feedback messages the supervisor injects into the worker history.
SUPERVISOR_AUTO_MARKER = "[Supervisor auto evaluation]"


class DeploymentStatus(StrEnum):
    """Lifecycle of the most recent hosting deployment."""

    PENDING = "pending"
    BUILDING = "building"
    READY = "ready"
    ERROR = "error"


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


# =============================================================================
# Content blocks
# =============================================================================


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """A tool invocation requested by the model."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """The outcome of a tool invocation, keyed by the originating tool-use id."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


class ImageBlock(BaseModel):
    """Base64-encoded image. Only sent to the model, never stored in history."""

    type: Literal["image"] = "image"
    media_type: str = "image/png"
    data: str


ContentBlock = Annotated[
    TextBlock | ToolUseBlock | ToolResultBlock | ImageBlock,
    Field(discriminator="type"),
]


class Message(BaseModel):
    """One entry of a session's conversation history."""

    role: MessageRole
    content: str | list[ContentBlock]
    created_at: float = Field(default_factory=time.time)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role=MessageRole.USER, content=text)

    @classmethod
    def assistant(cls, text: str) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=text)

    @property
    def text(self) -> str:
        """Concatenated text of the message, ignoring non-text blocks."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        if isinstance(self.content, str):
            return []
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        if isinstance(self.content, str):
            return []
        return [b for b in self.content if isinstance(b, ToolResultBlock)]


# =============================================================================
# Evaluation
# =============================================================================


class CategoryScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float = 0
    max_score: float = 0
    notes: str = ""


class EvaluationResult(BaseModel):
    """A supervisor's judgement of one deployment.

    ``completed`` is derived from ``score`` and is never taken from model
    output. ``parse_failed`` marks results built from non-conforming output.
    """

    model_config = ConfigDict(frozen=True)

    score: int = Field(ge=0, le=100)
    categories: dict[str, CategoryScore] = Field(default_factory=dict)
    overall_feedback: str = ""
    improvements: list[str] = Field(default_factory=list)
    raw_text: str = ""
    parse_failed: bool = False
    deployment_url: str | None = None
    evaluated_at: float = Field(default_factory=time.time)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def completed(self) -> bool:
        return self.score >= COMPLETION_THRESHOLD


# =============================================================================
# Session
# =============================================================================


class DeploymentState(BaseModel):
    status: DeploymentStatus = DeploymentStatus.PENDING
    url: str | None = None
    updated_at: float | None = None


def generate_session_id() -> str:
    """Generate a session ID in the format "sess_{12 hex chars}"."""
    return f"sess_{uuid.uuid4().hex[:12]}"


_REPO_PATH_RE = re.compile(r"^/?([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+?)(?:\.git)?/?$")


def parse_artifact_ref(value: str | None) -> str | None:
    """Extract the ``owner/repo`` handle from a repository URL or handle.

    Returns None when the value does not name a repository.

    >>> parse_artifact_ref("https://github.com/acme/site.git")
    'acme/site'
    """
    if not value:
        return None
    value = value.strip()
    path = urlparse(value).path if "://" in value else value
    match = _REPO_PATH_RE.match(path)
    if not match:
        return None
    return f"{match.group(1)}/{match.group(2)}"


class Session(BaseModel):
    """State of one build/evaluate/feedback pipeline run."""

    id: str = Field(default_factory=generate_session_id)
    messages: list[Message] = Field(default_factory=list)
    artifact_url: str | None = None
    artifact_ref: str | None = None
    deployment: DeploymentState = Field(default_factory=DeploymentState)
    design_ref: str | None = None
    last_evaluation: EvaluationResult | None = None
    evaluated_urls: list[str] = Field(default_factory=list)
    feedback_cycles: int = 0
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def completed(self) -> bool:
        return self.last_evaluation is not None and self.last_evaluation.completed

    def has_supervisor_feedback(self) -> bool:
        """True if any user text message is supervisor feedback."""
        for message in self.messages:
            if message.role != MessageRole.USER or not isinstance(message.content, str):
                continue
            if SUPERVISOR_AUTO_MARKER in message.content:
                return True
        return False
