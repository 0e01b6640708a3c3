"""Pydantic schemas for API request/response models.

This module defines the data models used by the HTTP API. Domain state
(sessions, messages, evaluations) lives in ``models.session``; the models here
shape what crosses the wire.
"""

from typing import Literal

from pydantic import BaseModel, Field

from models.session import DeploymentStatus, EvaluationResult, Message, Session


class CreateSessionRequest(BaseModel):
    """Request body for creating a new session."""

    artifact_url: str | None = Field(
        default=None,
        description="Existing repository to publish into",
        examples=["https://github.com/acme/landing-page"],
    )
    design_ref: str | None = Field(
        default=None,
        description="Design file the deployment is evaluated against",
        examples=["https://www.figma.com/file/AbC123/Landing"],
    )


class WorkerRequest(BaseModel):
    """Request body for a worker turn."""

    session_id: str | None = Field(
        default=None,
        description="Session to continue; a new one is created when omitted",
        examples=["sess_abc123def456"],
    )
    message: str = Field(
        min_length=1,
        max_length=100000,
        description="User message for the worker",
        examples=["Build a landing page with a hero section and pricing table."],
    )
    create_new_session: bool = Field(
        default=False,
        description="Force a new session even if session_id is given",
    )
    artifact_url: str | None = Field(default=None, description="Repository URL")
    design_ref: str | None = Field(default=None, description="Design file URL")


class ToolResultResponse(BaseModel):
    tool_call_id: str
    tool_name: str
    success: bool
    content: str
    error: str | None = None


class WorkerResponse(BaseModel):
    """Outcome of one worker turn."""

    session_id: str = Field(description="Session the turn ran in")
    message: str | None = Field(
        default=None,
        description="Last assistant text of the turn",
    )
    texts: list[str] = Field(default_factory=list)
    tool_results: list[ToolResultResponse] = Field(default_factory=list)
    message_count: int = Field(description="History length after the turn")
    artifact_url: str | None = None
    artifact_ref: str | None = None


class SessionSummaryResponse(BaseModel):
    """Summary information for listing sessions."""

    session_id: str = Field(description="Unique session identifier")
    artifact_ref: str | None = Field(default=None, description="owner/repo handle")
    deployment_status: DeploymentStatus
    deployment_url: str | None = None
    design_ref: str | None = None
    last_score: int | None = Field(default=None, description="Score of the latest evaluation")
    completed: bool = False
    message_count: int = 0
    feedback_cycles: int = 0
    created_at: float
    updated_at: float

    @classmethod
    def from_session(cls, session: Session) -> "SessionSummaryResponse":
        return cls(
            session_id=session.id,
            artifact_ref=session.artifact_ref,
            deployment_status=session.deployment.status,
            deployment_url=session.deployment.url,
            design_ref=session.design_ref,
            last_score=session.last_evaluation.score if session.last_evaluation else None,
            completed=session.completed,
            message_count=len(session.messages),
            feedback_cycles=session.feedback_cycles,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )


class SessionDetailResponse(SessionSummaryResponse):
    """Full session state including the conversation history."""

    artifact_url: str | None = None
    messages: list[Message] = Field(default_factory=list)
    last_evaluation: EvaluationResult | None = None
    evaluated_urls: list[str] = Field(default_factory=list)

    @classmethod
    def from_session(cls, session: Session) -> "SessionDetailResponse":
        summary = SessionSummaryResponse.from_session(session)
        return cls(
            **summary.model_dump(),
            artifact_url=session.artifact_url,
            messages=session.messages,
            last_evaluation=session.last_evaluation,
            evaluated_urls=session.evaluated_urls,
        )


class DeploymentCheckRequest(BaseModel):
    """Request body for a deployment status check."""

    session_id: str | None = Field(default=None, examples=["sess_abc123def456"])
    repo_name: str | None = Field(
        default=None,
        description="Repository handle or URL, used when session_id is absent",
        examples=["acme/landing-page"],
    )


class DeploymentCheckResponse(BaseModel):
    session_id: str
    repo_name: str
    commit_sha: str | None = None
    commit_message: str | None = None
    status: DeploymentStatus | Literal["unknown"] = "unknown"
    url: str | None = None
    evaluation_scheduled: bool = False


class EvaluationRequest(BaseModel):
    """Request body for an on-demand evaluation."""

    session_id: str = Field(examples=["sess_abc123def456"])
    deployment_url: str = Field(
        min_length=1,
        examples=["https://landing-page.vercel.app"],
    )
    design_ref: str | None = Field(default=None, description="Overrides the session design")


class EvaluationResponse(BaseModel):
    session_id: str
    evaluation: EvaluationResult


class GenerateRequest(BaseModel):
    """Request body for batch design-to-project generation."""

    repo_url: str = Field(examples=["https://github.com/acme/landing-page"])
    design_ref: str = Field(examples=["https://www.figma.com/file/AbC123/Landing"])
    project_type: Literal["react-vite", "nextjs"] = "nextjs"


class GenerateResponse(BaseModel):
    run_id: str = Field(description="Event channel of the generation run")
    repo_name: str
    repo_url: str
    converted_pages: list[str]
    failed_pages: list[str]
    total_files: int


class WebhookResponse(BaseModel):
    """Acknowledgement returned to webhook senders."""

    success: bool = True
    message: str
    session_id: str | None = None
    status: DeploymentStatus | None = None
    evaluation_scheduled: bool = False


class WebhookActivityResponse(BaseModel):
    message: str
    source: Literal["github", "vercel"]
    events: list[str]
    received: int = Field(description="Deliveries accepted since startup")
    last_received_at: float | None = None
    signature_required: bool


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    sessions: int = Field(default=0, description="Sessions held in memory")
    background_tasks: int = Field(default=0, description="Pending background tasks")


class ErrorResponse(BaseModel):
    error: str
