"""Domain model, session store and API schemas.

This module exposes the session types and the request/response models used
by the API.
"""

from models.schemas import (
    CreateSessionRequest,
    DeploymentCheckRequest,
    DeploymentCheckResponse,
    EvaluationRequest,
    EvaluationResponse,
    GenerateRequest,
    GenerateResponse,
    HealthResponse,
    SessionDetailResponse,
    SessionSummaryResponse,
    WebhookResponse,
    WorkerRequest,
    WorkerResponse,
)
from models.session import (
    COMPLETION_THRESHOLD,
    DeploymentStatus,
    EvaluationResult,
    Message,
    MessageRole,
    Session,
)

__all__ = [
    "COMPLETION_THRESHOLD",
    "CreateSessionRequest",
    "DeploymentCheckRequest",
    "DeploymentCheckResponse",
    "DeploymentStatus",
    "EvaluationRequest",
    "EvaluationResponse",
    "EvaluationResult",
    "GenerateRequest",
    "GenerateResponse",
    "HealthResponse",
    "Message",
    "MessageRole",
    "Session",
    "SessionDetailResponse",
    "SessionSummaryResponse",
    "WebhookResponse",
    "WorkerRequest",
    "WorkerResponse",
]
