"""HTTP API routes for the Relay backend.

This module implements the REST endpoints of the pipeline:
- Session creation, listing and inspection
- Worker turns (start or continue a conversation)
- Deployment status checks
- On-demand evaluations
- Batch design-to-project generation
- Health check

Pipeline errors raised by the session manager propagate to the handlers in
``api.errors`` and leave as ``{"error": ...}`` with the error's status code.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated, Any

import structlog
from fastapi import APIRouter, Path, Query, status

from agents.tools import ToolResult
from models.schemas import (
    CreateSessionRequest,
    DeploymentCheckRequest,
    DeploymentCheckResponse,
    ErrorResponse,
    EvaluationRequest,
    EvaluationResponse,
    GenerateRequest,
    GenerateResponse,
    HealthResponse,
    SessionDetailResponse,
    SessionSummaryResponse,
    ToolResultResponse,
    WorkerRequest,
    WorkerResponse,
)

if TYPE_CHECKING:
    from session_manager import SessionManager

logger = structlog.get_logger(__name__)

router = APIRouter()

_ERRORS: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


# =============================================================================
# Session Manager Dependency
# =============================================================================

_session_manager: SessionManager | None = None


def set_session_manager(manager: SessionManager) -> None:
    """Set the session manager instance for the routes.

    This should be called during application startup to inject the session
    manager dependency.
    """
    global _session_manager
    _session_manager = manager
    logger.info("session_manager_configured")


def get_session_manager() -> SessionManager:
    """Get the session manager instance.

    Raises:
        RuntimeError: If the session manager has not been configured.
    """
    if _session_manager is None:
        logger.error("session_manager_not_configured")
        raise RuntimeError(
            "SessionManager not configured. Call set_session_manager() during startup."
        )
    return _session_manager


def _to_tool_result(result: ToolResult) -> ToolResultResponse:
    return ToolResultResponse(
        tool_call_id=result.tool_call_id,
        tool_name=result.tool_name,
        success=result.success,
        content=result.content,
        error=result.error,
    )


# =============================================================================
# Sessions
# =============================================================================


@router.post(
    "/api/sessions",
    response_model=SessionDetailResponse,
    responses=_ERRORS,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new session",
)
async def create_session(request: CreateSessionRequest) -> SessionDetailResponse:
    """Create an empty session, optionally bound to a repository and a design."""
    session = await get_session_manager().create_session(
        artifact_url=request.artifact_url,
        design_ref=request.design_ref,
    )
    logger.info("session_created", session_id=session.id, artifact_ref=session.artifact_ref)
    return SessionDetailResponse.from_session(session)


@router.get(
    "/api/sessions",
    response_model=list[SessionSummaryResponse],
    summary="List sessions",
    description="List sessions newest first with deployment and evaluation state.",
)
async def list_sessions(
    limit: Annotated[int, Query(description="Maximum sessions to return", ge=1, le=200)] = 25,
    offset: Annotated[int, Query(description="Pagination offset", ge=0)] = 0,
) -> list[SessionSummaryResponse]:
    sessions = sorted(
        get_session_manager().list_sessions(),
        key=lambda s: s.created_at,
        reverse=True,
    )
    return [SessionSummaryResponse.from_session(s) for s in sessions[offset : offset + limit]]


@router.get(
    "/api/sessions/{session_id}",
    response_model=SessionDetailResponse,
    responses=_ERRORS,
    summary="Get session details",
)
async def get_session(
    session_id: Annotated[str, Path(description="The session ID")],
) -> SessionDetailResponse:
    """Return the full session state, including the conversation history.

    Raises:
        NotFoundError: If the session does not exist (404).
    """
    session = get_session_manager().get_session(session_id)
    return SessionDetailResponse.from_session(session)


# =============================================================================
# Worker
# =============================================================================


@router.post(
    "/api/worker",
    response_model=WorkerResponse,
    responses=_ERRORS,
    summary="Run a worker turn",
    description=(
        "Send a message to the worker. Without a session_id (or with "
        "create_new_session) a new session is created first."
    ),
)
async def run_worker_turn(request: WorkerRequest) -> WorkerResponse:
    result = await get_session_manager().submit_message(
        request.session_id,
        request.message,
        create_new_session=request.create_new_session,
        artifact_url=request.artifact_url,
        design_ref=request.design_ref,
    )
    logger.info(
        "worker_turn_served",
        session_id=result.session_id,
        texts=len(result.texts),
        tool_calls=len(result.tool_results),
    )
    return WorkerResponse(
        session_id=result.session_id,
        message=result.message,
        texts=result.texts,
        tool_results=[_to_tool_result(r) for r in result.tool_results],
        message_count=result.message_count,
        artifact_url=result.artifact_url,
        artifact_ref=result.artifact_ref,
    )


# =============================================================================
# Deployments, evaluations, generation
# =============================================================================


@router.post(
    "/api/deployments/check",
    response_model=DeploymentCheckResponse,
    responses=_ERRORS,
    summary="Check deployment status",
    description=(
        "Ask the repository and hosting platform for the latest commit and "
        "deployment of a session. A ready deployment may start an evaluation."
    ),
)
async def check_deployment(request: DeploymentCheckRequest) -> DeploymentCheckResponse:
    check = await get_session_manager().check_deployment(
        session_id=request.session_id,
        repo_name=request.repo_name,
    )
    return DeploymentCheckResponse(
        session_id=check.session_id,
        repo_name=check.repo_name,
        commit_sha=check.commit.sha if check.commit else None,
        commit_message=check.commit.message if check.commit else None,
        status=check.status if check.status is not None else "unknown",
        url=check.url,
        evaluation_scheduled=check.evaluation_scheduled,
    )


@router.post(
    "/api/evaluations",
    response_model=EvaluationResponse,
    responses=_ERRORS,
    summary="Evaluate a deployment",
    description=(
        "Capture the deployment, score it against the design and persist the "
        "result. Feedback is sent to the worker when the score is below the bar."
    ),
)
async def evaluate_deployment(request: EvaluationRequest) -> EvaluationResponse:
    evaluation = await get_session_manager().evaluate_now(
        request.session_id,
        request.deployment_url,
        design_ref=request.design_ref,
    )
    return EvaluationResponse(session_id=request.session_id, evaluation=evaluation)


@router.post(
    "/api/generate",
    response_model=GenerateResponse,
    responses=_ERRORS,
    summary="Generate a project from a design",
)
async def generate_project(request: GenerateRequest) -> GenerateResponse:
    """Convert every design page into a component and push the project."""
    result = await get_session_manager().generate_project(
        request.repo_url,
        request.design_ref,
        request.project_type,
    )
    return GenerateResponse(
        run_id=result.run_id,
        repo_name=result.repo_name,
        repo_url=result.repo_url,
        converted_pages=result.converted_pages,
        failed_pages=result.failed_pages,
        total_files=result.total_files,
    )


# =============================================================================
# Health
# =============================================================================


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check() -> HealthResponse:
    """Report liveness plus session and background task counts."""
    try:
        stats = get_session_manager().stats()
    except RuntimeError:
        # SessionManager not configured yet (e.g., during startup)
        return HealthResponse(status="unhealthy", timestamp=time.time())

    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        sessions=stats["sessions"],
        background_tasks=stats["background_tasks"],
    )
