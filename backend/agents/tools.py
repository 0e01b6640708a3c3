"""Tool definitions and dispatch for the worker agent.

This module defines the tools the worker can call and provides the
ToolExecutor class that validates each call against its input model and
routes it to the artifact repository or the code interpreter.
"""

import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from agents.interpreter import CodeInterpreter
from events.bus import EventBus
from events.types import EventType
from integrations.base import ArtifactRepository, RepoFile, RepoHandle
from models.repository import SessionRepository
from models.session import ToolUseBlock

logger = structlog.get_logger()


# =============================================================================
# Tool input / output models
# =============================================================================


class ArtifactFile(BaseModel):
    path: str = Field(min_length=1)
    content: str


class PublishArtifactInput(BaseModel):
    """Input of ``publish_artifact``."""

    project_name: str = Field(min_length=1)
    files: list[ArtifactFile] = Field(min_length=1)
    description: str | None = None


class ExecuteCodeInput(BaseModel):
    code: str = Field(min_length=1)
    language: Literal["python", "javascript", "typescript", "bash"]


class AnalyzeCodeInput(BaseModel):
    code: str = Field(min_length=1)
    language: Literal["python", "javascript", "typescript"]


class PublishArtifactOutput(BaseModel):
    success: bool = True
    repo_url: str
    repo_name: str
    files_uploaded: int
    message: str


class ExecuteCodeOutput(BaseModel):
    success: bool
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False


TOOL_INPUT_MODELS: dict[str, type[BaseModel]] = {
    "publish_artifact": PublishArtifactInput,
    "execute_code": ExecuteCodeInput,
    "analyze_code": AnalyzeCodeInput,
}


TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "publish_artifact",
        "description": (
            "Publish the project's files to its GitHub repository. The first call "
            "creates the repository; later calls update the same repository. "
            "Every file must contain complete content."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "project_name": {
                    "type": "string",
                    "description": "Short project name, used for the repository name",
                },
                "files": {
                    "type": "array",
                    "description": "Files to write",
                    "items": {
                        "type": "object",
                        "properties": {
                            "path": {
                                "type": "string",
                                "description": "Path relative to the repository root, e.g. 'src/App.tsx'",
                            },
                            "content": {
                                "type": "string",
                                "description": "Complete file content",
                            },
                        },
                        "required": ["path", "content"],
                    },
                },
                "description": {
                    "type": "string",
                    "description": "Optional repository description",
                },
            },
            "required": ["project_name", "files"],
        },
    },
    {
        "name": "execute_code",
        "description": (
            "Run a short snippet and return its stdout, stderr and exit code. "
            "Use it to verify logic before publishing. Python and JavaScript run; "
            "TypeScript and shell are refused."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "code": {"type": "string", "description": "Source code to run"},
                "language": {
                    "type": "string",
                    "enum": ["python", "javascript", "typescript", "bash"],
                },
            },
            "required": ["code", "language"],
        },
    },
    {
        "name": "analyze_code",
        "description": (
            "Statically check code for syntax errors, warnings and improvement "
            "suggestions without running it."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "code": {"type": "string", "description": "Source code to analyze"},
                "language": {
                    "type": "string",
                    "enum": ["python", "javascript", "typescript"],
                },
            },
            "required": ["code", "language"],
        },
    },
]

_TOOL_DEFINITION_MAP: dict[str, dict[str, Any]] = {
    tool["name"]: tool for tool in TOOL_DEFINITIONS
}

# Keep tool payloads bounded so a single call cannot flood model context.
MAX_RESULT_EVENT_CHARS = 2000


class ToolArgumentError(ValueError):
    """Raised when a tool call has invalid or unsupported arguments."""


def get_tool_definitions_for_llm() -> list[dict[str, Any]]:
    """Get tool definitions formatted for LLM function calling.

    Returns:
        List of tool definitions in the format expected by LiteLLM.
    """
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["parameters"],
            },
        }
        for tool in TOOL_DEFINITIONS
    ]


def validate_tool_input(tool_name: str, args: Any) -> BaseModel:
    """Parse raw tool arguments into the tool's input model.

    Raises:
        ToolArgumentError: For unknown tools or arguments that fail validation.
    """
    model = TOOL_INPUT_MODELS.get(tool_name)
    if model is None:
        raise ToolArgumentError(f"Unknown tool: {tool_name}")
    if not isinstance(args, dict):
        raise ToolArgumentError(f"Invalid arguments for {tool_name}: expected an object")
    try:
        return model.model_validate(args)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}"
            for err in e.errors()
        )
        raise ToolArgumentError(f"Invalid arguments for {tool_name}: {problems}") from e


@dataclass
class ToolResult:
    """Result of executing a tool.

    Attributes:
        tool_call_id: ID of the tool call this result corresponds to
        tool_name: Name of the tool that ran
        content: JSON-encoded payload returned to the model
        success: Whether the tool execution succeeded
        error: Error message if execution failed
    """

    tool_call_id: str
    tool_name: str
    content: str
    success: bool
    error: str | None = None


class ToolExecutor:
    """Executes worker tool calls and emits events.

    Attributes:
        event_bus: The EventBus for emitting tool events.
        repository: Session store; ``publish_artifact`` records the repository on it.
        artifact_repo: Where published files go.
        interpreter: Runs and analyzes code snippets.
        on_published: Called with ``(session_id, handle)`` after a successful
            publish; the deployment tracker uses it to schedule a status check.
    """

    def __init__(
        self,
        event_bus: EventBus,
        repository: SessionRepository,
        artifact_repo: ArtifactRepository,
        interpreter: CodeInterpreter | None = None,
        on_published: Callable[[str, RepoHandle], None] | None = None,
    ) -> None:
        self.event_bus = event_bus
        self.repository = repository
        self.artifact_repo = artifact_repo
        self.interpreter = interpreter or CodeInterpreter()
        self.on_published = on_published

    def _summarize_args_for_event(self, args: Any) -> dict[str, Any]:
        """Create a lightweight args payload for event emission."""
        if not isinstance(args, dict):
            return {"raw": str(args)[:500]}

        summarized: dict[str, Any] = {}
        for key, value in args.items():
            if key == "files" and isinstance(value, list):
                summarized[key] = [
                    f.get("path") if isinstance(f, dict) else str(f)[:100] for f in value
                ]
            elif isinstance(value, str) and len(value) > 500:
                summarized[key] = f"{value[:500]}... [truncated]"
            else:
                summarized[key] = value
        return summarized

    async def execute(self, session_id: str, tool_call: ToolUseBlock) -> ToolResult:
        """Validate and run one tool call. Never raises for tool failures.

        Args:
            session_id: Session the call belongs to.
            tool_call: The tool-use block returned by the model.

        Returns:
            ToolResult with the execution outcome.
        """
        start_time = time.time()
        await self.event_bus.emit(
            EventType.TOOL_CALL,
            session_id,
            source="worker",
            tool=tool_call.name,
            args=self._summarize_args_for_event(tool_call.input),
            tool_call_id=tool_call.id,
        )

        try:
            params = validate_tool_input(tool_call.name, tool_call.input)
            payload = await self._dispatch_tool(session_id, params)
            content = json.dumps(payload, ensure_ascii=False)
            success = True
            error = None
        except Exception as e:
            logger.error(
                "tool_execution_failed",
                tool_name=tool_call.name,
                session_id=session_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            error = str(e)
            content = json.dumps({"success": False, "error": error}, ensure_ascii=False)
            success = False

        duration_ms = int((time.time() - start_time) * 1000)

        await self.event_bus.emit(
            EventType.TOOL_RESULT,
            session_id,
            source="worker",
            tool=tool_call.name,
            result=content[:MAX_RESULT_EVENT_CHARS],
            success=success,
            error=error,
            tool_call_id=tool_call.id,
            duration_ms=duration_ms,
        )

        logger.debug(
            "tool_executed",
            tool_name=tool_call.name,
            session_id=session_id,
            success=success,
            duration_ms=duration_ms,
        )

        return ToolResult(
            tool_call_id=tool_call.id,
            tool_name=tool_call.name,
            content=content,
            success=success,
            error=error,
        )

    async def _dispatch_tool(self, session_id: str, params: BaseModel) -> dict[str, Any]:
        """Route a validated tool input to its handler."""
        if isinstance(params, PublishArtifactInput):
            return await self._publish_artifact(session_id, params)
        if isinstance(params, ExecuteCodeInput):
            return await self._execute_code(params)
        if isinstance(params, AnalyzeCodeInput):
            report = await self.interpreter.analyze(params.code, params.language)
            return report.to_dict()
        raise ToolArgumentError(f"No handler for {type(params).__name__}")

    async def _publish_artifact(
        self, session_id: str, params: PublishArtifactInput
    ) -> dict[str, Any]:
        session = self.repository.get(session_id)
        handle = await self.artifact_repo.create_or_reuse(
            params.project_name,
            params.description,
            session.artifact_ref,
        )
        uploaded = await self.artifact_repo.put_files(
            handle.full_name,
            [RepoFile(path=f.path, content=f.content) for f in params.files],
        )
        self.repository.update_artifact(session_id, handle.html_url)

        await self.event_bus.emit(
            EventType.ARTIFACT_PUBLISHED,
            session_id,
            source="worker",
            repo_name=handle.full_name,
            repo_url=handle.html_url,
            files_uploaded=uploaded,
            created=handle.created,
        )
        logger.info(
            "artifact_published",
            session_id=session_id,
            repo_name=handle.full_name,
            files_uploaded=uploaded,
        )

        if self.on_published is not None:
            self.on_published(session_id, handle)

        verb = "Created" if handle.created else "Updated"
        return PublishArtifactOutput(
            repo_url=handle.html_url,
            repo_name=handle.full_name,
            files_uploaded=uploaded,
            message=f"{verb} {handle.full_name} with {uploaded} files",
        ).model_dump()

    async def _execute_code(self, params: ExecuteCodeInput) -> dict[str, Any]:
        result = await self.interpreter.execute(params.code, params.language)
        return ExecuteCodeOutput(
            success=result.success,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
        ).model_dump()
