"""Event type definitions for the Relay event system.

Every meaningful pipeline transition (a message appended, a tool run, a
deployment status change, an evaluation, a feedback turn) produces an event
that can be streamed to observers over WebSocket.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the Relay pipeline."""

    # Session lifecycle
    SESSION_CREATED = "session_created"
    SESSION_CLOSED = "session_closed"
    MESSAGE_APPENDED = "message_appended"

    # Worker
    WORKER_TURN_STARTED = "worker_turn_started"
    WORKER_TURN_COMPLETE = "worker_turn_complete"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    ARTIFACT_PUBLISHED = "artifact_published"
    LLM_CALL_COMPLETE = "llm_call_complete"

    # Graph structure
    GRAPH_NODE_ACTIVE = "graph_node_active"
    GRAPH_NODE_COMPLETE = "graph_node_complete"

    # Deployment
    DEPLOYMENT_CHECK_SCHEDULED = "deployment_check_scheduled"
    DEPLOYMENT_STATUS_CHANGED = "deployment_status_changed"

    # Supervisor
    EVALUATION_STARTED = "evaluation_started"
    EVALUATION_RESULT = "evaluation_result"
    EVALUATION_FAILED = "evaluation_failed"
    FEEDBACK_SENT = "feedback_sent"
    FEEDBACK_SKIPPED = "feedback_skipped"

    # Batch generation
    BATCH_PAGE_GENERATED = "batch_page_generated"
    BATCH_PAGE_FAILED = "batch_page_failed"

    TASK_ERROR = "task_error"


class PipelineEvent(BaseModel):
    """An event emitted while a session moves through the pipeline.

    Payload schemas by event type:

    MESSAGE_APPENDED:
        - role: str - "user" or "assistant"
        - kind: str - "text", "tool_use" or "tool_result"

    TOOL_CALL:
        - tool: str - Tool name being called
        - args: dict - Arguments passed to the tool (file contents elided)

    TOOL_RESULT:
        - tool: str - Tool that was called
        - success: bool - Whether the tool call succeeded
        - error: Optional[str] - Failure reason

    DEPLOYMENT_STATUS_CHANGED:
        - status: str - pending / building / ready / error
        - url: Optional[str] - Deployment URL once known
        - source: str - "webhook" or "poll"

    EVALUATION_RESULT:
        - score: int - Overall score 0-100
        - completed: bool - Whether the completion bar was met
        - improvements: list[str] - Requested changes
        - parse_failed: bool - Whether the model output was non-conforming

    FEEDBACK_SENT / FEEDBACK_SKIPPED:
        - score: int
        - reason: str - Why feedback was skipped (FEEDBACK_SKIPPED only)
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    session_id: str
    source: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "deployment_status_changed",
                    "timestamp": 1699876543.123,
                    "session_id": "sess_abc123def456",
                    "source": "tracker",
                    "data": {"status": "ready", "url": "https://site.vercel.app"},
                }
            ]
        }
    }


class LLMMetrics(BaseModel):
    """Token and latency metrics for a single model call."""

    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens
