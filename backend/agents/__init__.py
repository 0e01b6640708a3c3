"""Agents, tools, prompts and LLM integration.

This module exports the key components of the pipeline:
- Worker agent (one conversational turn as a LangGraph) and its tool executor
- Supervisor evaluator and the feedback loop it drives
- Batch design-to-project generator
- LLM client utilities with retry logic and metrics tracking
"""

from agents.batch_generator import BatchGenerator, BatchResult
from agents.feedback import FeedbackLoop, should_send_feedback
from agents.interpreter import CodeInterpreter
from agents.prompts import (
    SUPERVISOR_PROMPT,
    WORKER_PROMPT,
    build_feedback_message,
    get_worker_system_prompt,
)
from agents.supervisor import SupervisorEvaluator, parse_evaluation
from agents.tools import (
    TOOL_DEFINITIONS,
    ToolExecutor,
    ToolResult,
    get_tool_definitions_for_llm,
)
from agents.utils import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    ToolCallData,
    extract_json_from_response,
    parse_json_output,
)
from agents.worker import TurnResult, WorkerAgent

__all__ = [
    # Worker
    "WorkerAgent",
    "TurnResult",
    # Tools
    "TOOL_DEFINITIONS",
    "CodeInterpreter",
    "ToolExecutor",
    "ToolResult",
    "get_tool_definitions_for_llm",
    # Supervisor / feedback
    "SupervisorEvaluator",
    "FeedbackLoop",
    "parse_evaluation",
    "should_send_feedback",
    # Batch
    "BatchGenerator",
    "BatchResult",
    # Prompts
    "SUPERVISOR_PROMPT",
    "WORKER_PROMPT",
    "build_feedback_message",
    "get_worker_system_prompt",
    # Utils
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "ToolCallData",
    "extract_json_from_response",
    "parse_json_output",
]
