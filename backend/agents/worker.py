"""Worker agent: one conversational turn as a LangGraph.

    START -> prepare -> generate -> dispatch -> END

1. PREPARE: pick the system prompt (with the feedback addendum when the
   history already holds supervisor feedback) and append the user message
2. GENERATE: call the model with the full history and the tool schemas
3. DISPATCH: record text blocks as assistant messages; run each tool call
   and record it as an assistant tool-use message followed by a user
   tool-result message

The graph never loops back to the model after tools run. The caller (a user
request or the feedback loop) decides whether another turn follows.

Events emitted:
- WORKER_TURN_STARTED / WORKER_TURN_COMPLETE
- MESSAGE_APPENDED: for every history entry the turn adds
- GRAPH_NODE_ACTIVE / GRAPH_NODE_COMPLETE
- TOOL_CALL / TOOL_RESULT / ARTIFACT_PUBLISHED: via the ToolExecutor
"""

from dataclasses import dataclass, field
from typing import Any, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.prompts import get_worker_system_prompt
from agents.tools import ToolExecutor, ToolResult, get_tool_definitions_for_llm
from agents.utils import LLMClient
from config import settings
from errors import ValidationError
from events.bus import EventBus
from events.types import EventType
from models.repository import SessionRepository
from models.session import (
    ContentBlock,
    Message,
    MessageRole,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)

logger = structlog.get_logger()


class WorkerState(TypedDict):
    """State flowing through one worker turn.

    Attributes:
        session_id: Session the turn belongs to
        message: The incoming user message
        system_prompt: Prompt chosen in ``prepare``
        blocks: Content blocks returned by the model
        texts: Assistant texts surfaced to the caller
        tool_results: Outcomes of the tool calls, in call order
    """

    session_id: str
    message: str
    system_prompt: str
    blocks: list[ContentBlock]
    texts: list[str]
    tool_results: list[ToolResult]


@dataclass
class TurnResult:
    """What a worker turn produced."""

    session_id: str
    texts: list[str] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    message_count: int = 0
    artifact_url: str | None = None
    artifact_ref: str | None = None

    @property
    def message(self) -> str | None:
        """The last assistant text of the turn, if any."""
        return self.texts[-1] if self.texts else None


class WorkerAgent:
    """Drives worker turns against the session store.

    Usage:
        >>> worker = WorkerAgent(repository, event_bus, llm_client, tool_executor)
        >>> result = await worker.run_turn("sess_abc123def456", "Build a landing page")
    """

    NODES = ("prepare", "generate", "dispatch")

    def __init__(
        self,
        repository: SessionRepository,
        event_bus: EventBus,
        llm_client: LLMClient,
        tool_executor: ToolExecutor,
        model: str | None = None,
    ) -> None:
        self.repository = repository
        self.event_bus = event_bus
        self.llm_client = llm_client
        self.tool_executor = tool_executor
        self.model = model or settings.worker_model
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        graph = StateGraph(WorkerState)

        graph.add_node("prepare", self._prepare)
        graph.add_node("generate", self._generate)
        graph.add_node("dispatch", self._dispatch)

        graph.add_edge(START, "prepare")
        graph.add_edge("prepare", "generate")
        graph.add_edge("generate", "dispatch")
        graph.add_edge("dispatch", END)

        return graph.compile()

    async def run_turn(self, session_id: str, message: str) -> TurnResult:
        """Run one turn for ``message``, serialized with other writers of the session.

        Raises:
            ValidationError: If the message is empty.
            NotFoundError: If the session does not exist.
            ServiceUnavailable / UpstreamServiceError: If the model call fails;
                the user message stays in the history.
        """
        if not message or not message.strip():
            raise ValidationError("Message must not be empty")

        async with self.repository.lock(session_id):
            await self.event_bus.emit(
                EventType.WORKER_TURN_STARTED,
                session_id,
                source="worker",
                message_preview=message[:200],
            )
            final_state = await self._compiled_graph.ainvoke(
                WorkerState(
                    session_id=session_id,
                    message=message,
                    system_prompt="",
                    blocks=[],
                    texts=[],
                    tool_results=[],
                )
            )
            session = self.repository.get(session_id)

        result = TurnResult(
            session_id=session_id,
            texts=final_state["texts"],
            tool_results=final_state["tool_results"],
            message_count=len(session.messages),
            artifact_url=session.artifact_url,
            artifact_ref=session.artifact_ref,
        )
        await self.event_bus.emit(
            EventType.WORKER_TURN_COMPLETE,
            session_id,
            source="worker",
            texts=len(result.texts),
            tool_calls=[r.tool_name for r in result.tool_results],
            artifact_url=result.artifact_url,
        )
        logger.info(
            "worker_turn_complete",
            session_id=session_id,
            texts=len(result.texts),
            tool_calls=len(result.tool_results),
            message_count=result.message_count,
        )
        return result

    # -----------------------------------------------------------------
    # Nodes
    # -----------------------------------------------------------------

    async def _prepare(self, state: WorkerState) -> dict[str, Any]:
        session_id = state["session_id"]
        await self._emit_node(session_id, "prepare", active=True)

        # Feedback priority is decided on the history before this message.
        has_feedback = self.repository.get(session_id).has_supervisor_feedback()
        await self._append(session_id, Message.user(state["message"]))

        await self._emit_node(session_id, "prepare", active=False)
        return {"system_prompt": get_worker_system_prompt(has_feedback)}

    async def _generate(self, state: WorkerState) -> dict[str, Any]:
        session_id = state["session_id"]
        await self._emit_node(session_id, "generate", active=True)

        history = self.repository.get(session_id).messages
        blocks = await self.llm_client.generate(
            history,
            get_tool_definitions_for_llm(),
            state["system_prompt"],
            model=self.model,
            max_tokens=settings.worker_max_tokens,
            session_id=session_id,
        )

        await self._emit_node(session_id, "generate", active=False)
        return {"blocks": blocks}

    async def _dispatch(self, state: WorkerState) -> dict[str, Any]:
        session_id = state["session_id"]
        await self._emit_node(session_id, "dispatch", active=True)

        texts: list[str] = []
        tool_results: list[ToolResult] = []
        for block in state["blocks"]:
            if isinstance(block, TextBlock):
                texts.append(block.text)
                await self._append(session_id, Message.assistant(block.text))
            elif isinstance(block, ToolUseBlock):
                result = await self.tool_executor.execute(session_id, block)
                tool_results.append(result)
                # The result travels as a user-role message keyed by the call id.
                await self._append(
                    session_id, Message(role=MessageRole.ASSISTANT, content=[block])
                )
                await self._append(
                    session_id,
                    Message(
                        role=MessageRole.USER,
                        content=[
                            ToolResultBlock(
                                tool_use_id=block.id,
                                content=result.content,
                                is_error=not result.success,
                            )
                        ],
                    ),
                )

        await self._emit_node(session_id, "dispatch", active=False)
        return {"texts": texts, "tool_results": tool_results}

    # -----------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------

    async def _append(self, session_id: str, message: Message) -> None:
        self.repository.append_message(session_id, message)
        if isinstance(message.content, str):
            kind = "text"
        else:
            kind = message.content[0].type if message.content else "text"
        await self.event_bus.emit(
            EventType.MESSAGE_APPENDED,
            session_id,
            source="worker",
            role=message.role.value,
            kind=kind,
            preview=message.text[:200],
        )

    async def _emit_node(self, session_id: str, node: str, active: bool) -> None:
        await self.event_bus.emit(
            EventType.GRAPH_NODE_ACTIVE if active else EventType.GRAPH_NODE_COMPLETE,
            session_id,
            source="worker",
            node_id=node,
        )
