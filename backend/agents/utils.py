"""Model Gateway: LLM client utilities for the worker and supervisor.

This module provides:
- LLMClient: Wrapper around LiteLLM with retry logic, fallback model support,
  request size checks and metrics events
- to_provider_messages / response_to_blocks: conversion between the session
  content-block history and the OpenAI-style message format LiteLLM expects
- extract_json_from_response / parse_json_output: defensive JSON extraction
  from model text
- MockLLMClient: scripted responses for tests
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    APIConnectionError,
    APIError as ProviderAPIError,
    AuthenticationError,
    BadRequestError,
    ContextWindowExceededError,
    InternalServerError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
    UnprocessableEntityError,
)

from config import settings
from errors import (
    ParseError,
    RequestTooLargeError,
    ServiceUnavailable,
    UpstreamServiceError,
)
from events.bus import EventBus
from events.types import EventType, LLMMetrics
from models.session import (
    ContentBlock,
    ImageBlock,
    Message,
    MessageRole,
    TextBlock,
    ToolUseBlock,
)

logger = structlog.get_logger()

# Rough per-image token cost used when estimating request size.
IMAGE_TOKEN_ESTIMATE = 1600

_TRANSIENT_ERRORS = (
    RateLimitError,
    ServiceUnavailableError,
    InternalServerError,
    Timeout,
    APIConnectionError,
)

# Provider failures that retrying will not fix.
_PERMANENT_ERRORS = (
    AuthenticationError,
    BadRequestError,
    NotFoundError,
    PermissionDeniedError,
    UnprocessableEntityError,
    ProviderAPIError,
)
_PROVIDER_ERRORS = _TRANSIENT_ERRORS + _PERMANENT_ERRORS


def normalize_tool_args(raw_args: Any) -> dict[str, Any]:
    """Normalize raw tool-call arguments into a dictionary.

    Models occasionally emit malformed tool arguments (JSON arrays, primitives,
    or partially valid strings). Downstream validation always receives a dict.
    """
    if isinstance(raw_args, dict):
        return raw_args

    if isinstance(raw_args, str):
        if not raw_args.strip():
            return {}
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError:
            return {"raw": raw_args}
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    if raw_args is None:
        return {}

    return {"value": raw_args}


@dataclass
class ToolCallData:
    """Parsed tool call from an LLM response."""

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        tool_calls: List of tool calls if the model requested tools
        finish_reason: Why the model stopped (stop, tool_calls, length, etc.)
        metrics: Token usage and latency metrics
        raw_response: The original ModelResponse from LiteLLM
    """

    content: str
    tool_calls: list[ToolCallData]
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


# =============================================================================
# Message conversion
# =============================================================================


def _image_part(block: ImageBlock) -> dict[str, Any]:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{block.media_type};base64,{block.data}"},
    }


def to_provider_messages(
    system_prompt: str | None,
    history: list[Message],
) -> list[dict[str, Any]]:
    """Convert session history into LiteLLM (OpenAI-style) messages.

    Tool-use blocks become assistant ``tool_calls``; tool-result blocks become
    ``tool`` role messages carrying the originating id. Image blocks become
    ``image_url`` parts with base64 data URLs.
    """
    out: list[dict[str, Any]] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for message in history:
        role = message.role.value
        if isinstance(message.content, str):
            out.append({"role": role, "content": message.content})
            continue

        texts = [b.text for b in message.content if isinstance(b, TextBlock)]
        images = [b for b in message.content if isinstance(b, ImageBlock)]

        if message.role == MessageRole.ASSISTANT:
            tool_calls = [
                {
                    "id": b.id,
                    "type": "function",
                    "function": {"name": b.name, "arguments": json.dumps(b.input)},
                }
                for b in message.tool_uses
            ]
            entry: dict[str, Any] = {"role": "assistant", "content": "\n".join(texts) or None}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            out.append(entry)
            continue

        for result in message.tool_results:
            out.append(
                {
                    "role": "tool",
                    "tool_call_id": result.tool_use_id,
                    "content": result.content,
                }
            )
        if images:
            parts: list[dict[str, Any]] = [{"type": "text", "text": t} for t in texts]
            parts.extend(_image_part(img) for img in images)
            out.append({"role": "user", "content": parts})
        elif texts:
            out.append({"role": "user", "content": "\n".join(texts)})

    return out


def response_to_blocks(response: LLMResponse) -> list[ContentBlock]:
    """Split a model response into ordered content blocks (text first)."""
    blocks: list[ContentBlock] = []
    if response.content and response.content.strip():
        blocks.append(TextBlock(text=response.content))
    for tc in response.tool_calls:
        blocks.append(ToolUseBlock(id=tc.id, name=tc.name, input=tc.args))
    return blocks


def count_tokens_estimate(text: str) -> int:
    """Estimate token count using the ~4 characters per token rule of thumb."""
    return len(text) // 4


def estimate_request_tokens(
    messages: list[dict[str, Any]],
    tools: list[dict[str, Any]] | None = None,
) -> int:
    """Estimate the prompt size of a request. Images count a fixed amount."""
    total = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, list):
            for part in content:
                if part.get("type") == "image_url":
                    total += IMAGE_TOKEN_ESTIMATE
                else:
                    total += count_tokens_estimate(str(part.get("text", "")))
        elif content:
            total += count_tokens_estimate(str(content))
        for tc in message.get("tool_calls") or []:
            total += count_tokens_estimate(tc["function"]["arguments"])
    if tools:
        total += count_tokens_estimate(json.dumps(tools))
    return total


# =============================================================================
# Client
# =============================================================================


class LLMClient:
    """Wrapper around LiteLLM with retry logic, fallback and metrics.

    Retries on rate limits, overloaded or unavailable providers, timeouts and
    connection failures with capped exponential backoff. Other provider errors
    are not retried and surface as ``UpstreamServiceError``. Once retries (and the optional fallback model) are
    exhausted the client raises ``ServiceUnavailable``.

    Attributes:
        event_bus: Optional EventBus for emitting LLM call metrics
        default_model: Default model to use if not specified
        fallback_model: Optional fallback model if primary fails after retries
        retry_attempts: Number of retry attempts for failed calls
        retry_delay: Base delay between retry attempts in seconds
        max_context_tokens: Estimated prompt size above which calls are rejected
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
        max_context_tokens: int | None = None,
    ) -> None:
        self.event_bus = event_bus
        self.default_model = default_model or settings.worker_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None
            else settings.llm_max_retries
        )
        self.retry_delay = retry_delay
        self.max_context_tokens = max_context_tokens or settings.llm_max_context_tokens

    async def generate(
        self,
        history: list[Message],
        tool_schemas: list[dict[str, Any]] | None,
        system_prompt: str,
        model: str | None = None,
        max_tokens: int | None = None,
        session_id: str | None = None,
    ) -> list[ContentBlock]:
        """Produce the next assistant content blocks for a conversation.

        Raises:
            RequestTooLargeError: If the history exceeds the context limit.
            ServiceUnavailable: If the model stays unavailable after retries.
            UpstreamServiceError: On non-retryable model errors.
        """
        messages = to_provider_messages(system_prompt, history)
        response = await self.call(
            messages=messages,
            tools=tool_schemas,
            model=model,
            max_tokens=max_tokens or settings.worker_max_tokens,
            session_id=session_id,
        )
        return response_to_blocks(response)

    async def generate_vision(
        self,
        system_prompt: str | None,
        text: str,
        images: list[ImageBlock],
        model: str | None = None,
        max_tokens: int | None = None,
        session_id: str | None = None,
    ) -> str:
        """Single-shot multimodal call returning the raw response text."""
        content: list[ContentBlock] = [*images, TextBlock(text=text)]
        messages = to_provider_messages(
            system_prompt, [Message(role=MessageRole.USER, content=content)]
        )
        response = await self.call(
            messages=messages,
            model=model,
            max_tokens=max_tokens or settings.supervisor_max_tokens,
            temperature=0.0,
            session_id=session_id,
        )
        return response.content

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int | None = None,
        session_id: str | None = None,
    ) -> LLMResponse:
        """Send one completion request through the gateway.

        The request is size-checked first. Transient failures are retried on
        the primary model; if every retry fails the fallback model (when one
        is configured) gets a single try before ``ServiceUnavailable``.
        """
        model = model or self.default_model
        self._check_request_size(messages, tools, model)
        request = {
            "messages": messages,
            "tools": tools,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        started = time.monotonic()

        try:
            response, attempts = await self._with_backoff(model, request)
            return await self._finish(response, model, started, session_id, attempts)
        except _TRANSIENT_ERRORS as primary_error:
            failure: Exception = primary_error

        fallback = self.fallback_model
        if fallback and fallback != model:
            logger.warning(
                "llm_fallback_attempt",
                primary_model=model,
                fallback_model=fallback,
                primary_error=str(failure),
            )
            try:
                response = await self._request(fallback, request)
                return await self._finish(response, fallback, started, session_id, 1)
            except _PROVIDER_ERRORS as fallback_error:
                logger.error(
                    "llm_fallback_failed",
                    fallback_model=fallback,
                    error_type=type(fallback_error).__name__,
                    error=str(fallback_error),
                )

        if self.event_bus and session_id:
            await self.event_bus.emit(
                EventType.TASK_ERROR,
                session_id,
                source="model_gateway",
                phase="llm_call",
                model=model,
                error=str(failure),
            )
        raise ServiceUnavailable(f"Model {model} unavailable: {failure}", service="model") from failure

    def _check_request_size(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None, model: str
    ) -> None:
        estimated = estimate_request_tokens(messages, tools)
        if estimated <= self.max_context_tokens:
            return
        logger.warning(
            "llm_request_too_large",
            model=model,
            estimated_tokens=estimated,
            limit=self.max_context_tokens,
        )
        raise RequestTooLargeError(
            f"Request of ~{estimated} tokens exceeds the {self.max_context_tokens} token limit"
        )

    async def _with_backoff(
        self, model: str, request: dict[str, Any]
    ) -> tuple[ModelResponse, int]:
        """Call ``model``, retrying transient errors. Returns the response and attempt count.

        The last transient error propagates once ``retry_attempts`` retries are used up.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._request(model, request), attempt
            except _TRANSIENT_ERRORS as e:
                if attempt > self.retry_attempts:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        attempts=attempt,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    raise
                delay = min(self.retry_delay * 2 ** (attempt - 1), 4.0)
                logger.warning(
                    "llm_call_retry",
                    model=model,
                    attempt=attempt,
                    max_retries=self.retry_attempts,
                    error_type=type(e).__name__,
                    error=str(e),
                    retry_delay=delay,
                )
                await asyncio.sleep(delay)
            except ContextWindowExceededError as e:
                raise RequestTooLargeError(str(e)) from e
            except _PERMANENT_ERRORS as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise UpstreamServiceError(str(e), service="model") from e

    async def _request(self, model: str, request: dict[str, Any]) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": request["messages"],
            "temperature": request["temperature"],
            "timeout": settings.llm_request_timeout_seconds,
        }
        if request["tools"]:
            kwargs.update(tools=request["tools"], tool_choice="auto")
        if request["max_tokens"]:
            kwargs["max_tokens"] = request["max_tokens"]
        return await acompletion(**kwargs)

    async def _finish(
        self,
        response: ModelResponse,
        model: str,
        started: float,
        session_id: str | None,
        attempts: int,
    ) -> LLMResponse:
        result = _to_llm_response(response, model, int((time.monotonic() - started) * 1000))

        if self.event_bus and session_id:
            await self.event_bus.emit(
                EventType.LLM_CALL_COMPLETE,
                session_id,
                source="model_gateway",
                **result.metrics.model_dump(),
            )
        logger.info(
            "llm_call_complete",
            model=model,
            input_tokens=result.metrics.input_tokens,
            output_tokens=result.metrics.output_tokens,
            total_tokens=result.metrics.total_tokens,
            latency_ms=result.metrics.latency_ms,
            tool_calls=len(result.tool_calls),
            attempt=attempts,
        )
        return result


def _to_llm_response(response: ModelResponse, model: str, latency_ms: int) -> LLMResponse:
    choice = response.choices[0]
    usage = getattr(response, "usage", None)
    return LLMResponse(
        content=choice.message.content or "",
        tool_calls=[
            ToolCallData(
                id=tc.id,
                name=tc.function.name,
                args=normalize_tool_args(tc.function.arguments),
            )
            for tc in (choice.message.tool_calls or [])
        ],
        finish_reason=choice.finish_reason or "unknown",
        metrics=LLMMetrics(
            model=model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            latency_ms=latency_ms,
        ),
        raw_response=response,
    )


# =============================================================================
# Structured output helpers
# =============================================================================

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_decoder = json.JSONDecoder()


def _first_object(text: str) -> dict[str, Any] | None:
    """First ``{...}`` in ``text`` that decodes to a JSON object, ignoring trailing prose."""
    start = text.find("{")
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Pull a JSON object out of model text that may wrap it in prose or fences.

    Fenced ```json blocks are preferred over objects found in the surrounding
    text. Arrays and scalars are not accepted.
    """
    stripped = response.strip()
    try:
        whole = json.loads(stripped)
    except json.JSONDecodeError:
        whole = None
    if isinstance(whole, dict):
        return whole

    for block in _FENCED_BLOCK.findall(response):
        found = _first_object(block)
        if found is not None:
            return found
    return _first_object(response)


def parse_json_output(raw: str) -> dict[str, Any]:
    """Like ``extract_json_from_response`` but raises ParseError on failure."""
    parsed = extract_json_from_response(raw or "")
    if parsed is None:
        raise ParseError("Model output contained no JSON object", raw_text=raw or "")
    return parsed


# =============================================================================
# Mock
# =============================================================================


class MockLLMClient(LLMClient):
    """Scripted stand-in for LLMClient; no network calls.

    Each ``call`` consumes the next queued LLMResponse and records the
    request in ``call_history``. Running out of responses raises IndexError.
    """

    def __init__(self, responses: list[LLMResponse] | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses or [])
        self.call_history: list[dict[str, Any]] = []
        self._served = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int | None = None,
        session_id: str | None = None,
    ) -> LLMResponse:
        self.call_history.append({
            "messages": messages,
            "tools": tools,
            "model": model or self.default_model,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self._served >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._served]
        self._served += 1
        logger.debug("mock_llm_call", index=self._served - 1, tool_calls=len(response.tool_calls))
        return response
