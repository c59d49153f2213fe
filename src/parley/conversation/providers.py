"""
LLM provider abstractions for the Parley conversation package.

Defines the `LLMProvider` Protocol so the `Agent` can work with any streaming
backend without being tied to a specific vendor SDK. Every provider turns its
wire events into one uniform stream of `TextChunk` / `ToolCallChunk` values.

The OpenAI-style implementation, `OpenAICompatibleProvider`, uses
`openai.AsyncOpenAI` which supports OpenAI itself and any OpenAI-compatible
base URL. The Anthropic implementation lives in
`parley.conversation.anthropic_provider`.

Also provides:
- Custom exception hierarchy for LLM errors.
- The tagged generation-parameter variants (`StandardParams`,
  `ReasoningParams`, `AnthropicParams`) carried by `CompletionRequest`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Protocol, Union, runtime_checkable

from openai import APIConnectionError, APIStatusError, AsyncOpenAI, OpenAIError

from parley.conversation.cancellation import (
    CancellationToken,
    RequestCancelledError,
    guarded,
)
from parley.conversation.messages import Message, MessageRole, ToolCall

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Custom exception hierarchy
# ---------------------------------------------------------------------------


class LLMError(Exception):
    """Base exception for all LLM provider errors."""


class ConfigurationError(LLMError):
    """Raised at construction time when credentials or a base URL are missing."""


class ProviderOverloadedError(LLMError):
    """Raised when the provider reports it is overloaded (after retries)."""


class ProviderStreamError(LLMError):
    """Raised for any other failure while requesting or reading a stream.

    Attributes:
        status_code: HTTP status code from the API, or ``None`` if unavailable.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Core data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolDefinition:
    """Describes a callable tool available to the LLM.

    Attributes:
        name: The tool's unique name (used by the LLM to invoke it).
        description: Human-readable description shown in the LLM's tool prompt.
        parameters: JSON Schema dict describing the tool's input parameters.
    """

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_openai_format(self) -> dict[str, Any]:
        """Serialise to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic_format(self) -> dict[str, Any]:
        """Serialise to Anthropic tool definition format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters or {"type": "object", "properties": {}},
        }


@dataclass(frozen=True)
class TextChunk:
    """A fragment of streamed assistant text.

    Attributes:
        text: The text fragment.
        error: True when the fragment describes a provider failure. An error
            chunk is always the last chunk of its stream.
    """

    text: str
    error: bool = False
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ToolCallChunk:
    """A completed tool invocation decoded from the stream."""

    tool_call: ToolCall
    type: Literal["tool_call"] = "tool_call"


StreamChunk = Union[TextChunk, ToolCallChunk]


ReasoningEffort = Literal["low", "medium", "high"]


@dataclass(frozen=True)
class StandardParams:
    """Sampling controls for standard (non-reasoning) OpenAI-style models."""

    temperature: float | None = None
    max_tokens: int | None = None


@dataclass(frozen=True)
class ReasoningParams:
    """Effort controls for reasoning models (no temperature)."""

    reasoning_effort: ReasoningEffort = "medium"
    max_completion_tokens: int | None = None


@dataclass(frozen=True)
class AnthropicParams:
    """Sampling controls for the Anthropic Messages API."""

    temperature: float = 0.7
    max_tokens: int = 4096
    top_p: float | None = None
    top_k: int | None = None
    stop_sequences: tuple[str, ...] = ()


GenerationParams = Union[StandardParams, ReasoningParams, AnthropicParams]


@dataclass
class CompletionRequest:
    """A single streaming completion request.

    Attributes:
        model: Model identifier.
        messages: Full conversation history in internal format.
        tools: Tool definitions offered to the model.
        params: Exactly one generation-parameter variant. ``None`` lets the
            `LLMClient` resolve it from the model configuration.
        cancel_token: Optional token that aborts the request.
    """

    model: str
    messages: list[Message]
    tools: list[ToolDefinition] = field(default_factory=list)
    params: GenerationParams | None = None
    cancel_token: CancellationToken | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_REASONING_MODEL_RE = re.compile(r"^o\d")


def looks_like_reasoning_model(model_id: str) -> bool:
    """Return True if *model_id* names an o-series reasoning model."""
    return bool(_REASONING_MODEL_RE.match(model_id.lower()))


def parse_tool_arguments(raw: str, tool_name: str = "") -> dict[str, Any] | str:
    """Decode buffered tool-call argument text.

    Returns the parsed JSON value, or *raw* unchanged if it is not valid JSON.
    An empty buffer decodes to ``{}``.
    """
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning(
            "Could not parse arguments for tool %r (%s); passing raw text", tool_name, exc
        )
        return raw


async def close_stream(stream: Any) -> None:
    """Close an SDK stream object if it supports closing."""
    close = getattr(stream, "close", None)
    if close is None:
        return
    try:
        await close()
    except Exception as exc:
        logger.debug("Ignoring error while closing stream: %s", exc)


async def iterate_stream(
    stream: Any, token: CancellationToken | None
) -> AsyncIterator[Any]:
    """Yield events from an SDK stream, racing every read against *token*."""
    iterator = stream.__aiter__()
    while True:
        try:
            event = await guarded(iterator.__anext__(), token)
        except StopAsyncIteration:
            return
        yield event


def error_chunk(error: LLMError) -> TextChunk:
    """Render a provider failure as the terminal chunk of a stream."""
    return TextChunk(f"\n\nError: {error}", error=True)


# ---------------------------------------------------------------------------
# LLMProvider Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class LLMProvider(Protocol):
    """Protocol for streaming LLM backends used by `LLMClient`."""

    def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        """Send *request* and return a one-shot stream of chunks.

        Provider failures are reported as a final ``TextChunk(error=True)``.

        Raises:
            RequestCancelledError: If ``request.cancel_token`` fires.
        """
        ...


# ---------------------------------------------------------------------------
# OpenAI-style provider implementation
# ---------------------------------------------------------------------------


@dataclass
class _PendingToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


class OpenAICompatibleProvider:
    """Streaming provider backed by any OpenAI-compatible endpoint.

    Works with:
    - OpenAI (``https://api.openai.com/v1``)
    - Ollama (``http://localhost:11434/v1``)
    - Any other OpenAI-compatible API

    Attributes:
        base_url: The API base URL (``None`` for the SDK default).
    """

    def __init__(self, api_key: str, base_url: str | None = None) -> None:
        self.base_url = base_url
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    @staticmethod
    def convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert internal messages to OpenAI chat message dicts."""
        converted: list[dict[str, Any]] = []
        for message in messages:
            entry: dict[str, Any] = {"role": message.role.value, "content": message.content}
            if message.role is MessageRole.ASSISTANT and message.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": tc.args if isinstance(tc.args, str) else json.dumps(tc.args),
                        },
                    }
                    for tc in message.tool_calls
                ]
            elif message.role is MessageRole.TOOL:
                entry["tool_call_id"] = message.tool_call_id
                entry["name"] = message.tool_name
            converted.append(entry)
        return converted

    def build_request_kwargs(self, request: CompletionRequest) -> dict[str, Any]:
        """Build the keyword arguments for ``chat.completions.create``."""
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": self.convert_messages(request.messages),
            "stream": True,
        }
        if request.tools:
            kwargs["tools"] = [t.to_openai_format() for t in request.tools]
            kwargs["tool_choice"] = "auto"

        params = request.params
        if isinstance(params, ReasoningParams):
            kwargs["reasoning_effort"] = params.reasoning_effort
            if params.max_completion_tokens is not None:
                kwargs["max_completion_tokens"] = params.max_completion_tokens
        elif isinstance(params, StandardParams):
            if params.temperature is not None:
                kwargs["temperature"] = params.temperature
            if params.max_tokens is not None:
                kwargs["max_tokens"] = params.max_tokens
        elif params is not None:
            raise TypeError(
                f"{type(params).__name__} cannot be sent to an OpenAI-style endpoint"
            )
        return kwargs

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        """Stream a completion and normalise it into chunks.

        Raises:
            RequestCancelledError: If the request's cancel token fires.
        """
        kwargs = self.build_request_kwargs(request)
        token = request.cancel_token

        logger.debug(
            "LLM request: model=%s, messages=%d, tools=%d",
            request.model,
            len(kwargs["messages"]),
            len(kwargs.get("tools", [])),
        )

        try:
            response = await guarded(self._client.chat.completions.create(**kwargs), token)
        except OpenAIError as exc:
            yield error_chunk(self._wrap_error(exc))
            return

        try:
            async for chunk in self._normalise(response, token):
                yield chunk
        except OpenAIError as exc:
            yield error_chunk(self._wrap_error(exc))
        finally:
            await close_stream(response)

    async def _normalise(
        self, response: Any, token: CancellationToken | None
    ) -> AsyncIterator[StreamChunk]:
        """Turn OpenAI delta events into text and completed tool-call chunks.

        Tool-call deltas are buffered per ``index`` slot and released together
        once the provider reports ``finish_reason == "tool_calls"``.
        """
        pending: dict[int, _PendingToolCall] = {}

        async for event in iterate_stream(response, token):
            if not event.choices:
                continue
            choice = event.choices[0]
            delta = choice.delta

            if delta is not None:
                if delta.content:
                    yield TextChunk(delta.content)

                for tc_delta in delta.tool_calls or []:
                    slot = pending.setdefault(tc_delta.index or 0, _PendingToolCall())
                    if tc_delta.id:
                        slot.id = tc_delta.id
                    function = tc_delta.function
                    if function is not None:
                        if function.name:
                            slot.name = function.name
                        if function.arguments:
                            slot.arguments += function.arguments

            if choice.finish_reason == "tool_calls" and pending:
                for chunk in self._flush(pending):
                    yield chunk

        if pending:
            logger.debug("Stream ended with %d unflushed tool call(s)", len(pending))
            for chunk in self._flush(pending):
                yield chunk

    @staticmethod
    def _flush(pending: dict[int, _PendingToolCall]) -> list[ToolCallChunk]:
        chunks = [
            ToolCallChunk(
                ToolCall(
                    id=slot.id,
                    name=slot.name,
                    args=parse_tool_arguments(slot.arguments, slot.name),
                )
            )
            for _index, slot in sorted(pending.items())
        ]
        pending.clear()
        return chunks

    @staticmethod
    def _wrap_error(exc: OpenAIError) -> ProviderStreamError:
        if isinstance(exc, APIConnectionError):
            logger.error("LLM connection failed: %s", exc)
            return ProviderStreamError(f"Could not connect to LLM endpoint: {exc}")
        if isinstance(exc, APIStatusError):
            logger.error("LLM API error %d: %s", exc.status_code, exc)
            return ProviderStreamError(
                f"LLM API returned status {exc.status_code}: {exc}",
                status_code=exc.status_code,
            )
        logger.error("LLM request failed: %s", exc)
        return ProviderStreamError(f"LLM request failed: {exc}")
