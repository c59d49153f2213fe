"""
Anthropic Messages API provider for the Parley conversation package.

Differences from the OpenAI-style wire format that this module hides:

- System messages are not accepted inline; they are joined into the
  top-level ``system`` field.
- Tool results travel as *user* messages carrying a ``tool_result`` block.
- Assistant tool calls are ``tool_use`` content blocks with structured input.
- Tool-call input arrives as ``input_json_delta`` fragments per content block
  and is complete at ``content_block_stop``.

The provider retries requests rejected as overloaded with exponential backoff
before giving up; every other failure is reported immediately as a terminal
error chunk.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

from anthropic import APIStatusError, AnthropicError, AsyncAnthropic

from parley.conversation.cancellation import CancellationToken, guarded
from parley.conversation.messages import Message, MessageRole, ToolCall
from parley.conversation.providers import (
    AnthropicParams,
    CompletionRequest,
    LLMError,
    ProviderOverloadedError,
    ProviderStreamError,
    StreamChunk,
    TextChunk,
    ToolCallChunk,
    close_stream,
    error_chunk,
    iterate_stream,
    parse_tool_arguments,
)

logger = logging.getLogger(__name__)

_OVERLOADED_STATUS = 529


def is_overloaded_error(exc: BaseException) -> bool:
    """Return True if *exc* reports that the Anthropic API is overloaded."""
    if isinstance(exc, APIStatusError) and exc.status_code == _OVERLOADED_STATUS:
        return True
    return "overloaded" in str(exc).lower()


@dataclass
class _ToolUseBlock:
    id: str
    name: str
    partial_json: str = ""


class AnthropicProvider:
    """Streaming provider backed by the Anthropic Messages API.

    Attributes:
        base_url: Optional API base URL override.
        retry_delays: Seconds to wait before each retry of an overloaded
            request. The number of entries is the retry cap.
    """

    RETRY_DELAYS: tuple[float, ...] = (2.0, 4.0, 8.0)

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        retry_delays: tuple[float, ...] | None = None,
    ) -> None:
        self.base_url = base_url
        self.retry_delays = self.RETRY_DELAYS if retry_delays is None else tuple(retry_delays)
        # Retries are handled here, not by the SDK.
        self._client = AsyncAnthropic(api_key=api_key, base_url=base_url, max_retries=0)

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    @staticmethod
    def extract_system_prompt(messages: list[Message]) -> str:
        """Join all system messages into one newline-separated string."""
        return "\n".join(m.content for m in messages if m.role is MessageRole.SYSTEM).strip()

    @staticmethod
    def convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert internal messages to Anthropic message dicts.

        System messages are skipped; see `extract_system_prompt`.
        """
        converted: list[dict[str, Any]] = []
        for message in messages:
            if message.role is MessageRole.SYSTEM:
                continue

            if message.role is MessageRole.TOOL:
                converted.append(
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "tool_result",
                                "tool_use_id": message.tool_call_id,
                                "content": message.content,
                            }
                        ],
                    }
                )
                continue

            content: list[dict[str, Any]] = []
            if message.content:
                content.append({"type": "text", "text": message.content})

            if message.role is MessageRole.ASSISTANT:
                for tc in message.tool_calls:
                    content.append(
                        {
                            "type": "tool_use",
                            "id": tc.id,
                            "name": tc.name,
                            "input": tc.args if isinstance(tc.args, dict) else {"input": tc.args},
                        }
                    )
                role = "assistant"
            else:
                role = "user"

            # The API rejects empty text blocks.
            if content:
                converted.append({"role": role, "content": content})
        return converted

    def build_request_kwargs(self, request: CompletionRequest) -> dict[str, Any]:
        """Build the keyword arguments for ``messages.create``."""
        params = request.params if request.params is not None else AnthropicParams()
        if not isinstance(params, AnthropicParams):
            raise TypeError(
                f"{type(params).__name__} cannot be sent to the Anthropic Messages API"
            )

        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": self.convert_messages(request.messages),
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
            "stream": True,
        }
        system = self.extract_system_prompt(request.messages)
        if system:
            kwargs["system"] = system
        if params.top_p is not None:
            kwargs["top_p"] = params.top_p
        if params.top_k is not None:
            kwargs["top_k"] = params.top_k
        if params.stop_sequences:
            kwargs["stop_sequences"] = list(params.stop_sequences)
        if request.tools:
            kwargs["tools"] = [t.to_anthropic_format() for t in request.tools]
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
            "Anthropic request: model=%s, messages=%d, tools=%d",
            request.model,
            len(kwargs["messages"]),
            len(kwargs.get("tools", [])),
        )

        try:
            response = await self._create_with_retry(kwargs, token)
        except LLMError as exc:
            yield error_chunk(exc)
            return

        try:
            async for chunk in self._normalise(response, token):
                yield chunk
        except AnthropicError as exc:
            if is_overloaded_error(exc):
                logger.error("Anthropic API overloaded mid-stream: %s", exc)
                yield error_chunk(
                    ProviderOverloadedError(
                        "Anthropic API is currently overloaded. Please try again in a "
                        "few moments or try using a different model."
                    )
                )
            else:
                logger.error("Error from Anthropic API: %s", exc)
                yield error_chunk(ProviderStreamError(f"Error from Anthropic API: {exc}"))
        finally:
            await close_stream(response)

    async def _create_with_retry(
        self, kwargs: dict[str, Any], token: CancellationToken | None
    ) -> Any:
        """Open the stream, retrying overloaded rejections with backoff.

        Raises:
            ProviderOverloadedError: If every attempt was rejected as overloaded.
            ProviderStreamError: For any other API failure (not retried).
            RequestCancelledError: If *token* fires during a request or a wait.
        """
        total_attempts = len(self.retry_delays) + 1
        for attempt in range(1, total_attempts + 1):
            try:
                return await guarded(self._client.messages.create(**kwargs), token)
            except AnthropicError as exc:
                if not is_overloaded_error(exc):
                    logger.error("Error from Anthropic API: %s", exc)
                    raise ProviderStreamError(
                        f"Error from Anthropic API: {exc}",
                        status_code=getattr(exc, "status_code", None),
                    ) from exc
                if attempt == total_attempts:
                    logger.error(
                        "Anthropic API still overloaded after %d attempts", total_attempts
                    )
                    raise ProviderOverloadedError(
                        "Anthropic API is currently overloaded. Please try again in a "
                        "few moments or try using a different model."
                    ) from exc
                delay = self.retry_delays[attempt - 1]
                logger.warning(
                    "Anthropic API overloaded; retrying in %.1fs (attempt %d/%d)",
                    delay,
                    attempt,
                    total_attempts,
                )
                await guarded(asyncio.sleep(delay), token)

        # Unreachable.
        raise RuntimeError("retry loop exited unexpectedly")  # pragma: no cover

    async def _normalise(
        self, response: Any, token: CancellationToken | None
    ) -> AsyncIterator[StreamChunk]:
        """Turn Anthropic stream events into text and completed tool-call chunks."""
        tool_blocks: dict[int, _ToolUseBlock] = {}

        async for event in iterate_stream(response, token):
            event_type = getattr(event, "type", None)

            if event_type == "content_block_start":
                block = event.content_block
                if getattr(block, "type", None) == "tool_use":
                    tool_blocks[event.index] = _ToolUseBlock(id=block.id, name=block.name)

            elif event_type == "content_block_delta":
                delta = event.delta
                delta_type = getattr(delta, "type", None)
                if delta_type == "text_delta" and delta.text:
                    yield TextChunk(delta.text)
                elif delta_type == "input_json_delta":
                    pending = tool_blocks.get(event.index)
                    if pending is not None:
                        pending.partial_json += delta.partial_json or ""

            elif event_type == "content_block_stop":
                pending = tool_blocks.pop(event.index, None)
                if pending is not None:
                    yield ToolCallChunk(
                        ToolCall(
                            id=pending.id,
                            name=pending.name,
                            args=parse_tool_arguments(pending.partial_json, pending.name),
                        )
                    )
