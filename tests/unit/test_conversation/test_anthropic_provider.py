"""Unit tests for parley.conversation.anthropic_provider."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from anthropic import APIStatusError

from parley.conversation.anthropic_provider import AnthropicProvider, is_overloaded_error
from parley.conversation.cancellation import CancellationToken, RequestCancelledError
from parley.conversation.messages import Message, ToolCall
from parley.conversation.providers import (
    AnthropicParams,
    CompletionRequest,
    StandardParams,
    TextChunk,
    ToolCallChunk,
    ToolDefinition,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _status_error(status_code: int, message: str = "error") -> APIStatusError:
    return APIStatusError(message, response=MagicMock(status_code=status_code), body=None)


def _make_provider(create: AsyncMock) -> AnthropicProvider:
    with patch("parley.conversation.anthropic_provider.AsyncAnthropic") as mock_cls:
        mock_client = MagicMock()
        mock_client.messages.create = create
        mock_cls.return_value = mock_client
        return AnthropicProvider(api_key="sk-ant-test", retry_delays=(0, 0, 0))


def _request(**kwargs) -> CompletionRequest:
    kwargs.setdefault("messages", [Message.system("Be nice."), Message.user("Hi")])
    return CompletionRequest(model="claude-3-7-sonnet-latest", **kwargs)


def _text_delta(index: int, text: str):
    return SimpleNamespace(
        type="content_block_delta", index=index, delta=SimpleNamespace(type="text_delta", text=text)
    )


def _tool_start(index: int, id: str, name: str):
    return SimpleNamespace(
        type="content_block_start",
        index=index,
        content_block=SimpleNamespace(type="tool_use", id=id, name=name),
    )


def _json_delta(index: int, partial_json: str):
    return SimpleNamespace(
        type="content_block_delta",
        index=index,
        delta=SimpleNamespace(type="input_json_delta", partial_json=partial_json),
    )


def _stop(index: int):
    return SimpleNamespace(type="content_block_stop", index=index)


async def _collect(provider: AnthropicProvider, request: CompletionRequest) -> list:
    return [chunk async for chunk in provider.stream(request)]


# ---------------------------------------------------------------------------
# Overload detection
# ---------------------------------------------------------------------------


def test_is_overloaded_error_by_status() -> None:
    assert is_overloaded_error(_status_error(529))
    assert not is_overloaded_error(_status_error(400, "bad request"))


def test_is_overloaded_error_by_message() -> None:
    assert is_overloaded_error(_status_error(500, "Overloaded"))


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------


def test_extract_system_prompt_joins_system_messages() -> None:
    messages = [Message.system("one"), Message.user("Hi"), Message.system("two")]

    assert AnthropicProvider.extract_system_prompt(messages) == "one\ntwo"


def test_convert_messages_maps_tool_traffic() -> None:
    messages = [
        Message.system("sys"),
        Message.user("Hi"),
        Message.assistant("Checking.", (ToolCall("tu_1", "lookup", {"q": "x"}),)),
        Message.tool("found", "lookup", "tu_1"),
        Message.assistant(""),
    ]

    converted = AnthropicProvider.convert_messages(messages)

    assert converted == [
        {"role": "user", "content": [{"type": "text", "text": "Hi"}]},
        {
            "role": "assistant",
            "content": [
                {"type": "text", "text": "Checking."},
                {"type": "tool_use", "id": "tu_1", "name": "lookup", "input": {"q": "x"}},
            ],
        },
        {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": "tu_1", "content": "found"}],
        },
    ]


def test_convert_messages_wraps_raw_string_input() -> None:
    message = Message.assistant("", (ToolCall("tu_1", "lookup", "{oops"),))

    converted = AnthropicProvider.convert_messages([message])

    assert converted[0]["content"][0]["input"] == {"input": "{oops"}


def test_build_request_kwargs() -> None:
    provider = _make_provider(AsyncMock())
    params = AnthropicParams(temperature=0.2, max_tokens=512, top_k=5, stop_sequences=("END",))

    kwargs = provider.build_request_kwargs(
        _request(params=params, tools=[ToolDefinition(name="lookup", description="d")])
    )

    assert kwargs["system"] == "Be nice."
    assert kwargs["temperature"] == 0.2
    assert kwargs["max_tokens"] == 512
    assert kwargs["top_k"] == 5
    assert kwargs["stop_sequences"] == ["END"]
    assert "top_p" not in kwargs
    assert kwargs["tools"][0]["input_schema"] == {"type": "object", "properties": {}}
    assert kwargs["stream"] is True


def test_build_request_kwargs_defaults() -> None:
    provider = _make_provider(AsyncMock())

    kwargs = provider.build_request_kwargs(_request())

    assert kwargs["temperature"] == 0.7
    assert kwargs["max_tokens"] == 4096


def test_build_request_kwargs_rejects_openai_params() -> None:
    provider = _make_provider(AsyncMock())

    with pytest.raises(TypeError):
        provider.build_request_kwargs(_request(params=StandardParams()))


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_stream_text_and_tool_use(make_stream) -> None:
    stream = make_stream(
        SimpleNamespace(type="message_start"),
        _text_delta(0, "Let me look. "),
        _stop(0),
        _tool_start(1, "tu_1", "lookup"),
        _json_delta(1, '{"q": '),
        _json_delta(1, '"cats"}'),
        _stop(1),
        SimpleNamespace(type="message_stop"),
    )
    provider = _make_provider(AsyncMock(return_value=stream))

    chunks = await _collect(provider, _request())

    assert chunks == [
        TextChunk("Let me look. "),
        ToolCallChunk(ToolCall("tu_1", "lookup", {"q": "cats"})),
    ]
    stream.close.assert_awaited_once()


@pytest.mark.anyio
async def test_stream_tool_use_without_input(make_stream) -> None:
    stream = make_stream(_tool_start(0, "tu_1", "task_complete"), _stop(0))
    provider = _make_provider(AsyncMock(return_value=stream))

    chunks = await _collect(provider, _request())

    assert chunks == [ToolCallChunk(ToolCall("tu_1", "task_complete", {}))]


@pytest.mark.anyio
async def test_overloaded_request_is_retried(make_stream) -> None:
    stream = make_stream(_text_delta(0, "finally"))
    create = AsyncMock(side_effect=[_status_error(529), _status_error(529), stream])
    provider = _make_provider(create)

    chunks = await _collect(provider, _request())

    assert chunks == [TextChunk("finally")]
    assert create.await_count == 3


@pytest.mark.anyio
async def test_overload_gives_up_after_retries() -> None:
    create = AsyncMock(side_effect=_status_error(529, "Overloaded"))
    provider = _make_provider(create)

    chunks = await _collect(provider, _request())

    assert create.await_count == 4
    assert len(chunks) == 1
    assert chunks[0].error is True
    assert "currently overloaded" in chunks[0].text


@pytest.mark.anyio
async def test_other_errors_are_not_retried() -> None:
    create = AsyncMock(side_effect=_status_error(400, "invalid request"))
    provider = _make_provider(create)

    chunks = await _collect(provider, _request())

    assert create.await_count == 1
    assert chunks[0].error is True
    assert "Error from Anthropic API" in chunks[0].text


@pytest.mark.anyio
async def test_mid_stream_overload_is_reported(make_stream) -> None:
    stream = make_stream(_text_delta(0, "partial"), _status_error(529, "Overloaded"))
    create = AsyncMock(return_value=stream)
    provider = _make_provider(create)

    chunks = await _collect(provider, _request())

    assert chunks[0] == TextChunk("partial")
    assert chunks[-1].error is True
    assert "currently overloaded" in chunks[-1].text
    assert create.await_count == 1


@pytest.mark.anyio
async def test_cancel_while_waiting_for_next_event(make_stalling_stream) -> None:
    stream = make_stalling_stream(_text_delta(0, "partial "))
    provider = _make_provider(AsyncMock(return_value=stream))
    token = CancellationToken()

    chunks = provider.stream(_request(cancel_token=token))
    assert await chunks.__anext__() == TextChunk("partial ")

    asyncio.get_running_loop().call_later(0.01, token.cancel)
    with pytest.raises(RequestCancelledError):
        await chunks.__anext__()
    stream.close.assert_awaited_once()
