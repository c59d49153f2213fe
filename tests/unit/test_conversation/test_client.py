"""Unit tests for parley.conversation.client.LLMClient."""

from __future__ import annotations

from typing import AsyncIterator
from unittest.mock import MagicMock

import pytest

from parley.config import ModelConfig, ProviderSettings, Settings
from parley.conversation.anthropic_provider import AnthropicProvider
from parley.conversation.client import LLMClient, is_reasoning_model
from parley.conversation.messages import Message
from parley.conversation.providers import (
    AnthropicParams,
    CompletionRequest,
    ConfigurationError,
    OpenAICompatibleProvider,
    ReasoningParams,
    StandardParams,
    StreamChunk,
    TextChunk,
)


class RecordingBackend:
    """LLMProvider fake that records requests and replies with one chunk."""

    def __init__(self) -> None:
        self.requests: list[CompletionRequest] = []

    def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        self.requests.append(request)
        return self._reply()

    async def _reply(self) -> AsyncIterator[StreamChunk]:
        yield TextChunk("ok")


def _request(model: str, **kwargs) -> CompletionRequest:
    return CompletionRequest(model=model, messages=[Message.user("Hi")], **kwargs)


# ---------------------------------------------------------------------------
# Provider construction
# ---------------------------------------------------------------------------


def test_openai_provider_selected_by_default(settings) -> None:
    client = LLMClient(settings)

    assert client.provider_name == "openai"
    assert isinstance(client.provider, OpenAICompatibleProvider)


def test_anthropic_provider_selected(settings) -> None:
    client = LLMClient(settings, provider="anthropic")

    assert isinstance(client.provider, AnthropicProvider)


def test_missing_openai_key_fails_fast(settings) -> None:
    settings = settings.model_copy(update={"openai": ProviderSettings()})

    with pytest.raises(ConfigurationError, match="OpenAI API key"):
        LLMClient(settings)


def test_missing_anthropic_key_fails_fast(settings) -> None:
    with pytest.raises(ConfigurationError, match="Anthropic API key"):
        LLMClient(settings.model_copy(update={"anthropic": ProviderSettings()}), provider="anthropic")


def test_openai_compatible_requires_base_url(settings) -> None:
    with pytest.raises(ConfigurationError, match="Base URL"):
        LLMClient(settings, provider="openai_compatible")


def test_openai_compatible_requires_key_unless_disabled(settings) -> None:
    with pytest.raises(ConfigurationError, match="API key"):
        LLMClient(settings, provider="openai_compatible", base_url="http://localhost:11434/v1")


def test_openai_compatible_without_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PARLEY_OPENAI_COMPATIBLE__API_KEY", raising=False)
    settings = Settings(
        _env_file=None,
        openai_compatible={"baseUrl": "http://localhost:11434/v1", "requiresApiKey": False},
    )

    client = LLMClient(settings, provider="openai_compatible")

    assert client.provider.base_url == "http://localhost:11434/v1"


def test_backend_override_skips_validation() -> None:
    backend = RecordingBackend()

    client = LLMClient(Settings(_env_file=None), backend=backend)

    assert client.provider is backend


# ---------------------------------------------------------------------------
# Parameter resolution
# ---------------------------------------------------------------------------


def test_is_reasoning_model() -> None:
    assert is_reasoning_model("o3-mini")
    assert not is_reasoning_model("gpt-4o")
    assert is_reasoning_model("custom", ModelConfig(id="custom", is_reasoning_model=True))


def test_resolve_params_standard_model(settings) -> None:
    client = LLMClient(settings, backend=RecordingBackend())

    assert client.resolve_params("gpt-4o") == StandardParams(temperature=0.3, max_tokens=1024)


def test_resolve_params_unknown_model(settings) -> None:
    client = LLMClient(settings, backend=RecordingBackend())

    assert client.resolve_params("some-local-model") == StandardParams()


def test_resolve_params_reasoning_model(settings) -> None:
    client = LLMClient(settings, backend=RecordingBackend())

    params = client.resolve_params("o4-mini")

    assert params == ReasoningParams(reasoning_effort="high", max_completion_tokens=8000)


def test_resolve_params_unconfigured_reasoning_model(settings) -> None:
    client = LLMClient(settings, backend=RecordingBackend())

    assert client.resolve_params("o1-preview") == ReasoningParams(reasoning_effort="medium")


def test_resolve_params_anthropic(settings) -> None:
    client = LLMClient(settings, provider="anthropic", backend=RecordingBackend())

    params = client.resolve_params("claude-3-7-sonnet-latest")

    assert params == AnthropicParams(temperature=0.2, max_tokens=4096)
    assert client.resolve_params("claude-unknown") == AnthropicParams()


# ---------------------------------------------------------------------------
# chat_completion
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_chat_completion_fills_in_params(settings) -> None:
    backend = RecordingBackend()
    client = LLMClient(settings, backend=backend)

    chunks = [c async for c in client.chat_completion(_request("o4-mini"))]

    assert chunks == [TextChunk("ok")]
    sent = backend.requests[0]
    assert sent.params == ReasoningParams(reasoning_effort="high", max_completion_tokens=8000)


@pytest.mark.anyio
async def test_chat_completion_keeps_caller_params(settings) -> None:
    backend = RecordingBackend()
    client = LLMClient(settings, backend=backend)
    params = StandardParams(temperature=1.0)

    [c async for c in client.chat_completion(_request("gpt-4o", params=params))]

    assert backend.requests[0].params is params


@pytest.mark.anyio
async def test_chat_completion_drops_temperature_for_reasoning_model(settings) -> None:
    backend = RecordingBackend()
    client = LLMClient(settings, backend=backend)

    [c async for c in client.chat_completion(_request("o3-mini", params=StandardParams(temperature=0.9)))]

    assert backend.requests[0].params == ReasoningParams()


@pytest.mark.anyio
async def test_chat_completion_replaces_mismatched_params_for_anthropic(settings) -> None:
    backend = RecordingBackend()
    client = LLMClient(settings, provider="anthropic", backend=backend)

    [
        c
        async for c in client.chat_completion(
            _request("claude-3-7-sonnet-latest", params=StandardParams(temperature=0.9))
        )
    ]

    assert backend.requests[0].params == AnthropicParams(temperature=0.2, max_tokens=4096)


@pytest.mark.anyio
async def test_chat_completion_does_not_mutate_request(settings) -> None:
    backend = RecordingBackend()
    client = LLMClient(settings, backend=backend)
    request = _request("gpt-4o")
    token = MagicMock()
    request.cancel_token = token

    [c async for c in client.chat_completion(request)]

    assert request.params is None
    assert backend.requests[0].cancel_token is token
