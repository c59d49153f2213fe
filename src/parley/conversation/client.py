"""
LLMClient: single entry point for streaming completions.

The client hides which provider is active. It validates credentials when it is
constructed (a missing API key or base URL fails immediately with
`ConfigurationError`, not on the first request), picks the matching provider
implementation, and fills in model-specific generation parameters from the
configured `ModelConfig` table when the caller did not supply them.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import AsyncIterator

from parley.config import ModelConfig, ProviderName, Settings
from parley.conversation.anthropic_provider import AnthropicProvider
from parley.conversation.providers import (
    AnthropicParams,
    CompletionRequest,
    ConfigurationError,
    GenerationParams,
    LLMProvider,
    OpenAICompatibleProvider,
    ReasoningParams,
    StandardParams,
    StreamChunk,
    looks_like_reasoning_model,
)

logger = logging.getLogger(__name__)

# Local OpenAI-compatible servers ignore the key, but the SDK requires one.
_PLACEHOLDER_API_KEY = "not-needed"


def is_reasoning_model(model_id: str, model_config: ModelConfig | None = None) -> bool:
    """Return True if *model_id* should use reasoning-model parameters.

    A model is a reasoning model if its id starts with ``o`` followed by a
    digit, or if its configuration explicitly says so.
    """
    if looks_like_reasoning_model(model_id):
        return True
    return model_config is not None and model_config.is_reasoning_model


class LLMClient:
    """Streams completions from the configured provider.

    Attributes:
        provider_name: Which provider family requests are sent to.
        provider: The provider implementation.
    """

    def __init__(
        self,
        settings: Settings,
        provider: ProviderName | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        backend: LLMProvider | None = None,
    ) -> None:
        """Initialise the client and validate credentials.

        Args:
            settings: Application settings (credentials and model table).
            provider: Provider override; defaults to ``settings.default_provider``.
            api_key: API key override.
            base_url: Base URL override.
            backend: Pre-built provider implementation (skips credential
                validation; used by tests and embedding applications).

        Raises:
            ConfigurationError: If the provider's API key or base URL is
                required but missing.
        """
        self.settings = settings
        self.provider_name: ProviderName = provider or settings.default_provider
        self.provider: LLMProvider = backend or self._build_provider(api_key, base_url)
        logger.info("LLM client using provider %r", self.provider_name)

    def _build_provider(self, api_key: str | None, base_url: str | None) -> LLMProvider:
        creds = self.settings.provider_settings(self.provider_name)
        api_key = api_key or creds.api_key
        base_url = base_url or creds.base_url

        if self.provider_name == "anthropic":
            if not api_key:
                raise ConfigurationError(
                    "Anthropic API key is required. Set PARLEY_ANTHROPIC__API_KEY "
                    "or add it to the config file."
                )
            return AnthropicProvider(api_key=api_key, base_url=base_url)

        if self.provider_name == "openai_compatible":
            if not base_url:
                raise ConfigurationError(
                    "Base URL for the OpenAI-compatible endpoint is required. Set "
                    "PARLEY_OPENAI_COMPATIBLE__BASE_URL or add it to the config file."
                )
            if creds.requires_api_key and not api_key:
                raise ConfigurationError(
                    "API key for the OpenAI-compatible endpoint is required. Set "
                    "PARLEY_OPENAI_COMPATIBLE__API_KEY, or set requires_api_key to false."
                )
            return OpenAICompatibleProvider(
                api_key=api_key or _PLACEHOLDER_API_KEY, base_url=base_url
            )

        if not api_key:
            raise ConfigurationError(
                "OpenAI API key is required. Set PARLEY_OPENAI__API_KEY "
                "or add it to the config file."
            )
        return OpenAICompatibleProvider(api_key=api_key, base_url=base_url)

    # ------------------------------------------------------------------
    # Parameter resolution
    # ------------------------------------------------------------------

    def resolve_params(self, model: str) -> GenerationParams:
        """Build the generation-parameter variant for *model* from ModelConfig."""
        model_config = self.settings.model_config_for(model)

        if self.provider_name == "anthropic":
            if model_config is None:
                return AnthropicParams()
            return AnthropicParams(
                temperature=(
                    model_config.temperature if model_config.temperature is not None else 0.7
                ),
                max_tokens=model_config.max_tokens or 4096,
                top_p=model_config.top_p,
                top_k=model_config.top_k,
                stop_sequences=tuple(model_config.stop_sequences),
            )

        if is_reasoning_model(model, model_config):
            if model_config is None:
                return ReasoningParams()
            return ReasoningParams(
                reasoning_effort=model_config.reasoning_effort or "medium",
                max_completion_tokens=model_config.max_completion_tokens,
            )

        if model_config is None:
            return StandardParams()
        return StandardParams(
            temperature=model_config.temperature,
            max_tokens=model_config.max_tokens,
        )

    def _coerce_params(self, model: str, params: GenerationParams) -> GenerationParams:
        """Make caller-supplied params legal for *model* and the active provider."""
        if self.provider_name == "anthropic":
            if isinstance(params, AnthropicParams):
                return params
            logger.debug("Replacing %s with Anthropic params", type(params).__name__)
            return self.resolve_params(model)

        if isinstance(params, AnthropicParams):
            logger.debug("Replacing Anthropic params for OpenAI-style provider")
            return self.resolve_params(model)

        if isinstance(params, StandardParams) and is_reasoning_model(
            model, self.settings.model_config_for(model)
        ):
            logger.debug("Model %r is a reasoning model; dropping temperature", model)
            return ReasoningParams()
        return params

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def chat_completion(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        """Stream a completion for *request* from the active provider.

        Returns a fresh one-shot async iterator of chunks. Provider failures
        arrive as a final ``TextChunk(error=True)``.
        """
        if request.params is None:
            params = self.resolve_params(request.model)
        else:
            params = self._coerce_params(request.model, request.params)
        return self.provider.stream(replace(request, params=params))
