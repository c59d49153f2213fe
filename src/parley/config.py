"""
Configuration management for the Parley chat client.

This module provides a Settings class that loads configuration from environment
variables (``PARLEY_`` prefix, ``__`` for nested keys), an optional ``.env``
file and an optional JSON file, allowing easy configuration without code
changes.

Settings are plain values handed down to the components that need them. There
is no process-wide singleton; use `SettingsCache` where loading once and
reloading on demand is wanted.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

ProviderName = Literal["openai", "anthropic", "openai_compatible"]


class ModelConfig(BaseModel):
    """Static per-model generation settings.

    Keys may be given in snake_case or camelCase (``maxTokens``,
    ``isReasoningModel``, ...).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    provider: ProviderName = "openai"
    name: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    max_completion_tokens: int | None = None
    reasoning_effort: Literal["low", "medium", "high"] | None = None
    is_reasoning_model: bool = False
    top_p: float | None = None
    top_k: int | None = None
    stop_sequences: tuple[str, ...] = ()


class ProviderSettings(BaseModel):
    """Credentials and endpoint for one LLM provider."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    api_key: str | None = None
    base_url: str | None = None
    requires_api_key: bool = True


class McpServerConfig(BaseModel):
    """A tool server launched over stdio."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    enabled: bool = True


DEFAULT_MODELS: list[ModelConfig] = [
    ModelConfig(id="gpt-4.1", provider="openai", name="GPT-4.1", max_tokens=4096, temperature=0.7),
    ModelConfig(id="gpt-4o", provider="openai", name="GPT-4o", max_tokens=4096, temperature=0.7),
    ModelConfig(
        id="o4-mini",
        provider="openai",
        name="o4-mini",
        max_completion_tokens=4096,
        reasoning_effort="medium",
        is_reasoning_model=True,
    ),
    ModelConfig(
        id="o3-mini",
        provider="openai",
        name="o3-mini",
        max_completion_tokens=4096,
        reasoning_effort="medium",
        is_reasoning_model=True,
    ),
    ModelConfig(
        id="claude-3-7-sonnet-latest",
        provider="anthropic",
        name="Claude 3.7 Sonnet",
        max_tokens=4096,
        temperature=0.7,
    ),
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Provider selection
    default_provider: ProviderName = "openai"
    default_model: str = "gpt-4.1"

    # Provider credentials
    openai: ProviderSettings = Field(default_factory=ProviderSettings)
    anthropic: ProviderSettings = Field(default_factory=ProviderSettings)
    openai_compatible: ProviderSettings = Field(default_factory=ProviderSettings)

    # Chat
    user_guidelines: str | None = None
    models: list[ModelConfig] = Field(default_factory=lambda: list(DEFAULT_MODELS))

    # Tool servers
    mcp_servers: list[McpServerConfig] = Field(default_factory=list)

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="PARLEY_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def provider_settings(self, provider: ProviderName) -> ProviderSettings:
        """Return the credentials block for *provider*."""
        return getattr(self, provider)

    def model_config_for(self, model_id: str) -> ModelConfig | None:
        """Look up the `ModelConfig` for *model_id* (case-insensitive)."""
        wanted = model_id.lower()
        for entry in self.models:
            if entry.id.lower() == wanted:
                return entry
        return None

    @classmethod
    def from_json_file(cls, path: str | Path) -> "Settings":
        """Load settings from a JSON file; file values take precedence over env.

        Raises:
            FileNotFoundError: If *path* does not exist.
            ValueError: If the file is not a JSON object.
        """
        raw: Any = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"Config file {path} must contain a JSON object")
        logger.debug("Loaded settings from %s", path)
        return cls(**raw)


class SettingsCache:
    """Load-once holder for `Settings`.

    ``get()`` loads on first use and returns the same instance afterwards;
    ``reload()`` re-reads the source and replaces the cached value;
    ``clear()`` drops it so the next ``get()`` loads again. Safe to share
    between threads.

    Attributes:
        path: Optional JSON config file. Without one, settings come from the
            environment only.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._settings: Settings | None = None
        self._lock = threading.Lock()

    def get(self) -> Settings:
        """Return the cached settings, loading them on first call."""
        with self._lock:
            if self._settings is None:
                self._settings = self._load()
            return self._settings

    def reload(self) -> Settings:
        """Re-read the settings source and replace the cached value."""
        with self._lock:
            self._settings = self._load()
            return self._settings

    def clear(self) -> None:
        """Forget the cached value."""
        with self._lock:
            self._settings = None

    def _load(self) -> Settings:
        if self.path is not None and self.path.exists():
            return Settings.from_json_file(self.path)
        if self.path is not None:
            logger.info("Config file %s not found; using environment settings", self.path)
        return Settings()
