"""
Parley - a terminal chat client for LLMs with tool calling.

Parley sends a conversation to an LLM provider (OpenAI, any OpenAI-compatible
endpoint, or Anthropic), streams the reply to the terminal, and lets the model
call tools exposed by MCP servers. It includes:

- The agent conversation loop with bounded, cancellable turns
- Streaming normalisers for each provider's wire format
- Tool clients (in-process registry and MCP servers over stdio)
- Settings loaded from the environment and an optional JSON file

Quick Start:
    >>> from parley import Agent, LLMClient, Settings, ToolRegistry
    >>> settings = Settings()
    >>> agent = Agent(LLMClient(settings), ToolRegistry(), settings)
    >>> await agent.initialize()
    >>> async for fragment in agent.chat("Hello!"):
    ...     print(fragment, end="")
"""

from parley.config import ModelConfig, Settings, SettingsCache
from parley.conversation import Agent, CancellationToken, LLMClient, ToolRegistry

__version__ = "0.1.0"
__all__ = [
    "Agent",
    "CancellationToken",
    "LLMClient",
    "ModelConfig",
    "Settings",
    "SettingsCache",
    "ToolRegistry",
]
