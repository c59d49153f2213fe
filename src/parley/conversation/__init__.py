"""
Parley Conversation Package.

Implements the agent conversation loop, the LLM client, and the provider
stream normalisers that turn OpenAI-style and Anthropic wire events into one
chunk stream.
"""

from parley.conversation.cancellation import CancellationToken, RequestCancelledError
from parley.conversation.client import LLMClient, is_reasoning_model
from parley.conversation.loop import Agent, ChatStream
from parley.conversation.messages import Message, MessageRole, ToolCall
from parley.conversation.providers import (
    AnthropicParams,
    CompletionRequest,
    ConfigurationError,
    LLMError,
    LLMProvider,
    OpenAICompatibleProvider,
    ProviderOverloadedError,
    ProviderStreamError,
    ReasoningParams,
    StandardParams,
    StreamChunk,
    TextChunk,
    ToolCallChunk,
    ToolDefinition,
)
from parley.conversation.tools import ToolClient, ToolExecutionError, ToolRegistry, ToolResult

__all__ = [
    "Agent",
    "AnthropicParams",
    "CancellationToken",
    "ChatStream",
    "CompletionRequest",
    "ConfigurationError",
    "LLMClient",
    "LLMError",
    "LLMProvider",
    "Message",
    "MessageRole",
    "OpenAICompatibleProvider",
    "ProviderOverloadedError",
    "ProviderStreamError",
    "ReasoningParams",
    "RequestCancelledError",
    "StandardParams",
    "StreamChunk",
    "TextChunk",
    "ToolCall",
    "ToolCallChunk",
    "ToolClient",
    "ToolDefinition",
    "ToolExecutionError",
    "ToolRegistry",
    "ToolResult",
    "is_reasoning_model",
]
