"""
Conversation history types for the Parley agent.

A conversation is an append-only, ordered list of ``Message`` objects owned by
one ``Agent``. Messages are immutable; history is only ever appended to or
replaced wholesale.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageRole(str, Enum):
    """Author of a conversation message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the LLM.

    Attributes:
        id: Call ID issued by the provider (used to correlate the result).
        name: Name of the tool to invoke.
        args: Decoded JSON arguments, or the raw argument text when the
            provider sent something that does not parse as JSON.
    """

    id: str
    name: str
    args: dict[str, Any] | str


@dataclass(frozen=True)
class Message:
    """One entry of conversation history.

    Attributes:
        role: Author of the message.
        content: Text body. Empty for assistant messages that only call a tool.
        tool_calls: Tool invocations, only on assistant messages.
        tool_name: Name of the tool that produced this result (tool messages).
        tool_call_id: ID of the call this message answers (tool messages).
    """

    role: MessageRole
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = field(default_factory=tuple)
    tool_name: str | None = None
    tool_call_id: str | None = None

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: tuple[ToolCall, ...] = ()) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, content: str, tool_name: str, tool_call_id: str) -> "Message":
        return cls(
            role=MessageRole.TOOL,
            content=content,
            tool_name=tool_name,
            tool_call_id=tool_call_id,
        )
