"""
Tool clients for the Parley agent.

- ``ToolRegistry`` runs in-process async handlers.
- ``McpToolClient`` forwards calls to MCP servers launched over stdio.
- ``ToolClientGroup`` merges several clients into one.

The control-flow tools (``task_complete``, ``ask_question``) are defined in
``parley.conversation.tools.control`` and handled by the agent itself.
"""

from parley.conversation.tools.control import CONTROL_FLOW_TOOL_NAMES, CONTROL_FLOW_TOOLS
from parley.conversation.tools.mcp_client import McpToolClient
from parley.conversation.tools.registry import (
    AsyncToolHandler,
    ToolClient,
    ToolClientGroup,
    ToolExecutionError,
    ToolRegistry,
    ToolResult,
)

__all__ = [
    "AsyncToolHandler",
    "CONTROL_FLOW_TOOLS",
    "CONTROL_FLOW_TOOL_NAMES",
    "McpToolClient",
    "ToolClient",
    "ToolClientGroup",
    "ToolExecutionError",
    "ToolRegistry",
    "ToolResult",
]
