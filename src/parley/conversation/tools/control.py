"""
Control-flow tools.

``task_complete`` and ``ask_question`` take no parameters and never reach a
tool backend. The model calls them to tell the agent loop that it is done or
that it needs input from the user; the `Agent` answers them itself and stops.
"""

from __future__ import annotations

from parley.conversation.providers import ToolDefinition

_NO_PARAMETERS = {"type": "object", "properties": {}}

TASK_COMPLETE_TOOL = ToolDefinition(
    name="task_complete",
    description="Call this tool when the task given by the user is complete",
    parameters=_NO_PARAMETERS,
)

ASK_QUESTION_TOOL = ToolDefinition(
    name="ask_question",
    description=(
        "Ask a question to the user to get more info required to solve or "
        "clarify their problem."
    ),
    parameters=_NO_PARAMETERS,
)

CONTROL_FLOW_TOOLS: tuple[ToolDefinition, ...] = (TASK_COMPLETE_TOOL, ASK_QUESTION_TOOL)

CONTROL_FLOW_TOOL_NAMES: frozenset[str] = frozenset(t.name for t in CONTROL_FLOW_TOOLS)

# Tool-message content recorded when the agent answers a control-flow call.
CONTROL_FLOW_ACKNOWLEDGEMENTS: dict[str, str] = {
    TASK_COMPLETE_TOOL.name: "Task marked as complete.",
    ASK_QUESTION_TOOL.name: "Waiting for the user's answer.",
}
