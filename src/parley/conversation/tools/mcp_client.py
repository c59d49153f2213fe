"""
MCP tool client.

Launches the configured Model Context Protocol servers over stdio (via the
``mcp`` SDK), lists their tools and forwards calls to whichever server owns
the tool. Use it as an async context manager so the server processes are shut
down with the session::

    async with McpToolClient(settings.mcp_servers) as mcp_tools:
        agent = Agent(llm_client=client, tool_client=mcp_tools, settings=settings)
        await agent.initialize()
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from parley.config import McpServerConfig
from parley.conversation.providers import ToolDefinition
from parley.conversation.tools.registry import ToolExecutionError, ToolResult

logger = logging.getLogger(__name__)


def result_text(result: Any) -> str:
    """Join the text content blocks of an MCP ``CallToolResult``."""
    parts = []
    for block in result.content or []:
        text = getattr(block, "text", None)
        if text is not None:
            parts.append(text)
        else:
            parts.append(f"[{getattr(block, 'type', 'unknown')} content]")
    return "\n".join(parts)


class McpToolClient:
    """`ToolClient` backed by one or more stdio MCP servers."""

    def __init__(self, servers: list[McpServerConfig]) -> None:
        self.servers = [s for s in servers if s.enabled]
        self._stack: AsyncExitStack | None = None
        self._sessions: dict[str, ClientSession] = {}
        self._routes: dict[str, str] = {}

    async def __aenter__(self) -> "McpToolClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Start every enabled server and initialise its session.

        A server that fails to start is logged and skipped.
        """
        self._stack = AsyncExitStack()
        for server in self.servers:
            params = StdioServerParameters(
                command=server.command, args=list(server.args), env=server.env
            )
            try:
                read, write = await self._stack.enter_async_context(stdio_client(params))
                session = await self._stack.enter_async_context(ClientSession(read, write))
                await session.initialize()
            except Exception as exc:
                logger.error("Could not start MCP server %r: %s", server.name, exc)
                continue
            self._sessions[server.name] = session
            logger.info("Connected to MCP server %r", server.name)

    async def close(self) -> None:
        """Shut down all server sessions."""
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None
        self._sessions.clear()
        self._routes.clear()

    async def list_tools(self) -> list[ToolDefinition]:
        definitions: list[ToolDefinition] = []
        self._routes = {}
        for server_name, session in self._sessions.items():
            listing = await session.list_tools()
            for tool in listing.tools:
                if tool.name in self._routes:
                    logger.warning(
                        "Tool %r from %r shadows an earlier server; ignored",
                        tool.name,
                        server_name,
                    )
                    continue
                self._routes[tool.name] = server_name
                definitions.append(
                    ToolDefinition(
                        name=tool.name,
                        description=tool.description or "",
                        parameters=dict(tool.inputSchema or {}),
                    )
                )
        logger.debug("Discovered %d MCP tool(s)", len(definitions))
        return definitions

    async def call_tool(self, name: str, args: Any) -> ToolResult:
        server_name = self._routes.get(name)
        if server_name is None:
            raise ToolExecutionError(f"Unknown tool: {name!r}", tool_name=name)
        if not isinstance(args, dict):
            raise ToolExecutionError(
                f"Arguments for {name!r} must be a JSON object, got {args!r}",
                tool_name=name,
            )

        session = self._sessions[server_name]
        try:
            result = await session.call_tool(name, arguments=args)
        except Exception as exc:
            raise ToolExecutionError(f"Tool {name!r} failed: {exc}", tool_name=name) from exc

        text = result_text(result)
        if result.isError:
            raise ToolExecutionError(f"Tool {name!r} returned an error: {text}", tool_name=name)
        return ToolResult(content=text)
