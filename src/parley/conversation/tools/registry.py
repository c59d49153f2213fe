"""
Tool clients for the Parley agent.

The `Agent` talks to tools only through the `ToolClient` protocol:
``list_tools()`` to discover definitions once, and ``call_tool(name, args)`` to
execute one. This module provides:

- ``ToolRegistry``: in-process tools. Register async handlers with a
  ``ToolDefinition``; calls get an optional timeout and bounded retries.
- ``ToolClientGroup``: merges several clients into one, routing each call
  to the client that listed the tool.

Typical usage::

    registry = ToolRegistry(timeout=10.0, max_retries=1)
    registry.register(WORD_COUNT_TOOL, count_words)

    agent = Agent(llm_client=client, tool_client=registry, settings=settings)
    await agent.initialize()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from parley.conversation.providers import ToolDefinition

logger = logging.getLogger(__name__)

# Type alias for a single tool handler: async (args) -> result_str
AsyncToolHandler = Callable[[Any], Awaitable[str]]


class ToolExecutionError(Exception):
    """Raised when a tool is unknown or its execution fails.

    Attributes:
        tool_name: Name of the tool that failed.
    """

    def __init__(self, message: str, tool_name: str | None = None) -> None:
        super().__init__(message)
        self.tool_name = tool_name


@dataclass(frozen=True)
class ToolResult:
    """Payload returned by a successful tool call."""

    content: str


@runtime_checkable
class ToolClient(Protocol):
    """Discovers and executes tools on behalf of the agent."""

    async def list_tools(self) -> list[ToolDefinition]:
        """Return the definitions of every available tool."""
        ...

    async def call_tool(self, name: str, args: Any) -> ToolResult:
        """Execute tool *name* with *args*.

        Raises:
            ToolExecutionError: If the tool is unknown or the call fails.
        """
        ...


class ToolRegistry:
    """Registry mapping tool names to their definitions and async handlers.

    Each call is wrapped with:

    - **Timeout**: ``asyncio.wait_for(handler(...), timeout=timeout)`` if
      *timeout* is set.
    - **Retry**: re-attempts the call up to *max_retries* additional times
      when the exception is an instance of *retry_exceptions*.

    Attributes:
        timeout: Maximum seconds per tool call (``None`` disables it).
        max_retries: Number of *additional* attempts on retryable failures.
        retry_exceptions: Exception types that trigger a retry.
    """

    def __init__(
        self,
        timeout: float | None = 30.0,
        max_retries: int = 0,
        retry_exceptions: tuple[type[BaseException], ...] = (asyncio.TimeoutError,),
    ) -> None:
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_exceptions = retry_exceptions
        self._tools: dict[str, tuple[ToolDefinition, AsyncToolHandler]] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, definition: ToolDefinition, handler: AsyncToolHandler) -> None:
        """Register a tool with its async handler.

        Raises:
            ValueError: If a tool with the same name is already registered.
        """
        if definition.name in self._tools:
            raise ValueError(
                f"Tool {definition.name!r} is already registered. "
                "Deregister it first before re-registering."
            )
        self._tools[definition.name] = (definition, handler)
        logger.debug("Registered tool: %r", definition.name)

    def deregister(self, name: str) -> None:
        """Remove a registered tool by name.

        Raises:
            KeyError: If the tool is not registered.
        """
        if name not in self._tools:
            raise KeyError(f"Tool {name!r} is not registered.")
        del self._tools[name]
        logger.debug("Deregistered tool: %r", name)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    # ------------------------------------------------------------------
    # ToolClient
    # ------------------------------------------------------------------

    async def list_tools(self) -> list[ToolDefinition]:
        """Return all registered ``ToolDefinition`` objects (insertion order)."""
        return [defn for defn, _handler in self._tools.values()]

    async def call_tool(self, name: str, args: Any) -> ToolResult:
        """Run the handler registered under *name*.

        Raises:
            ToolExecutionError: If *name* is unknown, or the handler fails
                (after any retries).
        """
        entry = self._tools.get(name)
        if entry is None:
            logger.warning("Unknown tool requested: %r", name)
            raise ToolExecutionError(f"Unknown tool: {name!r}", tool_name=name)

        _definition, handler = entry
        total_attempts = self.max_retries + 1

        for attempt in range(1, total_attempts + 1):
            try:
                if self.timeout is not None:
                    content = await asyncio.wait_for(handler(args), timeout=self.timeout)
                else:
                    content = await handler(args)
                return ToolResult(content=content)
            except Exception as exc:
                is_retryable = self.retry_exceptions and isinstance(exc, self.retry_exceptions)
                if is_retryable and attempt < total_attempts:
                    logger.warning(
                        "Tool %r attempt %d/%d failed (%s: %s); retrying",
                        name,
                        attempt,
                        total_attempts,
                        type(exc).__name__,
                        exc,
                    )
                    continue
                if isinstance(exc, asyncio.TimeoutError):
                    message = f"Tool {name!r} timed out after {self.timeout}s"
                else:
                    message = f"Tool {name!r} failed: {exc}"
                raise ToolExecutionError(message, tool_name=name) from exc

        # Unreachable.
        raise RuntimeError("call_tool: retry loop exited unexpectedly")  # pragma: no cover


class ToolClientGroup:
    """Presents several tool clients as one.

    Tool names are resolved at ``list_tools()`` time; when two clients list the
    same name, the first client wins.
    """

    def __init__(self, *clients: ToolClient) -> None:
        self.clients = clients
        self._routes: dict[str, ToolClient] = {}

    async def list_tools(self) -> list[ToolDefinition]:
        definitions: list[ToolDefinition] = []
        self._routes = {}
        for client in self.clients:
            for definition in await client.list_tools():
                if definition.name in self._routes:
                    logger.warning("Duplicate tool %r ignored", definition.name)
                    continue
                self._routes[definition.name] = client
                definitions.append(definition)
        return definitions

    async def call_tool(self, name: str, args: Any) -> ToolResult:
        client = self._routes.get(name)
        if client is None:
            raise ToolExecutionError(f"Unknown tool: {name!r}", tool_name=name)
        return await client.call_tool(name, args)
