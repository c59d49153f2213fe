"""
Agent: the turn-taking conversation loop for Parley.

This module implements the core "agentic" behaviour: sending the history to
the LLM, streaming its text to the caller as it arrives, dispatching the tool
calls it requests, feeding results back, and deciding after every turn
whether to ask the model for another one.

One ``chat()`` call drives one user message to completion, possibly through
many LLM/tool round-trips. Turns are strictly sequential: each turn depends on
the exact history produced by the previous one, so a single ``Agent`` must
never be driven by two ``chat()`` calls at once.

Termination, checked after every completed turn:

1. The last message answers a control-flow tool (``task_complete`` /
   ``ask_question``) → stop.
2. More than ``max_turns`` turns ran and the last message is not a tool
   result → stop. A turn ending in a tool call is exempt from the cap.
3. A tool call was expected this turn but the last message is not a tool
   result → stop.
4. Otherwise continue; a tool call is expected next turn only if this turn
   was plain text.
"""

from __future__ import annotations

import json
import logging
import time
import weakref
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol

from parley.config import Settings
from parley.conversation.cancellation import CancellationToken, RequestCancelledError, guarded
from parley.conversation.messages import Message, MessageRole, ToolCall
from parley.conversation.providers import (
    CompletionRequest,
    GenerationParams,
    StreamChunk,
    TextChunk,
    ToolCallChunk,
    ToolDefinition,
)
from parley.conversation.tools.control import (
    CONTROL_FLOW_ACKNOWLEDGEMENTS,
    CONTROL_FLOW_TOOL_NAMES,
    CONTROL_FLOW_TOOLS,
)
from parley.conversation.tools.registry import ToolClient, ToolExecutionError, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """
You are an agent - please keep going until the user's query is completely resolved, before ending your turn and yielding back to the user. Only terminate your turn when you are sure that the problem is solved, or if you need more info from the user to solve the problem.

If you are not sure about anything pertaining to the user's request, use your tools to read files and gather the relevant information: do NOT guess or make up an answer.

You MUST plan extensively before each function call, and reflect extensively on the outcomes of the previous function calls. DO NOT do this entire process by making function calls only, as this can impair your ability to solve the problem and think insightfully.
"""

# Maximum number of non-tool-calling turns per chat() call.
MAX_NUM_TURNS = 10


class CompletionClient(Protocol):
    """The part of `LLMClient` the agent depends on."""

    def resolve_params(self, model: str) -> GenerationParams: ...

    def chat_completion(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]: ...


@dataclass
class _TurnOutcome:
    failed: bool = False


def format_tool_args(args: Any) -> str:
    """Render tool arguments for display (best effort)."""
    if isinstance(args, str):
        return args
    try:
        return json.dumps(args, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(args)


def format_tool_notice(tool_call: ToolCall, content: str) -> str:
    """Build the notice shown to the user after a tool call completes."""
    return f"\n[Tool Call] {tool_call.name}({format_tool_args(tool_call.args)})\n{content}\n"


class ChatStream:
    """The reply stream returned by ``Agent.chat()``.

    Holds the agent's single chat slot from creation until the stream is
    exhausted, fails, is closed with ``aclose()``, or is dropped (including
    when it is never iterated or the caller breaks out of ``async for``).
    """

    def __init__(self, agent: "Agent", inner: AsyncIterator[str]) -> None:
        self._agent = agent
        self._inner = inner
        self._released = False

    def __aiter__(self) -> "ChatStream":
        return self

    async def __anext__(self) -> str:
        if self._released:
            raise StopAsyncIteration
        try:
            return await self._inner.__anext__()
        except BaseException:
            self._release()
            raise

    async def aclose(self) -> None:
        """Stop the reply and free the agent for the next ``chat()``."""
        self._release()
        await self._inner.aclose()

    def _release(self) -> None:
        if not self._released:
            self._released = True
            self._agent._release_stream(self)

    def __del__(self) -> None:
        self._release()


class Agent:
    """Owns one conversation and drives it through the LLM and tools.

    Typical usage::

        agent = Agent(llm_client=LLMClient(settings), tool_client=tools, settings=settings)
        await agent.initialize()
        async for fragment in agent.chat("What changed in the last release?"):
            print(fragment, end="", flush=True)

    Attributes:
        model: Model used when ``chat()`` is not given one.
        max_turns: Cap on turns that do not end in a tool call.
    """

    def __init__(
        self,
        llm_client: CompletionClient,
        tool_client: ToolClient,
        settings: Settings,
        model: str | None = None,
        user_guidelines: str | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        max_turns: int = MAX_NUM_TURNS,
    ) -> None:
        self._llm_client = llm_client
        self._tool_client = tool_client
        self.model = model or settings.default_model
        self.max_turns = max_turns
        self._system_prompt = system_prompt
        self._user_guidelines = user_guidelines or settings.user_guidelines
        self._tools: list[ToolDefinition] = []
        self._initialized = False
        self._stream: weakref.ref[ChatStream] | None = None
        self._messages: list[Message] = self._initial_messages()

    def _initial_messages(self) -> list[Message]:
        messages = [Message.system(self._system_prompt)]
        if self._user_guidelines:
            messages.append(
                Message.system(f"Additional user guidelines: {self._user_guidelines}")
            )
        return messages

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Discover the available tools. Must be called before ``chat()``."""
        self._tools = list(await self._tool_client.list_tools())
        self._initialized = True
        logger.info("Agent initialised with %d tool(s)", len(self._tools))

    @property
    def tools(self) -> tuple[ToolDefinition, ...]:
        """Tools discovered by ``initialize()`` (control-flow tools excluded)."""
        return tuple(self._tools)

    def chat(
        self,
        user_input: str,
        *,
        cancel_token: CancellationToken | None = None,
        model: str | None = None,
    ) -> ChatStream:
        """Add *user_input* to the conversation and run the loop.

        The user message is appended immediately; the returned async iterator
        drives the loop and yields output fragments (model text and tool-call
        notices) in the order they are produced. Until that stream finishes,
        is closed or is dropped, further ``chat()`` calls are refused.

        Args:
            user_input: The user's message.
            cancel_token: Cancels the in-flight request or tool call; the loop
                then ends silently.
            model: Model for this call only; defaults to ``self.model``.

        Raises:
            RuntimeError: If ``initialize()`` has not been awaited, or another
                ``chat()`` stream of this agent is still open.
        """
        if not self._initialized:
            raise RuntimeError("Agent.initialize() must be awaited before chat()")
        if self._open_stream() is not None:
            raise RuntimeError("A previous chat() response is still streaming")

        self._messages.append(Message.user(user_input))
        stream = ChatStream(self, self._conversation_loop(model or self.model, cancel_token))
        self._stream = weakref.ref(stream)
        return stream

    def reset_conversation(self) -> None:
        """Start a fresh conversation (system prompt and guidelines only)."""
        self._messages = self._initial_messages()
        logger.info("Conversation reset")

    def get_conversation(self) -> tuple[Message, ...]:
        """Return a snapshot of the conversation history."""
        return tuple(self._messages)

    def set_model(self, model: str) -> None:
        """Change the default model for subsequent ``chat()`` calls."""
        self.model = model
        logger.info("Model set to %r", model)

    def _open_stream(self) -> ChatStream | None:
        return self._stream() if self._stream is not None else None

    def _release_stream(self, stream: ChatStream) -> None:
        # A dead reference means the stream is being finalised.
        if self._open_stream() in (None, stream):
            self._stream = None

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _conversation_loop(
        self, model: str, cancel_token: CancellationToken | None
    ) -> AsyncIterator[str]:
        num_turns = 0
        next_turn_should_call_tools = True
        loop_start = time.monotonic()

        while True:
            outcome = _TurnOutcome()
            turn_t0 = time.monotonic()
            try:
                async for fragment in self._process_turn(model, cancel_token, outcome):
                    yield fragment
            except RequestCancelledError:
                logger.info("Turn %d cancelled; ending conversation loop", num_turns + 1)
                return

            num_turns += 1
            logger.debug(
                "Turn %d finished in %.3fs", num_turns, time.monotonic() - turn_t0
            )

            if outcome.failed:
                logger.info("Turn %d failed; ending conversation loop", num_turns)
                return

            last = self._messages[-1]
            last_is_tool = last.role is MessageRole.TOOL

            if last_is_tool and last.tool_name in CONTROL_FLOW_TOOL_NAMES:
                logger.info(
                    "Loop ended by %r after %d turn(s) in %.3fs",
                    last.tool_name,
                    num_turns,
                    time.monotonic() - loop_start,
                )
                return

            if not last_is_tool and num_turns > self.max_turns:
                logger.warning("Loop stopped after reaching %d turns", num_turns)
                return

            if not last_is_tool and next_turn_should_call_tools:
                logger.info(
                    "Loop complete after %d turn(s) in %.3fs",
                    num_turns,
                    time.monotonic() - loop_start,
                )
                return

            next_turn_should_call_tools = not last_is_tool

    async def _process_turn(
        self,
        model: str,
        cancel_token: CancellationToken | None,
        outcome: _TurnOutcome,
    ) -> AsyncIterator[str]:
        """Run one LLM request and consume its stream.

        Text is forwarded as it arrives. Each tool call is executed before the
        stream is read further and recorded as an assistant + tool message
        pair. If no tool call succeeded, the accumulated text is recorded as
        one assistant message.
        """
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        request = CompletionRequest(
            model=model,
            messages=list(self._messages),
            tools=[*self._tools, *CONTROL_FLOW_TOOLS],
            params=self._llm_client.resolve_params(model),
            cancel_token=cancel_token,
        )

        response_text = ""
        has_tool_call = False

        async for chunk in self._llm_client.chat_completion(request):
            if isinstance(chunk, ToolCallChunk):
                call = chunk.tool_call
                try:
                    result = await self._dispatch(call, cancel_token)
                except ToolExecutionError as exc:
                    logger.error("Tool %r failed: %s", call.name, exc, exc_info=True)
                    yield f"\nError handling tool call: {exc}\n"
                    continue

                self._messages.append(Message.assistant(response_text, (call,)))
                self._messages.append(Message.tool(result.content, call.name, call.id))
                response_text = ""
                has_tool_call = True
                yield format_tool_notice(call, result.content)

            elif isinstance(chunk, TextChunk) and chunk.error:
                outcome.failed = True
                yield chunk.text

            else:
                response_text += chunk.text
                yield chunk.text

        if outcome.failed:
            return

        if not has_tool_call:
            self._messages.append(Message.assistant(response_text))

    async def _dispatch(
        self, call: ToolCall, cancel_token: CancellationToken | None
    ) -> ToolResult:
        if call.name in CONTROL_FLOW_TOOL_NAMES:
            logger.debug("Control-flow tool called: %s", call.name)
            return ToolResult(content=CONTROL_FLOW_ACKNOWLEDGEMENTS[call.name])

        logger.debug("Dispatching tool: %s(%s)", call.name, format_tool_args(call.args))
        tool_t0 = time.monotonic()
        result = await guarded(self._tool_client.call_tool(call.name, call.args), cancel_token)
        logger.debug("Tool %s finished in %.3fs", call.name, time.monotonic() - tool_t0)
        return result
