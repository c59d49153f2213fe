"""
Parley - Main Entry Point.

Interactive terminal chat: loads settings, connects the configured MCP tool
servers, and streams the agent's replies to stdout. Ctrl-C while a reply is
streaming cancels that reply; Ctrl-C at the prompt exits.

Architecture:
    - config.py: Settings and model table
    - conversation/client.py: provider selection and parameter resolution
    - conversation/loop.py: the agent conversation loop
    - conversation/tools/: tool clients (MCP, in-process)
    - main.py: Orchestration and entry point
"""

import argparse
import asyncio
import logging
import signal
import sys
import threading
from pathlib import Path

from parley.config import Settings, SettingsCache
from parley.conversation import Agent, CancellationToken, ConfigurationError, LLMClient
from parley.conversation.tools import McpToolClient

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".parley" / "config.json"

HELP_TEXT = """Commands:
  /help          Show this help
  /reset         Start a new conversation
  /model [id]    Show or change the model
  /tools         List available tools
  /exit          Quit
"""


def handle_command(agent: Agent, command: str) -> bool:
    """Run a slash command. Returns False when the session should end."""
    name, _, argument = command.partition(" ")
    argument = argument.strip()

    if name in ("/exit", "/quit"):
        return False
    if name == "/reset":
        agent.reset_conversation()
        print("Conversation reset.")
    elif name == "/model":
        if argument:
            agent.set_model(argument)
        print(f"Model: {agent.model}")
    elif name == "/tools":
        if not agent.tools:
            print("No tools available.")
        for tool in agent.tools:
            print(f"  {tool.name}: {tool.description}")
    else:
        print(HELP_TEXT)
    return True


async def stream_reply(agent: Agent, text: str) -> None:
    """Stream one reply to stdout, cancelling it on Ctrl-C."""
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, token.cancel)
    try:
        print("Assistant: ", end="", flush=True)
        async for fragment in agent.chat(text, cancel_token=token):
            print(fragment, end="", flush=True)
        print()
        if token.cancelled:
            print("[interrupted]")
    finally:
        loop.remove_signal_handler(signal.SIGINT)


async def read_line(prompt: str) -> str:
    """Read one line from stdin without blocking the event loop.

    The read runs on a daemon thread so a Ctrl-C at the prompt can still end
    the session while ``input()`` is waiting.

    Raises:
        EOFError: If stdin is closed.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()

    def _settle(line: str | None, exc: BaseException | None) -> None:
        if future.done():
            return
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(line)

    def _read() -> None:
        try:
            line = input(prompt)
        except BaseException as exc:
            loop.call_soon_threadsafe(_settle, None, exc)
        else:
            loop.call_soon_threadsafe(_settle, line, None)

    threading.Thread(target=_read, name="parley-stdin", daemon=True).start()
    return await future


async def repl(agent: Agent) -> None:
    """Read user messages until /exit, EOF or Ctrl-C at the prompt."""
    print(f"Parley ({agent.model}). Type /help for commands.")
    while True:
        try:
            line = await read_line("You: ")
        except EOFError:
            print()
            return

        text = line.strip()
        if not text:
            continue
        if text.startswith("/"):
            if not handle_command(agent, text):
                return
            continue
        await stream_reply(agent, text)


async def main(
    settings: Settings,
    model: str | None = None,
    provider: str | None = None,
    list_tools: bool = False,
) -> None:
    """Build the agent and run the chat session.

    Raises:
        ConfigurationError: If the provider credentials are incomplete.
    """
    llm_client = LLMClient(settings, provider=provider)

    async with McpToolClient(settings.mcp_servers) as tool_client:
        agent = Agent(llm_client=llm_client, tool_client=tool_client, settings=settings, model=model)
        await agent.initialize()

        if list_tools:
            handle_command(agent, "/tools")
            return
        await repl(agent)


def cli_main() -> None:
    """Entry point for the parley console script."""
    parser = argparse.ArgumentParser(description="Terminal chat client with MCP tool support")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"JSON config file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--model", type=str, default=None, help="Model to chat with")
    parser.add_argument(
        "--provider",
        choices=["openai", "anthropic", "openai_compatible"],
        default=None,
        help="LLM provider (default: from settings)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--list-tools",
        action="store_true",
        help="List the available tools and exit",
    )
    args = parser.parse_args()

    settings = SettingsCache(args.config).get()

    logging.basicConfig(
        level="DEBUG" if args.debug else settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(
            main(
                settings,
                model=args.model,
                provider=args.provider,
                list_tools=args.list_tools,
            )
        )
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print()


if __name__ == "__main__":
    cli_main()
