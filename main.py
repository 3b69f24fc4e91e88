#!/usr/bin/env python3
"""
DeskAgent - console driver for the agentic conversation engine.

Loads profiles and tool servers from ~/.config/DeskAgent/, starts every
configured tool server, then reads user messages from stdin. Press Ctrl-C
during a reply to cancel the turn.
"""
import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import Optional

import aiohttp

import constants as C
from config import get_config_dir, load_profiles, load_system_prompt, load_tool_servers
from errors import ConfigError, EngineError, ToolServerError
from mcp_manager import ToolServerManager
from models import Conversation, Message
from models.updates import AgentUpdate, AssistantDelta, ContextSummarized, ToolFinished, ToolStarted, TurnEnded
from orchestrator import Orchestrator, TurnState
from storage import InMemoryConversationStore, JsonlConversationStore, load_conversation
from token_counter import warm_up
from tool_logger import ToolCallLogger

logger = logging.getLogger(__name__)

HELP = """Commands:
  /profiles          list profiles
  /profile NAME      switch the default profile (applies to the next turn)
  /tools             list ready tools
  /restart SERVER    restart a tool server
  /quit              exit"""


def render_update(update: AgentUpdate) -> None:
    """Print incremental updates to the terminal."""
    if isinstance(update, AssistantDelta):
        sys.stdout.write(update.text)
        sys.stdout.flush()
    elif isinstance(update, ToolStarted):
        print(f"\n  -> {update.tool_name}({json.dumps(update.arguments, ensure_ascii=False)})")
    elif isinstance(update, ToolFinished):
        marker = "!!" if update.is_error else "<-"
        preview = update.content if len(update.content) <= 200 else update.content[:200] + "..."
        print(f"  {marker} {update.tool_name}: {preview}")
    elif isinstance(update, ContextSummarized):
        print(f"  [history summarized: {update.old_count} -> {update.new_count} messages, "
              f"{update.tokens_saved} tokens saved]")
    elif isinstance(update, TurnEnded):
        print()
        if update.error:
            print(f"[{update.state}] {update.error}")


async def read_line(prompt: str) -> Optional[str]:
    sys.stdout.write(prompt)
    sys.stdout.flush()
    loop = asyncio.get_running_loop()
    line = await loop.run_in_executor(None, sys.stdin.readline)
    if not line:
        return None
    return line.rstrip("\n")


async def handle_command(line: str, orchestrator: Orchestrator, manager: ToolServerManager) -> bool:
    """Run a slash command. Returns False when the user asked to quit."""
    cmd, _, arg = line[1:].partition(" ")
    arg = arg.strip()
    if cmd in ("quit", "exit"):
        return False
    if cmd == "profiles":
        for name in orchestrator.profiles.list():
            mark = "*" if name == orchestrator.profiles.default_name else " "
            profile = orchestrator.profiles.get(name)
            print(f" {mark} {name}: {profile.backend_kind.value} / {profile.model_id} ({profile.get_context_window_size()} ctx)")
    elif cmd == "profile":
        try:
            orchestrator.profiles.set_default(arg)
            print(f"Default profile: {arg}")
        except ConfigError as e:
            print(e)
    elif cmd == "tools":
        for handle in manager.handles.values():
            print(f" {handle.name}: {handle.state.value}" + (f" ({handle.last_error})" if handle.last_error else ""))
            for tool in handle.catalog.values():
                print(f"    {tool.name} - {tool.description}")
    elif cmd == "restart":
        try:
            handle = await manager.restart(arg)
            print(f"{handle.name}: {handle.state.value}")
        except ToolServerError as e:
            print(e)
    else:
        print(HELP)
    return True


async def chat_loop(args: argparse.Namespace) -> int:
    registry = load_profiles(args.config)
    if args.profile:
        registry.set_default(args.profile)
    servers = load_tool_servers(args.mcp_config)

    store = InMemoryConversationStore() if args.no_save else JsonlConversationStore()
    if args.conversation:
        conversation = load_conversation(store, args.conversation)
        logger.info("Resumed conversation %s with %d message(s)", conversation.id, len(conversation.messages))
    else:
        conversation = Conversation()
        system_prompt = load_system_prompt(args.system_prompt or registry.system_prompt_file)
        if system_prompt:
            conversation.add_message(Message.system(system_prompt))
    tool_log = ToolCallLogger(path=os.path.join(get_config_dir(), C.TOOL_LOG_FILE))

    try:
        async with ToolServerManager() as manager, aiohttp.ClientSession() as http:
            loop = asyncio.get_running_loop()
            # tiktoken may download its encoding on first use
            await asyncio.gather(
                manager.start_all(servers),
                loop.run_in_executor(None, warm_up, registry.get_default().model_id),
            )
            orchestrator = Orchestrator(
                registry,
                manager,
                store,
                on_update=render_update,
                tool_logger=tool_log,
                http_session=http,
            )
            print(f"{C.APP_NAME} {C.APP_VERSION} - conversation {conversation.id}. Type /help for commands.")
            while True:
                line = await read_line("> ")
                if line is None:
                    break
                line = line.strip()
                if not line:
                    continue
                if line.startswith("/"):
                    if not await handle_command(line, orchestrator, manager):
                        break
                    continue
                try:
                    loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
                except NotImplementedError:
                    pass
                try:
                    result = await orchestrator.submit(conversation, line)
                except EngineError as e:
                    print(e)
                    continue
                finally:
                    try:
                        loop.remove_signal_handler(signal.SIGINT)
                    except NotImplementedError:
                        pass
                if result.state is TurnState.IDLE and result.cancelled:
                    print("(cancelled)")
    finally:
        tool_log.close()
    return 0


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(prog="deskagent", description=__doc__.strip().splitlines()[0])
    parser.add_argument("--config", help="profiles file (default ~/.config/DeskAgent/profiles.json)")
    parser.add_argument("--mcp-config", help="tool servers file (default ~/.config/DeskAgent/mcp.json)")
    parser.add_argument("--profile", help="profile to use instead of the configured default")
    parser.add_argument("--conversation", help="resume a stored conversation by id")
    parser.add_argument("--system-prompt", help="system prompt file for new conversations")
    parser.add_argument("--no-save", action="store_true", help="do not persist messages")
    parser.add_argument("--debug", action="store_true", help="verbose logging")
    args = parser.parse_args(argv)

    # Configure logging to terminal
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
    )

    try:
        return asyncio.run(chat_loop(args))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
