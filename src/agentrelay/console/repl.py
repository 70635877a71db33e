"""Interactive REPL loop driving one relayed session."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from acp.helpers import text_block
from acp.schema import EmbeddedResourceContentBlock, ResourceContentBlock, TextResourceContents
from prompt_toolkit import PromptSession  # type: ignore
from prompt_toolkit.key_binding import KeyBindings  # type: ignore

from agentrelay.console.display import print_notice
from agentrelay.console.state import ChatState
from agentrelay.errors import BridgeError
from agentrelay.permissions import OptionView
from agentrelay.protocol.engine import ProtocolSession

logger = logging.getLogger(__name__)

EMBED_LIMIT_BYTES = 20_000

SlashHandler = Callable[[ProtocolSession, ChatState, str], Awaitable[bool] | bool]


@dataclass
class SlashCommandDef:
    description: str
    handler: SlashHandler


SLASH_HANDLERS: dict[str, SlashCommandDef] = {}


def register_slash_command(name: str, description: str) -> Callable[[SlashHandler], SlashHandler]:
    """Decorator to register a console slash command; a handler returning False ends the loop."""

    def _decorator(func: SlashHandler) -> SlashHandler:
        SLASH_HANDLERS[name] = SlashCommandDef(description=description, handler=func)
        return func

    return _decorator


@register_slash_command("/help", "Show available slash commands.")
def _handle_help(_session: ProtocolSession, state: ChatState, _argument: str) -> bool:
    print("Available slash commands:")
    for name, entry in SLASH_HANDLERS.items():
        print(f"{name:<12} - {entry.description}")
    for name, desc in sorted(state.agent_commands.items()):
        print(f"{name:<12} - {desc or 'Handled by agent'}")
    return True


@register_slash_command("/status", "Show backend, location and session.")
def _handle_status(session: ProtocolSession, state: ChatState, _argument: str) -> bool:
    print_notice(
        f"backend={state.backend} location={state.location} session={state.session_id} "
        f"mode={state.current_mode} state={session.state.value} events={len(session.log)}"
    )
    return True


@register_slash_command("/thinking", "Toggle display of agent thoughts.")
def _handle_thinking(_session: ProtocolSession, state: ChatState, _argument: str) -> bool:
    state.show_thinking = not state.show_thinking
    print_notice(f"[thinking {'on' if state.show_thinking else 'off'}]")
    return True


@register_slash_command("/exit", "End the session and quit.")
def _handle_exit(_session: ProtocolSession, _state: ChatState, _argument: str) -> bool:
    return False


class AskPolicy:
    """Permission policy that asks the console user to pick an option."""

    def __init__(self, prompt_session: PromptSession | None = None) -> None:
        self._prompt_session = prompt_session or PromptSession()

    async def __call__(self, options: Sequence[OptionView], tool_call: Any = None) -> str | None:
        title = getattr(tool_call, "title", None) or getattr(tool_call, "tool_call_id", None) or "tool call"
        print(f"[permission] {title}")
        for idx, option in enumerate(options, start=1):
            print(f"{idx}) {option.name or option.option_id} ({option.kind})")
        choice = (await self._prompt_session.prompt_async("Permission choice (number, empty to cancel): ")).strip()
        if choice.isdigit() and 1 <= int(choice) <= len(options):
            return options[int(choice) - 1].option_id
        return None


def build_prompt_blocks(line: str, cwd: str | None = None) -> list[Any]:
    """Build ACP content blocks from user input, embedding `@file` references."""

    blocks: list[Any] = [text_block(line)]
    refs = [word[1:] for word in line.split() if word.startswith("@") and len(word) > 1]
    for ref in refs:
        path = Path(ref)
        if not path.is_absolute():
            path = Path(cwd or os.getcwd()) / path
        if not path.is_file():
            continue
        try:
            size = path.stat().st_size
        except OSError:
            continue
        uri = path.resolve().as_uri()
        if size <= EMBED_LIMIT_BYTES:
            try:
                text = path.read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            res = TextResourceContents(text=text, uri=uri, mime_type="text/plain")
            blocks.append(EmbeddedResourceContentBlock(resource=res, type="resource"))
        else:
            blocks.append(
                ResourceContentBlock(
                    name=path.name,
                    uri=uri,
                    size=size,
                    mime_type="text/plain",
                    type="resource_link",
                )
            )
    return blocks


async def run_turn(session: ProtocolSession, state: ChatState, line: str) -> bool:
    """Run one prompt turn; Ctrl-C cancels it. Returns False once the session is gone."""

    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    handler_installed = False
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, cancel.set)
        handler_installed = True
    try:
        outcome = await session.prompt(build_prompt_blocks(line), cancel=cancel)
    except BridgeError as exc:
        print_notice(f"[{exc.kind}] {exc.message}", style="red")
        return not session.terminated
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
    if state.pending_newline:
        print()
        state.pending_newline = False
    if outcome.stop_reason == "cancelled":
        print_notice("[cancelled; the agent session has ended]", style="yellow")
        return False
    logger.info("turn finished stop_reason=%s events=%s", outcome.stop_reason, len(outcome.events))
    return True


async def interactive_loop(session: ProtocolSession, state: ChatState) -> None:
    """Read lines, dispatch slash commands locally and send everything else as a prompt turn."""
    kb = KeyBindings()
    clear_token = "__CLEAR__"

    @kb.add("escape")
    def _(event):  # type: ignore
        if not event.app.is_done:
            event.app.exit(result=clear_token)

    prompt_session: PromptSession = PromptSession(key_bindings=kb)
    print_notice(f"Connected to {state.backend} ({state.location}); /help for commands, Ctrl-D to quit.")

    while not session.terminated:
        try:
            line = await prompt_session.prompt_async(f"{state.backend}|{state.current_mode}> ")
        except EOFError:
            break
        except KeyboardInterrupt:
            continue
        if not line or line == clear_token:
            continue

        command, _, argument = line.partition(" ")
        entry = SLASH_HANDLERS.get(command)
        if entry is not None:
            result = entry.handler(session, state, argument.strip())
            if asyncio.iscoroutine(result):
                result = await result
            if result is False:
                break
            continue

        if not await run_turn(session, state, line):
            break
