"""Rich rendering of session events for the chat console."""

from __future__ import annotations

import ast
import contextlib
from io import StringIO
from threading import Lock
from typing import Any, Iterable

from prompt_toolkit.formatted_text import ANSI  # type: ignore
from prompt_toolkit.shortcuts import print_formatted_text  # type: ignore
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from agentrelay.console.state import ChatState
from agentrelay.protocol.events import SessionEvent

_render_buffer = StringIO()
_render_console = Console(
    file=_render_buffer,
    force_terminal=True,
    color_system="standard",
    markup=False,
    highlight=False,
)
_render_lock = Lock()


def _render_and_print(*args: Any, **kwargs: Any) -> bool:
    if kwargs.get("end") is None:
        kwargs["end"] = "\n"
    with _render_lock:
        _render_buffer.seek(0)
        _render_buffer.truncate(0)
        _render_console.print(*args, **kwargs)
        output = _render_buffer.getvalue()
    if output:
        print_formatted_text(ANSI(output), end="")
        return output.endswith("\n")
    return False


def _render_text(text: str, style: str | None) -> Text:
    if "\x1b" in text:
        return Text.from_ansi(text)
    if style:
        return Text(text, style=style)
    return Text(text)


def print_mode_update(mode: str) -> None:
    _render_and_print(Text(f"[mode -> {mode}]", style="magenta"))


def print_tool(status: str, message: str) -> None:
    normalized = status.lower()
    style = "green" if normalized == "completed" else "yellow" if normalized in {"in_progress", "pending", "start"} else "red"
    _render_and_print(Text(f"Tool[{status}]: {message}", style=style))


def print_agent_text(text: str) -> None:
    _render_and_print(_render_text(text, None), end="")


def print_thought(text: str) -> None:
    _render_and_print(_render_text(text, "#aaaaaa"), end="")


def print_notice(text: str, style: str = "cyan") -> None:
    _render_and_print(Text(text, style=style))


def print_diff(text: str) -> None:
    """Render a unified diff with syntax highlighting."""
    _render_and_print(Syntax(text, "diff", theme="ansi_dark", line_numbers=False))


def print_plan(entries: Iterable[dict[str, Any]]) -> None:
    """Render plan entries with a status dot."""
    table = Table(show_header=False, box=None, border_style="cyan")
    table.add_column("", width=2, style="cyan")
    table.add_column("Item", style="white")
    status_styles = {
        "completed": "green",
        "in_progress": "orange1",
        "pending": "orange1",
    }

    def _format_content(raw: Any) -> str:
        if not isinstance(raw, str):
            return str(raw)
        text = raw.strip()
        if text.startswith("[") and text.endswith("]"):
            with contextlib.suppress(ValueError, SyntaxError):
                parsed = ast.literal_eval(text)
                if isinstance(parsed, list):
                    return "\n".join(f"- {str(item).strip()}" for item in parsed if str(item).strip())
        return text

    for entry in entries:
        status = entry.get("status") or "pending"
        table.add_row(Text("•", style=status_styles.get(status, "orange1")), _format_content(entry.get("content") or ""))
    _render_and_print(table)


def _content_text(content: Any) -> str:
    if not isinstance(content, dict):
        return ""
    kind = content.get("type")
    if kind == "text":
        return str(content.get("text") or "")
    if kind == "resource_link":
        return str(content.get("uri") or "<resource>")
    return f"<{kind or 'content'}>"


def _tool_output(update: dict[str, Any], state: ChatState) -> None:
    for item in update.get("content") or []:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "diff":
            print_diff(
                "".join(
                    [
                        f"--- {item.get('path', 'before')}\n",
                        f"+++ {item.get('path', 'after')}\n",
                        *(f"-{line}\n" for line in (item.get("oldText") or "").splitlines()),
                        *(f"+{line}\n" for line in (item.get("newText") or "").splitlines()),
                    ]
                )
            )
        elif item.get("type") == "content":
            text = _content_text(item.get("content"))
            if text:
                print_agent_text(text)
                state.pending_newline = True


def render_event(event: SessionEvent, state: ChatState) -> None:
    """Print one session update the way an interactive user wants to see it."""
    update = event.payload.get("update") or {}
    kind = event.payload_kind

    if kind in {"agent_message_chunk", "agent_thought_chunk"}:
        text = _content_text(update.get("content"))
        if not text:
            return
        if kind == "agent_thought_chunk":
            if not state.show_thinking:
                return
            print_thought(text)
        else:
            print_agent_text(text)
        state.pending_newline = True
        return

    if state.pending_newline:
        print()
        state.pending_newline = False

    if kind == "tool_call":
        print_tool("start", update.get("title") or update.get("toolCallId") or "tool")
    elif kind == "tool_call_update":
        status = update.get("status") or "in_progress"
        print_tool(status, update.get("title") or update.get("toolCallId") or "")
        _tool_output(update, state)
    elif kind == "plan":
        print_plan(update.get("entries") or [])
    elif kind == "current_mode_update":
        state.current_mode = update.get("currentModeId") or state.current_mode
        print_mode_update(state.current_mode)
    elif kind == "available_commands_update":
        state.agent_commands = {
            f"/{cmd.get('name')}": cmd.get("description") or ""
            for cmd in update.get("availableCommands") or []
            if isinstance(cmd, dict) and cmd.get("name")
        }
