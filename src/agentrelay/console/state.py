"""Lightweight UI state shared across chat console components."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ChatState:
    backend: str
    location: str = "local"
    session_id: str | None = None
    current_mode: str = "default"
    show_thinking: bool = False
    pending_newline: bool = False
    agent_commands: dict[str, str] = field(default_factory=dict)
