"""In-process chat client: launch one backend and drive it from the terminal."""

from __future__ import annotations

import logging
import os
from typing import Any

from agentrelay.config import RelaySettings
from agentrelay.console.display import print_notice, render_event
from agentrelay.console.repl import AskPolicy, interactive_loop
from agentrelay.console.state import ChatState
from agentrelay.errors import BridgeError
from agentrelay.launcher import AgentLauncher, RemoteLocation
from agentrelay.log_utils import log_context, log_event
from agentrelay.permissions import POLICIES, PermissionNegotiator
from agentrelay.protocol.engine import ProtocolSession

logger = logging.getLogger(__name__)


def _negotiator(settings: RelaySettings, permissions: str) -> PermissionNegotiator:
    if permissions == "ask":
        # A person needs longer than an automatic policy.
        return PermissionNegotiator(AskPolicy(), timeout=None)
    factory = POLICIES.get(permissions, POLICIES["first_allow"])
    return PermissionNegotiator(factory(), timeout=settings.permission_timeout)


async def run_chat(
    settings: RelaySettings,
    backend: str,
    *,
    cwd: str | None = None,
    remote: RemoteLocation | None = None,
    mcp_servers: list[Any] | None = None,
    permissions: str = "ask",
) -> int:
    state = ChatState(
        backend=backend,
        location=f"{remote.provider}:{remote.machine_id}" if remote else "local",
    )
    launcher = AgentLauncher(settings)
    try:
        handle = await launcher.launch(backend, cwd=None if remote else cwd, remote=remote)
    except BridgeError as exc:
        print_notice(f"[{exc.kind}] {exc.message}", style="red")
        return 1

    session = ProtocolSession(
        handle,
        negotiator=_negotiator(settings, permissions),
        handshake_timeout=settings.handshake_timeout,
        prompt_timeout=settings.prompt_timeout,
        busy_policy=settings.busy_policy,
        limit=settings.stdio_buffer_limit,
    )
    session.log.subscribe(lambda event: render_event(event, state))
    try:
        await session.initialize()
        info = await session.new_session(
            cwd=cwd or (settings.remote_workdir if remote else os.getcwd()),
            mcp_servers=mcp_servers,
        )
    except BridgeError as exc:
        print_notice(f"[{exc.kind}] {exc.message}", style="red")
        await session.terminate("chat_setup_failed")
        return 1

    state.session_id = info.session_id
    if info.modes and info.modes.get("currentModeId"):
        state.current_mode = info.modes["currentModeId"]
    try:
        with log_context(session_id=info.session_id, backend=backend):
            log_event(logger, "chat.started", location=state.location)
            await interactive_loop(session, state)
        return 0
    except KeyboardInterrupt:
        return 130
    finally:
        await session.terminate("chat_exit")
