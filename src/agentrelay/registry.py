"""In-memory registry of live agent sessions."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from agentrelay.config import RelaySettings
from agentrelay.errors import SessionClosed, SessionNotFound
from agentrelay.launcher import AgentLauncher, RemoteLocation
from agentrelay.log_utils import log_context, log_event
from agentrelay.permissions import PermissionNegotiator
from agentrelay.protocol.content import parse_mcp_servers
from agentrelay.protocol.engine import PromptOutcome, ProtocolSession, SessionInfo

logger = logging.getLogger(__name__)


@dataclass
class SessionEntry:
    session: ProtocolSession
    backend: str
    cwd: str
    location: RemoteLocation | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def session_id(self) -> str:
        assert self.session.session_id is not None
        return self.session.session_id

    def describe(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "eventCount": len(self.session.log),
            "backend": self.backend,
            "state": self.session.state.value,
            "busy": self.session.busy,
            "cwd": self.cwd,
            "location": self.location.wire() if self.location else {"provider": "local"},
            "createdAt": self.created_at,
        }


class SessionRegistry:
    """Create, look up, prompt and tear down sessions by id.

    The id map is the only shared mutable state and every mutation happens
    under one `asyncio.Lock`. Process teardown always runs outside the lock.
    Sessions whose agent exits on its own remove themselves.
    """

    def __init__(
        self,
        settings: RelaySettings,
        *,
        launcher: AgentLauncher | None = None,
        negotiator_factory: Callable[[], PermissionNegotiator] | None = None,
    ) -> None:
        self.settings = settings
        self.launcher = launcher or AgentLauncher(settings)
        self._negotiator_factory = negotiator_factory or (
            lambda: PermissionNegotiator(timeout=settings.permission_timeout)
        )
        self._entries: dict[str, SessionEntry] = {}
        self._lock = asyncio.Lock()
        self._started = False

    def __len__(self) -> int:
        return len(self._entries)

    async def start(self) -> None:
        self._started = True
        log_event(logger, "registry.started", backends=self.settings.backends)

    async def shutdown(self) -> None:
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        if entries:
            log_event(logger, "registry.shutdown", sessions=len(entries))
        await asyncio.gather(
            *(entry.session.terminate("shutdown") for entry in entries),
            return_exceptions=True,
        )
        self._started = False

    async def create(
        self,
        backend: str,
        cwd: str | None = None,
        mcp_servers: Iterable[Any] | None = None,
        remote: RemoteLocation | None = None,
    ) -> SessionInfo:
        servers = parse_mcp_servers(mcp_servers)
        session_cwd = cwd or (self.settings.remote_workdir if remote else os.getcwd())
        handle = await self.launcher.launch(backend, cwd=None if remote else cwd, remote=remote)
        session = ProtocolSession(
            handle,
            negotiator=self._negotiator_factory(),
            handshake_timeout=self.settings.handshake_timeout,
            prompt_timeout=self.settings.prompt_timeout,
            busy_policy=self.settings.busy_policy,
            limit=self.settings.stdio_buffer_limit,
            on_terminated=self._on_terminated,
        )
        try:
            await session.initialize()
            info = await session.new_session(cwd=session_cwd, mcp_servers=servers)
        except BaseException:
            await session.terminate("create_failed")
            raise

        entry = SessionEntry(session=session, backend=backend, cwd=session_cwd, location=remote)
        async with self._lock:
            if not session.terminated:
                self._entries[info.session_id] = entry
        if session.terminated:
            raise SessionClosed(f"agent for session {info.session_id} exited during setup")
        with log_context(session_id=info.session_id):
            log_event(logger, "registry.created", backend=backend, handle=handle.identity)
        return info

    async def get(self, session_id: str) -> SessionEntry:
        async with self._lock:
            entry = self._entries.get(session_id)
        if entry is None:
            raise SessionNotFound(f"session {session_id} not found")
        return entry

    async def prompt(
        self,
        session_id: str,
        content: Any,
        cancel: asyncio.Event | None = None,
    ) -> PromptOutcome:
        entry = await self.get(session_id)
        try:
            return await entry.session.prompt(content, cancel)
        finally:
            if entry.session.terminated:
                await self._remove(session_id, entry.session)

    async def cancel(self, session_id: str) -> bool:
        entry = await self.get(session_id)
        cancelled = entry.session.request_cancel()
        log_event(logger, "registry.cancel", session_id=session_id, cancelled=cancelled)
        return cancelled

    async def terminate(self, session_id: str) -> bool:
        """Terminate and forget a session; returns False when it was already gone."""
        async with self._lock:
            entry = self._entries.pop(session_id, None)
        if entry is None:
            return False
        await entry.session.terminate("client_terminate")
        log_event(logger, "registry.terminated", session_id=session_id)
        return True

    async def describe(self, session_id: str) -> dict[str, Any]:
        entry = await self.get(session_id)
        return entry.describe()

    async def list(self) -> list[dict[str, Any]]:
        async with self._lock:
            entries = list(self._entries.values())
        return [entry.describe() for entry in entries]

    async def _remove(self, session_id: str, session: ProtocolSession) -> None:
        async with self._lock:
            entry = self._entries.get(session_id)
            if entry is not None and entry.session is session:
                del self._entries[session_id]
                log_event(logger, "registry.removed", session_id=session_id, reason=session.terminate_reason)

    async def _on_terminated(self, session: ProtocolSession) -> None:
        if session.session_id is not None:
            await self._remove(session.session_id, session)
