"""ACP session lifecycle over one process handle."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from acp import PROTOCOL_VERSION, RequestError
from acp.core import connect_to_agent
from acp.schema import ClientCapabilities, FileSystemCapability, Implementation

from agentrelay import __version__
from agentrelay.config import (
    DEFAULT_HANDSHAKE_TIMEOUT_S,
    DEFAULT_PROMPT_TIMEOUT_S,
    DEFAULT_STDIO_BUFFER_LIMIT_BYTES,
)
from agentrelay.errors import (
    AgentRequestFailed,
    BridgeError,
    HandshakeFailed,
    SessionBusy,
    SessionClosed,
)
from agentrelay.log_utils import log_context, log_event
from agentrelay.permissions import PermissionNegotiator
from agentrelay.process.handle import ProcessHandle
from agentrelay.protocol.client import RelayClient
from agentrelay.protocol.content import parse_content_blocks
from agentrelay.protocol.events import EventLog, SessionEvent
from agentrelay.protocol.framing import NdjsonFramePump

logger = logging.getLogger(__name__)

# Time allowed for a reply already in flight when the agent's output ends.
_CLOSE_GRACE_S = 0.5
# How long output may keep flowing after the process itself has exited.
_EXIT_DRAIN_S = 1.0
_CANCEL_NOTIFY_S = 2.0


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    HANDSHAKING = "handshaking"
    READY = "ready"
    PROMPTING = "prompting"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    models: dict[str, Any] | None = None
    modes: dict[str, Any] | None = None

    def wire(self) -> dict[str, Any]:
        return {"sessionId": self.session_id, "models": self.models, "modes": self.modes}


@dataclass(frozen=True)
class PromptOutcome:
    events: list[SessionEvent] = field(default_factory=list)
    stop_reason: str = "end_turn"

    def wire(self) -> dict[str, Any]:
        return {"events": [event.wire() for event in self.events], "stopReason": self.stop_reason}


class _TurnCancelled(Exception):
    pass


def relay_capabilities() -> ClientCapabilities:
    """The relay serves no filesystem or terminal requests to the agent."""
    return ClientCapabilities(
        fs=FileSystemCapability(read_text_file=False, write_text_file=False),
        terminal=False,
    )


def _dump(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    return value if isinstance(value, dict) else None


TerminatedCallback = Callable[["ProtocolSession"], Any]


class ProtocolSession:
    """Drive one agent process through initialize, session/new and prompt turns.

    The session owns its handle. Turns are serialised: with the `queue` busy
    policy a second `prompt()` waits for the first, with `reject` it fails
    with `SessionBusy`. A turn ends when the agent answers, when the caller's
    cancel event fires, when the prompt timeout elapses, or when the agent's
    output ends. The last case raises `SessionClosed`; the others send
    `session/cancel`, tear the process down and report `cancelled`.
    """

    def __init__(
        self,
        handle: ProcessHandle,
        *,
        negotiator: PermissionNegotiator | None = None,
        handshake_timeout: float | None = DEFAULT_HANDSHAKE_TIMEOUT_S,
        prompt_timeout: float | None = DEFAULT_PROMPT_TIMEOUT_S,
        busy_policy: str = "queue",
        limit: int = DEFAULT_STDIO_BUFFER_LIMIT_BYTES,
        on_terminated: TerminatedCallback | None = None,
    ) -> None:
        self.handle = handle
        self.negotiator = negotiator or PermissionNegotiator()
        self.handshake_timeout = handshake_timeout
        self.prompt_timeout = prompt_timeout
        self.busy_policy = busy_policy
        self.limit = limit
        self.on_terminated = on_terminated

        self.log = EventLog()
        self.session_id: str | None = None
        self.info: SessionInfo | None = None
        self.agent_capabilities: Any = None
        self.terminate_reason: str | None = None

        self._state = SessionState.UNINITIALIZED
        self._conn: Any = None
        self._pump: NdjsonFramePump | None = None
        self._closed = asyncio.Event()
        self._watcher: asyncio.Task[None] | None = None
        self._turn_lock = asyncio.Lock()
        self._turn_cancel: asyncio.Event | None = None
        self._terminated = False
        self._termination: asyncio.Future[None] | None = None

    def __repr__(self) -> str:
        return f"<ProtocolSession {self.session_id or '-'} state={self._state.value} handle={self.handle.identity}>"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def busy(self) -> bool:
        return self._turn_lock.locked()

    @property
    def error(self) -> BridgeError | None:
        """Transport or framing error recorded when the agent's output ended."""
        if self._pump is not None and self._pump.error is not None:
            return self._pump.error
        error = getattr(self.handle, "error", None)
        return error if isinstance(error, BridgeError) else None

    def start(self) -> None:
        """Wire the frame pump and the ACP connection; idempotent."""
        if self._conn is not None:
            return
        self._ensure_open()
        self._pump = NdjsonFramePump(self.handle.stdout, limit=self.limit, name=self.handle.identity)
        self._pump.start()
        client = RelayClient(self.log, self.negotiator)
        self._conn = connect_to_agent(client, self.handle.stdin, self._pump.reader)
        self._watcher = asyncio.create_task(self._watch_output())

    async def initialize(
        self,
        protocol_version: int = PROTOCOL_VERSION,
        client_capabilities: ClientCapabilities | None = None,
    ) -> Any:
        self._ensure_open()
        if self._state is not SessionState.UNINITIALIZED:
            raise HandshakeFailed(f"initialize called in state {self._state.value}")
        self.start()
        self._state = SessionState.HANDSHAKING
        capabilities = client_capabilities or relay_capabilities()
        with log_context(handle=self.handle.identity):
            log_event(logger, "acp.initialize.start", protocol_version=protocol_version)
            response = await self._handshake_step(
                "initialize",
                self._conn.initialize(
                    protocol_version=protocol_version,
                    client_capabilities=capabilities,
                    client_info=Implementation(name="agentrelay", title="Agent Relay", version=__version__),
                ),
            )
            if response.protocol_version != protocol_version:
                await self.terminate("protocol_mismatch")
                raise HandshakeFailed(
                    f"agent speaks protocol version {response.protocol_version}, expected {protocol_version}"
                )
            self.agent_capabilities = getattr(response, "agent_capabilities", None)
            self._state = SessionState.READY
            log_event(logger, "acp.initialize.done", protocol_version=response.protocol_version)
        return response

    async def new_session(self, cwd: str, mcp_servers: Iterable[Any] | None = None) -> SessionInfo:
        self._ensure_open()
        if self._state is not SessionState.READY or self.session_id is not None:
            raise HandshakeFailed("session/new requires an initialized handle without a session")
        self._state = SessionState.HANDSHAKING
        with log_context(handle=self.handle.identity):
            response = await self._handshake_step(
                "session/new",
                self._conn.new_session(cwd=cwd, mcp_servers=list(mcp_servers or [])),
            )
            self.session_id = response.session_id
            self.info = SessionInfo(
                session_id=response.session_id,
                models=_dump(getattr(response, "models", None)),
                modes=_dump(getattr(response, "modes", None)),
            )
            self._state = SessionState.READY
            log_event(logger, "acp.session.created", session_id=self.session_id, cwd=cwd)
        return self.info

    async def prompt(self, content: Any, cancel: asyncio.Event | None = None) -> PromptOutcome:
        self._ensure_open()
        if self.session_id is None:
            raise HandshakeFailed("prompt requires an established session")
        blocks = parse_content_blocks(content)
        if self.busy_policy == "reject" and self._turn_lock.locked():
            raise SessionBusy(f"session {self.session_id} is already running a turn")

        async with self._turn_lock:
            self._ensure_open()
            self._state = SessionState.PROMPTING
            turn_id = self.log.begin_turn()
            self._turn_cancel = asyncio.Event()
            with log_context(session_id=self.session_id, turn_id=turn_id):
                log_event(logger, "acp.prompt.start", blocks=len(blocks))
                try:
                    response = await self._race(
                        self._conn.prompt(prompt=blocks, session_id=self.session_id),
                        timeout=self.prompt_timeout,
                        cancel=(cancel, self._turn_cancel),
                    )
                except (_TurnCancelled, asyncio.TimeoutError) as exc:
                    reason = "timeout" if isinstance(exc, asyncio.TimeoutError) else "cancelled"
                    log_event(logger, "acp.prompt.cancelled", reason=reason, events=len(self.log))
                    events = self.log.events
                    await self._abort_turn(reason)
                    return PromptOutcome(events=events, stop_reason="cancelled")
                except SessionClosed:
                    log_event(logger, "acp.prompt.closed", level=logging.WARNING, events=len(self.log))
                    await self.terminate("process_exit")
                    raise
                except RequestError as exc:
                    log_event(logger, "acp.prompt.error", level=logging.WARNING, error=str(exc))
                    raise AgentRequestFailed(f"agent rejected prompt: {exc}") from exc
                finally:
                    self._turn_cancel = None
                    if self._state is SessionState.PROMPTING:
                        self._state = SessionState.READY
                # Updates read ahead of the reply may still be queued for dispatch.
                await asyncio.sleep(0)
                stop_reason = str(getattr(response, "stop_reason", None) or "end_turn")
                log_event(logger, "acp.prompt.done", stop_reason=stop_reason, events=len(self.log))
                outcome = PromptOutcome(events=self.log.events, stop_reason=stop_reason)
                if self._closed.is_set():
                    # The agent answered and then went away.
                    await self.terminate("process_exit")
                return outcome

    def request_cancel(self) -> bool:
        """Stop the in-flight turn, if any; returns whether one was running."""
        if self._turn_cancel is None or self._terminated:
            return False
        self._turn_cancel.set()
        return True

    async def terminate(self, reason: str = "terminate") -> None:
        """Close the connection, the process and the pump; later calls await the same shutdown."""
        if not self._terminated:
            self._terminated = True
            self.terminate_reason = reason
            self._state = SessionState.TERMINATED
            self._termination = asyncio.ensure_future(self._shutdown(reason))
        assert self._termination is not None
        await asyncio.shield(self._termination)

    # internals

    def _ensure_open(self) -> None:
        if self._terminated:
            raise SessionClosed(f"session {self.session_id or self.handle.identity} is terminated")

    async def _shutdown(self, reason: str) -> None:
        log_event(logger, "acp.session.terminate", session_id=self.session_id, reason=reason)
        if self._turn_cancel is not None:
            self._turn_cancel.set()
        if self._conn is not None:
            try:
                await self._conn.close()
            except Exception as exc:  # noqa: BLE001
                log_event(logger, "acp.close.failed", level=logging.DEBUG, error=str(exc))
        await self.handle.terminate(reason)
        if self._pump is not None:
            await self._pump.stop()
        self._closed.set()
        if self._watcher is not None and not self._watcher.done():
            self._watcher.cancel()
        if self.on_terminated is not None:
            try:
                result = self.on_terminated(self)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                logger.exception("on_terminated callback failed for %s", self.session_id)

    async def _watch_output(self) -> None:
        """Mark the session closed once the agent's output ends or the process exits."""
        assert self._pump is not None
        pump_done = asyncio.ensure_future(self._pump.wait())
        exited = asyncio.ensure_future(self.handle.wait())
        try:
            await asyncio.wait({pump_done, exited}, return_when=asyncio.FIRST_COMPLETED)
            if not pump_done.done():
                await asyncio.wait({pump_done}, timeout=_EXIT_DRAIN_S)
        finally:
            pump_done.cancel()
            exited.cancel()
        self._closed.set()
        if not self._terminated:
            log_event(
                logger,
                "acp.agent.exited",
                level=logging.WARNING,
                session_id=self.session_id,
                returncode=self.handle.returncode,
                error=self.error.message if self.error else None,
            )
            if not self._turn_lock.locked():
                await self.terminate("process_exit")

    def _closed_error(self) -> SessionClosed:
        error = self.error
        detail = f": {error.message}" if error else f" (returncode={self.handle.returncode})"
        closed = SessionClosed(f"agent process {self.handle.identity} ended{detail}")
        closed.__cause__ = error
        return closed

    async def _handshake_step(self, name: str, request: Awaitable[Any]) -> Any:
        try:
            return await self._race(request, timeout=self.handshake_timeout)
        except HandshakeFailed:
            raise
        except asyncio.TimeoutError:
            error = HandshakeFailed(f"{name} timed out after {self.handshake_timeout}s")
        except BridgeError as exc:
            error = HandshakeFailed(f"{name} failed: {exc.message}")
        except Exception as exc:  # noqa: BLE001 - any failure ends the handshake
            error = HandshakeFailed(f"{name} failed: {exc}")
        log_event(logger, "acp.handshake.failed", level=logging.WARNING, step=name, error=error.message)
        await self.terminate("handshake_failed")
        raise error

    async def _race(
        self,
        request: Awaitable[Any],
        *,
        timeout: float | None,
        cancel: tuple[asyncio.Event | None, ...] = (),
    ) -> Any:
        """Await `request` unless the output closes, a cancel event fires or time runs out."""
        task = asyncio.ensure_future(request)
        closed = asyncio.ensure_future(self._closed.wait())
        cancels = [asyncio.ensure_future(event.wait()) for event in cancel if event is not None]
        watchers = [closed, *cancels]
        try:
            done, _ = await asyncio.wait(
                {task, *watchers}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if task in done and not task.cancelled() and task.exception() is None:
                return task.result()
            if any(waiter in done for waiter in cancels):
                raise _TurnCancelled()
            if task in done:
                # A request failing because the connection is being shut down.
                if task.cancelled() or self._terminated:
                    raise self._closed_error()
                return task.result()
            if closed in done:
                finished, _ = await asyncio.wait({task}, timeout=_CLOSE_GRACE_S)
                if task in finished and not task.cancelled() and task.exception() is None:
                    return task.result()
                raise self._closed_error()
            raise asyncio.TimeoutError()
        finally:
            for waiter in watchers:
                waiter.cancel()
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task

    async def _abort_turn(self, reason: str) -> None:
        if self._conn is not None and self.session_id is not None and not self._closed.is_set():
            try:
                await asyncio.wait_for(self._conn.cancel(session_id=self.session_id), timeout=_CANCEL_NOTIFY_S)
            except Exception as exc:  # noqa: BLE001 - best effort before the process is torn down
                log_event(logger, "acp.cancel.failed", level=logging.DEBUG, error=str(exc))
        await self.terminate(reason)
