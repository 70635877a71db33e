"""HTTP and websocket surface of the relay."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from fastapi import Body, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from agentrelay import __version__
from agentrelay.config import RelaySettings
from agentrelay.errors import BridgeError, InvalidRequest
from agentrelay.launcher import RemoteLocation
from agentrelay.log_utils import log_context, log_event
from agentrelay.process.handle import ProcessHandle
from agentrelay.process.providers import resolve_ssh_target
from agentrelay.process.remote import PtyRequest, open_remote_process
from agentrelay.registry import SessionRegistry
from agentrelay.shell.bridge import CLOSE_NORMAL, ShellBridge
from agentrelay.shell.setup import RemoteSetup

logger = logging.getLogger(__name__)

DISCONNECT_POLL_S = 0.5
CLOSE_POLICY_VIOLATION = 1008

ShellOpenerFactory = Callable[[str, str, PtyRequest], Callable[[], Awaitable[ProcessHandle]]]


class CreateSessionReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    agent: Optional[str] = None
    backend_kind: Optional[str] = Field(default=None, alias="backendKind")
    cwd: Optional[str] = None
    mcp_servers: List[Dict[str, Any]] = Field(default_factory=list, alias="mcpServers")
    remote: Optional[Dict[str, Any]] = None

    @property
    def backend(self) -> str:
        backend = self.agent or self.backend_kind
        if not backend:
            raise InvalidRequest("agent (or backendKind) is required")
        return backend


class PromptReq(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt: Optional[Union[str, List[Dict[str, Any]]]] = None
    content: Optional[Union[str, List[Dict[str, Any]]]] = None

    @property
    def blocks(self) -> Union[str, List[Dict[str, Any]]]:
        value = self.prompt if self.prompt is not None else self.content
        if value is None or value == [] or value == "":
            raise InvalidRequest("prompt (or content) is required")
        return value


class WebSocketConnection:
    """`TerminalConnection` over a Starlette websocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.closed = False

    async def send_text(self, text: str) -> None:
        if self.closed:
            return
        try:
            await self.websocket.send_text(text)
        except (WebSocketDisconnect, RuntimeError):
            self.closed = True

    async def receive(self) -> Union[str, bytes, None]:
        if self.closed:
            return None
        try:
            message = await self.websocket.receive()
        except (WebSocketDisconnect, RuntimeError):
            self.closed = True
            return None
        if message.get("type") == "websocket.disconnect":
            self.closed = True
            return None
        text = message.get("text")
        return text if text is not None else message.get("bytes")

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)


def _default_shell_opener(settings: RelaySettings) -> ShellOpenerFactory:
    def factory(provider: str, machine_id: str, pty: PtyRequest) -> Callable[[], Awaitable[ProcessHandle]]:
        async def opener() -> ProcessHandle:
            target = await resolve_ssh_target(provider, machine_id, settings)
            return await open_remote_process(
                target,
                None,
                pty=pty,
                connect_timeout=settings.ssh_connect_timeout,
                limit=settings.stdio_buffer_limit,
            )

        return opener

    return factory


def _int_param(value: Optional[str], default: int) -> int:
    try:
        parsed = int(value) if value else default
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def create_app(
    settings: RelaySettings,
    registry: SessionRegistry | None = None,
    *,
    shell_opener: ShellOpenerFactory | None = None,
) -> FastAPI:
    """Build the relay application around an injected (or fresh) session registry."""

    registry = registry or SessionRegistry(settings)
    open_shell = shell_opener or _default_shell_opener(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await registry.start()
        try:
            yield
        finally:
            await registry.shutdown()

    app = FastAPI(title="agentrelay", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry

    @app.exception_handler(BridgeError)
    async def _bridge_error(_: Request, exc: BridgeError) -> JSONResponse:
        log_event(logger, "http.error", level=logging.WARNING, kind=exc.kind, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg', 'invalid request')}" if location else "invalid request body"
        return JSONResponse(status_code=400, content=InvalidRequest(message).to_dict())

    @app.exception_handler(Exception)
    async def _internal_error(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error", exc_info=exc)
        return JSONResponse(status_code=500, content={"kind": "internal_error", "message": "internal error"})

    @app.get("/healthz", response_class=PlainTextResponse)
    async def healthz() -> str:
        return "ok"

    @app.post("/sessions")
    async def create_session(body: CreateSessionReq = Body(...)) -> Dict[str, Any]:
        remote = RemoteLocation.from_wire(body.remote)
        info = await registry.create(body.backend, cwd=body.cwd, mcp_servers=body.mcp_servers, remote=remote)
        return info.wire()

    @app.get("/sessions")
    async def list_sessions() -> Dict[str, Any]:
        return {"sessions": await registry.list()}

    @app.get("/sessions/{session_id}")
    async def describe_session(session_id: str) -> Dict[str, Any]:
        return await registry.describe(session_id)

    @app.post("/sessions/{session_id}/prompt")
    async def prompt_session(session_id: str, request: Request, body: PromptReq = Body(...)) -> Dict[str, Any]:
        content = body.blocks
        cancel = asyncio.Event()

        async def _watch_disconnect() -> None:
            while not cancel.is_set():
                if await request.is_disconnected():
                    log_event(logger, "http.client_disconnected", session_id=session_id)
                    cancel.set()
                    return
                await asyncio.sleep(DISCONNECT_POLL_S)

        watcher = asyncio.create_task(_watch_disconnect())
        try:
            with log_context(session_id=session_id):
                outcome = await registry.prompt(session_id, content, cancel)
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
        return outcome.wire()

    @app.post("/sessions/{session_id}/cancel")
    async def cancel_session(session_id: str) -> Dict[str, Any]:
        cancelled = await registry.cancel(session_id)
        return {"ok": True, "cancelled": cancelled}

    @app.delete("/sessions/{session_id}")
    async def delete_session(session_id: str) -> Dict[str, Any]:
        await registry.terminate(session_id)
        return {"ok": True}

    @app.websocket("/terminal")
    async def terminal(websocket: WebSocket) -> None:
        params = websocket.query_params
        machine_id = params.get("machineId") or ""
        provider = (params.get("provider") or "morph").lower()
        await websocket.accept()
        connection = WebSocketConnection(websocket)
        if not machine_id:
            await connection.send_text("Missing machine identifier.\r\n")
            await connection.close(CLOSE_POLICY_VIOLATION, "machine required")
            return

        pty = PtyRequest(cols=_int_param(params.get("cols"), 80), rows=_int_param(params.get("rows"), 24))
        setup = RemoteSetup.from_query(params.get("env"), params.get("files"))
        bridge = ShellBridge(connection, open_shell(provider, machine_id, pty), label=machine_id, setup=setup)
        with log_context(machine_id=machine_id, provider=provider):
            await bridge.run()

    return app
