"""Bridge a client terminal connection to an interactive remote shell."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
from typing import Awaitable, Callable, Protocol

from agentrelay.errors import BridgeError, SessionClosed
from agentrelay.log_utils import log_event
from agentrelay.process.handle import ProcessHandle
from agentrelay.shell.setup import RemoteSetup, render_setup_script

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 64 * 1024
CLOSE_NORMAL = 1000
CLOSE_INTERNAL_ERROR = 1011


class TerminalConnection(Protocol):
    """Client side of a terminal session (a websocket in production)."""

    async def send_text(self, text: str) -> None: ...

    async def receive(self) -> str | bytes | None:
        """Next client message, or None once the client has gone away."""
        ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


ShellOpener = Callable[[], Awaitable[ProcessHandle]]


def parse_resize(message: str) -> tuple[int, int] | None:
    """Return `(cols, rows)` for a `{"type": "resize"}` control message, else None."""
    if not message.startswith("{"):
        return None
    try:
        data = json.loads(message)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("type") != "resize":
        return None
    try:
        cols, rows = int(data["cols"]), int(data["rows"])
    except (KeyError, TypeError, ValueError):
        return None
    if cols <= 0 or rows <= 0:
        return None
    return cols, rows


class ShellBridge:
    """Run one interactive shell for one client connection.

    Output is forwarded as it arrives, decoded incrementally so multi-byte
    characters split across reads survive. Client messages are written to
    the shell verbatim, except resize control messages. The shell handle is
    terminated exactly once, whichever side ends first.
    """

    def __init__(
        self,
        connection: TerminalConnection,
        opener: ShellOpener,
        *,
        label: str,
        setup: RemoteSetup | None = None,
    ) -> None:
        self.connection = connection
        self.opener = opener
        self.label = label
        self.setup = setup or RemoteSetup()
        self.handle: ProcessHandle | None = None
        self._released = False

    async def run(self) -> None:
        await self.connection.send_text(f"Connecting to {self.label}...\r\n")
        try:
            self.handle = await self.opener()
        except BridgeError as exc:
            await self._fail(exc)
            return
        except Exception as exc:  # noqa: BLE001 - reported to the client
            logger.exception("Failed to open shell for %s", self.label)
            await self._fail(exc)
            return

        log_event(logger, "shell.connected", target=self.label, handle=self.handle.identity)
        try:
            await self.connection.send_text("Connected.\r\n")
            await self.handle.send(render_setup_script(self.setup))
            ended_by = await self._pump()
            if ended_by == "shell":
                await self.connection.send_text("\r\nSession closed.\r\n")
                await self.connection.close(CLOSE_NORMAL, "session closed")
        except Exception as exc:  # noqa: BLE001 - reported to the client
            log_event(logger, "shell.error", level=logging.WARNING, target=self.label, error=str(exc))
            await self._fail(exc)
        finally:
            await self._release("shell_bridge_closed")

    async def _pump(self) -> str:
        output = asyncio.create_task(self._pump_output())
        client = asyncio.create_task(self._pump_input())
        done, pending = await asyncio.wait({output, client}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        first = output if output in done else client
        # Surfaces pump errors.
        return first.result()

    async def _pump_output(self) -> str:
        assert self.handle is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await self.handle.read(READ_CHUNK_BYTES)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    await self.connection.send_text(tail)
                return "shell"
            text = decoder.decode(data)
            if text:
                await self.connection.send_text(text)

    async def _pump_input(self) -> str:
        assert self.handle is not None
        while True:
            message = await self.connection.receive()
            if message is None:
                return "client"
            if isinstance(message, str):
                size = parse_resize(message)
                if size is not None:
                    self.handle.resize(*size)
                    continue
            try:
                await self.handle.send(message)
            except (SessionClosed, BrokenPipeError):
                # The output pump reports the closed shell.
                return await self._pump_output_tail()

    async def _pump_output_tail(self) -> str:
        assert self.handle is not None
        await self.handle.wait()
        return "shell"

    async def _fail(self, exc: BaseException) -> None:
        message = exc.message if isinstance(exc, BridgeError) else str(exc) or type(exc).__name__
        with contextlib.suppress(Exception):
            await self.connection.send_text(f"Error: {message}\r\n")
        with contextlib.suppress(Exception):
            await self.connection.close(CLOSE_INTERNAL_ERROR, "shell error")

    async def _release(self, reason: str) -> None:
        if self._released or self.handle is None:
            return
        self._released = True
        await self.handle.terminate(reason)
        log_event(logger, "shell.closed", target=self.label, handle=self.handle.identity)
