"""Newline-delimited JSON frame filtering between a process and the ACP connection."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging

from agentrelay.config import DEFAULT_STDIO_BUFFER_LIMIT_BYTES
from agentrelay.errors import BridgeError, ConnectFailed, ProtocolDecodeError
from agentrelay.log_utils import log_event

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 200


class NdjsonFramePump:
    """Copy complete JSON-object lines from `source` into `reader`.

    Agents sometimes print banners or progress text on stdout. Such lines
    would otherwise reach the JSON-RPC decoder, so they are logged, counted
    and dropped here. A line longer than the buffer limit means the stream
    can no longer be split reliably; that ends the pump with a
    `ProtocolDecodeError`. Errors raised by the source (a dropped SSH
    connection) also end the pump and are kept in `error`.
    """

    def __init__(
        self,
        source: asyncio.StreamReader,
        *,
        limit: int = DEFAULT_STDIO_BUFFER_LIMIT_BYTES,
        name: str = "agent",
    ) -> None:
        self.source = source
        self.reader = asyncio.StreamReader(limit=limit)
        self.name = name
        self.forwarded = 0
        self.dropped = 0
        self.error: BridgeError | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"ndjson-pump-{self.name}")

    async def wait(self) -> None:
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        await self.wait()

    async def _run(self) -> None:
        try:
            while True:
                try:
                    line = await self.source.readline()
                except ValueError as exc:
                    # StreamReader raises ValueError once a line exceeds its limit.
                    self.error = ProtocolDecodeError(f"frame from {self.name} exceeds the buffer limit")
                    log_event(logger, "frame.overflow", level=logging.ERROR, source=self.name, error=str(exc))
                    return
                except BridgeError as exc:
                    self.error = exc
                    return
                except (OSError, EOFError) as exc:
                    self.error = ConnectFailed(f"output of {self.name} failed: {exc}")
                    return
                if not line:
                    return
                self._handle_line(line)
        finally:
            self.reader.feed_eof()
            log_event(
                logger,
                "frame.pump.stopped",
                level=logging.DEBUG,
                source=self.name,
                forwarded=self.forwarded,
                dropped=self.dropped,
            )

    def _handle_line(self, line: bytes) -> None:
        stripped = line.strip()
        if not stripped:
            return
        try:
            frame = json.loads(stripped)
        except ValueError:
            frame = None
        if not isinstance(frame, dict):
            self.dropped += 1
            error = ProtocolDecodeError(f"dropped non-JSON-object frame from {self.name}")
            log_event(
                logger,
                "frame.dropped",
                level=logging.WARNING,
                source=self.name,
                kind=error.kind,
                preview=stripped[:_PREVIEW_CHARS].decode("utf-8", errors="replace"),
            )
            return
        self.forwarded += 1
        self.reader.feed_data(stripped + b"\n")
