"""Transport-agnostic handle over a running external process."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from agentrelay.errors import SessionClosed
from agentrelay.log_utils import log_event

logger = logging.getLogger(__name__)


class StreamWriterLike(Protocol):
    """The subset of `asyncio.StreamWriter` the ACP connection and the shell bridge use."""

    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...

    def is_closing(self) -> bool: ...

    async def wait_closed(self) -> None: ...


class ProcessHandle:
    """A running process with an input sink, an output source and an exit status.

    Subclasses own the transport and implement `_teardown`; this base class
    carries the lifecycle bookkeeping. `terminate()` runs the teardown at most
    once no matter how many callers race it; every caller awaits the same
    teardown future.
    """

    kind = "process"

    def __init__(self, identity: str, stdout: asyncio.StreamReader) -> None:
        self.identity = identity
        self.stdout = stdout
        self.returncode: int | None = None
        self.signal: str | None = None
        self.terminate_reason: str | None = None
        self._exited = asyncio.Event()
        self._output_ended = False
        self._teardown_future: asyncio.Future[None] | None = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.identity} alive={self.alive}>"

    @property
    def stdin(self) -> StreamWriterLike:
        raise NotImplementedError

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    @property
    def terminated(self) -> bool:
        return self._teardown_future is not None

    @property
    def alive(self) -> bool:
        return not self.exited and not self.terminated

    def write(self, data: bytes | str) -> None:
        """Queue bytes for the process input; rejected once the process is gone."""
        if not self.alive:
            raise SessionClosed(f"process {self.identity} is no longer running")
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.stdin.write(data)

    async def send(self, data: bytes | str) -> None:
        self.write(data)
        await self.stdin.drain()

    async def read(self, n: int = 65536) -> bytes:
        """Return buffered or fresh output; `b""` once the output source has ended."""
        return await self.stdout.read(n)

    async def wait(self) -> int | None:
        await self._exited.wait()
        return self.returncode

    def resize(self, cols: int, rows: int) -> None:
        """Resize the attached pseudo-terminal; processes without one ignore this."""
        _ = (cols, rows)

    async def terminate(self, reason: str = "terminate") -> None:
        if self._teardown_future is None:
            self.terminate_reason = reason
            log_event(logger, "process.terminate", handle=self.identity, reason=reason)
            self._teardown_future = asyncio.ensure_future(self._run_teardown(reason))
        await asyncio.shield(self._teardown_future)

    async def kill(self) -> None:
        await self.terminate("kill")

    async def _run_teardown(self, reason: str) -> None:
        try:
            await self._teardown(reason)
        except Exception as exc:  # noqa: BLE001
            log_event(logger, "process.teardown.error", level=logging.WARNING, handle=self.identity, error=str(exc))
        finally:
            self._end_output()
            self._mark_exited(self.returncode, self.signal or "TERM")

    async def _teardown(self, reason: str) -> None:
        raise NotImplementedError

    def _end_output(self, exc: BaseException | None = None) -> None:
        """End the output source once, optionally with an error readers will see."""
        if self._output_ended:
            return
        self._output_ended = True
        if exc is not None:
            self.stdout.set_exception(exc)
        else:
            self.stdout.feed_eof()

    def _mark_exited(self, returncode: int | None, signal: str | None = None) -> None:
        if self._exited.is_set():
            return
        self.returncode = returncode
        self.signal = signal
        self._exited.set()
        log_event(logger, "process.exited", handle=self.identity, returncode=returncode, signal=signal)
