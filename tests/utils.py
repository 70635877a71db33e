from __future__ import annotations

import asyncio
import queue
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any

from agentrelay.config import RelaySettings
from agentrelay.process.handle import ProcessHandle

FAKE_AGENT = Path(__file__).with_name("fake_agent.py")


def make_settings(**overrides: Any) -> RelaySettings:
    """Settings whose only backend is the scripted test agent."""

    settings = RelaySettings(
        agent_commands={"fake": (sys.executable, str(FAKE_AGENT))},
        handshake_timeout=15.0,
        prompt_timeout=15.0,
        permission_timeout=2.0,
        kill_grace=2.0,
        remote_env_passthrough=(),
    )
    return replace(settings, **overrides)


class MemoryWriter:
    """StreamWriter stand-in that records everything written."""

    def __init__(self) -> None:
        self.data = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("closed")
        self.data.extend(data)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True

    def is_closing(self) -> bool:
        return self.closed

    async def wait_closed(self) -> None:
        return None


class ScriptedHandle(ProcessHandle):
    """In-memory process handle: tests push output and inspect input."""

    kind = "scripted"

    def __init__(self, identity: str = "scripted") -> None:
        super().__init__(identity=identity, stdout=asyncio.StreamReader())
        self.writer = MemoryWriter()
        self.resizes: list[tuple[int, int]] = []
        self.teardowns = 0

    @property
    def stdin(self) -> MemoryWriter:
        return self.writer

    @property
    def written(self) -> str:
        return self.writer.data.decode("utf-8")

    def push(self, data: bytes) -> None:
        self.stdout.feed_data(data)

    def finish(self, returncode: int = 0) -> None:
        """Simulate the process exiting on its own."""
        self._end_output()
        self._mark_exited(returncode)

    def resize(self, cols: int, rows: int) -> None:
        self.resizes.append((cols, rows))

    async def _teardown(self, reason: str) -> None:
        self.teardowns += 1
        self.writer.close()
        await asyncio.sleep(0)


class FakeChannel:
    """Thread-safe stand-in for `paramiko.Channel`.

    `recv`/`recv_stderr` block on queues, like the real channel blocks on the
    socket, so the reader threads in `RemoteProcessHandle` behave as in
    production.
    """

    remote_chanid = 0

    def __init__(self, calls: list[Any] | None = None) -> None:
        self.calls: list[Any] = calls if calls is not None else []
        self.sent = bytearray()
        self.resized: list[tuple[int, int]] = []
        self.fail_on: set[str] = set()
        self.closed = False
        self.exit_status = -1
        self._stdout: queue.Queue[Any] = queue.Queue()
        self._stderr: queue.Queue[Any] = queue.Queue()
        self._exit = threading.Event()

    def push_stdout(self, data: bytes) -> None:
        self._stdout.put(data)

    def push_stderr(self, data: bytes) -> None:
        self._stderr.put(data)

    def fail_stdout(self, exc: BaseException) -> None:
        self._stdout.put(exc)

    def finish(self, status: int = -1) -> None:
        if not self._exit.is_set():
            self.exit_status = status
            self._exit.set()
        self._stdout.put(b"")
        self._stderr.put(b"")

    def get_id(self) -> int:
        return 7

    def recv(self, nbytes: int) -> bytes:
        item = self._stdout.get()
        if isinstance(item, BaseException):
            raise item
        return item

    def recv_stderr(self, nbytes: int) -> bytes:
        return self._stderr.get()

    def recv_exit_status(self) -> int:
        self._exit.wait(5)
        return self.exit_status

    def sendall(self, data: bytes) -> None:
        if self.closed:
            raise OSError("Socket is closed")
        self.sent.extend(data)

    def send(self, data: bytes) -> int:
        self.calls.append(("send", data))
        return len(data)

    def shutdown_write(self) -> None:
        self.calls.append("shutdown_write")

    def resize_pty(self, width: int = 80, height: int = 24) -> None:
        self.resized.append((width, height))

    def close(self) -> None:
        self.calls.append("close_channel")
        if "close_channel" in self.fail_on:
            raise OSError("close failed")
        self.closed = True
        self.finish()


class FakeSSHClient:
    def __init__(self, calls: list[Any] | None = None) -> None:
        self.calls: list[Any] = calls if calls is not None else []
        self.closed = 0

    def close(self) -> None:
        self.calls.append("close_connection")
        self.closed += 1


def record_signals(monkeypatch, calls: list[Any], fail: set[str] | None = None) -> None:
    """Replace the raw SSH `signal` request with a recorder."""

    from agentrelay.process import remote

    def _fake_signal(channel: Any, name: str) -> None:
        calls.append(("signal", name))
        if fail and name in fail:
            raise OSError(f"signal {name} failed")

    monkeypatch.setattr(remote, "_send_channel_signal", _fake_signal)


class FakeConnection:
    """`TerminalConnection` double: replays scripted client messages and records output."""

    def __init__(self, messages: list[str | bytes] | None = None, *, hold_open: bool = False) -> None:
        self.sent: list[str] = []
        self.closed: tuple[int, str] | None = None
        self._incoming: asyncio.Queue[str | bytes | None] = asyncio.Queue()
        for message in messages or []:
            self._incoming.put_nowait(message)
        if not hold_open:
            self._incoming.put_nowait(None)

    @property
    def output(self) -> str:
        return "".join(self.sent)

    def push(self, message: str | bytes | None) -> None:
        self._incoming.put_nowait(message)

    async def send_text(self, text: str) -> None:
        self.sent.append(text)

    async def receive(self) -> str | bytes | None:
        return await self._incoming.get()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll `predicate` until it is truthy or fail after `timeout` seconds."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
