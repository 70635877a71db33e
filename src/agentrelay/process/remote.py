"""Remote execution transport: processes started over SSH with paramiko.

paramiko is blocking, so connection setup and writes run in worker threads
and each channel gets two reader threads. Readers never touch asyncio state
directly; they post `ChannelEvent`s to a queue that a single consumer task on
the event loop drains in arrival order.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import shlex
import threading
from dataclasses import dataclass, field
from typing import Callable, Literal, Mapping, Sequence

import paramiko
from paramiko.common import cMSG_CHANNEL_REQUEST
from paramiko.message import Message

from agentrelay.config import (
    DEFAULT_REMOTE_PATH,
    DEFAULT_SSH_CONNECT_TIMEOUT_S,
    DEFAULT_STDIO_BUFFER_LIMIT_BYTES,
)
from agentrelay.errors import ConnectFailed, ExecFailed
from agentrelay.log_utils import log_event
from agentrelay.process.handle import ProcessHandle

logger = logging.getLogger(__name__)

RECV_CHUNK_BYTES = 32 * 1024
KEEPALIVE_INTERVAL_S = 30
TEARDOWN_DRAIN_S = 2.0

# Kills the remote process group when the wrapper shell exits or is signalled.
GROUP_KILL_TRAP = "trap 'kill -- -$$' EXIT INT TERM"

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class SshTarget:
    """Where and how to open an SSH connection.

    `username` may embed a credential (some providers authenticate by API key
    in the user name), so only `label` is ever shown in logs and errors.
    """

    host: str
    port: int = 22
    username: str = field(default="root", repr=False)
    pkey: paramiko.PKey | None = field(default=None, repr=False)
    label: str = ""

    @property
    def display(self) -> str:
        return self.label or f"{self.host}:{self.port}"


@dataclass(frozen=True)
class PtyRequest:
    term: str = "xterm-256color"
    cols: int = 80
    rows: int = 24


@dataclass(frozen=True)
class ChannelEvent:
    kind: Literal["data", "stderr", "exit", "close", "error"]
    data: bytes = b""
    status: int | None = None
    error: BaseException | None = None


def build_remote_command(
    argv: Sequence[str],
    env: Mapping[str, str | None] | None = None,
    *,
    path_entries: str = DEFAULT_REMOTE_PATH,
) -> str:
    """Assemble the `bash -lc` line that runs `argv` on the remote host.

    The inner script installs the process-group trap, appends `path_entries`
    to `PATH`, exports every variable in `env` except `PATH` (None values are
    skipped) and finally runs `argv`. Every value is single-quoted, so the
    remote shell sees the literal bytes.
    """

    if not argv:
        raise ValueError("remote command needs at least one argument")

    parts = [GROUP_KILL_TRAP]
    if path_entries:
        parts.append(f'export PATH="$PATH":{shlex.quote(path_entries)}')
    for name, value in (env or {}).items():
        if name == "PATH" or value is None:
            continue
        if not _ENV_NAME.match(name):
            raise ValueError(f"invalid environment variable name: {name!r}")
        parts.append(f"export {name}={shlex.quote(value)}")
    parts.append(shlex.join(argv))
    return f"bash -lc {shlex.quote('; '.join(parts))}"


def _send_channel_signal(channel: paramiko.Channel, name: str) -> None:
    """Send an RFC 4254 `signal` channel request (paramiko has no public API for it)."""
    message = Message()
    message.add_byte(cMSG_CHANNEL_REQUEST)
    message.add_int(channel.remote_chanid)
    message.add_string("signal")
    message.add_boolean(False)
    message.add_string(name)
    channel.transport._send_user_message(message)


class ChannelWriter:
    """StreamWriter-shaped input sink over a paramiko channel."""

    def __init__(self, channel: paramiko.Channel) -> None:
        self._channel = channel
        self._buffer = bytearray()
        self._lock = asyncio.Lock()
        self._closing = False

    def write(self, data: bytes) -> None:
        if self._closing:
            raise BrokenPipeError("channel input is closed")
        self._buffer.extend(data)

    async def drain(self) -> None:
        async with self._lock:
            if not self._buffer:
                return
            data = bytes(self._buffer)
            self._buffer.clear()
            try:
                await asyncio.to_thread(self._channel.sendall, data)
            except (OSError, EOFError, paramiko.SSHException) as exc:
                raise BrokenPipeError(f"channel write failed: {exc}") from exc

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        with contextlib.suppress(OSError, EOFError, paramiko.SSHException):
            self._channel.shutdown_write()

    def is_closing(self) -> bool:
        return self._closing or self._channel.closed

    async def wait_closed(self) -> None:
        return None


class RemoteProcessHandle(ProcessHandle):
    """Handle over a command or interactive shell running in an SSH channel."""

    kind = "remote"

    def __init__(
        self,
        identity: str,
        client: paramiko.SSHClient,
        channel: paramiko.Channel,
        *,
        pty: PtyRequest | None = None,
        limit: int = DEFAULT_STDIO_BUFFER_LIMIT_BYTES,
    ) -> None:
        super().__init__(identity=identity, stdout=asyncio.StreamReader(limit=limit))
        self._client = client
        self._channel = channel
        self._pty = pty
        self._writer = ChannelWriter(channel)
        self._loop = asyncio.get_running_loop()
        self._events: asyncio.Queue[ChannelEvent] = asyncio.Queue()
        self._client_closed = False
        self.error: BaseException | None = None

        self._stderr_thread = threading.Thread(
            target=self._read_stderr, name=f"ssh-stderr-{identity}", daemon=True
        )
        self._stdout_thread = threading.Thread(
            target=self._read_stdout, name=f"ssh-stdout-{identity}", daemon=True
        )
        self._consumer = asyncio.create_task(self._consume())
        self._stderr_thread.start()
        self._stdout_thread.start()

    @property
    def stdin(self) -> ChannelWriter:
        return self._writer

    def resize(self, cols: int, rows: int) -> None:
        if self._pty is None or not self.alive:
            return
        try:
            self._channel.resize_pty(width=cols, height=rows)
        except (OSError, paramiko.SSHException) as exc:
            log_event(logger, "remote.resize.failed", level=logging.WARNING, handle=self.identity, error=str(exc))

    # reader threads

    def _post(self, event: ChannelEvent) -> None:
        with contextlib.suppress(RuntimeError):
            self._loop.call_soon_threadsafe(self._events.put_nowait, event)

    def _read_stdout(self) -> None:
        try:
            while True:
                chunk = self._channel.recv(RECV_CHUNK_BYTES)
                if not chunk:
                    break
                self._post(ChannelEvent("data", data=chunk))
            self._stderr_thread.join()
            self._post(ChannelEvent("exit", status=self._channel.recv_exit_status()))
            self._post(ChannelEvent("close"))
        except Exception as exc:  # noqa: BLE001 - forwarded to the loop
            self._post(ChannelEvent("error", error=exc))

    def _read_stderr(self) -> None:
        try:
            while True:
                chunk = self._channel.recv_stderr(RECV_CHUNK_BYTES)
                if not chunk:
                    return
                self._post(ChannelEvent("stderr", data=chunk))
        except Exception as exc:  # noqa: BLE001 - stdout reader reports the failure
            logger.debug("stderr reader for %s stopped: %s", self.identity, exc)

    # event loop side

    async def _consume(self) -> None:
        while True:
            event = await self._events.get()
            if event.kind == "data":
                if not self._output_ended:
                    self.stdout.feed_data(event.data)
            elif event.kind == "stderr":
                text = event.data.decode("utf-8", errors="replace").rstrip()
                if text:
                    logger.warning("[ssh stderr %s] %s", self.identity, text)
            elif event.kind == "exit":
                status = event.status if event.status is not None and event.status >= 0 else None
                # paramiko reports -1 when the channel closed without an exit-status
                self._mark_exited(status, None if status is not None else "TERM")
            elif event.kind == "close":
                self._end_output()
                self._mark_exited(self.returncode, self.signal)
                await self._close_client()
                return
            elif event.kind == "error":
                self.error = ConnectFailed(f"ssh channel to {self.identity} failed: {event.error}")
                log_event(logger, "remote.channel.error", level=logging.ERROR, handle=self.identity, error=str(event.error))
                self._end_output(self.error)
                self._mark_exited(None, "TERM")
                await self._close_client()
                return

    async def _close_client(self) -> None:
        if self._client_closed:
            return
        self._client_closed = True
        await asyncio.to_thread(self._client.close)

    async def _teardown(self, reason: str) -> None:
        self._writer._closing = True
        # Signals only reach a command that is still running.
        running = not self.exited
        # Whoever flips the flag first owns closing the connection.
        owns_client = not self._client_closed
        self._client_closed = True
        steps: list[tuple[str, Callable[[], None]]] = []
        if running:
            steps.append(("sigint", self._interrupt))
            steps.append(("sigterm", lambda: _send_channel_signal(self._channel, "TERM")))
        steps.append(("close_channel", self._channel.close))
        if owns_client:
            steps.append(("close_connection", self._client.close))
        for step, action in steps:
            try:
                await asyncio.to_thread(action)
            except Exception as exc:  # noqa: BLE001 - every step is best-effort
                log_event(
                    logger,
                    "remote.teardown.step_failed",
                    level=logging.WARNING,
                    handle=self.identity,
                    step=step,
                    error=str(exc),
                )
        try:
            await asyncio.wait_for(asyncio.shield(self._consumer), timeout=TEARDOWN_DRAIN_S)
        except asyncio.TimeoutError:
            self._consumer.cancel()

    def _interrupt(self) -> None:
        if self._pty is not None:
            self._channel.send(b"\x03")
        _send_channel_signal(self._channel, "INT")


def _connect(target: SshTarget, timeout: float) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(
            hostname=target.host,
            port=target.port,
            username=target.username,
            pkey=target.pkey,
            timeout=timeout,
            banner_timeout=timeout,
            auth_timeout=timeout,
            allow_agent=False,
            look_for_keys=False,
        )
    except (OSError, EOFError, paramiko.SSHException) as exc:
        client.close()
        raise ConnectFailed(f"ssh connection to {target.display} failed: {type(exc).__name__}: {exc}") from exc
    transport = client.get_transport()
    if transport is not None:
        transport.set_keepalive(KEEPALIVE_INTERVAL_S)
    return client


def _open_channel(client: paramiko.SSHClient, command: str | None, pty: PtyRequest | None) -> paramiko.Channel:
    transport = client.get_transport()
    if transport is None or not transport.is_active():
        raise ExecFailed("ssh transport is not active")
    try:
        channel = transport.open_session()
        if pty is not None:
            channel.get_pty(term=pty.term, width=pty.cols, height=pty.rows)
        if command is None:
            channel.invoke_shell()
        else:
            channel.exec_command(command)
    except (OSError, EOFError, paramiko.SSHException) as exc:
        raise ExecFailed(f"failed to start remote {'shell' if command is None else 'command'}: {exc}") from exc
    return channel


async def open_remote_process(
    target: SshTarget,
    command: str | None = None,
    *,
    pty: PtyRequest | None = None,
    connect_timeout: float = DEFAULT_SSH_CONNECT_TIMEOUT_S,
    limit: int = DEFAULT_STDIO_BUFFER_LIMIT_BYTES,
) -> RemoteProcessHandle:
    """Connect to `target` and start `command`, or an interactive shell when it is None.

    Agent commands run without a pseudo-terminal so their stdout stays a clean
    byte stream; a shell always gets one.
    """

    if command is None and pty is None:
        pty = PtyRequest()
    log_event(logger, "remote.connecting", target=target.display, shell=command is None)
    client = await asyncio.to_thread(_connect, target, connect_timeout)
    try:
        channel = await asyncio.to_thread(_open_channel, client, command, pty)
    except ExecFailed:
        await asyncio.to_thread(client.close)
        raise
    identity = f"{target.display}#{channel.get_id()}"
    handle = RemoteProcessHandle(identity, client, channel, pty=pty, limit=limit)
    log_event(logger, "remote.started", handle=identity)
    return handle
