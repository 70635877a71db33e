"""Local execution transport: agent processes spawned on the relay host."""

from __future__ import annotations

import asyncio
import asyncio.subprocess as aio_subprocess
import contextlib
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Mapping, Sequence

from agentrelay.config import DEFAULT_KILL_GRACE_S, DEFAULT_STDIO_BUFFER_LIMIT_BYTES
from agentrelay.errors import SpawnFailed
from agentrelay.log_utils import log_event
from agentrelay.process.handle import ProcessHandle, StreamWriterLike

logger = logging.getLogger(__name__)


class LocalProcessHandle(ProcessHandle):
    """Handle over an `asyncio.subprocess.Process` running in its own process group."""

    kind = "local"

    def __init__(self, proc: aio_subprocess.Process, *, kill_grace: float = DEFAULT_KILL_GRACE_S) -> None:
        assert proc.stdout is not None
        super().__init__(identity=f"pid:{proc.pid}", stdout=proc.stdout)
        self._proc = proc
        self._kill_grace = kill_grace
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._watch_task = asyncio.create_task(self._watch())

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def stdin(self) -> StreamWriterLike:
        assert self._proc.stdin is not None
        return self._proc.stdin

    async def _watch(self) -> None:
        code = await self._proc.wait()
        if code < 0:
            try:
                sig_name = signal.Signals(-code).name
            except ValueError:
                sig_name = f"SIG{-code}"
            self._mark_exited(None, sig_name)
        else:
            self._mark_exited(code)

    async def _drain_stderr(self) -> None:
        stream = self._proc.stderr
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.warning("[agent stderr %s] %s", self.identity, text)

    def _signal_group(self, sig: int) -> None:
        killpg = getattr(os, "killpg", None)
        if killpg is not None:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                killpg(self._proc.pid, sig)
                return
        with contextlib.suppress(ProcessLookupError):
            self._proc.send_signal(sig)

    async def _teardown(self, reason: str) -> None:
        if self._proc.stdin is not None:
            with contextlib.suppress(Exception):
                self._proc.stdin.close()
        if self._proc.returncode is None:
            self._signal_group(signal.SIGTERM)
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=self._kill_grace)
            except asyncio.TimeoutError:
                log_event(logger, "process.kill", level=logging.WARNING, handle=self.identity, reason=reason)
                self._signal_group(signal.SIGKILL)
                await self._proc.wait()
        await self._watch_task
        with contextlib.suppress(asyncio.TimeoutError, asyncio.CancelledError):
            await asyncio.wait_for(self._stderr_task, timeout=1.0)


async def spawn_local(
    command: str,
    args: Sequence[str] = (),
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    *,
    limit: int = DEFAULT_STDIO_BUFFER_LIMIT_BYTES,
    kill_grace: float = DEFAULT_KILL_GRACE_S,
) -> LocalProcessHandle:
    """Start `command args...` with piped stdio and return its handle.

    The host environment is inherited and overlaid with `env`. A path to a
    non-executable file (a plain `.py` script) is run with the current
    interpreter.
    """

    spawn_program = command
    spawn_args = list(args)
    program_path = Path(command)
    if program_path.exists() and program_path.is_file() and not os.access(program_path, os.X_OK):
        spawn_program = sys.executable
        spawn_args = [str(program_path), *spawn_args]

    full_env = dict(os.environ)
    if env:
        full_env.update(env)

    try:
        proc = await asyncio.create_subprocess_exec(
            spawn_program,
            *spawn_args,
            stdin=aio_subprocess.PIPE,
            stdout=aio_subprocess.PIPE,
            stderr=aio_subprocess.PIPE,
            env=full_env,
            cwd=cwd,
            limit=limit,
            start_new_session=True,
        )
    except (OSError, ValueError) as exc:
        log_event(logger, "process.spawn.failed", level=logging.ERROR, command=command, error=str(exc))
        raise SpawnFailed(f"failed to start {command}: {exc}") from exc

    if proc.stdin is None or proc.stdout is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        raise SpawnFailed(f"{command} does not expose stdio pipes")

    handle = LocalProcessHandle(proc, kill_grace=kill_grace)
    log_event(logger, "process.spawned", handle=handle.identity, command=command)
    return handle
