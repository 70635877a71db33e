from __future__ import annotations

import asyncio
import json

import pytest

from agentrelay.errors import ConnectFailed
from agentrelay.shell.bridge import ShellBridge, parse_resize
from agentrelay.shell.setup import FileToWrite, RemoteSetup
from tests.utils import FakeConnection, ScriptedHandle, wait_for


def _opener(handle: ScriptedHandle):
    async def opener() -> ScriptedHandle:
        return handle

    return opener


def test_parse_resize() -> None:
    assert parse_resize('{"type": "resize", "cols": 120, "rows": 40}') == (120, 40)
    assert parse_resize('{"type": "resize", "cols": 0, "rows": 40}') is None
    assert parse_resize('{"type": "input", "data": "ls"}') is None
    assert parse_resize("{not json") is None
    assert parse_resize("ls -la\r") is None


@pytest.mark.asyncio
async def test_bridge_runs_setup_and_forwards_both_ways() -> None:
    handle = ScriptedHandle()
    connection = FakeConnection(hold_open=True)
    setup = RemoteSetup(env={"FOO": "bar"}, files=[FileToWrite(path="~/a.txt", content="hi")])
    bridge = ShellBridge(connection, _opener(handle), label="m-1", setup=setup)
    task = asyncio.create_task(bridge.run())

    await wait_for(lambda: "Connected.\r\n" in connection.sent)
    assert connection.sent[0] == "Connecting to m-1...\r\n"
    await wait_for(lambda: "@@INIT_" in handle.written)
    assert handle.written.startswith("export TERM=xterm-256color\nexport FOO=bar\n")

    connection.push("ls -la\r")
    connection.push(json.dumps({"type": "resize", "cols": 132, "rows": 50}))
    await wait_for(lambda: handle.written.endswith("ls -la\r"))
    await wait_for(lambda: handle.resizes == [(132, 50)])
    assert "resize" not in handle.written

    # A multi-byte character split across two reads must arrive intact.
    snowman = "☃".encode()
    handle.push(b"out " + snowman[:1])
    handle.push(snowman[1:] + b"\r\n")
    await wait_for(lambda: "out ☃\r\n" in "".join(connection.sent))

    handle.finish(0)
    await asyncio.wait_for(task, timeout=5)
    assert connection.sent[-1] == "\r\nSession closed.\r\n"
    assert connection.closed == (1000, "session closed")
    assert handle.teardowns == 1


@pytest.mark.asyncio
async def test_client_disconnect_terminates_shell_once() -> None:
    handle = ScriptedHandle()
    connection = FakeConnection(["echo hi\r"])
    bridge = ShellBridge(connection, _opener(handle), label="m-2")

    await asyncio.wait_for(bridge.run(), timeout=5)

    assert handle.teardowns == 1
    assert handle.terminate_reason == "shell_bridge_closed"
    assert "echo hi\r" in handle.written
    assert "Session closed." not in connection.output
    assert connection.closed is None


@pytest.mark.asyncio
async def test_open_failure_is_reported_and_closed() -> None:
    async def failing_opener():
        raise ConnectFailed("ssh connection to morph:m-3 failed: timed out")

    connection = FakeConnection()
    bridge = ShellBridge(connection, failing_opener, label="m-3")
    await asyncio.wait_for(bridge.run(), timeout=5)

    assert connection.sent == [
        "Connecting to m-3...\r\n",
        "Error: ssh connection to morph:m-3 failed: timed out\r\n",
    ]
    assert connection.closed == (1011, "shell error")
    assert bridge.handle is None
