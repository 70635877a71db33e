from __future__ import annotations

import asyncio

import pytest

from agentrelay.errors import ConnectFailed, ExecFailed, SessionClosed
from agentrelay.process import remote
from agentrelay.process.remote import PtyRequest, RemoteProcessHandle, SshTarget, open_remote_process
from tests.utils import FakeChannel, FakeSSHClient, record_signals, wait_for


def _handle(calls: list, *, pty: PtyRequest | None = None) -> tuple[RemoteProcessHandle, FakeChannel, FakeSSHClient]:
    channel = FakeChannel(calls)
    client = FakeSSHClient(calls)
    handle = RemoteProcessHandle("test#7", client, channel, pty=pty)  # type: ignore[arg-type]
    return handle, channel, client


@pytest.mark.asyncio
async def test_output_input_and_exit_status(monkeypatch) -> None:
    calls: list = []
    record_signals(monkeypatch, calls)
    handle, channel, client = _handle(calls)

    channel.push_stdout(b'{"jsonrpc":"2.0"}\n')
    channel.push_stderr(b"warming up\n")
    assert await asyncio.wait_for(handle.stdout.readline(), timeout=5) == b'{"jsonrpc":"2.0"}\n'

    await handle.send(b"ping\n")
    assert bytes(channel.sent) == b"ping\n"

    channel.finish(0)
    assert await asyncio.wait_for(handle.wait(), timeout=5) == 0
    assert await asyncio.wait_for(handle.stdout.read(), timeout=5) == b""
    await wait_for(lambda: client.closed == 1)
    assert handle.signal is None

    await handle.terminate()
    # Already exited: no signals, and the connection is not closed twice.
    assert not [call for call in calls if isinstance(call, tuple) and call[0] == "signal"]
    assert "close_connection" in calls
    assert client.closed == 1


@pytest.mark.asyncio
async def test_missing_exit_status_reports_signal(monkeypatch) -> None:
    record_signals(monkeypatch, [])
    handle, channel, _ = _handle([])
    channel.finish(-1)
    assert await asyncio.wait_for(handle.wait(), timeout=5) is None
    assert handle.signal == "TERM"
    await handle.terminate()


@pytest.mark.asyncio
async def test_teardown_order_without_pty(monkeypatch) -> None:
    calls: list = []
    record_signals(monkeypatch, calls)
    handle, _, client = _handle(calls)

    await asyncio.wait_for(asyncio.gather(handle.terminate("x"), handle.terminate("y")), timeout=10)

    assert calls == [("signal", "INT"), ("signal", "TERM"), "close_channel", "close_connection"]
    assert client.closed == 1
    assert not handle.alive
    with pytest.raises(SessionClosed):
        handle.write(b"late")
    with pytest.raises(BrokenPipeError):
        handle.stdin.write(b"late")


@pytest.mark.asyncio
async def test_teardown_with_pty_sends_interrupt_and_survives_failures(monkeypatch) -> None:
    calls: list = []
    record_signals(monkeypatch, calls, fail={"INT"})
    handle, _, client = _handle(calls, pty=PtyRequest())

    await asyncio.wait_for(handle.terminate(), timeout=10)

    assert calls == [
        ("send", b"\x03"),
        ("signal", "INT"),
        ("signal", "TERM"),
        "close_channel",
        "close_connection",
    ]
    assert client.closed == 1


@pytest.mark.asyncio
async def test_teardown_continues_when_channel_close_fails(monkeypatch) -> None:
    calls: list = []
    record_signals(monkeypatch, calls)
    handle, channel, client = _handle(calls)
    channel.fail_on.add("close_channel")

    await asyncio.wait_for(handle.terminate(), timeout=10)

    assert calls[-1] == "close_connection"
    assert client.closed == 1
    assert handle.exited
    # The reader threads are still blocked on the fake; release them.
    channel.finish()


@pytest.mark.asyncio
async def test_channel_error_reaches_readers(monkeypatch) -> None:
    record_signals(monkeypatch, [])
    handle, channel, client = _handle([])
    channel.fail_stdout(ConnectionResetError("connection reset"))

    with pytest.raises(ConnectFailed):
        await asyncio.wait_for(handle.stdout.read(), timeout=5)
    assert isinstance(handle.error, ConnectFailed)
    assert await asyncio.wait_for(handle.wait(), timeout=5) is None
    await wait_for(lambda: client.closed == 1)
    channel.finish()
    await handle.terminate()
    assert client.closed == 1


@pytest.mark.asyncio
async def test_resize_only_with_pty(monkeypatch) -> None:
    record_signals(monkeypatch, [])
    plain, plain_channel, _ = _handle([])
    shell, shell_channel, _ = _handle([], pty=PtyRequest())

    plain.resize(100, 40)
    shell.resize(100, 40)

    assert plain_channel.resized == []
    assert shell_channel.resized == [(100, 40)]
    await plain.terminate()
    await shell.terminate()


@pytest.mark.asyncio
async def test_open_remote_process_uses_label_and_default_pty(monkeypatch) -> None:
    calls: list = []
    record_signals(monkeypatch, calls)
    channel = FakeChannel(calls)
    client = FakeSSHClient(calls)
    opened: dict = {}

    def fake_connect(target, timeout):
        opened["target"] = target
        return client

    def fake_open(client_, command, pty):
        opened["command"] = command
        opened["pty"] = pty
        return channel

    monkeypatch.setattr(remote, "_connect", fake_connect)
    monkeypatch.setattr(remote, "_open_channel", fake_open)

    target = SshTarget(host="ssh.example", username="m1:secret-key", label="morph:m1")
    handle = await open_remote_process(target)

    assert handle.identity == "morph:m1#7"
    assert opened["command"] is None
    assert opened["pty"] == PtyRequest()
    assert "secret-key" not in repr(target)
    await handle.terminate()


@pytest.mark.asyncio
async def test_open_remote_process_closes_client_when_exec_fails(monkeypatch) -> None:
    client = FakeSSHClient()

    def failing_open(client_, command, pty):
        raise ExecFailed("exec refused")

    monkeypatch.setattr(remote, "_connect", lambda target, timeout: client)
    monkeypatch.setattr(remote, "_open_channel", failing_open)

    with pytest.raises(ExecFailed):
        await open_remote_process(SshTarget(host="h"), "agent")
    assert client.closed == 1
