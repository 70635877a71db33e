"""Process handles and the local/remote transports that create them."""

from agentrelay.process.handle import ProcessHandle, StreamWriterLike
from agentrelay.process.local import LocalProcessHandle, spawn_local
from agentrelay.process.providers import PROVIDERS, resolve_ssh_target
from agentrelay.process.remote import (
    PtyRequest,
    RemoteProcessHandle,
    SshTarget,
    build_remote_command,
    open_remote_process,
)

__all__ = [
    "PROVIDERS",
    "LocalProcessHandle",
    "ProcessHandle",
    "PtyRequest",
    "RemoteProcessHandle",
    "SshTarget",
    "StreamWriterLike",
    "build_remote_command",
    "open_remote_process",
    "resolve_ssh_target",
    "spawn_local",
]
