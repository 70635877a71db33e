"""Start agent backends on the relay host or on a remote machine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from agentrelay.config import RelaySettings
from agentrelay.errors import InvalidRequest
from agentrelay.log_utils import log_event
from agentrelay.process.handle import ProcessHandle
from agentrelay.process.local import spawn_local
from agentrelay.process.providers import PROVIDERS, resolve_ssh_target
from agentrelay.process.remote import SshTarget, build_remote_command, open_remote_process

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteLocation:
    provider: str
    machine_id: str

    @classmethod
    def from_wire(cls, data: Any) -> "RemoteLocation | None":
        """Parse `{provider?, machineId}`; `None` or an empty value means local."""
        if data is None or data == {}:
            return None
        if isinstance(data, RemoteLocation):
            return data
        if not isinstance(data, dict):
            raise InvalidRequest("remote must be an object with machineId and provider")
        machine_id = data.get("machineId") or data.get("machine_id") or data.get("instanceId")
        provider = str(data.get("provider") or "morph").lower()
        if not machine_id:
            raise InvalidRequest("remote.machineId is required")
        if provider not in PROVIDERS:
            raise InvalidRequest(f"unknown provider: {provider}")
        return cls(provider=provider, machine_id=str(machine_id))

    def wire(self) -> dict[str, str]:
        return {"provider": self.provider, "machineId": self.machine_id}


TargetResolver = Callable[[str, str, RelaySettings], Awaitable[SshTarget]]


class AgentLauncher:
    """Map a backend kind and a location to a running agent process.

    Local backends run the configured argv directly. Remote backends run the
    same argv through `bash -lc` over SSH, with the configured pass-through
    variables (agent OAuth tokens, API keys) exported first.
    """

    def __init__(
        self,
        settings: RelaySettings,
        *,
        resolver: TargetResolver = resolve_ssh_target,
        local_spawner: Callable[..., Awaitable[ProcessHandle]] = spawn_local,
        remote_opener: Callable[..., Awaitable[ProcessHandle]] = open_remote_process,
    ) -> None:
        self.settings = settings
        self._resolver = resolver
        self._spawn_local = local_spawner
        self._open_remote = remote_opener

    def command_for(self, backend: str) -> tuple[str, ...]:
        argv = self.settings.agent_command(backend or "")
        if not argv:
            known = ", ".join(self.settings.backends)
            raise InvalidRequest(f"unknown agent backend {backend!r} (known: {known})")
        return argv

    async def launch(
        self,
        backend: str,
        cwd: str | None = None,
        remote: RemoteLocation | None = None,
    ) -> ProcessHandle:
        argv = self.command_for(backend)
        if remote is None:
            log_event(logger, "launcher.local", backend=backend, cwd=cwd)
            return await self._spawn_local(
                argv[0],
                argv[1:],
                cwd=cwd,
                limit=self.settings.stdio_buffer_limit,
                kill_grace=self.settings.kill_grace,
            )

        target = await self._resolver(remote.provider, remote.machine_id, self.settings)
        command = build_remote_command(
            argv,
            self.settings.remote_environment(),
            path_entries=self.settings.remote_path,
        )
        log_event(logger, "launcher.remote", backend=backend, target=target.display)
        return await self._open_remote(
            target,
            command,
            connect_timeout=self.settings.ssh_connect_timeout,
            limit=self.settings.stdio_buffer_limit,
        )
