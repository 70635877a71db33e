"""Runtime settings for the relay, read from the environment and `.env` files.

Every tunable lives here: backend commands, timeouts, buffer limits, remote
execution defaults and provider credentials. Values are parsed leniently;
malformed numbers fall back to their defaults instead of failing startup.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from typing import Mapping

from dotenv import load_dotenv

from agentrelay.paths import env_file

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3456

DEFAULT_STDIO_BUFFER_LIMIT_BYTES = 50 * 1024 * 1024
_MIN_STDIO_BUFFER_LIMIT_BYTES = 64 * 1024

DEFAULT_HANDSHAKE_TIMEOUT_S = 60.0
DEFAULT_PROMPT_TIMEOUT_S = 30 * 60.0
DEFAULT_PERMISSION_TIMEOUT_S = 30.0
DEFAULT_KILL_GRACE_S = 5.0
DEFAULT_SSH_CONNECT_TIMEOUT_S = 20.0

DEFAULT_REMOTE_PATH = "/usr/local/bin:/root/.local/bin"
DEFAULT_REMOTE_WORKDIR = "/root"
DEFAULT_REMOTE_ENV_PASSTHROUGH = ("CLAUDE_CODE_OAUTH_TOKEN", "ANTHROPIC_API_KEY", "OPENAI_API_KEY")

DEFAULT_AGENT_COMMANDS: dict[str, tuple[str, ...]] = {
    "claude": ("bunx", "claude-code-acp"),
    "codex": ("bunx", "codex-acp"),
}

BUSY_POLICIES = {"queue", "reject"}

_AGENT_COMMAND_PREFIX = "AGENTRELAY_AGENT_"
_AGENT_COMMAND_SUFFIX = "_COMMAND"


def _parse_float(value: str | None, default: float | None) -> float | None:
    if value is None or not value.strip():
        return default
    if value.strip().lower() in {"none", "off", "0"}:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def parse_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_stdio_buffer_limit(raw_value: str | None) -> int:
    if raw_value is None:
        return DEFAULT_STDIO_BUFFER_LIMIT_BYTES
    try:
        parsed = int(raw_value)
    except ValueError:
        return DEFAULT_STDIO_BUFFER_LIMIT_BYTES
    return max(parsed, _MIN_STDIO_BUFFER_LIMIT_BYTES)


def _parse_list(value: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _parse_agent_commands(environ: Mapping[str, str]) -> dict[str, tuple[str, ...]]:
    """Merge `AGENTRELAY_AGENT_<NAME>_COMMAND` overrides onto the default backends."""
    commands = dict(DEFAULT_AGENT_COMMANDS)
    for key, raw in environ.items():
        if not (key.startswith(_AGENT_COMMAND_PREFIX) and key.endswith(_AGENT_COMMAND_SUFFIX)):
            continue
        name = key[len(_AGENT_COMMAND_PREFIX) : -len(_AGENT_COMMAND_SUFFIX)].lower()
        argv = tuple(shlex.split(raw))
        if name and argv:
            commands[name] = argv
    return commands


@dataclass(frozen=True)
class RelaySettings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    agent_commands: dict[str, tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_AGENT_COMMANDS))
    handshake_timeout: float | None = DEFAULT_HANDSHAKE_TIMEOUT_S
    prompt_timeout: float | None = DEFAULT_PROMPT_TIMEOUT_S
    permission_timeout: float | None = DEFAULT_PERMISSION_TIMEOUT_S
    busy_policy: str = "queue"
    stdio_buffer_limit: int = DEFAULT_STDIO_BUFFER_LIMIT_BYTES
    kill_grace: float = DEFAULT_KILL_GRACE_S
    ssh_connect_timeout: float = DEFAULT_SSH_CONNECT_TIMEOUT_S
    remote_path: str = DEFAULT_REMOTE_PATH
    remote_workdir: str = DEFAULT_REMOTE_WORKDIR
    remote_env_passthrough: tuple[str, ...] = DEFAULT_REMOTE_ENV_PASSTHROUGH
    morph_api_key: str | None = field(default=None, repr=False)
    morph_ssh_private_key: str | None = field(default=None, repr=False)
    hetzner_api_token: str | None = field(default=None, repr=False)
    hetzner_ssh_private_key: str | None = field(default=None, repr=False)

    @property
    def backends(self) -> list[str]:
        return sorted(self.agent_commands)

    def agent_command(self, backend: str) -> tuple[str, ...] | None:
        return self.agent_commands.get(backend.lower())

    def remote_environment(self, environ: Mapping[str, str] | None = None) -> dict[str, str]:
        """Values forwarded into remote agent commands (tokens the remote agent needs)."""
        source = os.environ if environ is None else environ
        return {name: source[name] for name in self.remote_env_passthrough if source.get(name)}


def settings_from_env(environ: Mapping[str, str] | None = None) -> RelaySettings:
    """Build settings from a mapping (defaults to `os.environ`) without touching `.env` files."""

    env = os.environ if environ is None else environ
    busy_policy = (env.get("AGENTRELAY_BUSY_POLICY") or "queue").strip().lower()
    if busy_policy not in BUSY_POLICIES:
        busy_policy = "queue"
    return RelaySettings(
        host=env.get("AGENTRELAY_HOST") or DEFAULT_HOST,
        port=parse_int(env.get("AGENTRELAY_PORT"), DEFAULT_PORT),
        agent_commands=_parse_agent_commands(env),
        handshake_timeout=_parse_float(env.get("AGENTRELAY_HANDSHAKE_TIMEOUT"), DEFAULT_HANDSHAKE_TIMEOUT_S),
        prompt_timeout=_parse_float(env.get("AGENTRELAY_PROMPT_TIMEOUT"), DEFAULT_PROMPT_TIMEOUT_S),
        permission_timeout=_parse_float(env.get("AGENTRELAY_PERMISSION_TIMEOUT"), DEFAULT_PERMISSION_TIMEOUT_S),
        busy_policy=busy_policy,
        stdio_buffer_limit=_parse_stdio_buffer_limit(env.get("AGENTRELAY_STDIO_BUFFER_LIMIT_BYTES")),
        kill_grace=_parse_float(env.get("AGENTRELAY_KILL_GRACE"), DEFAULT_KILL_GRACE_S) or DEFAULT_KILL_GRACE_S,
        ssh_connect_timeout=_parse_float(env.get("AGENTRELAY_SSH_CONNECT_TIMEOUT"), DEFAULT_SSH_CONNECT_TIMEOUT_S)
        or DEFAULT_SSH_CONNECT_TIMEOUT_S,
        remote_path=env.get("AGENTRELAY_REMOTE_PATH") or DEFAULT_REMOTE_PATH,
        remote_workdir=env.get("AGENTRELAY_REMOTE_WORKDIR") or DEFAULT_REMOTE_WORKDIR,
        remote_env_passthrough=_parse_list(env.get("AGENTRELAY_REMOTE_ENV_PASSTHROUGH"), DEFAULT_REMOTE_ENV_PASSTHROUGH),
        morph_api_key=env.get("MORPH_API_KEY") or None,
        morph_ssh_private_key=env.get("MORPH_SSH_PRIVATE_KEY") or None,
        hetzner_api_token=env.get("HETZNER_API_TOKEN") or None,
        hetzner_ssh_private_key=env.get("HETZNER_SSH_PRIVATE_KEY") or None,
    )


def load_settings() -> RelaySettings:
    """Load `.env` files (user config dir first, then cwd) and build settings."""

    load_dotenv(env_file(), override=False)
    load_dotenv(override=False)
    return settings_from_env()
