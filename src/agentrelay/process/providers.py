"""Resolve a `(provider, machine id)` pair into an SSH target."""

from __future__ import annotations

import io
import logging
import threading
from typing import Any

import httpx
import paramiko

from agentrelay.config import RelaySettings
from agentrelay.errors import ConnectFailed
from agentrelay.log_utils import log_event
from agentrelay.process.remote import SshTarget

logger = logging.getLogger(__name__)

MORPH_SSH_HOST = "ssh.cloud.morph.so"
MORPH_SSH_PORT = 22
HETZNER_API_URL = "https://api.hetzner.cloud/v1"
HETZNER_SSH_USER = "root"

PROVIDERS = ("morph", "hetzner")

_KEY_TYPES: tuple[type[paramiko.PKey], ...] = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)

_ephemeral_key: paramiko.RSAKey | None = None
_ephemeral_key_lock = threading.Lock()


def ephemeral_key() -> paramiko.RSAKey:
    """Throwaway RSA key, generated once per process.

    Morph authenticates the API key carried in the user name; the key pair
    only has to exist for the SSH handshake.
    """
    global _ephemeral_key
    with _ephemeral_key_lock:
        if _ephemeral_key is None:
            _ephemeral_key = paramiko.RSAKey.generate(2048)
        return _ephemeral_key


def load_private_key(text: str) -> paramiko.PKey:
    """Parse an OpenSSH/PEM private key; literal `\\n` sequences from env files are unescaped."""
    material = text.replace("\\n", "\n").strip() + "\n"
    for key_type in _KEY_TYPES:
        try:
            return key_type.from_private_key(io.StringIO(material))
        except (paramiko.SSHException, ValueError):
            continue
    raise ConnectFailed("configured SSH private key could not be parsed")


async def _hetzner_server_ip(
    machine_id: str,
    token: str,
    *,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 20.0,
) -> str:
    client = http_client or httpx.AsyncClient(timeout=timeout)
    try:
        response = await client.get(
            f"{HETZNER_API_URL}/servers/{machine_id}",
            headers={"Authorization": f"Bearer {token}"},
        )
        data: Any = response.json() if response.content else {}
    except (httpx.HTTPError, ValueError) as exc:
        raise ConnectFailed(f"hetzner lookup for server {machine_id} failed: {type(exc).__name__}") from exc
    finally:
        if http_client is None:
            await client.aclose()

    if response.status_code >= 400:
        message = None
        if isinstance(data, dict):
            message = (data.get("error") or {}).get("message")
        raise ConnectFailed(message or f"hetzner lookup for server {machine_id} failed ({response.status_code})")
    try:
        return str(data["server"]["public_net"]["ipv4"]["ip"])
    except (KeyError, TypeError) as exc:
        raise ConnectFailed(f"hetzner server {machine_id} has no public IPv4 address") from exc


async def resolve_ssh_target(
    provider: str,
    machine_id: str,
    settings: RelaySettings,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> SshTarget:
    """Return connection details for `machine_id` on `provider` (`morph` or `hetzner`)."""

    if not machine_id:
        raise ConnectFailed("machine id is required")
    provider = (provider or "morph").lower()

    if provider == "morph":
        if not settings.morph_api_key:
            raise ConnectFailed("MORPH_API_KEY is not configured")
        pkey = (
            load_private_key(settings.morph_ssh_private_key)
            if settings.morph_ssh_private_key
            else ephemeral_key()
        )
        target = SshTarget(
            host=MORPH_SSH_HOST,
            port=MORPH_SSH_PORT,
            username=f"{machine_id}:{settings.morph_api_key}",
            pkey=pkey,
            label=f"morph:{machine_id}",
        )
    elif provider == "hetzner":
        if not settings.hetzner_api_token:
            raise ConnectFailed("HETZNER_API_TOKEN is not configured")
        if not settings.hetzner_ssh_private_key:
            raise ConnectFailed("HETZNER_SSH_PRIVATE_KEY is not configured")
        pkey = load_private_key(settings.hetzner_ssh_private_key)
        host = await _hetzner_server_ip(
            machine_id,
            settings.hetzner_api_token,
            http_client=http_client,
            timeout=settings.ssh_connect_timeout,
        )
        target = SshTarget(
            host=host,
            port=22,
            username=HETZNER_SSH_USER,
            pkey=pkey,
            label=f"hetzner:{machine_id}",
        )
    else:
        raise ConnectFailed(f"unknown provider: {provider}")

    log_event(logger, "provider.resolved", provider=provider, target=target.display)
    return target
