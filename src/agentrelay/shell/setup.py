"""Session setup script written into a freshly opened remote shell."""

from __future__ import annotations

import base64
import json
import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

INIT_COMPLETE_MARKER = "@@INIT_COMPLETE@@"
# Split in two adjacent strings so the echoed command line never contains the marker.
_MARKER_ECHO = 'echo "@@INIT_""COMPLETE@@"; clear'

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_FILE_MODE = re.compile(r"^[0-7]{3,4}$")


@dataclass(frozen=True)
class FileToWrite:
    path: str
    content: str
    mode: str | None = None


@dataclass(frozen=True)
class RemoteSetup:
    env: dict[str, str] = field(default_factory=dict)
    files: list[FileToWrite] = field(default_factory=list)

    @classmethod
    def from_query(cls, env_raw: str | None, files_raw: str | None) -> "RemoteSetup":
        """Build from the URL-decoded JSON query values; malformed parts are ignored."""
        return cls(env=parse_env(env_raw), files=parse_files(files_raw))


def _load_json(raw: str | None, label: str) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Ignoring malformed %s parameter", label)
        return None


def parse_env(raw: str | None) -> dict[str, str]:
    data = _load_json(raw, "env")
    if not isinstance(data, dict):
        return {}
    env: dict[str, str] = {}
    for name, value in data.items():
        if not isinstance(name, str) or not _ENV_NAME.match(name) or value is None:
            logger.warning("Ignoring invalid env entry %r", name)
            continue
        env[name] = str(value)
    return env


def parse_files(raw: str | None) -> list[FileToWrite]:
    data = _load_json(raw, "files")
    if not isinstance(data, list):
        return []
    files: list[FileToWrite] = []
    for entry in data:
        if not isinstance(entry, dict) or not isinstance(entry.get("path"), str) or not entry["path"]:
            continue
        mode = entry.get("mode")
        mode = str(mode) if mode is not None else None
        if mode is not None and not _FILE_MODE.match(mode):
            logger.warning("Ignoring invalid mode %r for %s", mode, entry["path"])
            mode = None
        files.append(FileToWrite(path=entry["path"], content=str(entry.get("content", "")), mode=mode))
    return files


def _shell_path(path: str) -> str:
    """Double-quoted path with a leading `~` expanded through `$HOME`."""
    if path == "~" or path.startswith("~/"):
        return '"$HOME' + _escape_double(path[1:]) + '"'
    return '"' + _escape_double(path) + '"'


def _escape_double(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$").replace("`", "\\`")


def build_setup_script(setup: RemoteSetup | None = None) -> list[str]:
    """Return the setup lines in the order they must run.

    Terminal type, exports, a `vercel` alias when a Vercel token is present,
    then each file (parent directory, base64 content, optional mode), and
    finally the completion marker followed by `clear`.
    """

    setup = setup or RemoteSetup()
    lines = ["export TERM=xterm-256color"]
    for name, value in setup.env.items():
        lines.append(f"export {name}={shlex.quote(value)}")
    if setup.env.get("VERCEL_TOKEN"):
        lines.append("alias vercel='vercel --token \"$VERCEL_TOKEN\"'")
    for item in setup.files:
        target = _shell_path(item.path)
        encoded = base64.b64encode(item.content.encode("utf-8")).decode("ascii")
        lines.append(f'mkdir -p "$(dirname {target})"')
        lines.append(f"echo '{encoded}' | base64 -d > {target}")
        if item.mode:
            lines.append(f"chmod {item.mode} {target}")
    lines.append(_MARKER_ECHO)
    return lines


def render_setup_script(setup: RemoteSetup | None = None) -> str:
    return "".join(f"{line}\n" for line in build_setup_script(setup))


class MarkerBuffer:
    """Hold shell output back until the completion marker has been printed.

    Everything up to and including the marker line (the prompt, the echoed
    setup commands) is discarded; `feed()` yields only what follows it.
    """

    def __init__(self, marker: str = INIT_COMPLETE_MARKER) -> None:
        self.marker = marker
        self.ready = False
        self._pending = ""

    def feed(self, text: str) -> str:
        if self.ready:
            return text
        self._pending += text
        index = self._pending.find(self.marker)
        if index < 0:
            # Keep only a tail long enough to hold a marker split across chunks.
            self._pending = self._pending[-(len(self.marker) - 1) :] if len(self.marker) > 1 else ""
            return ""
        self.ready = True
        rest = self._pending[index + len(self.marker) :]
        self._pending = ""
        return rest.lstrip("\r\n")
