"""Interactive remote shells bridged to terminal clients."""

from agentrelay.shell.bridge import ShellBridge, TerminalConnection
from agentrelay.shell.setup import (
    INIT_COMPLETE_MARKER,
    FileToWrite,
    MarkerBuffer,
    RemoteSetup,
    build_setup_script,
    render_setup_script,
)

__all__ = [
    "INIT_COMPLETE_MARKER",
    "FileToWrite",
    "MarkerBuffer",
    "RemoteSetup",
    "ShellBridge",
    "TerminalConnection",
    "build_setup_script",
    "render_setup_script",
]
