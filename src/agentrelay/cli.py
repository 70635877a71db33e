"""Command line entry point: `agentrelay serve` and `agentrelay chat`."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any

import uvicorn

from agentrelay import __version__
from agentrelay.config import RelaySettings, load_settings
from agentrelay.errors import BridgeError
from agentrelay.launcher import RemoteLocation
from agentrelay.log_utils import build_log_config, configure_logging, log_event
from agentrelay.permissions import POLICIES
from agentrelay.process.providers import PROVIDERS
from agentrelay.protocol.content import load_mcp_config

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agentrelay", description="Relay ACP coding agents over HTTP.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP and terminal websocket server.")
    serve.add_argument("--host", help="Bind address (default: AGENTRELAY_HOST or 127.0.0.1).")
    serve.add_argument("--port", type=int, help="Port (default: AGENTRELAY_PORT or 3456).")

    chat = sub.add_parser("chat", help="Talk to one agent backend from this terminal.")
    chat.add_argument("backend", help="Agent backend kind, e.g. claude or codex.")
    chat.add_argument("--cwd", help="Working directory for the agent session.")
    chat.add_argument("--machine", help="Run the agent on this remote machine id instead of locally.")
    chat.add_argument("--provider", choices=PROVIDERS, default="morph", help="Remote machine provider.")
    chat.add_argument(
        "--mcp-config",
        help="Path to JSON file containing ACP mcpServers array (stdio/http/sse entries).",
    )
    chat.add_argument(
        "--permissions",
        choices=["ask", *POLICIES],
        default="ask",
        help="How tool permission requests are answered.",
    )
    return parser


def _serve(settings: RelaySettings, args: argparse.Namespace) -> int:
    from agentrelay.server.app import create_app

    configure_logging(build_log_config(log_file_name="server.log", stderr=True))
    host = args.host or settings.host
    port = args.port or settings.port
    log_event(logger, "server.start", host=host, port=port, backends=settings.backends)
    app = create_app(settings)
    # Our own handlers already own the root logger.
    uvicorn.run(app, host=host, port=port, log_config=None)
    return 0


def _chat(settings: RelaySettings, args: argparse.Namespace) -> int:
    from agentrelay.console.chat import run_chat

    configure_logging(build_log_config(log_file_name="chat.log"))
    mcp_servers: list[Any] = load_mcp_config(args.mcp_config) if args.mcp_config else []
    remote = None
    if args.machine:
        try:
            remote = RemoteLocation.from_wire({"provider": args.provider, "machineId": args.machine})
        except BridgeError as exc:
            print(exc.message, file=sys.stderr)
            return 2
    return asyncio.run(
        run_chat(
            settings,
            args.backend,
            cwd=args.cwd,
            remote=remote,
            mcp_servers=mcp_servers,
            permissions=args.permissions,
        )
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    if args.command == "serve":
        return _serve(settings, args)
    return _chat(settings, args)


def main_entry() -> None:
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        raise SystemExit(130)


if __name__ == "__main__":
    main_entry()
