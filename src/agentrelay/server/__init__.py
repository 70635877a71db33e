"""HTTP and websocket surface."""

from agentrelay.server.app import create_app

__all__ = ["create_app"]
