"""Error taxonomy shared by transports, the protocol engine and the HTTP surface."""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base class for failures that are reported to callers as `{kind, message}`."""

    kind = "bridge_error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class SpawnFailed(BridgeError):
    """The local agent process could not be started."""

    kind = "spawn_failed"
    status_code = 502


class ConnectFailed(BridgeError):
    """The secure-shell connection or its authentication failed."""

    kind = "connect_failed"
    status_code = 502


class ExecFailed(BridgeError):
    """The remote command could not be started after the connection succeeded."""

    kind = "exec_failed"
    status_code = 502


class HandshakeFailed(BridgeError):
    kind = "handshake_failed"
    status_code = 502


class SessionNotFound(BridgeError):
    kind = "session_not_found"
    status_code = 404


class SessionBusy(BridgeError):
    kind = "session_busy"
    status_code = 409


class SessionClosed(BridgeError):
    kind = "session_closed"
    status_code = 410


class PermissionTimeout(BridgeError):
    kind = "permission_timeout"
    status_code = 504


class ProtocolDecodeError(BridgeError):
    kind = "protocol_decode_error"
    status_code = 502


class AgentRequestFailed(BridgeError):
    """The agent answered a request with a JSON-RPC error."""

    kind = "agent_error"
    status_code = 502


class InvalidRequest(BridgeError):
    kind = "invalid_request"
    status_code = 400
