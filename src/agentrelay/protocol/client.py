"""Client side of the ACP connection: records updates and answers permission requests."""

from __future__ import annotations

import logging
from typing import Any

from acp import Client, RequestError, RequestPermissionResponse, SessionNotification

from agentrelay.log_utils import log_chunks_enabled, log_context, log_event
from agentrelay.permissions import PermissionNegotiator
from agentrelay.protocol.events import EventLog

logger = logging.getLogger(__name__)


def notification_payload(session_id: str, update: Any) -> tuple[str, dict[str, Any]]:
    """Return `(sessionUpdate kind, camelCase notification dict)` for a received update."""
    notification = update if isinstance(update, SessionNotification) else SessionNotification(
        session_id=session_id, update=update
    )
    inner = notification.update
    kind = getattr(inner, "session_update", None) or type(inner).__name__
    payload = notification.model_dump(mode="json", by_alias=True, exclude_none=True)
    return str(kind), payload


class RelayClient(Client):
    """ACP client used by every relayed session.

    No filesystem or terminal capability is advertised, so those requests are
    answered with `method_not_found`.
    """

    def __init__(self, log: EventLog, negotiator: PermissionNegotiator) -> None:
        self.log = log
        self.negotiator = negotiator
        self._conn: Any = None

    def on_connect(self, conn: Any) -> None:
        self._conn = conn

    async def session_update(self, session_id: str, update: Any, **_: Any) -> None:
        kind, payload = notification_payload(session_id, update)
        self.log.append(kind, payload)
        if log_chunks_enabled():
            with log_context(session_id=session_id):
                log_event(logger, "acp.session_update", kind=kind, sequence=len(self.log) - 1)

    async def request_permission(
        self,
        options: Any,
        session_id: str,
        tool_call: Any,
        **_: Any,
    ) -> RequestPermissionResponse:
        with log_context(session_id=session_id):
            log_event(
                logger,
                "acp.permission.request",
                tool=getattr(tool_call, "title", None) or getattr(tool_call, "tool_call_id", None),
                options=[getattr(option, "option_id", None) for option in options or []],
            )
            decision = await self.negotiator.decide(options, tool_call)
            log_event(logger, "acp.permission.response", **decision.wire())
        return decision.to_response()

    async def ext_method(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        log_event(logger, "acp.ext_method", method=method)
        return {}

    async def ext_notification(self, method: str, params: dict[str, Any]) -> None:
        log_event(logger, "acp.ext_notification", level=logging.DEBUG, method=method)

    async def read_text_file(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("fs/read_text_file")

    async def write_text_file(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("fs/write_text_file")

    async def create_terminal(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/create")

    async def terminal_output(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/output")

    async def release_terminal(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/release")

    async def wait_for_terminal_exit(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/wait_for_exit")

    async def kill_terminal(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/kill")
