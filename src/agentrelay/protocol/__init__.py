"""ACP protocol session engine."""

from agentrelay.protocol.client import RelayClient
from agentrelay.protocol.engine import ProtocolSession, PromptOutcome, SessionInfo, SessionState
from agentrelay.protocol.events import EventLog, SessionEvent
from agentrelay.protocol.framing import NdjsonFramePump

__all__ = [
    "EventLog",
    "NdjsonFramePump",
    "PromptOutcome",
    "ProtocolSession",
    "RelayClient",
    "SessionEvent",
    "SessionInfo",
    "SessionState",
]
