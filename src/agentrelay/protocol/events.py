"""Per-turn session event log."""

from __future__ import annotations

import logging
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class SessionEvent(BaseModel):
    """One `session/update` notification received during a turn.

    `payload` is the notification exactly as parsed from the agent, dumped
    with ACP's camelCase field names; `payload_kind` is its `sessionUpdate`
    discriminator (`agent_message_chunk`, `tool_call`, `plan`, ...).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    turn_id: int
    sequence: int
    payload_kind: str
    payload: dict[str, Any] = Field(default_factory=dict)

    def wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


EventSubscriber = Callable[[SessionEvent], None]


class EventLog:
    """Append-only list of the current turn's events.

    `begin_turn()` discards the previous turn. Subscribers are called
    synchronously, in registration order, for every appended event.
    """

    def __init__(self) -> None:
        self.turn_id = 0
        self._events: list[SessionEvent] = []
        self._subscribers: list[EventSubscriber] = []

    def __len__(self) -> int:
        return len(self._events)

    @property
    def events(self) -> list[SessionEvent]:
        return list(self._events)

    def begin_turn(self) -> int:
        self.turn_id += 1
        self._events = []
        return self.turn_id

    def append(self, payload_kind: str, payload: dict[str, Any]) -> SessionEvent:
        event = SessionEvent(
            turn_id=self.turn_id,
            sequence=len(self._events),
            payload_kind=payload_kind,
            payload=payload,
        )
        self._events.append(event)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event subscriber failed for %s", payload_kind)
        return event

    def subscribe(self, subscriber: EventSubscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe
