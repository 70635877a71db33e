"""Scripted ACP agent used by the test-suite; runs as a subprocess over stdio.

The first word of the prompt selects the behaviour:

- `echo a b c`   one agent message chunk per word
- `permission`   asks for permission and reports the chosen option
- `sleep`        waits until cancelled (or 30s)
- `exit`         sends one chunk, then dies mid-turn
- `garbage`      writes a non-JSON line to stdout before answering

`FAKE_AGENT_BANNER=1` prints a plain-text banner before speaking ACP,
`FAKE_AGENT_FAIL_INIT=1` exits during `initialize` and
`FAKE_AGENT_PROTOCOL_VERSION` overrides the version it claims.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from typing import Any

from acp import PROTOCOL_VERSION, Agent, InitializeResponse, NewSessionResponse, PromptResponse
from acp.core import run_agent
from acp.helpers import text_block, update_agent_message
from acp.schema import AgentCapabilities, PermissionOption, ToolCallUpdate


class ScriptedAgent(Agent):
    def __init__(self) -> None:
        self._conn: Any = None
        self._cancel: dict[str, asyncio.Event] = {}

    def on_connect(self, conn: Any) -> None:
        self._conn = conn

    async def initialize(
        self,
        protocol_version: int,
        client_capabilities: Any | None = None,
        client_info: Any | None = None,
        **_: Any,
    ) -> InitializeResponse:
        if os.environ.get("FAKE_AGENT_FAIL_INIT"):
            os._exit(2)
        version = int(os.environ.get("FAKE_AGENT_PROTOCOL_VERSION") or PROTOCOL_VERSION)
        return InitializeResponse(protocol_version=version, agent_capabilities=AgentCapabilities())

    async def new_session(self, cwd: str, mcp_servers: list[Any], **_: Any) -> NewSessionResponse:
        session_id = f"sess-{uuid.uuid4().hex[:8]}"
        self._cancel[session_id] = asyncio.Event()
        return NewSessionResponse(session_id=session_id)

    async def cancel(self, session_id: str, **_: Any) -> None:
        self._cancel.setdefault(session_id, asyncio.Event()).set()

    async def _say(self, session_id: str, text: str) -> None:
        await self._conn.session_update(session_id=session_id, update=update_agent_message(text_block(text)))

    async def prompt(self, prompt: list[Any], session_id: str, **_: Any) -> PromptResponse:
        text = " ".join(getattr(block, "text", "") or "" for block in prompt).strip()
        command, _, argument = text.partition(" ")
        cancel = self._cancel.setdefault(session_id, asyncio.Event())
        cancel.clear()

        if command == "echo":
            for word in argument.split():
                await self._say(session_id, word)
        elif command == "permission":
            response = await self._conn.request_permission(
                options=[
                    PermissionOption(option_id="no", name="Reject", kind="reject_once"),
                    PermissionOption(option_id="yes", name="Always allow", kind="allow_always"),
                ],
                session_id=session_id,
                tool_call=ToolCallUpdate(tool_call_id="call-1", title="write file"),
            )
            outcome = response.outcome
            selected = getattr(outcome, "option_id", None) or outcome.outcome
            await self._say(session_id, f"permission:{selected}")
        elif command == "sleep":
            await self._say(session_id, "sleeping")
            try:
                await asyncio.wait_for(cancel.wait(), timeout=30)
            except asyncio.TimeoutError:
                pass
            return PromptResponse(stop_reason="cancelled" if cancel.is_set() else "end_turn")
        elif command == "exit":
            await self._say(session_id, "bye")
            await asyncio.sleep(0.2)
            os._exit(3)
        elif command == "garbage":
            os.write(1, b"this is not json\n")
            await self._say(session_id, "after-garbage")
        return PromptResponse(stop_reason="end_turn")


def main() -> None:
    if os.environ.get("FAKE_AGENT_BANNER"):
        os.write(1, b"fake agent v0 starting up\n")
    asyncio.run(run_agent(ScriptedAgent()))


if __name__ == "__main__":
    main()
