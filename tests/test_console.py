from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from agentrelay.console import chat, display, repl
from agentrelay.console.chat import _negotiator
from agentrelay.console.state import ChatState
from agentrelay.errors import SessionClosed
from agentrelay.permissions import FirstAllowPolicy, RejectAllPolicy
from agentrelay.protocol.engine import PromptOutcome
from agentrelay.protocol.events import SessionEvent
from tests.utils import make_settings


def _event(kind: str, **update) -> SessionEvent:
    return SessionEvent(
        turn_id=1,
        sequence=0,
        payload_kind=kind,
        payload={"sessionId": "s1", "update": {"sessionUpdate": kind, **update}},
    )


@pytest.fixture()
def printed(monkeypatch) -> list[tuple[str, str]]:
    calls: list[tuple[str, str]] = []
    monkeypatch.setattr(display, "print_agent_text", lambda text: calls.append(("agent", text)))
    monkeypatch.setattr(display, "print_thought", lambda text: calls.append(("thought", text)))
    monkeypatch.setattr(display, "print_tool", lambda status, msg: calls.append(("tool", f"{status}:{msg}")))
    monkeypatch.setattr(display, "print_mode_update", lambda mode: calls.append(("mode", mode)))
    monkeypatch.setattr(display, "print_plan", lambda entries: calls.append(("plan", str(len(list(entries))))))
    return calls


def test_render_event_updates_state(printed) -> None:
    state = ChatState(backend="fake")

    display.render_event(_event("agent_message_chunk", content={"type": "text", "text": "hi"}), state)
    display.render_event(_event("agent_thought_chunk", content={"type": "text", "text": "hmm"}), state)
    assert printed == [("agent", "hi")]
    assert state.pending_newline

    state.show_thinking = True
    display.render_event(_event("agent_thought_chunk", content={"type": "text", "text": "hmm"}), state)
    display.render_event(_event("tool_call", toolCallId="t1", title="read file"), state)
    display.render_event(_event("current_mode_update", currentModeId="plan"), state)
    display.render_event(
        _event("available_commands_update", availableCommands=[{"name": "review", "description": "Review"}]),
        state,
    )
    display.render_event(_event("plan", entries=[{"content": "a", "status": "pending"}]), state)

    assert printed[1:] == [("thought", "hmm"), ("tool", "start:read file"), ("mode", "plan"), ("plan", "1")]
    assert state.current_mode == "plan"
    assert state.agent_commands == {"/review": "Review"}
    assert not state.pending_newline


def test_build_prompt_blocks_embeds_referenced_files(tmp_path) -> None:
    (tmp_path / "notes.txt").write_text("remember this", encoding="utf-8")
    (tmp_path / "big.log").write_text("x" * (repl.EMBED_LIMIT_BYTES + 1), encoding="utf-8")

    blocks = repl.build_prompt_blocks("look at @notes.txt and @big.log and @missing", cwd=str(tmp_path))

    assert blocks[0].text == "look at @notes.txt and @big.log and @missing"
    assert blocks[1].type == "resource"
    assert blocks[1].resource.text == "remember this"
    assert blocks[2].type == "resource_link"
    assert blocks[2].name == "big.log"
    assert len(blocks) == 3


def test_slash_commands(monkeypatch) -> None:
    notices: list[str] = []
    monkeypatch.setattr(repl, "print_notice", lambda text, style="cyan": notices.append(text))
    session = SimpleNamespace(state=SimpleNamespace(value="ready"), log=[])
    state = ChatState(backend="fake", session_id="s1")

    assert repl.SLASH_HANDLERS["/thinking"].handler(session, state, "") is True
    assert state.show_thinking
    assert repl.SLASH_HANDLERS["/status"].handler(session, state, "") is True
    assert "backend=fake" in notices[-1] and "session=s1" in notices[-1]
    assert repl.SLASH_HANDLERS["/exit"].handler(session, state, "") is False


@pytest.mark.asyncio
async def test_run_turn_reports_cancel_and_errors(monkeypatch) -> None:
    notices: list[str] = []
    monkeypatch.setattr(repl, "print_notice", lambda text, style="cyan": notices.append(text))
    state = ChatState(backend="fake")

    session = SimpleNamespace(terminated=False, prompt=AsyncMock(return_value=PromptOutcome(stop_reason="end_turn")))
    assert await repl.run_turn(session, state, "hello") is True

    session.prompt = AsyncMock(return_value=PromptOutcome(stop_reason="cancelled"))
    assert await repl.run_turn(session, state, "hello") is False

    session.prompt = AsyncMock(side_effect=SessionClosed("agent process pid:1 ended"))
    session.terminated = True
    assert await repl.run_turn(session, state, "hello") is False
    assert notices[-1] == "[session_closed] agent process pid:1 ended"


def test_chat_negotiator_modes(monkeypatch) -> None:
    class FakeAsk:
        pass

    monkeypatch.setattr(chat, "AskPolicy", FakeAsk)
    settings = make_settings(permission_timeout=3.0)
    assert isinstance(_negotiator(settings, "ask").policy, FakeAsk)
    assert _negotiator(settings, "ask").timeout is None
    assert isinstance(_negotiator(settings, "reject_all").policy, RejectAllPolicy)
    assert isinstance(_negotiator(settings, "first_allow").policy, FirstAllowPolicy)
    assert _negotiator(settings, "first_allow").timeout == 3.0
