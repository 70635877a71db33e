from __future__ import annotations

import asyncio

import pytest
from acp.schema import AllowedOutcome, DeniedOutcome, PermissionOption

from agentrelay.permissions import (
    FirstAllowPolicy,
    OptionView,
    PermissionNegotiator,
    RejectAllPolicy,
    normalize_option,
)


@pytest.mark.asyncio
async def test_first_allow_picks_allowing_option() -> None:
    negotiator = PermissionNegotiator()
    decision = await negotiator.decide([{"id": "a", "kind": "reject"}, {"id": "b", "kind": "allow_always"}])
    assert decision.wire() == {"selectedId": "b"}

    response = decision.to_response()
    assert isinstance(response.outcome, AllowedOutcome)
    assert response.outcome.option_id == "b"


@pytest.mark.asyncio
async def test_empty_options_cancel() -> None:
    decision = await PermissionNegotiator().decide([])
    assert decision.wire() == {"cancelled": True}
    assert isinstance(decision.to_response().outcome, DeniedOutcome)


@pytest.mark.asyncio
async def test_first_allow_falls_back_to_first_option() -> None:
    decision = await PermissionNegotiator().decide([{"optionId": "x", "kind": "reject_once"}])
    assert decision.selected_id == "x"


@pytest.mark.asyncio
async def test_accepts_acp_option_objects() -> None:
    options = [
        PermissionOption(option_id="no", name="Reject", kind="reject_once"),
        PermissionOption(option_id="yes", name="Allow", kind="allow_once"),
    ]
    assert (await PermissionNegotiator().decide(options)).selected_id == "yes"
    assert (await PermissionNegotiator(RejectAllPolicy()).decide(options)).selected_id == "no"


@pytest.mark.asyncio
async def test_reject_all_without_reject_option_cancels() -> None:
    decision = await PermissionNegotiator(RejectAllPolicy()).decide([{"id": "b", "kind": "allow_always"}])
    assert decision.cancelled


@pytest.mark.asyncio
async def test_slow_policy_times_out_to_cancel() -> None:
    async def slow(options, tool_call=None):
        await asyncio.sleep(5)
        return options[0].option_id

    decision = await PermissionNegotiator(slow, timeout=0.05).decide([{"id": "a", "kind": "allow_once"}])
    assert decision.cancelled


@pytest.mark.asyncio
async def test_failing_or_unknown_selection_cancels() -> None:
    def broken(options, tool_call=None):
        raise RuntimeError("boom")

    def invented(options, tool_call=None):
        return "not-offered"

    options = [{"id": "a", "kind": "allow_once"}]
    assert (await PermissionNegotiator(broken).decide(options)).cancelled
    assert (await PermissionNegotiator(invented).decide(options)).cancelled


@pytest.mark.asyncio
async def test_async_policy_receives_views_and_tool_call() -> None:
    seen = {}

    async def policy(options, tool_call=None):
        seen["options"] = list(options)
        seen["tool_call"] = tool_call
        return options[-1].option_id

    decision = await PermissionNegotiator(policy).decide([{"id": "a"}, {"id": "b", "kind": "allow_once"}], "tc")
    assert decision.selected_id == "b"
    assert seen["options"] == [OptionView("a"), OptionView("b", "allow_once")]
    assert seen["tool_call"] == "tc"


def test_normalize_option_skips_entries_without_id() -> None:
    assert normalize_option({"kind": "allow_once"}) is None
    assert normalize_option({"option_id": "z", "name": "Zed"}) == OptionView("z", "", "Zed")
    assert FirstAllowPolicy()([]) is None
