"""Automatic answers to agent permission requests."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Sequence, Union

from acp import RequestPermissionResponse
from acp.schema import AllowedOutcome, DeniedOutcome

from agentrelay.config import DEFAULT_PERMISSION_TIMEOUT_S
from agentrelay.errors import PermissionTimeout
from agentrelay.log_utils import log_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OptionView:
    """A permission option reduced to what a policy needs."""

    option_id: str
    kind: str = ""
    name: str = ""


@dataclass(frozen=True)
class PermissionDecision:
    selected_id: str | None = None
    cancelled: bool = False

    @classmethod
    def cancel(cls) -> "PermissionDecision":
        return cls(cancelled=True)

    def to_response(self) -> RequestPermissionResponse:
        if self.cancelled or self.selected_id is None:
            return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))
        return RequestPermissionResponse(outcome=AllowedOutcome(option_id=self.selected_id, outcome="selected"))

    def wire(self) -> dict[str, Any]:
        if self.cancelled or self.selected_id is None:
            return {"cancelled": True}
        return {"selectedId": self.selected_id}


PolicyResult = Union[str, None, Awaitable[Union[str, None]]]
PermissionPolicy = Callable[[Sequence[OptionView], Any], PolicyResult]


def normalize_option(option: Any) -> OptionView | None:
    """Accept ACP `PermissionOption` objects and plain mappings (`id`/`optionId`, `kind`)."""
    if isinstance(option, Mapping):
        option_id = option.get("optionId") or option.get("option_id") or option.get("id")
        kind = option.get("kind") or ""
        name = option.get("name") or ""
    else:
        option_id = getattr(option, "option_id", None)
        kind = getattr(option, "kind", "") or ""
        name = getattr(option, "name", "") or ""
    if not option_id:
        return None
    return OptionView(option_id=str(option_id), kind=str(kind), name=str(name))


class FirstAllowPolicy:
    """Pick the first option whose kind allows; otherwise the first option."""

    def __call__(self, options: Sequence[OptionView], tool_call: Any = None) -> str | None:
        for option in options:
            if "allow" in option.kind:
                return option.option_id
        return options[0].option_id if options else None


class RejectAllPolicy:
    """Pick the first rejecting option; cancel when there is none."""

    def __call__(self, options: Sequence[OptionView], tool_call: Any = None) -> str | None:
        for option in options:
            if "reject" in option.kind:
                return option.option_id
        return None


POLICIES: dict[str, Callable[[], PermissionPolicy]] = {
    "first_allow": FirstAllowPolicy,
    "reject_all": RejectAllPolicy,
}


class PermissionNegotiator:
    """Turn a list of permission options into exactly one decision.

    The policy may be sync or async. Async policies are bounded by `timeout`;
    running out of time, raising, or naming an option that was not offered
    all produce a cancelled decision. Nothing is remembered between calls.
    """

    def __init__(
        self,
        policy: PermissionPolicy | None = None,
        *,
        timeout: float | None = DEFAULT_PERMISSION_TIMEOUT_S,
    ) -> None:
        self.policy: PermissionPolicy = policy or FirstAllowPolicy()
        self.timeout = timeout

    async def decide(self, options: Sequence[Any], tool_call: Any = None) -> PermissionDecision:
        views = [view for view in (normalize_option(option) for option in options or ()) if view is not None]
        if not views:
            log_event(logger, "permission.cancelled", reason="no_options")
            return PermissionDecision.cancel()

        try:
            result = self.policy(views, tool_call)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=self.timeout)
        except asyncio.TimeoutError:
            error = PermissionTimeout(f"permission policy did not answer within {self.timeout}s")
            log_event(logger, "permission.timeout", level=logging.WARNING, kind=error.kind, error=error.message)
            return PermissionDecision.cancel()
        except Exception as exc:  # noqa: BLE001 - a broken policy must not wedge the turn
            log_event(logger, "permission.policy_failed", level=logging.WARNING, error=str(exc))
            return PermissionDecision.cancel()

        offered = {view.option_id for view in views}
        if result is None or result not in offered:
            log_event(logger, "permission.cancelled", reason="no_selection", selection=result)
            return PermissionDecision.cancel()

        log_event(logger, "permission.selected", option=result)
        return PermissionDecision(selected_id=result)
