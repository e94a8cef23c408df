"""
Human-in-the-loop approval protocol.

Three kinds of decision are routed through an ApprovalGate:
- PLAN: approve, edit (MODIFY with ``modifications["plan"]``) or cancel a plan
- TOOL_CALL: allow a destructive tool call proposed by a worker
- CONTINUE: keep iterating after the user has seen the critique
"""

import inspect
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class ApprovalKind(StrEnum):
    """What the human is asked to approve."""

    PLAN = "plan"
    TOOL_CALL = "tool_call"
    CONTINUE = "continue"


class ApprovalDecision(StrEnum):
    """Human decision on an approval request."""

    APPROVE = "approve"  # Proceed as proposed
    REJECT = "reject"  # Decline this one request
    MODIFY = "modify"  # Proceed with modifications
    ABORT = "abort"  # Stop the whole session


class ApprovalRequest(BaseModel):
    """Request for human approval."""

    kind: ApprovalKind
    session_id: str
    message: str
    task_id: int | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


class ApprovalResult(BaseModel):
    """Result of a human approval decision."""

    decision: ApprovalDecision
    reason: str | None = None
    modifications: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @property
    def proceeds(self) -> bool:
        return self.decision in (ApprovalDecision.APPROVE, ApprovalDecision.MODIFY)


@runtime_checkable
class ApprovalGate(Protocol):
    """External human-approval channel."""

    async def request(self, request: ApprovalRequest) -> ApprovalResult: ...


class AutoApprovalGate:
    """Approves every request unchanged. Used in auto mode and headless runs."""

    async def request(self, request: ApprovalRequest) -> ApprovalResult:
        return ApprovalResult(decision=ApprovalDecision.APPROVE, reason="auto mode")


ApprovalCallback = Callable[[ApprovalRequest], ApprovalResult | Awaitable[ApprovalResult]]


class CallbackApprovalGate:
    """
    Adapts a plain (sync or async) callback into an ApprovalGate.

    Example:
        def ask(request: ApprovalRequest) -> ApprovalResult:
            answer = input(f"{request.message} [y/N] ")
            decision = ApprovalDecision.APPROVE if answer == "y" else ApprovalDecision.REJECT
            return ApprovalResult(decision=decision)

        gate = CallbackApprovalGate(ask)
    """

    def __init__(self, callback: ApprovalCallback):
        self._callback = callback

    async def request(self, request: ApprovalRequest) -> ApprovalResult:
        result = self._callback(request)
        if inspect.isawaitable(result):
            result = await result
        return result
