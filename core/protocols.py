"""Collaborator interfaces consumed by the controller.

The decision step and the chat delivery adapter live outside this package;
only their call shapes are fixed here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from core.agent_context import AgentContext


@dataclass
class Decision:
    requires_sandbox: bool
    prompt: str | None = None
    response: str | None = None
    reasoning: str = ""


class DecisionMaker(Protocol):
    def decide(self, context: AgentContext) -> Decision: ...


class Delivery(Protocol):
    """Chat-platform side of a thread. Calls are fire-and-forget."""

    def post(self, text: str) -> None: ...

    def start_typing(self, status: str) -> None: ...
