"""Thread message handling on top of the sandbox layer."""

from core.agent_context import AgentContext, ChatMessage, build_context
from core.agent_controller import AgentController
from core.protocols import Decision, DecisionMaker, Delivery

__all__ = [
    "AgentContext",
    "AgentController",
    "ChatMessage",
    "Decision",
    "DecisionMaker",
    "Delivery",
    "build_context",
]
