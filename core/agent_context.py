"""Context handed to the decision step for one inbound message."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from storage.messages import Message, MessageStore
from storage.sessions import SessionRegistry

HISTORY_LIMIT = 20
EXECUTION_HISTORY_LIMIT = 10


@dataclass
class ChatMessage:
    thread_id: str
    text: str
    author_id: str = "unknown"
    author_name: str = "unknown"
    channel_id: str = "unknown"
    channel_name: str = "unknown"
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ExecutionEntry:
    command: str
    output: str
    success: bool
    timestamp: str | None = None


@dataclass
class SandboxContext:
    session_id: str | None = None
    status: str | None = None
    execution_history: list[ExecutionEntry] = field(default_factory=list)
    last_output: str | None = None


@dataclass
class AgentContext:
    message: ChatMessage
    history: list[Message]
    sandbox: SandboxContext

    def thread_context(self) -> dict[str, Any]:
        """Snapshot persisted alongside a new registry row."""
        return {
            "user": {"id": self.message.author_id, "name": self.message.author_name},
            "channel": {"id": self.message.channel_id, "name": self.message.channel_name},
        }


def extract_execution_history(messages: list[Message]) -> list[ExecutionEntry]:
    entries: list[ExecutionEntry] = []
    for message in messages:
        for item in message.metadata.get("execution_log") or []:
            if item.get("type") != "command":
                continue
            entries.append(
                ExecutionEntry(
                    command=item.get("command", ""),
                    output=item.get("output", ""),
                    success=bool(item.get("success", True)),
                    timestamp=item.get("timestamp"),
                )
            )
    return entries


def build_context(
    registry: SessionRegistry,
    messages: MessageStore,
    message: ChatMessage,
    *,
    history_limit: int = HISTORY_LIMIT,
) -> AgentContext:
    history = messages.get_conversation_history(message.thread_id, history_limit)
    session = registry.get_session(message.thread_id)
    if session is None:
        return AgentContext(message=message, history=history, sandbox=SandboxContext())

    recent = history[-EXECUTION_HISTORY_LIMIT:]
    return AgentContext(
        message=message,
        history=history,
        sandbox=SandboxContext(
            session_id=session.backend_session_id,
            status=session.status.value,
            execution_history=extract_execution_history(recent),
            last_output=recent[-1].content if recent else None,
        ),
    )
