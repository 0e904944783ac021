"""Mention handler: decision -> (optional) sandbox run -> reply.

One call per inbound thread message. Same-thread calls are serialized by the
thread lock, which is held from session lookup until the sandbox answer has
been recorded. Infrastructure failures collapse into one user-facing retry
message; delivery failures are logged and never touch session state.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime

from core.agent_context import AgentContext, ChatMessage, build_context
from core.protocols import Decision, DecisionMaker, Delivery
from sandbox.client import SandboxClient, extract_response_text
from sandbox.manager import SandboxManager
from storage.state import thread_lock

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Sorry, I encountered an error. Please try again."
DEFAULT_RESPONSE = "I understand your request."
DEFAULT_PROMPT = "Execute the user's request."
COMMAND_EVENT = "command.executed"
FAILURE_MARKERS = ("error", "failed", "fatal")


@dataclass
class ExecutionLogEntry:
    command: str
    output: str = ""
    success: bool = True
    type: str = "command"
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


class ProgressWatcher(threading.Thread):
    """Follows the sandbox event stream while a prompt runs. Best effort."""

    def __init__(self, client: SandboxClient, delivery: Delivery, thread_id: str):
        super().__init__(name=f"progress-{thread_id}", daemon=True)
        self.client = client
        self.delivery = delivery
        self.thread_id = thread_id
        self.entries: list[ExecutionLogEntry] = []
        self._stop_event = threading.Event()

    def run(self) -> None:
        try:
            for event in self.client.event_stream(stop=self._stop_event):
                if event.get("type") != COMMAND_EVENT:
                    continue
                command = (event.get("properties") or {}).get("command")
                if not command:
                    continue
                self.entries.append(ExecutionLogEntry(command=command))
                _safe_typing(self.delivery, f"Running: {command}", self.thread_id)
        except Exception as e:
            if not self._stop_event.is_set():
                logger.warning("Event subscription error for thread %s (non-critical): %s", self.thread_id, e)

    def stop(self) -> list[ExecutionLogEntry]:
        self._stop_event.set()
        # iter_lines() only sees the flag on the next line; closing the stream unblocks it now.
        self.client.close_streams()
        self.join(timeout=1.0)
        if self.is_alive():
            logger.warning("Progress watcher for thread %s did not exit", self.thread_id)
        return list(self.entries)


class AgentController:
    def __init__(self, manager: SandboxManager, decision_maker: DecisionMaker):
        self.manager = manager
        self.decision_maker = decision_maker

    def handle_mention(self, message: ChatMessage, delivery: Delivery) -> None:
        thread_id = message.thread_id
        logger.info("Mention received for thread %s from %s", thread_id, message.author_id)
        try:
            self.manager.state.subscribe(thread_id)

            context = build_context(self.manager.registry, self.manager.messages, message)
            decision = self.decision_maker.decide(context)
            logger.info("Decision for thread %s: requires_sandbox=%s", thread_id, decision.requires_sandbox)

            if decision.requires_sandbox:
                self.execute_in_sandbox(context, decision, delivery)
            else:
                _safe_post(delivery, decision.response or DEFAULT_RESPONSE, thread_id)
        except Exception:
            logger.exception("Error processing mention for thread %s", thread_id)
            _safe_post(delivery, FAILURE_MESSAGE, thread_id)

    def handle_followup(self, message: ChatMessage, delivery: Delivery) -> bool:
        """Messages in a thread without a mention are handled only when subscribed."""
        if not self.manager.state.is_subscribed(message.thread_id):
            return False
        self.handle_mention(message, delivery)
        return True

    def execute_in_sandbox(self, context: AgentContext, decision: Decision, delivery: Delivery) -> str:
        message = context.message
        thread_id = message.thread_id

        with thread_lock(self.manager.state, thread_id, self.manager.lock_policy, keepalive=True) as held:
            handle = self.manager.get_or_create_session_locked(
                thread_id,
                message.author_id,
                context.thread_context(),
            )
            with handle.client as client:
                _safe_typing(delivery, "Processing...", thread_id)
                self.manager.messages.save_message(thread_id, "user", message.text)

                watcher = ProgressWatcher(client, delivery, thread_id)
                watcher.start()
                try:
                    response = client.prompt(decision.prompt or DEFAULT_PROMPT)
                finally:
                    entries = watcher.stop()

            response_text = extract_response_text(response)
            enrich_execution_log(entries, response_text)
            # @@@lock-before-write - a long prompt can outlive the lock; re-check before appending.
            held.ensure_held()
            self.manager.messages.save_message(
                thread_id,
                "assistant",
                response_text,
                {"execution_log": [asdict(entry) for entry in entries]},
            )
            self.manager.touch(thread_id)

        _safe_post(delivery, response_text, thread_id)
        logger.info("Sandbox execution complete for thread %s", thread_id)
        return response_text


def enrich_execution_log(entries: list[ExecutionLogEntry], response_text: str) -> None:
    """Attach the response lines following each command's echo as its output."""
    lines = response_text.split("\n")
    for entry in entries:
        needle = entry.command[:30]
        found = False
        output_lines: list[str] = []
        for line in lines:
            if needle in line:
                found = True
                continue
            if found and (line.startswith("#") or line.startswith("---")):
                break
            if found:
                output_lines.append(line)

        entry.output = "\n".join(output_lines)[:1000] if output_lines else response_text[:500]
        lowered = entry.output.lower()
        entry.success = not any(marker in lowered for marker in FAILURE_MARKERS)


def _safe_post(delivery: Delivery, text: str, thread_id: str) -> None:
    try:
        delivery.post(text)
    except Exception as e:
        logger.warning("Failed to post to thread %s: %s", thread_id, e)


def _safe_typing(delivery: Delivery, status: str, thread_id: str) -> None:
    try:
        delivery.start_typing(status)
    except Exception as e:
        logger.debug("Typing indicator failed for thread %s: %s", thread_id, e)
