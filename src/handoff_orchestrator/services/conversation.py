"""Shared conversation ledger for one task execution.

The ledger is append-only: messages are immutable once appended and their
insertion order is the only history agents see. All mutation happens on the
orchestrating event loop, so no lock is taken here; callers running on other
OS threads must hop onto that loop before touching a conversation.
"""

import asyncio
import json
import logging
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel

from handoff_orchestrator.constants import (
    AGENT_CONTEXT_CHARS,
    AUX_CONTEXT_CHARS,
    CONTEXT_MAX_MESSAGES,
)
from handoff_orchestrator.exceptions import (
    ConversationClosedError,
    ConversationStateError,
    OrchestratorError,
)
from handoff_orchestrator.models.agent import AgentDefinition
from handoff_orchestrator.models.conversation import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    AgentParticipant,
    ConversationRecord,
    ConversationStatus,
    ConversationSummary,
)
from handoff_orchestrator.models.events import ConversationEvent, ConversationEventType
from handoff_orchestrator.models.message import Message, MessageMetadata, MessageRole
from handoff_orchestrator.services.events import EventChannel
from handoff_orchestrator.utils.text import truncate

if TYPE_CHECKING:
    from handoff_orchestrator.services.persistence import ConversationStore

logger = logging.getLogger(__name__)


def generate_conversation_id() -> str:
    return f"conv-{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid4().hex[:6]}"


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


class Conversation:
    """Ordered message ledger plus cost and participant bookkeeping."""

    def __init__(
        self,
        conversation_id: Optional[str] = None,
        store: Optional["ConversationStore"] = None,
        events: Optional[EventChannel] = None,
        parent_conversation_id: Optional[str] = None,
    ):
        self.conversation_id = conversation_id or generate_conversation_id()
        self.parent_conversation_id = parent_conversation_id
        self.store = store
        self.events = events or EventChannel()

        self.messages: List[Message] = []
        self.agents: Dict[str, AgentParticipant] = {}
        self.total_cost = 0.0
        self.cost_by_agent: Dict[str, float] = {}

        self.status = ConversationStatus.IDLE
        self.current_agent: Optional[str] = None
        self.task_description: Optional[str] = None
        self.final_summary: Optional[ConversationSummary] = None

        self._user_queue: Deque[str] = deque()
        self._user_waiters: List["asyncio.Future[str]"] = []

    # -- state ---------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _emit(self, event_type: ConversationEventType, **payload: Any) -> None:
        self.events.publish(
            ConversationEvent(type=event_type, conversation_id=self.conversation_id, payload=payload)
        )

    def _ensure_writable(self) -> None:
        if self.is_terminal:
            raise ConversationStateError(
                f"Conversation {self.conversation_id} is {self.status.value}; it cannot be modified"
            )

    def _set_status(self, status: ConversationStatus) -> None:
        if status == self.status:
            return
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise ConversationStateError(
                f"Illegal status transition {self.status.value} -> {status.value} "
                f"for conversation {self.conversation_id}"
            )
        previous = self.status
        self.status = status
        self._emit(ConversationEventType.STATUS_CHANGED, previous=previous.value, status=status.value)

    def _now(self) -> datetime:
        # Wall clocks can step backwards; ledger timestamps may not.
        now = datetime.now()
        if self.messages and now < self.messages[-1].timestamp:
            return self.messages[-1].timestamp
        return now

    def _append(self, message: Message) -> Message:
        self._ensure_writable()
        self.messages.append(message)
        if message.cost_usd:
            self.total_cost += message.cost_usd
            if message.agent_name:
                self.cost_by_agent[message.agent_name] = (
                    self.cost_by_agent.get(message.agent_name, 0.0) + message.cost_usd
                )
        self._emit(
            ConversationEventType.MESSAGE,
            role=message.role.value,
            agent_name=message.agent_name,
            content=message.content,
            cost_usd=message.cost_usd,
        )
        return message

    # -- lifecycle -----------------------------------------------------------

    def start_task(self, description: str, **options: Any) -> str:
        """Begin the task: status becomes running and a SYSTEM message is logged."""
        if self.status != ConversationStatus.IDLE:
            raise ConversationStateError(
                f"Conversation {self.conversation_id} already started ({self.status.value})"
            )
        self._set_status(ConversationStatus.RUNNING)
        self.task_description = description
        self._append(
            Message(
                role=MessageRole.SYSTEM,
                content=f"Task started: {description}",
                timestamp=self._now(),
                metadata=MessageMetadata(
                    task_id=self.conversation_id,
                    options={k: _jsonable(v) for k, v in options.items()},
                ),
            )
        )
        self._emit(ConversationEventType.TASK_STARTED, description=description)
        logger.info(f"Conversation {self.conversation_id} started: {truncate(description, 80)}")
        return self.conversation_id

    def complete(self, result: Any = None) -> ConversationSummary:
        """Terminal success. Returns the final summary."""
        self._ensure_writable()
        self.append_orchestrator_message(f"Task completed. Total cost: ${self.total_cost:.4f}")
        self._set_status(ConversationStatus.COMPLETED)
        self.final_summary = self.summary(result=_jsonable(result))
        self._release_waiters("conversation completed")
        self._emit(
            ConversationEventType.TASK_COMPLETED,
            total_cost=self.total_cost,
            total_messages=len(self.messages),
        )
        return self.final_summary

    def fail(self, error: Union[str, BaseException], result: Any = None) -> ConversationSummary:
        """Terminal failure. Returns the final summary."""
        self._ensure_writable()
        error_text = str(error) or type(error).__name__
        self.append_orchestrator_message(f"Task failed: {error_text}")
        self._set_status(ConversationStatus.FAILED)
        self.final_summary = self.summary(result=_jsonable(result), error=error_text)
        self._release_waiters(error_text)
        self._emit(ConversationEventType.TASK_FAILED, error=error_text)
        logger.warning(f"Conversation {self.conversation_id} failed: {error_text}")
        return self.final_summary

    def close(self, reason: str = "conversation closed") -> None:
        """Tear down: cancel user-input waits and close observer subscriptions."""
        self._release_waiters(reason)
        self.events.close()

    def _release_waiters(self, reason: str) -> None:
        waiters, self._user_waiters = self._user_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(ConversationClosedError(self.conversation_id, reason))

    # -- messages ------------------------------------------------------------

    def append_agent_message(
        self,
        agent_name: str,
        content: str,
        metadata: Optional[Union[MessageMetadata, Dict[str, Any]]] = None,
    ) -> Message:
        """Append an agent's output and update participant and cost bookkeeping."""
        if isinstance(metadata, dict):
            metadata = MessageMetadata(**metadata)
        metadata = metadata or MessageMetadata()
        turn = sum(1 for m in self.messages if m.role == MessageRole.AGENT) + 1
        metadata = metadata.model_copy(update={"turn": turn})

        message = self._append(
            Message(
                role=MessageRole.AGENT,
                agent_name=agent_name,
                content=content,
                timestamp=self._now(),
                metadata=metadata,
            )
        )
        participant = self.agents.get(agent_name) or self.register_agent(agent_name)
        participant.message_count += 1
        self.current_agent = agent_name
        return message

    def append_orchestrator_message(self, content: str, **extra: Any) -> Message:
        return self._append(
            Message(
                role=MessageRole.ORCHESTRATOR,
                content=content,
                timestamp=self._now(),
                metadata=MessageMetadata(**extra),
            )
        )

    def append_user_message(self, content: str) -> Message:
        message = self._append(Message(role=MessageRole.USER, content=content, timestamp=self._now()))

        waiters, self._user_waiters = self._user_waiters, []
        if waiters and self.status == ConversationStatus.PAUSED:
            self._set_status(ConversationStatus.RUNNING)
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(content)
        return message

    def add_tool_result(
        self,
        tool_name: str,
        result: Any,
        agent_name: str,
        success: bool = True,
    ) -> Message:
        content = result if isinstance(result, str) else json.dumps(_jsonable(result), indent=2, default=str)
        return self._append(
            Message(
                role=MessageRole.TOOL_RESULT,
                agent_name=agent_name,
                tool_name=tool_name,
                content=content,
                timestamp=self._now(),
                metadata=MessageMetadata(error=not success),
            )
        )

    # -- user input ----------------------------------------------------------

    def enqueue_user_message(self, content: str) -> Message:
        """Queue ``content`` for the next agent turn and record it in the ledger."""
        self._ensure_writable()
        self._user_queue.append(content)
        message = self.append_user_message(content)
        self._emit(ConversationEventType.USER_MESSAGE_QUEUED, content=content)
        return message

    def drain_user_messages(self) -> List[str]:
        """Return and remove all queued user messages (at-most-once delivery)."""
        drained = list(self._user_queue)
        self._user_queue.clear()
        return drained

    def has_pending_user_messages(self) -> bool:
        return bool(self._user_queue)

    async def wait_for_user_input(self, prompt: str = "Waiting for user input...") -> str:
        """Pause until the next user message arrives and return its content.

        Raises :class:`ConversationClosedError` if the conversation is
        completed, failed or closed while waiting.
        """
        self._ensure_writable()
        self._set_status(ConversationStatus.PAUSED)
        self.append_orchestrator_message(prompt)
        self._emit(ConversationEventType.WAITING_FOR_USER, prompt=prompt)

        waiter: "asyncio.Future[str]" = asyncio.get_running_loop().create_future()
        self._user_waiters.append(waiter)
        try:
            return await waiter
        finally:
            if waiter in self._user_waiters:
                self._user_waiters.remove(waiter)

    # -- agents --------------------------------------------------------------

    def register_agent(
        self,
        agent: Union[AgentDefinition, str],
        capabilities: Optional[List[str]] = None,
        model: Optional[str] = None,
    ) -> AgentParticipant:
        """Add ``agent`` as a participant. Registering twice is a no-op."""
        name = agent.name if isinstance(agent, AgentDefinition) else agent
        existing = self.agents.get(name)
        if existing is not None:
            return existing

        self._ensure_writable()
        if isinstance(agent, AgentDefinition):
            capabilities = sorted(agent.capabilities)
            model = agent.preferred_model
        participant = AgentParticipant(
            name=name,
            capabilities=capabilities or [],
            model=model,
            joined_at=datetime.now(),
        )
        self.agents[name] = participant
        self._emit(ConversationEventType.AGENT_JOINED, agent_name=name, model=model)
        logger.debug(f"Agent '{name}' joined conversation {self.conversation_id}")
        return participant

    def mark_agent_complete(
        self,
        agent_name: str,
        status: str = "completed",
        result: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._ensure_writable()
        participant = self.agents.get(agent_name)
        if participant is not None:
            participant.status = status
            participant.completed_at = datetime.now()
            participant.result = result
        self._emit(ConversationEventType.AGENT_COMPLETED, agent_name=agent_name, status=status)

    # -- reading -------------------------------------------------------------

    def build_context_for_agent(
        self,
        agent_name: str,
        max_messages: int = CONTEXT_MAX_MESSAGES,
        include_tool_results: bool = True,
    ) -> str:
        """Render task, roster and recent history into one prompt block.

        This is the only way one agent sees another agent's output.
        """
        relevant = [
            m
            for m in self.messages
            if include_tool_results or m.role != MessageRole.TOOL_RESULT
        ][-max_messages:]

        parts = []
        if self.task_description:
            parts.append(f"## Current Task\n{self.task_description}")

        if self.agents:
            parts.append(f"## Active Agents\n{', '.join(self.agents)}")

        if relevant:
            lines = [self._context_line(m, agent_name) for m in relevant]
            parts.append("## Conversation History\n" + "\n".join(lines))

        if self._user_queue:
            parts.append("## Pending User Input\n" + "\n".join(self._user_queue))

        return "\n\n".join(parts)

    @staticmethod
    def _context_line(message: Message, agent_name: str) -> str:
        if message.role == MessageRole.AGENT:
            speaker = "you" if message.agent_name == agent_name else message.agent_name
            return f"**{speaker}**: {truncate(message.content, AGENT_CONTEXT_CHARS)}"
        if message.role == MessageRole.USER:
            return f"**User**: {message.content}"
        if message.role == MessageRole.ORCHESTRATOR:
            return f"*[Orchestrator]: {message.content}*"
        if message.role == MessageRole.TOOL_RESULT:
            return f"  → Tool({message.tool_name}): {truncate(message.content, AUX_CONTEXT_CHARS)}"
        return f"[{message.role.value}]: {truncate(message.content, AUX_CONTEXT_CHARS)}"

    def full_conversation(self) -> List[Dict[str, Any]]:
        return [
            {**m.model_dump(mode="json"), "formatted_time": m.timestamp.strftime("%H:%M:%S")}
            for m in self.messages
        ]

    def ledger_cost(self) -> float:
        """Cost reconstructed from the ledger; always equals ``total_cost``."""
        total = 0.0
        for message in self.messages:
            if message.cost_usd:
                total += message.cost_usd
        return total

    def summary(self, result: Any = None, error: Optional[str] = None) -> ConversationSummary:
        return ConversationSummary(
            conversation_id=self.conversation_id,
            task_description=self.task_description,
            status=self.status,
            total_messages=len(self.messages),
            total_cost=self.total_cost,
            cost_by_agent=dict(self.cost_by_agent),
            agents=[p.model_copy() for p in self.agents.values()],
            result=result,
            error=error,
        )

    # -- persistence ---------------------------------------------------------

    def to_record(self) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=self.conversation_id,
            parent_conversation_id=self.parent_conversation_id,
            task_description=self.task_description,
            status=self.status,
            current_agent=self.current_agent,
            messages=list(self.messages),
            agents={name: p.model_copy() for name, p in self.agents.items()},
            total_cost=self.total_cost,
            cost_by_agent=dict(self.cost_by_agent),
            pending_user_messages=list(self._user_queue),
            saved_at=datetime.now(),
        )

    @classmethod
    def from_record(
        cls,
        record: ConversationRecord,
        store: Optional["ConversationStore"] = None,
        events: Optional[EventChannel] = None,
    ) -> "Conversation":
        """Rebuild a conversation from its persisted record.

        Costs are re-derived from the ledger rather than trusted from the file.
        """
        conversation = cls(
            conversation_id=record.conversation_id,
            store=store,
            events=events,
            parent_conversation_id=record.parent_conversation_id,
        )
        conversation._restore(record)
        conversation.status = record.status
        return conversation

    @classmethod
    def continue_from(
        cls,
        previous: "Conversation",
        store: Optional["ConversationStore"] = None,
        events: Optional[EventChannel] = None,
    ) -> "Conversation":
        """Start a follow-up conversation seeded with ``previous``'s ledger."""
        conversation = cls(
            store=store if store is not None else previous.store,
            events=events,
            parent_conversation_id=previous.conversation_id,
        )
        conversation._restore(previous.to_record())
        return conversation

    def _restore(self, record: ConversationRecord) -> None:
        self.task_description = record.task_description
        self.current_agent = record.current_agent
        self.messages = list(record.messages)
        self.agents = {name: p.model_copy() for name, p in record.agents.items()}
        self._user_queue = deque(record.pending_user_messages)
        self.total_cost = 0.0
        self.cost_by_agent = {}
        for message in self.messages:
            if message.cost_usd:
                self.total_cost += message.cost_usd
                if message.agent_name:
                    self.cost_by_agent[message.agent_name] = (
                        self.cost_by_agent.get(message.agent_name, 0.0) + message.cost_usd
                    )

    def persist(self) -> Path:
        """Write the structured ledger and transcript through the attached store."""
        if self.store is None:
            raise OrchestratorError(f"Conversation {self.conversation_id} has no store to persist to")
        return self.store.save(self)

    def transcript(self) -> str:
        from handoff_orchestrator.services.persistence import render_transcript

        return render_transcript(self.to_record())
