"""Conversation bookkeeping and persistence models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field

from handoff_orchestrator.models.message import Message


class ConversationStatus(str, Enum):
    """Lifecycle status of a conversation."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES: FrozenSet[ConversationStatus] = frozenset(
    {ConversationStatus.COMPLETED, ConversationStatus.FAILED}
)

# idle -> running -> (paused <-> running) -> completed | failed
ALLOWED_TRANSITIONS: Dict[ConversationStatus, FrozenSet[ConversationStatus]] = {
    ConversationStatus.IDLE: frozenset({ConversationStatus.RUNNING}),
    ConversationStatus.RUNNING: frozenset(
        {ConversationStatus.PAUSED, ConversationStatus.COMPLETED, ConversationStatus.FAILED}
    ),
    ConversationStatus.PAUSED: frozenset(
        {ConversationStatus.RUNNING, ConversationStatus.COMPLETED, ConversationStatus.FAILED}
    ),
    ConversationStatus.COMPLETED: frozenset(),
    ConversationStatus.FAILED: frozenset(),
}


class AgentParticipant(BaseModel):
    """Join/completion bookkeeping for one agent in a conversation."""

    name: str
    capabilities: List[str] = Field(default_factory=list)
    model: Optional[str] = None
    joined_at: datetime
    message_count: int = 0
    status: Optional[str] = None
    completed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None


class ConversationSummary(BaseModel):
    """Final summary computed when a conversation terminates."""

    conversation_id: str
    task_description: Optional[str]
    status: ConversationStatus
    total_messages: int
    total_cost: float
    cost_by_agent: Dict[str, float]
    agents: List[AgentParticipant]
    result: Optional[Any] = None
    error: Optional[str] = None


class ConversationRecord(BaseModel):
    """Durable snapshot of a conversation, written as ``conversation-<id>.json``."""

    conversation_id: str
    parent_conversation_id: Optional[str] = None
    task_description: Optional[str] = None
    status: ConversationStatus
    current_agent: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    agents: Dict[str, AgentParticipant] = Field(default_factory=dict)
    total_cost: float = 0.0
    cost_by_agent: Dict[str, float] = Field(default_factory=dict)
    pending_user_messages: List[str] = Field(default_factory=list)
    saved_at: Optional[datetime] = None


class ConversationInfo(BaseModel):
    """Listing entry for an in-memory or persisted conversation."""

    conversation_id: str
    status: ConversationStatus
    task_description: Optional[str] = None
    message_count: int = 0
    total_cost: float = 0.0
    source: str = "disk"
    saved_at: Optional[datetime] = None
