"""Conversation notification events."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class ConversationEventType(str, Enum):
    """Kinds of notifications emitted by a conversation."""

    TASK_STARTED = "task_started"
    MESSAGE = "message"
    AGENT_JOINED = "agent_joined"
    AGENT_COMPLETED = "agent_completed"
    USER_MESSAGE_QUEUED = "user_message_queued"
    WAITING_FOR_USER = "waiting_for_user"
    STATUS_CHANGED = "status_changed"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"


class ConversationEvent(BaseModel):
    """One outbound notification about a conversation mutation."""

    model_config = ConfigDict(frozen=True)

    type: ConversationEventType
    conversation_id: str
    timestamp: datetime = Field(default_factory=datetime.now)
    payload: Dict[str, Any] = Field(default_factory=dict)
