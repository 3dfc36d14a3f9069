"""Conversation message models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class MessageRole(str, Enum):
    """Author of a conversation message."""

    SYSTEM = "system"
    USER = "user"
    AGENT = "agent"
    ORCHESTRATOR = "orchestrator"
    TOOL_RESULT = "tool_result"


# Roles that must name the agent that produced them
AGENT_AUTHORED_ROLES = frozenset({MessageRole.AGENT, MessageRole.TOOL_RESULT})


class MessageMetadata(BaseModel):
    """Cost, timing and bookkeeping attached to a message."""

    model_config = ConfigDict(frozen=True, extra="allow")

    cost_usd: float = Field(default=0.0, ge=0)
    duration_ms: Optional[int] = None
    turn: Optional[int] = None
    session_id: Optional[str] = None
    error: bool = False
    tool_calls: List[Dict[str, Any]] = Field(default_factory=list)


class Message(BaseModel):
    """One immutable ledger entry."""

    model_config = ConfigDict(frozen=True)

    role: MessageRole
    agent_name: Optional[str] = None
    tool_name: Optional[str] = None
    content: str
    timestamp: datetime
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)

    @model_validator(mode="after")
    def _check_agent_name(self) -> "Message":
        authored = self.role in AGENT_AUTHORED_ROLES
        if authored and not self.agent_name:
            raise ValueError(f"{self.role.value} messages require agent_name")
        if not authored and self.agent_name:
            raise ValueError(f"{self.role.value} messages cannot carry agent_name")
        return self

    @property
    def cost_usd(self) -> float:
        return self.metadata.cost_usd
