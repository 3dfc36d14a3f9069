"""Results produced by agent turns, sequences, strategies and tasks."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from handoff_orchestrator.models.conversation import ConversationSummary
from handoff_orchestrator.models.strategy import OrchestratorStrategy


class Handoff(BaseModel):
    """Request to pass control to another agent."""

    model_config = ConfigDict(frozen=True)

    target: str
    reason: str = "No reason provided"


class ExecutionResult(BaseModel):
    """Outcome of one agent turn.

    A turn either hands off, completes, or does neither; ``handoff`` and
    ``complete`` are never both set.
    """

    model_config = ConfigDict(validate_assignment=True)

    agent_name: str
    success: bool = False
    response_text: Optional[str] = None
    cost_usd: float = 0.0
    duration_ms: int = 0
    handoff: Optional[Handoff] = None
    complete: bool = False
    complete_summary: Optional[str] = None
    error: Optional[str] = None
    error_detail: Optional[str] = None
    session_id: Optional[str] = None
    num_turns: int = 0
    tool_calls: List[Dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _handoff_xor_complete(self) -> "ExecutionResult":
        if self.complete and self.handoff is not None:
            raise ValueError("a turn cannot both complete and hand off")
        return self

    @classmethod
    def failed(cls, agent_name: str, error: str, detail: Optional[str] = None, **kwargs) -> "ExecutionResult":
        return cls(agent_name=agent_name, success=False, error=error, error_detail=detail, **kwargs)


class StopReason(str, Enum):
    """Why a sequential handoff run stopped."""

    COMPLETE = "complete"
    REVIEWER_FAILED = "reviewer_failed"
    MAX_ITERATIONS = "max_iterations"


class SequenceResult(BaseModel):
    """Outcome of a bounded handoff sequence."""

    iterations: int
    results: List[ExecutionResult]
    success: bool
    total_cost: float
    total_duration_ms: int
    stop_reason: StopReason


class StrategyOutcome(BaseModel):
    """Result of running one orchestration strategy."""

    strategy: OrchestratorStrategy
    success: bool
    results: List[ExecutionResult] = Field(default_factory=list)
    iterations: int = 0
    summary: Optional[str] = None
    stop_reason: Optional[StopReason] = None
    error: Optional[str] = None

    @property
    def total_cost(self) -> float:
        return sum(r.cost_usd for r in self.results)


class TaskResult(BaseModel):
    """Structured result returned across the orchestrator boundary."""

    success: bool
    conversation_id: str
    strategy: Optional[OrchestratorStrategy] = None
    outcome: Optional[StrategyOutcome] = None
    summary: Optional[ConversationSummary] = None
    error: Optional[str] = None
