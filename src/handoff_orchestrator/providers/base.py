"""Base reasoning-engine provider."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EngineResponse(BaseModel):
    """Parsed result of one successful engine invocation."""

    result: str
    cost_usd: float = 0.0
    session_id: Optional[str] = None
    num_turns: int = 1
    is_error: bool = False
    raw: Dict[str, Any] = Field(default_factory=dict)


class BaseEngine(ABC):
    """Contract for an external engine that turns a prompt into a result.

    Implementations raise :class:`~handoff_orchestrator.exceptions.EngineError`
    subclasses for spawn failures, timeouts, nonzero exits, malformed output
    and engine-reported errors. Cancelling ``run`` must stop the underlying
    process before the cancellation propagates.
    """

    @abstractmethod
    async def run(
        self,
        prompt: str,
        session_id: str,
        model: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        resume: bool = False,
    ) -> EngineResponse:
        """Run one turn and return the parsed response."""
        pass

    async def close(self) -> None:
        """Release engine resources."""
        pass
