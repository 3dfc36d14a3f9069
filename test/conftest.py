"""Shared fixtures: a scripted engine stands in for the engine subprocess."""

import asyncio
from typing import Callable, List, Optional, Union

import pytest

from handoff_orchestrator.providers.base import BaseEngine, EngineResponse
from handoff_orchestrator.services.agent_registry import AgentRegistry
from handoff_orchestrator.services.conversation import Conversation

Scripted = Union[str, EngineResponse, BaseException, Callable[[str, str], object]]


class ScriptedEngine(BaseEngine):
    """Replays scripted replies in call order and records every call.

    A reply may be result text, an EngineResponse, an exception to raise, or
    a callable ``(prompt, session_id)`` returning one of those.
    """

    def __init__(self, replies: Optional[List[Scripted]] = None, cost: float = 0.01, delay: float = 0.0):
        self.replies = list(replies or [])
        self.cost = cost
        self.delay = delay
        self.calls: List[dict] = []
        self.closed = False

    async def run(self, prompt, session_id, model=None, timeout_ms=None, resume=False):
        self.calls.append(
            {"prompt": prompt, "session_id": session_id, "model": model, "timeout_ms": timeout_ms}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.replies:
            raise AssertionError("ScriptedEngine ran out of replies")

        reply = self.replies.pop(0)
        if callable(reply) and not isinstance(reply, BaseException):
            reply = reply(prompt, session_id)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, EngineResponse):
            return reply
        return EngineResponse(result=reply, cost_usd=self.cost, session_id=session_id, num_turns=1)

    async def close(self):
        self.closed = True


@pytest.fixture
def scripted_engine():
    return ScriptedEngine


@pytest.fixture
def registry():
    return AgentRegistry.standard()


@pytest.fixture
def conversation():
    conv = Conversation()
    conv.start_task("Implement the feature")
    return conv
