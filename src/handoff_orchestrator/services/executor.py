"""Agent turn execution and the handoff state machine."""

import asyncio
import json
import logging
import re
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence, Union

from handoff_orchestrator.constants import (
    CONTEXT_MAX_MESSAGES,
    CONTINUE_TASK_PROMPT,
    DEFAULT_MAX_ITERATIONS,
    TRACKED_TOOL_NAMES,
)
from handoff_orchestrator.exceptions import EngineError
from handoff_orchestrator.models.agent import AgentDefinition
from handoff_orchestrator.models.execution import (
    ExecutionResult,
    Handoff,
    SequenceResult,
    StopReason,
)
from handoff_orchestrator.models.message import MessageMetadata
from handoff_orchestrator.providers.base import BaseEngine
from handoff_orchestrator.services.agent_registry import AgentRegistry
from handoff_orchestrator.services.conversation import Conversation
from handoff_orchestrator.utils.directives import (
    DirectiveKind,
    DirectiveParser,
    StructuredDirectiveParser,
    TurnDirective,
)
from handoff_orchestrator.utils.text import truncate

logger = logging.getLogger(__name__)

TRACE_BLOCK_RE = re.compile(r'"_trace"\s*:\s*(\{[^{}]*\})')

# Error code for a parallel branch that raised something other than EngineError
BRANCH_ERROR = "internal_error"


def extract_tool_calls(text: str, tool_names: Sequence[str] = TRACKED_TOOL_NAMES) -> List[Dict[str, Any]]:
    """Find tracked tool-name mentions and ``"_trace": {...}`` blocks in ``text``.

    Purely observational: nothing here influences control flow.
    """
    if not text:
        return []

    calls: List[Dict[str, Any]] = []
    for match in TRACE_BLOCK_RE.finditer(text):
        try:
            trace = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        calls.append({"tool": trace.get("tool", "unknown"), "source": "trace", "trace": trace})

    # A tool already reported through a trace block is not counted again
    traced = {call["tool"] for call in calls}
    for name in tool_names:
        if name not in traced and re.search(rf"\b{re.escape(name)}\b", text):
            calls.append({"tool": name, "source": "mention"})

    return calls


class Executor:
    """Runs agent turns against one engine and records them in a conversation."""

    def __init__(
        self,
        engine: BaseEngine,
        registry: AgentRegistry,
        parser: Optional[DirectiveParser] = None,
        context_max_messages: int = CONTEXT_MAX_MESSAGES,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        timeout_ms: Optional[int] = None,
        tracked_tools: Sequence[str] = TRACKED_TOOL_NAMES,
    ):
        self.engine = engine
        self.registry = registry
        self.parser = parser or StructuredDirectiveParser()
        self.context_max_messages = context_max_messages
        self.max_iterations = max_iterations
        self.timeout_ms = timeout_ms
        self.tracked_tools = tuple(tracked_tools)

    def build_prompt(self, agent: AgentDefinition, task: str, conversation: Conversation) -> str:
        """Role prompt + conversation context + any newly drained user input.

        Queued user messages are drained here, so each one reaches exactly one
        turn.
        """
        pending = conversation.drain_user_messages()
        context = conversation.build_context_for_agent(agent.name, self.context_max_messages)
        prompt = self.registry.render_prompt(agent, task, context)
        if pending:
            user_lines = "\n".join(f"- {message}" for message in pending)
            prompt += f"\n\n---\n## New User Input\nAddress these messages first:\n{user_lines}\n"
        return prompt

    async def run_turn(
        self,
        agent: AgentDefinition,
        task: str,
        conversation: Conversation,
        session_id: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        resume: bool = False,
        parse_directives: bool = True,
    ) -> ExecutionResult:
        """Run one engine turn for ``agent`` and append it to ``conversation``.

        Engine failures come back as an unsuccessful result; they are never
        retried here. Cancellation propagates after the engine has stopped its
        process.
        """
        conversation.register_agent(agent)
        prompt = self.build_prompt(agent, task, conversation)
        session_id = session_id or str(uuid.uuid4())

        logger.info(f"Running agent '{agent.name}' (session {session_id})")
        start = time.monotonic()
        try:
            response = await self.engine.run(
                prompt,
                session_id,
                model=agent.preferred_model,
                timeout_ms=timeout_ms or self.timeout_ms,
                resume=resume,
            )
        except EngineError as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.warning(f"Agent '{agent.name}' turn failed ({e.kind}): {e}")
            conversation.append_agent_message(
                agent.name,
                f"Error: {e}",
                MessageMetadata(duration_ms=duration_ms, session_id=session_id, error=True),
            )
            conversation.mark_agent_complete(agent.name, "failed", {"error": e.kind})
            return ExecutionResult.failed(
                agent.name,
                e.kind,
                str(e),
                duration_ms=duration_ms,
                session_id=session_id,
            )

        duration_ms = int((time.monotonic() - start) * 1000)
        directive = self.parser.parse(response.result) if parse_directives else TurnDirective.none()
        tool_calls = extract_tool_calls(response.result, self.tracked_tools)

        conversation.append_agent_message(
            agent.name,
            response.result,
            MessageMetadata(
                cost_usd=response.cost_usd,
                duration_ms=duration_ms,
                session_id=response.session_id,
                tool_calls=tool_calls,
                num_turns=response.num_turns,
            ),
        )
        for call in tool_calls:
            trace = call.get("trace")
            conversation.add_tool_result(
                call["tool"],
                trace if trace is not None else f"Referenced by {agent.name}",
                agent.name,
                success=not (trace or {}).get("failed", False),
            )

        result = ExecutionResult(
            agent_name=agent.name,
            success=True,
            response_text=response.result,
            cost_usd=response.cost_usd,
            duration_ms=duration_ms,
            session_id=response.session_id,
            num_turns=response.num_turns,
            tool_calls=tool_calls,
        )
        if directive.kind == DirectiveKind.COMPLETE:
            result.complete = True
            result.complete_summary = directive.summary
        elif directive.kind == DirectiveKind.HANDOFF:
            result.handoff = Handoff(target=directive.target, reason=directive.reason)

        conversation.mark_agent_complete(
            agent.name,
            "completed",
            {"complete": result.complete, "handoff": directive.target, "cost_usd": response.cost_usd},
        )
        logger.info(
            f"Agent '{agent.name}' finished in {duration_ms}ms "
            f"(${response.cost_usd:.4f}, directive={directive.kind.value})"
        )
        return result

    async def run_parallel(
        self,
        agents: Sequence[AgentDefinition],
        tasks: Union[str, Sequence[str]],
        conversation: Conversation,
        session_id: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> List[ExecutionResult]:
        """Run one turn per agent concurrently and return every outcome.

        A failing branch never cancels its siblings. Each branch gets its own
        engine session id derived from ``session_id``.
        """
        if isinstance(tasks, str):
            tasks = [tasks] * len(agents)
        if len(tasks) != len(agents):
            raise ValueError(f"Got {len(tasks)} tasks for {len(agents)} agents")

        base = uuid.UUID(session_id) if session_id else uuid.uuid4()
        turns = [
            self.run_turn(
                agent,
                task,
                conversation,
                session_id=str(uuid.uuid5(base, agent.name)),
                timeout_ms=timeout_ms,
            )
            for agent, task in zip(agents, tasks)
        ]
        outcomes = await asyncio.gather(*turns, return_exceptions=True)

        results = []
        for agent, outcome in zip(agents, outcomes):
            if isinstance(outcome, ExecutionResult):
                results.append(outcome)
                continue
            if not isinstance(outcome, Exception):
                raise outcome
            logger.error(f"Parallel branch '{agent.name}' raised {type(outcome).__name__}: {outcome}")
            results.append(ExecutionResult.failed(agent.name, BRANCH_ERROR, str(outcome)))
        return results

    async def run_sequence(
        self,
        initial_agent: AgentDefinition,
        task: str,
        conversation: Conversation,
        max_iterations: Optional[int] = None,
        timeout_ms: Optional[int] = None,
    ) -> SequenceResult:
        """Drive the handoff state machine from ``initial_agent``.

        Every pass runs exactly one turn and the loop always stops after
        ``max_iterations`` passes. Missing directives, unknown targets and
        failed turns all route toward the default reviewer.
        """
        max_iterations = max_iterations or self.max_iterations
        reviewer = self.registry.default_reviewer
        current = initial_agent
        results: List[ExecutionResult] = []
        iterations = 0
        stop_reason = StopReason.MAX_ITERATIONS

        while iterations < max_iterations:
            iterations += 1
            turn_task = task if iterations == 1 else CONTINUE_TASK_PROMPT
            result = await self.run_turn(current, turn_task, conversation, timeout_ms=timeout_ms)
            results.append(result)

            if result.complete:
                stop_reason = StopReason.COMPLETE
                break

            if result.handoff is not None:
                target = result.handoff.target
                next_agent = self.registry.resolve_handoff(current.name, result.handoff.reason, target)
                if next_agent.name != target:
                    conversation.append_orchestrator_message(
                        f"Unknown handoff target '{target}', routing to {next_agent.name}"
                    )
                conversation.append_orchestrator_message(
                    f"Handoff: {current.name} → {next_agent.name} ({truncate(result.handoff.reason, 120)})"
                )
                current = next_agent
                continue

            if not result.success:
                if current.name == reviewer.name:
                    logger.warning(f"Reviewer '{reviewer.name}' failed ({result.error}), stopping")
                    conversation.append_orchestrator_message(
                        f"Reviewer {reviewer.name} failed ({result.error}); stopping"
                    )
                    stop_reason = StopReason.REVIEWER_FAILED
                    break
                logger.warning(f"Agent '{current.name}' failed ({result.error}), recovering via {reviewer.name}")
                conversation.append_orchestrator_message(
                    f"Agent {current.name} failed ({result.error}); routing to {reviewer.name} for recovery"
                )
                current = reviewer
                continue

            if iterations > 1:
                conversation.append_orchestrator_message(
                    f"No directive from {current.name}; asking {reviewer.name} for a decision"
                )
                current = reviewer
        else:
            logger.warning(f"Sequence stopped after reaching max iterations ({max_iterations})")
            conversation.append_orchestrator_message(
                f"Stopped after reaching max iterations ({max_iterations})"
            )

        last = results[-1]
        return SequenceResult(
            iterations=iterations,
            results=results,
            success=last.complete or last.success,
            total_cost=sum(r.cost_usd for r in results),
            total_duration_ms=sum(r.duration_ms for r in results),
            stop_reason=stop_reason,
        )
