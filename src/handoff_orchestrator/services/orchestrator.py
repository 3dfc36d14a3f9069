"""Orchestrator - strategy selection and the task-level error boundary."""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Set

from handoff_orchestrator.config import OrchestratorConfig
from handoff_orchestrator.constants import IMPLEMENTER_AGENT, OBSERVER_DRAIN_SECONDS, PARALLEL_AGENTS
from handoff_orchestrator.exceptions import (
    ConversationNotFoundError,
    ConversationStateError,
    OrchestratorError,
)
from handoff_orchestrator.models.conversation import ConversationInfo, ConversationStatus
from handoff_orchestrator.models.execution import ExecutionResult, SequenceResult, StrategyOutcome, TaskResult
from handoff_orchestrator.models.strategy import OrchestratorStrategy, TaskComplexity
from handoff_orchestrator.providers.base import BaseEngine
from handoff_orchestrator.providers.claude_code import ClaudeCodeEngine
from handoff_orchestrator.services.agent_registry import AgentRegistry
from handoff_orchestrator.services.conversation import Conversation
from handoff_orchestrator.services.events import EventChannel, LoggingObserver, Observer, WebhookObserver
from handoff_orchestrator.services.executor import Executor
from handoff_orchestrator.services.persistence import ConversationStore
from handoff_orchestrator.utils.text import mentions_any

logger = logging.getLogger(__name__)

# =============================================================================
# Complexity heuristics
# =============================================================================
EXPLORATORY_INDICATORS = ("investigate", "analyze", "understand", "explore", "find", "search", "why", "how does")
COMPLEX_INDICATORS = (
    "multiple",
    "several",
    "many",
    "all",
    "entire",
    "refactor",
    "migrate",
    "redesign",
    "overhaul",
    "integration",
    "system-wide",
    "cross-cutting",
)
TRIVIAL_INDICATORS = ("typo", "spelling", "readme", "comment", "whitespace", "rename", "wording")
MODERATE_INDICATORS = ("update", "modify", "change", "add", "remove", "fix", "bug", "issue", "error")
COMPLEX_WORD_COUNT = 50

COMPLEXITY_STRATEGIES: Dict[TaskComplexity, OrchestratorStrategy] = {
    TaskComplexity.SIMPLE: OrchestratorStrategy.SINGLE,
    TaskComplexity.MODERATE: OrchestratorStrategy.SEQUENTIAL,
    TaskComplexity.EXPLORATORY: OrchestratorStrategy.SEQUENTIAL,
    TaskComplexity.COMPLEX: OrchestratorStrategy.PLANNER_LED,
}

PLAN_TASK_TEMPLATE = (
    "Analyze this task and create an implementation plan with clear steps. "
    "Identify which agents should handle each step. Task: {task}"
)
EXECUTE_PLAN_TASK = "Execute the implementation plan created by the architect."
CONTINUE_WITH_USER_TASK = "Continue with the conversation based on user input."
PARALLEL_SEPARATOR = "\n\n---\n\n"

CANCELLED_ERROR = "cancelled"


def assess_complexity(task_description: str) -> TaskComplexity:
    """Classify a task from keyword buckets and length.

    Checked in order: exploratory, complex (or long), trivial edits, moderate
    edits; anything else is simple.
    """
    if mentions_any(task_description, EXPLORATORY_INDICATORS):
        return TaskComplexity.EXPLORATORY
    if mentions_any(task_description, COMPLEX_INDICATORS) or len(task_description.split()) > COMPLEX_WORD_COUNT:
        return TaskComplexity.COMPLEX
    if mentions_any(task_description, TRIVIAL_INDICATORS):
        return TaskComplexity.SIMPLE
    if mentions_any(task_description, MODERATE_INDICATORS):
        return TaskComplexity.MODERATE
    return TaskComplexity.SIMPLE


def select_strategy(complexity: TaskComplexity) -> OrchestratorStrategy:
    return COMPLEXITY_STRATEGIES[complexity]


def select_start_agent(task_description: str, registry: AgentRegistry) -> str:
    """First agent of a sequential chain."""
    text = task_description.lower()
    if re.search(r"design|plan|architect|refactor", text):
        name = registry.planner_name
    elif re.search(r"review|audit", text):
        name = registry.default_reviewer_name
    else:
        name = IMPLEMENTER_AGENT
    return name if name in registry else registry.planner_name


class Orchestrator:
    """Runs tasks with a strategy and never lets an error escape as an exception."""

    def __init__(
        self,
        engine: BaseEngine,
        registry: Optional[AgentRegistry] = None,
        store: Optional[ConversationStore] = None,
        strategy: OrchestratorStrategy = OrchestratorStrategy.AUTO,
        max_iterations: Optional[int] = None,
        context_max_messages: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        webhook_url: Optional[str] = None,
        save: bool = True,
        verbose: bool = False,
    ):
        self.engine = engine
        self.registry = registry or AgentRegistry.standard()
        self.store = store
        self.strategy = strategy
        self.webhook_url = webhook_url
        self.save = save and store is not None
        self.verbose = verbose
        self.observer_drain_seconds = OBSERVER_DRAIN_SECONDS

        executor_kwargs: Dict[str, Any] = {"timeout_ms": timeout_ms}
        if max_iterations:
            executor_kwargs["max_iterations"] = max_iterations
        if context_max_messages:
            executor_kwargs["context_max_messages"] = context_max_messages
        self.executor = Executor(engine, self.registry, **executor_kwargs)

        self.conversations: Dict[str, Conversation] = {}
        self.active_conversation: Optional[Conversation] = None
        self._observers: Dict[str, List[Observer]] = {}
        # In-flight work and abort requests, keyed by conversation id
        self._tasks: Dict[str, "asyncio.Task[Any]"] = {}
        self._aborted: Set[str] = set()
        self._teardowns: Set["asyncio.Task[None]"] = set()

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> "Orchestrator":
        """Build an orchestrator, engine, registry and store from configuration."""
        registry = (
            AgentRegistry.with_custom_agents(config.agents_file)
            if config.agents_file
            else AgentRegistry.standard()
        )
        engine_kwargs: Dict[str, Any] = {}
        if config.model:
            engine_kwargs["default_model"] = config.model
        engine = ClaudeCodeEngine(
            command=config.engine_command,
            working_dir=config.working_dir,
            mcp_config=config.mcp_config,
            timeout_ms=config.timeout_ms,
            kill_grace_seconds=config.kill_grace_seconds,
            **engine_kwargs,
        )
        return cls(
            engine,
            registry=registry,
            store=ConversationStore(config.output_dir),
            strategy=config.strategy,
            max_iterations=config.max_iterations,
            context_max_messages=config.context_max_messages,
            timeout_ms=config.timeout_ms,
            webhook_url=config.webhook_url,
            save=config.save,
            verbose=config.verbose,
        )

    # -- conversations -------------------------------------------------------

    def _new_conversation(self) -> Conversation:
        conversation = Conversation(store=self.store, events=EventChannel())
        self._track(conversation)
        return conversation

    def _track(self, conversation: Conversation) -> None:
        self.conversations[conversation.conversation_id] = conversation
        self.active_conversation = conversation
        # Started before start_task so observers see the whole lifecycle
        self._observers[conversation.conversation_id] = self._start_observers(conversation)

    def _start_observers(self, conversation: Conversation) -> List[Observer]:
        observers: List[Observer] = []
        if self.verbose:
            observers.append(LoggingObserver(conversation.events))
        if self.webhook_url:
            observers.append(WebhookObserver(conversation.events, self.webhook_url))
        for observer in observers:
            observer.start()
        return observers

    async def _stop_observers(self, observers: List[Observer]) -> None:
        for observer in observers:
            await observer.stop(self.observer_drain_seconds)

    def _release_observers(self, observers: List[Observer]) -> None:
        """Drain observers in the background; close() waits for them."""
        if not observers:
            return
        teardown = asyncio.ensure_future(self._stop_observers(observers))
        self._teardowns.add(teardown)
        teardown.add_done_callback(self._teardowns.discard)

    def _persist(self, conversation: Conversation) -> None:
        if not self.save:
            return
        try:
            conversation.persist()
        except OSError as e:
            logger.error(f"Failed to save conversation {conversation.conversation_id}: {e}")

    # -- task execution ------------------------------------------------------

    async def execute(self, task_description: str, strategy: Optional[OrchestratorStrategy] = None) -> TaskResult:
        """Run ``task_description`` to a terminal conversation state.

        Errors, including cancellation through :meth:`abort`, are recorded in
        the conversation and returned as ``success=False``.
        """
        requested = strategy or self.strategy
        conversation = self._new_conversation()
        conversation.start_task(task_description, strategy=getattr(requested, "value", requested))

        async def run() -> StrategyOutcome:
            selected = OrchestratorStrategy(requested)
            if selected == OrchestratorStrategy.AUTO:
                complexity = assess_complexity(task_description)
                selected = select_strategy(complexity)
                conversation.append_orchestrator_message(f"Task complexity: {complexity.value}")
            conversation.append_orchestrator_message(f"Using strategy: {selected.value}")
            logger.info(f"Executing {conversation.conversation_id} with strategy {selected.value}")
            return await self._run_strategy(selected, task_description, conversation)

        return await self._execute_in_boundary(conversation, run())

    async def execute_with_agent(self, agent_name: str, task_description: str) -> TaskResult:
        """Run a single turn of the named agent."""
        conversation = self._new_conversation()
        conversation.start_task(task_description, strategy=OrchestratorStrategy.SINGLE.value, agent=agent_name)

        async def run() -> StrategyOutcome:
            agent = self.registry.get(agent_name)
            result = await self.executor.run_turn(agent, task_description, conversation, parse_directives=False)
            return _single_outcome(result)

        return await self._execute_in_boundary(conversation, run())

    async def continue_conversation(self, conversation_id: str, user_message: str) -> TaskResult:
        """Send ``user_message`` into a known conversation and run one more turn.

        A conversation that already terminated is continued as a new linked
        conversation seeded with its ledger.
        """
        try:
            previous = self._lookup(conversation_id)
        except OrchestratorError as e:
            return TaskResult(success=False, conversation_id=conversation_id, error=str(e))

        if previous.is_terminal:
            conversation = Conversation.continue_from(previous, store=self.store, events=EventChannel())
            self._track(conversation)
            conversation.start_task(
                previous.task_description or user_message,
                continued_from=previous.conversation_id,
            )
        else:
            conversation = previous
            self.active_conversation = conversation
            if conversation.status == ConversationStatus.IDLE:
                conversation.start_task(user_message)

        conversation.enqueue_user_message(user_message)
        agent_name = conversation.current_agent
        if agent_name not in self.registry:
            agent_name = self.registry.default_reviewer_name

        async def run() -> StrategyOutcome:
            agent = self.registry.get(agent_name)
            result = await self.executor.run_turn(agent, CONTINUE_WITH_USER_TASK, conversation)
            return _single_outcome(result)

        return await self._execute_in_boundary(conversation, run())

    async def _execute_in_boundary(self, conversation: Conversation, work) -> TaskResult:
        conversation_id = conversation.conversation_id
        observers = self._observers.pop(conversation_id, None) or self._start_observers(conversation)
        task = asyncio.ensure_future(work)
        self._tasks[conversation_id] = task
        outcome: Optional[StrategyOutcome] = None
        error: Optional[str] = None
        cancelled_by_caller = False
        try:
            outcome = await task
        except asyncio.CancelledError:
            error = CANCELLED_ERROR
            cancelled_by_caller = conversation_id not in self._aborted
            logger.warning(f"Conversation {conversation_id} was cancelled")
        except Exception as e:
            error = str(e) if isinstance(e, OrchestratorError) else f"{type(e).__name__}: {e}"
            logger.exception(f"Conversation {conversation_id} failed")
        finally:
            if self._tasks.get(conversation_id) is task:
                del self._tasks[conversation_id]
            self._aborted.discard(conversation_id)

        try:
            if outcome is not None and outcome.success:
                summary = conversation.complete(outcome)
            else:
                error = error or (outcome.error if outcome else None) or "Task did not complete successfully"
                summary = conversation.fail(error, result=outcome)
        except ConversationStateError as e:
            logger.error(f"Could not finalize conversation {conversation.conversation_id}: {e}")
            summary = conversation.summary(error=error)

        self._persist(conversation)
        self._release_observers(observers)

        if cancelled_by_caller:
            # The conversation is already failed and saved; let the caller's
            # cancellation continue.
            raise asyncio.CancelledError()

        return TaskResult(
            success=outcome is not None and outcome.success and error is None,
            conversation_id=conversation.conversation_id,
            strategy=outcome.strategy if outcome else None,
            outcome=outcome,
            summary=summary,
            error=error,
        )

    async def _run_strategy(
        self,
        strategy: OrchestratorStrategy,
        task_description: str,
        conversation: Conversation,
    ) -> StrategyOutcome:
        if strategy == OrchestratorStrategy.SINGLE:
            return await self._execute_single(task_description, conversation)
        if strategy == OrchestratorStrategy.SEQUENTIAL:
            return await self._execute_sequential(task_description, conversation)
        if strategy == OrchestratorStrategy.PARALLEL:
            return await self._execute_parallel(task_description, conversation)
        if strategy == OrchestratorStrategy.PLANNER_LED:
            return await self._execute_planner_led(task_description, conversation)
        raise OrchestratorError(f"Unknown strategy: {strategy}")

    async def _execute_single(self, task_description: str, conversation: Conversation) -> StrategyOutcome:
        agent = self.registry.find_agent_for_task(task_description)
        conversation.append_orchestrator_message(f"Selected agent: {agent.name}")
        result = await self.executor.run_turn(agent, task_description, conversation, parse_directives=False)
        return _single_outcome(result)

    async def _execute_sequential(self, task_description: str, conversation: Conversation) -> StrategyOutcome:
        start = self.registry.get(select_start_agent(task_description, self.registry))
        sequence = await self.executor.run_sequence(start, task_description, conversation)
        return _sequence_outcome(OrchestratorStrategy.SEQUENTIAL, sequence)

    async def _execute_parallel(self, task_description: str, conversation: Conversation) -> StrategyOutcome:
        agents = [self.registry.get(name) for name in PARALLEL_AGENTS]
        results = await self.executor.run_parallel(agents, task_description, conversation)
        failed = [r.agent_name for r in results if not r.success]
        return StrategyOutcome(
            strategy=OrchestratorStrategy.PARALLEL,
            success=not failed,
            results=results,
            iterations=len(results),
            summary=PARALLEL_SEPARATOR.join(r.response_text or "" for r in results),
            error=f"Parallel branches failed: {', '.join(failed)}" if failed else None,
        )

    async def _execute_planner_led(self, task_description: str, conversation: Conversation) -> StrategyOutcome:
        conversation.append_orchestrator_message("Phase 1: Architecture planning")
        plan = await self.executor.run_turn(
            self.registry.planner,
            PLAN_TASK_TEMPLATE.format(task=task_description),
            conversation,
            parse_directives=False,
        )
        if not plan.success:
            outcome = _single_outcome(plan)
            return outcome.model_copy(update={"strategy": OrchestratorStrategy.PLANNER_LED})

        conversation.append_orchestrator_message("Phase 2: Executing plan")
        implementer = self.registry.get(IMPLEMENTER_AGENT) if IMPLEMENTER_AGENT in self.registry else self.registry.planner
        sequence = await self.executor.run_sequence(implementer, EXECUTE_PLAN_TASK, conversation)
        outcome = _sequence_outcome(OrchestratorStrategy.PLANNER_LED, sequence)
        return outcome.model_copy(
            update={"results": [plan, *outcome.results], "iterations": outcome.iterations + 1}
        )

    # -- control and inspection ----------------------------------------------

    def abort(self, conversation_id: Optional[str] = None) -> bool:
        """Cancel the in-flight task of a conversation (default: the active one).

        Its engine process is stopped and the conversation is failed with error
        ``cancelled``. Other running conversations are not affected.
        """
        if conversation_id is None:
            if self.active_conversation is None:
                return False
            conversation_id = self.active_conversation.conversation_id
        task = self._tasks.get(conversation_id)
        if task is None or task.done():
            return False
        logger.warning(f"Aborting conversation {conversation_id}")
        self._aborted.add(conversation_id)
        task.cancel()
        return True

    def inject_user_message(self, content: str, conversation_id: Optional[str] = None) -> None:
        """Queue a user message for the next turn of a live conversation."""
        conversation = self.conversations.get(conversation_id) if conversation_id else self.active_conversation
        if conversation is None:
            raise ConversationNotFoundError(conversation_id or "<active>")
        conversation.enqueue_user_message(content)

    def _lookup(self, conversation_id: str) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is not None:
            return conversation
        if self.store is None:
            raise ConversationNotFoundError(conversation_id)
        record = self.store.load(conversation_id)
        conversation = Conversation.from_record(record, store=self.store, events=EventChannel())
        self.conversations[conversation_id] = conversation
        return conversation

    def get_conversation_state(self, conversation_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        conversation = self.conversations.get(conversation_id) if conversation_id else self.active_conversation
        if conversation is None:
            return None
        return {
            "conversation_id": conversation.conversation_id,
            "status": conversation.status.value,
            "task_description": conversation.task_description,
            "current_agent": conversation.current_agent,
            "total_cost": conversation.total_cost,
            "message_count": len(conversation.messages),
            "messages": conversation.full_conversation(),
            "agents": [
                {"name": p.name, "status": p.status, "message_count": p.message_count}
                for p in conversation.agents.values()
            ],
        }

    def list_conversations(self) -> List[ConversationInfo]:
        """In-memory conversations first, then persisted ones not already listed."""
        infos = [
            ConversationInfo(
                conversation_id=c.conversation_id,
                status=c.status,
                task_description=c.task_description,
                message_count=len(c.messages),
                total_cost=c.total_cost,
                source="memory",
            )
            for c in self.conversations.values()
        ]
        if self.store is not None:
            infos.extend(i for i in self.store.list() if i.conversation_id not in self.conversations)
        return infos

    async def close(self) -> None:
        if self._teardowns:
            await asyncio.gather(*list(self._teardowns))
        for conversation in self.conversations.values():
            conversation.close()
        await self.engine.close()


def _single_outcome(result: ExecutionResult) -> StrategyOutcome:
    return StrategyOutcome(
        strategy=OrchestratorStrategy.SINGLE,
        success=result.success,
        results=[result],
        iterations=1,
        summary=result.complete_summary or result.response_text,
        error=result.error_detail or result.error,
    )


def _sequence_outcome(strategy: OrchestratorStrategy, sequence: SequenceResult) -> StrategyOutcome:
    last = sequence.results[-1]
    return StrategyOutcome(
        strategy=strategy,
        success=sequence.success,
        results=sequence.results,
        iterations=sequence.iterations,
        summary=last.complete_summary or last.response_text,
        stop_reason=sequence.stop_reason,
        error=None if sequence.success else (last.error_detail or last.error or sequence.stop_reason.value),
    )
