"""Unit tests for the orchestrator: strategy selection, the four strategies
and the task-level error boundary."""

import asyncio
import json
from unittest.mock import patch

import httpx
import pytest

from handoff_orchestrator.config import load_config
from handoff_orchestrator.exceptions import ConversationNotFoundError, EngineSpawnError
from handoff_orchestrator.models.conversation import ConversationStatus
from handoff_orchestrator.models.execution import StopReason
from handoff_orchestrator.models.strategy import OrchestratorStrategy, TaskComplexity
from handoff_orchestrator.providers.claude_code import ClaudeCodeEngine
from handoff_orchestrator.services.orchestrator import (
    Orchestrator,
    assess_complexity,
    select_start_agent,
    select_strategy,
)
from handoff_orchestrator.services.persistence import ConversationStore


@pytest.fixture
def store(tmp_path):
    return ConversationStore(tmp_path / "conversations")


def _orchestrator(engine, store=None, **kwargs):
    return Orchestrator(engine, store=store, **kwargs)


# ── heuristics ──────────────────────────────────────────────────────────────


class TestAssessComplexity:
    @pytest.mark.parametrize(
        "task,expected",
        [
            ("Fix typo in README", TaskComplexity.SIMPLE),
            ("Fix the login bug", TaskComplexity.MODERATE),
            ("Add a --json flag to the list command", TaskComplexity.MODERATE),
            ("Refactor the storage layer", TaskComplexity.COMPLEX),
            ("Migrate all services to the new client", TaskComplexity.COMPLEX),
            ("Investigate why the cache misses", TaskComplexity.EXPLORATORY),
            ("Say hello", TaskComplexity.SIMPLE),
        ],
    )
    def test_buckets(self, task, expected):
        assert assess_complexity(task) == expected

    def test_long_task_is_complex(self):
        assert assess_complexity("word " * 51) == TaskComplexity.COMPLEX

    def test_whole_words_only(self):
        """'add' inside 'address' is not a moderate indicator."""
        assert assess_complexity("Show the address") == TaskComplexity.SIMPLE

    def test_strategy_mapping(self):
        assert select_strategy(TaskComplexity.SIMPLE) == OrchestratorStrategy.SINGLE
        assert select_strategy(TaskComplexity.MODERATE) == OrchestratorStrategy.SEQUENTIAL
        assert select_strategy(TaskComplexity.EXPLORATORY) == OrchestratorStrategy.SEQUENTIAL
        assert select_strategy(TaskComplexity.COMPLEX) == OrchestratorStrategy.PLANNER_LED


class TestSelectStartAgent:
    @pytest.mark.parametrize(
        "task,expected",
        [
            ("Design the API", "architect"),
            ("Refactor the parser", "architect"),
            ("Audit the permissions", "reviewer"),
            ("Add retries", "coder"),
        ],
    )
    def test_start_agent(self, registry, task, expected):
        assert select_start_agent(task, registry) == expected


# ── strategies ──────────────────────────────────────────────────────────────


class TestExecute:
    @pytest.mark.asyncio
    async def test_simple_task_runs_single_turn(self, scripted_engine, store):
        """Scenario A: one turn, handoff text is not interpreted."""
        engine = scripted_engine(["Fixed.\nHANDOFF: reviewer\nREASON: review it"])
        orchestrator = _orchestrator(engine, store)

        result = await orchestrator.execute("Fix typo in README")

        assert result.success
        assert result.strategy == OrchestratorStrategy.SINGLE
        assert len(engine.calls) == 1
        assert len(result.outcome.results) == 1
        assert result.outcome.results[0].handoff is None
        assert result.summary.status == ConversationStatus.COMPLETED

        conversation = orchestrator.conversations[result.conversation_id]
        notes = [m.content for m in conversation.messages if m.role.value == "orchestrator"]
        assert "Task complexity: simple" in notes
        assert "Using strategy: single" in notes
        assert "Selected agent: coder" in notes

    @pytest.mark.asyncio
    async def test_sequential_chain(self, scripted_engine, store):
        engine = scripted_engine(["HANDOFF: coder\nREASON: implement fix", "COMPLETE: done"])
        orchestrator = _orchestrator(engine, store)

        result = await orchestrator.execute("Design a retry policy", strategy=OrchestratorStrategy.SEQUENTIAL)

        assert result.success
        assert [r.agent_name for r in result.outcome.results] == ["architect", "coder"]
        assert result.outcome.stop_reason == StopReason.COMPLETE
        assert result.outcome.summary == "done"

    @pytest.mark.asyncio
    async def test_sequential_reviewer_failure_fails_task(self, scripted_engine, store):
        engine = scripted_engine([EngineSpawnError("gone"), EngineSpawnError("gone")])
        orchestrator = _orchestrator(engine, store)

        result = await orchestrator.execute("Add retries", strategy="sequential")

        assert not result.success
        assert result.outcome.stop_reason == StopReason.REVIEWER_FAILED
        assert result.summary.status == ConversationStatus.FAILED
        assert "gone" in result.error

    @pytest.mark.asyncio
    async def test_parallel_requires_all_branches(self, scripted_engine, store):
        def reply(prompt, session_id):
            if "You are a code reviewer" in prompt:
                return EngineSpawnError("no engine")
            return "Implemented."

        engine = scripted_engine([reply, reply])
        result = await _orchestrator(engine, store).execute("Add retries", strategy=OrchestratorStrategy.PARALLEL)

        assert not result.success
        assert len(result.outcome.results) == 2
        assert result.outcome.results[0].success
        assert "reviewer" in result.error

    @pytest.mark.asyncio
    async def test_parallel_merges_outputs(self, scripted_engine, store):
        engine = scripted_engine(["coder output", "reviewer output"])
        result = await _orchestrator(engine, store).execute("Add retries", strategy=OrchestratorStrategy.PARALLEL)

        assert result.success
        assert result.outcome.summary == "coder output\n\n---\n\nreviewer output"

    @pytest.mark.asyncio
    async def test_planner_led(self, scripted_engine, store):
        engine = scripted_engine(["1. do x\n2. do y", "Implemented.\nHANDOFF: reviewer\nREASON: review", "COMPLETE: ok"])
        orchestrator = _orchestrator(engine, store)

        result = await orchestrator.execute("Refactor the entire storage layer")

        assert result.success
        assert result.strategy == OrchestratorStrategy.PLANNER_LED
        assert [r.agent_name for r in result.outcome.results] == ["architect", "coder", "reviewer"]
        assert "implementation plan" in engine.calls[0]["prompt"]
        assert "Execute the implementation plan created by the architect." in engine.calls[1]["prompt"]

    @pytest.mark.asyncio
    async def test_planner_led_stops_when_plan_fails(self, scripted_engine, store):
        engine = scripted_engine([EngineSpawnError("gone")])
        result = await _orchestrator(engine, store).execute("t", strategy=OrchestratorStrategy.PLANNER_LED)

        assert not result.success
        assert result.strategy == OrchestratorStrategy.PLANNER_LED
        assert len(engine.calls) == 1


# ── error boundary ──────────────────────────────────────────────────────────


class TestErrorBoundary:
    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_failed_result(self, scripted_engine, store):
        engine = scripted_engine([RuntimeError("kaboom")])
        orchestrator = _orchestrator(engine, store)

        result = await orchestrator.execute("Say hello")

        assert not result.success
        assert result.error == "RuntimeError: kaboom"
        conversation = orchestrator.conversations[result.conversation_id]
        assert conversation.status == ConversationStatus.FAILED

    @pytest.mark.asyncio
    async def test_failed_task_is_persisted(self, scripted_engine, store):
        engine = scripted_engine([RuntimeError("kaboom")])
        result = await _orchestrator(engine, store).execute("Say hello")

        record = store.load(result.conversation_id)
        assert record.status == ConversationStatus.FAILED
        transcript = store.transcript_path(result.conversation_id).read_text()
        assert "Task failed: RuntimeError: kaboom" in transcript

    @pytest.mark.asyncio
    async def test_no_save(self, scripted_engine, store):
        engine = scripted_engine(["ok"])
        await _orchestrator(engine, store, save=False).execute("Say hello")
        assert store.list() == []

    @pytest.mark.asyncio
    async def test_abort_kills_turn_and_fails_conversation(self, scripted_engine, store):
        engine = scripted_engine(["never returned"], delay=10)
        orchestrator = _orchestrator(engine, store)

        task = asyncio.ensure_future(orchestrator.execute("Say hello"))
        while not engine.calls:
            await asyncio.sleep(0.01)
        assert orchestrator.abort()

        result = await asyncio.wait_for(task, timeout=5)

        assert not result.success
        assert result.error == "cancelled"
        assert store.load(result.conversation_id).status == ConversationStatus.FAILED

    @pytest.mark.asyncio
    async def test_abort_without_task(self, scripted_engine):
        assert not _orchestrator(scripted_engine()).abort()

    @pytest.mark.asyncio
    async def test_caller_cancellation_propagates_after_saving(self, scripted_engine, store):
        engine = scripted_engine(["never returned"], delay=10)
        orchestrator = _orchestrator(engine, store)

        task = asyncio.ensure_future(orchestrator.execute("Say hello"))
        while not engine.calls:
            await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        conversation = orchestrator.active_conversation
        assert conversation.status == ConversationStatus.FAILED
        assert store.exists(conversation.conversation_id)

    @pytest.mark.asyncio
    async def test_invalid_strategy_becomes_failed_result(self, scripted_engine, store):
        engine = scripted_engine()
        result = await _orchestrator(engine, store).execute("Say hello", strategy="bogus")

        assert not result.success
        assert "bogus" in result.error
        assert engine.calls == []
        assert store.load(result.conversation_id).status == ConversationStatus.FAILED


# ── overlapping tasks ───────────────────────────────────────────────────────


async def _wait_for_calls(engine, count):
    while len(engine.calls) < count:
        await asyncio.sleep(0.01)


class TestOverlappingTasks:
    @pytest.mark.asyncio
    async def test_abort_then_new_task_stays_inside_boundary(self, scripted_engine, store):
        """Starting a second task right after an abort does not turn the abort into a raised cancellation."""
        engine = scripted_engine(["first", "second"], delay=0.3)
        orchestrator = _orchestrator(engine, store)

        first = asyncio.ensure_future(orchestrator.execute("Say hello"))
        await _wait_for_calls(engine, 1)
        assert orchestrator.abort()
        second = asyncio.ensure_future(orchestrator.execute("Say goodbye"))

        first_result = await asyncio.wait_for(first, timeout=5)
        assert first_result.error == "cancelled"

        await _wait_for_calls(engine, 2)
        assert orchestrator.abort()
        second_result = await asyncio.wait_for(second, timeout=5)

        assert second_result.error == "cancelled"
        assert first_result.conversation_id != second_result.conversation_id

    @pytest.mark.asyncio
    async def test_abort_targets_one_conversation(self, scripted_engine, store):
        engine = scripted_engine(["first", "second"], delay=0.3)
        orchestrator = _orchestrator(engine, store)

        first = asyncio.ensure_future(orchestrator.execute("Say hello"))
        await _wait_for_calls(engine, 1)
        first_id = orchestrator.active_conversation.conversation_id
        second = asyncio.ensure_future(orchestrator.execute("Say goodbye"))
        await _wait_for_calls(engine, 2)

        assert orchestrator.abort(first_id)
        first_result, second_result = await asyncio.wait_for(asyncio.gather(first, second), timeout=5)

        assert first_result.error == "cancelled"
        assert second_result.success
        assert store.load(first_id).status == ConversationStatus.FAILED
        assert store.load(second_result.conversation_id).status == ConversationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_abort_unknown_or_finished_conversation(self, scripted_engine, store):
        orchestrator = _orchestrator(scripted_engine(["ok"]), store)
        result = await orchestrator.execute("Say hello")

        assert not orchestrator.abort(result.conversation_id)
        assert not orchestrator.abort("conv-missing")


# ── single agent, continuation and inspection ───────────────────────────────


class TestConversationControl:
    @pytest.mark.asyncio
    async def test_execute_with_agent(self, scripted_engine, store):
        engine = scripted_engine(["Looks good"])
        result = await _orchestrator(engine, store).execute_with_agent("reviewer", "Review the diff")

        assert result.success
        assert result.outcome.results[0].agent_name == "reviewer"

    @pytest.mark.asyncio
    async def test_execute_with_unknown_agent(self, scripted_engine, store):
        result = await _orchestrator(scripted_engine(), store).execute_with_agent("ghost", "t")
        assert not result.success
        assert result.error == "Unknown agent: ghost"

    @pytest.mark.asyncio
    async def test_continue_saved_conversation(self, scripted_engine, store):
        first = await _orchestrator(scripted_engine(["Implemented"]), store).execute("Say hello")

        engine = scripted_engine(["Added the tests too"])
        orchestrator = _orchestrator(engine, store)
        result = await orchestrator.continue_conversation(first.conversation_id, "Also add tests")

        assert result.success
        assert result.conversation_id != first.conversation_id
        assert "- Also add tests" in engine.calls[0]["prompt"]
        follow_up = store.load(result.conversation_id)
        assert follow_up.parent_conversation_id == first.conversation_id
        assert any(m.content == "Added the tests too" for m in follow_up.messages)
        assert result.outcome.results[0].agent_name == "architect"

    @pytest.mark.asyncio
    async def test_continue_unknown_conversation(self, scripted_engine, store):
        result = await _orchestrator(scripted_engine(), store).continue_conversation("conv-missing", "hi")
        assert not result.success
        assert "conv-missing" in result.error

    @pytest.mark.asyncio
    async def test_inject_user_message_reaches_next_turn(self, scripted_engine, store):
        orchestrator = _orchestrator(scripted_engine(), store)

        def reply(prompt, session_id):
            orchestrator.inject_user_message("prefer tabs")
            return "thinking"

        def second(prompt, session_id):
            assert "- prefer tabs" in prompt
            return "COMPLETE: done"

        orchestrator.engine.replies.extend([reply, second])
        result = await orchestrator.execute("Add retries", strategy=OrchestratorStrategy.SEQUENTIAL)
        assert result.success

    def test_inject_without_conversation(self, scripted_engine):
        with pytest.raises(ConversationNotFoundError):
            _orchestrator(scripted_engine()).inject_user_message("hi")

    @pytest.mark.asyncio
    async def test_state_and_listing(self, scripted_engine, store):
        saved = await _orchestrator(scripted_engine(["ok"]), store).execute("Say hello")

        orchestrator = _orchestrator(scripted_engine(["ok"]), store)
        live = await orchestrator.execute("Say goodbye")

        state = orchestrator.get_conversation_state()
        assert state["conversation_id"] == live.conversation_id
        assert state["status"] == "completed"
        assert state["agents"][0]["name"] == "architect"

        listing = {i.conversation_id: i.source for i in orchestrator.list_conversations()}
        assert listing == {live.conversation_id: "memory", saved.conversation_id: "disk"}

    def test_state_for_unknown_conversation(self, scripted_engine):
        assert _orchestrator(scripted_engine()).get_conversation_state("nope") is None


# ── wiring ──────────────────────────────────────────────────────────────────


class TestFromConfig:
    def test_builds_engine_and_store(self, tmp_path):
        config = load_config(
            environ={},
            working_dir=tmp_path,
            engine_command=["/usr/bin/claude", "--verbose"],
            max_iterations=4,
            model="opus",
        )
        orchestrator = Orchestrator.from_config(config)

        assert isinstance(orchestrator.engine, ClaudeCodeEngine)
        assert orchestrator.engine.command == ["/usr/bin/claude", "--verbose"]
        assert orchestrator.engine.default_model == "opus"
        assert orchestrator.executor.max_iterations == 4
        assert orchestrator.store.output_dir == tmp_path / ".handoff-orchestrator"

    def test_custom_agents_file(self, tmp_path):
        agents_file = tmp_path / "agents.json"
        agents_file.write_text(json.dumps([{"name": "dba", "prompt_template": "You are a DBA."}]))
        config = load_config(environ={}, working_dir=tmp_path, agents_file=agents_file)

        assert "dba" in Orchestrator.from_config(config).registry

    @pytest.mark.asyncio
    async def test_webhook_observer_receives_lifecycle(self, scripted_engine, store):
        received = []

        def handler(request):
            received.append(json.loads(request.content)["type"])
            return httpx.Response(204)

        orchestrator = _orchestrator(scripted_engine(["ok"]), store, webhook_url="http://hooks.test/e")
        transport = httpx.MockTransport(handler)
        original = httpx.AsyncClient

        def client_factory(*args, **kwargs):
            return original(*args, transport=transport, **kwargs)

        with patch("handoff_orchestrator.services.events.httpx.AsyncClient", side_effect=client_factory):
            await orchestrator.execute("Say hello")
            await orchestrator.close()

        assert received[0] == "status_changed"
        assert "task_started" in received
        assert received[-1] == "task_completed"

    @pytest.mark.asyncio
    async def test_slow_webhook_does_not_delay_execute(self, scripted_engine, store):
        posted = []

        async def slow_handler(request):
            posted.append(json.loads(request.content)["type"])
            await asyncio.sleep(0.5)
            return httpx.Response(204)

        orchestrator = _orchestrator(scripted_engine(["ok"]), store, webhook_url="http://hooks.test/e")
        orchestrator.observer_drain_seconds = 0.2
        transport = httpx.MockTransport(slow_handler)
        original = httpx.AsyncClient

        def client_factory(*args, **kwargs):
            return original(*args, transport=transport, **kwargs)

        with patch("handoff_orchestrator.services.events.httpx.AsyncClient", side_effect=client_factory):
            result = await asyncio.wait_for(orchestrator.execute("Say hello"), timeout=0.4)
            assert result.success

            # teardown is bounded by the drain window, not by the backlog
            await asyncio.wait_for(orchestrator.close(), timeout=2)

        assert 0 < len(posted) < 5
