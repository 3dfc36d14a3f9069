"""Unit tests for text helpers and LazyResource."""

import asyncio

import pytest

from handoff_orchestrator.utils.lazy import LazyResource
from handoff_orchestrator.utils.text import mentions_any, tail_excerpt, truncate


class TestTruncate:
    def test_short_text_unchanged(self):
        assert truncate("hello", 10) == "hello"

    def test_long_text_clipped_with_marker(self):
        result = truncate("a" * 20, 10)
        assert result == "a" * 7 + "..."
        assert len(result) == 10

    def test_empty(self):
        assert truncate("", 5) == ""


class TestTailExcerpt:
    def test_keeps_last_lines_and_strips_ansi(self):
        text = "\n".join(f"\x1b[31mline {i}\x1b[0m" for i in range(12))
        excerpt = tail_excerpt(text, max_lines=3)
        assert excerpt == "line 9 | line 10 | line 11"

    def test_blank_input(self):
        assert tail_excerpt("\n \n") == ""


class TestMentionsAny:
    def test_word_match_with_suffix(self):
        assert mentions_any("Add tests for the parser", ["test"])
        assert mentions_any("Refactoring the module", ["refactor"])

    def test_no_substring_match(self):
        """'add' must not match inside 'address'."""
        assert not mentions_any("Validate the email address", ["add"])

    def test_case_insensitive(self):
        assert mentions_any("Fix typo in README", ["readme"])


class TestLazyResource:
    @pytest.mark.asyncio
    async def test_factory_runs_once_under_concurrent_first_access(self):
        calls = 0

        async def factory():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return "value"

        resource = LazyResource(factory)
        results = await asyncio.gather(*(resource.get() for _ in range(5)))

        assert results == ["value"] * 5
        assert calls == 1
        assert resource.initialized

    @pytest.mark.asyncio
    async def test_failure_not_cached(self):
        attempts = []

        async def factory():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("boom")
            return 42

        resource = LazyResource(factory)
        with pytest.raises(RuntimeError):
            await resource.get()
        assert not resource.initialized
        assert await resource.get() == 42
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_init(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def factory():
            started.set()
            await release.wait()
            return "ok"

        resource = LazyResource(factory)
        first = asyncio.ensure_future(resource.get())
        await started.wait()
        second = asyncio.ensure_future(resource.get())
        await asyncio.sleep(0)

        first.cancel()
        release.set()

        assert await second == "ok"
        with pytest.raises(asyncio.CancelledError):
            await first

    @pytest.mark.asyncio
    async def test_reset_reruns_factory(self):
        counter = iter(range(10))

        async def factory():
            return next(counter)

        resource = LazyResource(factory)
        assert await resource.get() == 0
        resource.reset()
        assert await resource.get() == 1
