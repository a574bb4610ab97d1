"""Gate runner and detached tasks."""

import asyncio
import logging

from core.gateway.pipeline import PROCEED, Reject, drain_detached, run_gates, spawn_detached


class TestRunGates:

    async def test_first_rejection_wins(self):
        calls = []

        async def first(ctx):
            calls.append("first")
            return PROCEED

        async def second(ctx):
            calls.append("second")
            return Reject("nope")

        async def third(ctx):
            calls.append("third")
            return PROCEED

        assert await run_gates(None, [first, second, third]) == Reject("nope")
        assert calls == ["first", "second"]

    async def test_all_proceed(self):
        async def ok(ctx):
            ctx.append(1)
            return PROCEED

        state = []
        assert await run_gates(state, [ok, ok]) is None
        assert state == [1, 1]


class TestSpawnDetached:

    async def test_failure_is_logged_not_raised(self, caplog):
        async def boom():
            raise RuntimeError("store offline")

        with caplog.at_level(logging.ERROR):
            task = spawn_detached(boom(), name="test.boom")
            await drain_detached()
            await asyncio.sleep(0)

        assert task.done()
        assert "Detached task failed" in caplog.text

    async def test_result_is_available(self):
        async def value():
            return 42

        task = spawn_detached(value(), name="test.value")
        await drain_detached()
        assert task.result() == 42
