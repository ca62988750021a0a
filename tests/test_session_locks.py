"""
Tests for the per-session serializer
"""
import asyncio

import pytest

from proctor_engine.services.session_locks import SessionLocks


class TestSessionLocks:

    @pytest.mark.asyncio
    async def test_same_session_runs_in_arrival_order(self):
        locks = SessionLocks()
        order = []

        async def step(name, delay):
            async with locks.hold("s-1"):
                order.append(f"{name}:start")
                await asyncio.sleep(delay)
                order.append(f"{name}:end")

        await asyncio.gather(step("a", 0.02), step("b", 0), step("c", 0))

        assert order == ["a:start", "a:end", "b:start", "b:end", "c:start", "c:end"]

    @pytest.mark.asyncio
    async def test_different_sessions_do_not_block(self):
        locks = SessionLocks()
        inner_ran = asyncio.Event()

        async with locks.hold("s-1"):
            async with locks.hold("s-2"):
                inner_ran.set()
            assert locks.is_held("s-1")
            assert not locks.is_held("s-2")

        assert inner_ran.is_set()

    @pytest.mark.asyncio
    async def test_lock_dropped_when_unused(self):
        locks = SessionLocks()

        async with locks.hold("s-1"):
            assert len(locks) == 1

        assert len(locks) == 0
        assert not locks.is_held("s-1")

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = SessionLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold("s-1"):
                raise RuntimeError("boom")

        assert len(locks) == 0
