"""Tests for KeyedLock."""

import asyncio

import pytest

from renobid.locks import KeyedLock


class TestKeyedLock:
    """Tests for per-key serialization."""

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold("project-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        async with locks.hold("project-1"):
            async with locks.hold("project-2"):
                assert locks.locked("project-1")
                assert locks.locked("project-2")

    @pytest.mark.asyncio
    async def test_released_locks_are_dropped(self):
        locks = KeyedLock()
        async with locks.hold("project-1"):
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.locked("project-1")

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("project-1"):
                raise RuntimeError("boom")
        assert not locks.locked("project-1")
