"""Test per-key mutual exclusion"""

import asyncio

import pytest

from uploadcore.session import KeyedLock


class TestKeyedLock:
    """Test KeyedLock semantics"""

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        active = 0
        peak = 0

        async def worker():
            nonlocal active, peak
            async with locks.hold("s1"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(5)))
        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_keys_do_not_contend(self):
        locks = KeyedLock()
        entered = asyncio.Event()

        async def holder():
            async with locks.hold("a"):
                await entered.wait()

        task = asyncio.create_task(holder())
        await asyncio.sleep(0)
        assert locks.locked("a")

        async with locks.hold("b"):
            entered.set()
        await task

    @pytest.mark.asyncio
    async def test_locks_are_released(self):
        locks = KeyedLock()
        async with locks.hold("s1"):
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.locked("s1")

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("s1"):
                raise RuntimeError("boom")
        assert len(locks) == 0
