"""Unit tests for the per-record in-flight guard."""

import asyncio

import pytest

from clinsync.domain.guardrails import RecordLockRegistry


class TestRecordLockRegistry:
    """Test suite for RecordLockRegistry."""

    async def test_hold_marks_record_in_flight(self):
        locks = RecordLockRegistry()
        assert not locks.is_locked(1)
        async with locks.hold(1):
            assert locks.is_locked(1)
            assert locks.in_flight() == [1]
            assert not locks.is_locked(2)
        assert not locks.is_locked(1)
        assert locks.in_flight() == []

    async def test_same_record_is_serialized(self):
        locks = RecordLockRegistry()
        order = []

        async def attempt(name):
            async with locks.hold(7):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(attempt("a"), attempt("b"))
        assert order == ["a-start", "a-end", "b-start", "b-end"]

    async def test_different_records_do_not_wait(self):
        locks = RecordLockRegistry()
        entered = asyncio.Event()

        async def first():
            async with locks.hold(1):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def second():
            async with locks.hold(2):
                entered.set()

        await asyncio.gather(first(), second())

    async def test_released_when_block_raises(self):
        locks = RecordLockRegistry()
        with pytest.raises(RuntimeError):
            async with locks.hold(3):
                raise RuntimeError("boom")
        assert not locks.is_locked(3)
        assert locks.in_flight() == []

    async def test_released_when_cancelled(self):
        locks = RecordLockRegistry()

        async def slow():
            async with locks.hold(4):
                await asyncio.sleep(10)

        task = asyncio.ensure_future(slow())
        await asyncio.sleep(0)
        assert locks.is_locked(4)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not locks.is_locked(4)
