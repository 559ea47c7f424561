"""Tests for the in-process keyed lock."""

import asyncio

import pytest

from calendar_sync.services.locks import KeyedLock


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_hold_nowait_reports_busy_key(self):
        locks = KeyedLock()

        async with locks.hold("user-1"):
            async with locks.hold_nowait("user-1") as acquired:
                assert acquired is False
            async with locks.hold_nowait("user-2") as acquired:
                assert acquired is True

    @pytest.mark.asyncio
    async def test_keys_are_dropped_when_released(self):
        locks = KeyedLock()

        async with locks.hold("user-1"):
            assert "user-1" in locks
            assert locks.locked("user-1")

        assert "user-1" not in locks
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_waiters_run_in_turn(self):
        locks = KeyedLock()
        order: list[str] = []

        async def worker(name: str):
            async with locks.hold("conn"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0
