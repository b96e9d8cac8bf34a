"""
Unit tests for the shared async utilities.

Test Coverage:
- Coalescer: last value wins, flush, cancel, callback failures are contained
- WatchChannel: latest value first, drop-oldest on slow receivers
- TaskRegistry: per-context cancellation
"""

import asyncio

import pytest

from webtty.comms_core.utils.coalesce import Coalescer
from webtty.comms_core.utils.task_registry import task_registry
from webtty.comms_core.utils.watch import WatchChannel


@pytest.mark.asyncio
class TestCoalescer:

    async def test_burst_collapses_to_last_value(self):
        fired = []
        coalescer = Coalescer(0.01, fired.append)

        for value in (1, 2, 3):
            coalescer.push(value)
        await asyncio.sleep(0.05)

        assert fired == [3]
        assert coalescer.pending is None

    async def test_flush_delivers_immediately(self):
        fired = []
        coalescer = Coalescer(10, fired.append)

        coalescer.push("a")
        coalescer.flush()

        assert fired == ["a"]

    async def test_cancel_drops_pending_value(self):
        fired = []
        coalescer = Coalescer(0.01, fired.append)

        coalescer.push("a")
        coalescer.cancel()
        await asyncio.sleep(0.05)

        assert fired == []

    async def test_callback_failure_does_not_break_later_pushes(self):
        fired = []

        def callback(value):
            if value == "bad":
                raise ValueError(value)
            fired.append(value)

        coalescer = Coalescer(0.01, callback)
        coalescer.push("bad")
        await asyncio.sleep(0.05)
        coalescer.push("good")
        await asyncio.sleep(0.05)

        assert fired == ["good"]


@pytest.mark.asyncio
class TestWatchChannel:

    async def test_first_receive_is_current_value(self):
        channel = WatchChannel("initial")
        receiver = channel.subscribe()

        assert await receiver.recv() == "initial"

    async def test_receives_later_values_in_order(self):
        channel = WatchChannel(0)
        receiver = channel.subscribe(max_size=4)
        await receiver.recv()

        channel.send(1)
        channel.send(2)

        assert await receiver.recv() == 1
        assert await receiver.recv() == 2
        assert channel.get_latest() == 2

    async def test_slow_receiver_loses_oldest(self):
        channel = WatchChannel(0)
        receiver = channel.subscribe(max_size=1)
        await receiver.recv()

        channel.send(1)
        channel.send(2)

        assert await receiver.recv() == 2

    async def test_close_unsubscribes(self):
        channel = WatchChannel(0)
        receiver = channel.subscribe()
        assert channel.receiver_count == 1

        receiver.close()
        receiver.close()

        assert channel.receiver_count == 0


@pytest.mark.asyncio
class TestTaskRegistry:

    async def test_cancels_only_the_given_context(self):
        a = task_registry.create_task(asyncio.sleep(3600), name="a", context="ctx-a")
        b = task_registry.create_task(asyncio.sleep(3600), name="b", context="ctx-b")

        cancelled = await task_registry.cancel_context_tasks("ctx-a")

        assert cancelled == 1
        assert a.cancelled()
        assert not b.done()
        await task_registry.cancel_context_tasks("ctx-b")

    async def test_exclude_spares_the_caller(self):
        async def cancel_siblings():
            return await task_registry.cancel_context_tasks("ctx-c", exclude=asyncio.current_task())

        sibling = task_registry.create_task(asyncio.sleep(3600), name="sibling", context="ctx-c")
        caller = task_registry.create_task(cancel_siblings(), name="caller", context="ctx-c")

        assert await caller == 1
        assert sibling.cancelled()

    async def test_finished_tasks_are_forgotten(self):
        task = task_registry.create_task(asyncio.sleep(0), name="quick", context="ctx-d")
        await task
        await asyncio.sleep(0)

        assert task_registry.get_context_task_count("ctx-d") == 0
        assert "ctx-d" not in task_registry.get_all_contexts()
