"""
Log broadcaster unit tests

History replay, live fan-out without duplicates, drop policy and close.
"""

import asyncio
from typing import List

import pytest

from fleet_agent.application.services.log_broadcaster import LogBroadcaster, LogChannel, Subscription
from fleet_agent.domain.entities import TaskState


async def collect(subscription: Subscription) -> List[str]:
    return [line async for line in subscription]


@pytest.fixture
def history():
    return TaskState(id="job-1")


class TestLogChannel:

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_history_then_live_without_duplicates(self, history):
        channel = LogChannel("job-1", history)
        channel.start()
        for line in ("one", "two", "three"):
            channel.publish(line)

        # The fan-out task has not delivered yet; these lines are in the snapshot.
        subscription = channel.subscribe()
        channel.publish("four")
        channel.publish("five")
        channel.close()

        lines = await asyncio.wait_for(collect(subscription), timeout=1)

        assert lines == ["one", "two", "three", "four", "five"]
        assert history.log_history() == lines

    @pytest.mark.asyncio
    async def test_subscriber_attached_after_delivery(self, history):
        channel = LogChannel("job-1", history)
        channel.start()
        channel.publish("one")
        await asyncio.sleep(0.01)

        subscription = channel.subscribe()
        channel.publish("two")
        channel.close()

        assert await asyncio.wait_for(collect(subscription), timeout=1) == ["one", "two"]

    @pytest.mark.asyncio
    async def test_two_observers_see_the_same_lines(self, history):
        channel = LogChannel("job-1", history)
        channel.start()
        first = channel.subscribe()
        second = channel.subscribe()

        for i in range(5):
            channel.publish(f"line {i}")
        channel.close()

        expected = [f"line {i}" for i in range(5)]
        assert await asyncio.wait_for(collect(first), timeout=1) == expected
        assert await asyncio.wait_for(collect(second), timeout=1) == expected

    @pytest.mark.asyncio
    async def test_full_queue_drops_live_lines_but_history_keeps_them(self, history):
        channel = LogChannel("job-1", history, queue_size=2)
        channel.start()
        subscription = channel.subscribe()

        # No await between publishes: the fan-out task cannot drain the queue.
        for i in range(5):
            channel.publish(f"line {i}")
        channel.close()

        live = await asyncio.wait_for(collect(subscription), timeout=1)

        assert live == ["line 0", "line 1"]
        assert channel.dropped_lines == 3
        assert len(history.log_history()) == 5

    @pytest.mark.asyncio
    async def test_slow_subscriber_is_dropped(self, history):
        channel = LogChannel("job-1", history, subscriber_buffer=2)
        channel.start()
        slow = channel.subscribe()

        for i in range(5):
            channel.publish(f"line {i}")
        await asyncio.sleep(0.01)

        assert slow.dropped
        assert channel.subscriber_count == 0
        assert await asyncio.wait_for(collect(slow), timeout=1) == ["line 0", "line 1"]
        channel.close()
        await channel.wait_closed()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, history):
        channel = LogChannel("job-1", history)
        channel.start()
        subscription = channel.subscribe()

        channel.close()
        channel.close()
        await asyncio.wait_for(channel.wait_closed(), timeout=1)

        assert channel.closed
        assert await subscription.get() is None
        assert await subscription.get() is None

    @pytest.mark.asyncio
    async def test_subscribe_after_close_replays_history_and_ends(self, history):
        channel = LogChannel("job-1", history)
        channel.start()
        channel.publish("only line")
        channel.close()
        await channel.wait_closed()

        subscription = channel.subscribe()

        assert await asyncio.wait_for(collect(subscription), timeout=1) == ["only line"]

    @pytest.mark.asyncio
    async def test_close_without_fanout_ends_subscriptions(self, history):
        channel = LogChannel("job-1", history)
        subscription = channel.subscribe()

        channel.close()

        assert await asyncio.wait_for(collect(subscription), timeout=1) == []

    @pytest.mark.asyncio
    async def test_unsubscribed_observer_stops_receiving(self, history):
        channel = LogChannel("job-1", history)
        channel.start()
        subscription = channel.subscribe()
        subscription.close()

        channel.publish("after close")
        channel.close()
        await channel.wait_closed()

        assert await subscription.get() is None


class TestLogBroadcaster:

    @pytest.mark.asyncio
    async def test_open_get_and_discard(self, history):
        broadcaster = LogBroadcaster(queue_size=10)
        channel = broadcaster.open("job-1", history)

        assert broadcaster.get("job-1") is channel
        assert len(broadcaster) == 1

        broadcaster.discard(["job-1", "unknown"])

        assert broadcaster.get("job-1") is None
        assert channel.closed
        await asyncio.wait_for(channel.wait_closed(), timeout=1)

    @pytest.mark.asyncio
    async def test_close_all(self):
        broadcaster = LogBroadcaster()
        channels = [broadcaster.open(f"job-{i}", TaskState(id=f"job-{i}")) for i in range(3)]

        broadcaster.close_all()

        assert all(channel.closed for channel in channels)
        await asyncio.wait_for(asyncio.gather(*(channel.wait_closed() for channel in channels)), timeout=1)
