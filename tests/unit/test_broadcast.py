"""Unit tests for the event broadcaster."""

from __future__ import annotations

import asyncio

import pytest

from browser_relay.broadcast import EventBroadcaster
from browser_relay.protocol import Notification


def _log(n: int) -> Notification:
    return Notification.log("info", [str(n)])


class TestEventBroadcaster:
    @pytest.mark.asyncio
    async def test_fan_out_to_all_subscribers(self) -> None:
        broadcaster = EventBroadcaster()
        first = broadcaster.subscribe()
        second = broadcaster.subscribe()

        assert broadcaster.publish(_log(1)) == 2
        assert (await first.get(timeout=1)).payload["args"] == ["1"]
        assert (await second.get(timeout=1)).payload["args"] == ["1"]

    @pytest.mark.asyncio
    async def test_order_preserved(self) -> None:
        broadcaster = EventBroadcaster()
        subscription = broadcaster.subscribe()
        for i in range(5):
            broadcaster.publish(_log(i))

        received = [(await subscription.get(timeout=1)).payload["args"][0] for _ in range(5)]
        assert received == ["0", "1", "2", "3", "4"]

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_without_blocking_others(self) -> None:
        broadcaster = EventBroadcaster(max_queue_size=2)
        slow = broadcaster.subscribe()
        fast = broadcaster.subscribe()

        for i in range(3):
            broadcaster.publish(_log(i))
            await fast.get(timeout=1)

        assert slow.dropped == 1
        assert slow.delivered == 2
        assert fast.dropped == 0

    @pytest.mark.asyncio
    async def test_get_times_out(self) -> None:
        broadcaster = EventBroadcaster()
        subscription = broadcaster.subscribe()
        assert await subscription.get(timeout=0.01) is None
        assert not subscription.is_closed

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self) -> None:
        broadcaster = EventBroadcaster()
        subscription = broadcaster.subscribe()
        broadcaster.unsubscribe(subscription)

        assert broadcaster.subscriber_count == 0
        assert broadcaster.publish(_log(1)) == 0
        assert subscription.is_closed

    @pytest.mark.asyncio
    async def test_stream_ends_on_close(self) -> None:
        broadcaster = EventBroadcaster()
        received: list[Notification] = []

        async def consume() -> None:
            async for notification in broadcaster.stream():
                received.append(notification)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        broadcaster.publish(_log(1))
        broadcaster.publish(_log(2))
        broadcaster.close()

        await asyncio.wait_for(task, timeout=1)
        assert len(received) == 2
        assert broadcaster.subscriber_count == 0
