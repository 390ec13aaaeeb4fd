"""Event Broadcaster - fan-out of notifications to live subscribers.

Every notification from the agent, plus the relay's own status changes,
flows through here. Each subscriber owns a bounded queue; publishing never
awaits, so a slow or stalled subscriber can only lose its own events and
never delays the relay or other subscribers.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections.abc import AsyncIterator
from typing import Any

from .protocol.frames import Notification

logger = logging.getLogger(__name__)


class Subscription:
    """A single subscriber's queue of notifications."""

    def __init__(self, subscription_id: int, max_queue_size: int):
        self.subscription_id = subscription_id
        self._queue: asyncio.Queue[Notification | None] = asyncio.Queue(maxsize=max_queue_size)
        self._closed = False
        self.delivered = 0
        self.dropped = 0

    @property
    def is_closed(self) -> bool:
        return self._closed

    def deliver(self, notification: Notification) -> bool:
        """Queue a notification without waiting.

        Returns:
            False if the subscription is closed or its queue is full
        """
        if self._closed:
            return False
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Subscriber {self.subscription_id} is lagging, notification dropped")
            return False
        self.delivered += 1
        return True

    async def get(self, timeout: float | None = None) -> Notification | None:
        """Wait for the next notification.

        Returns:
            The notification, or None on close or timeout
        """
        if self._closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                return await self._queue.get()
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            return None

    async def __aiter__(self) -> AsyncIterator[Notification]:
        while True:
            notification = await self.get()
            if notification is None:
                break
            yield notification

    def close(self) -> None:
        """Close the subscription and wake any waiting reader."""
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(None)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "delivered": self.delivered,
            "dropped": self.dropped,
            "queued": self._queue.qsize(),
        }


class EventBroadcaster:
    """Publishes notifications to every open subscription."""

    def __init__(self, max_queue_size: int = 1000):
        self._max_queue_size = max_queue_size
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self.published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, notification: Notification) -> int:
        """Deliver a notification to all subscribers.

        Never blocks. Returns the number of subscribers that received it.
        """
        self.published += 1
        delivered = 0
        # Copy so subscribers can unsubscribe while we iterate
        for subscription in list(self._subscriptions.values()):
            if subscription.deliver(notification):
                delivered += 1
        return delivered

    def subscribe(self) -> Subscription:
        """Open a new subscription. Callers must `unsubscribe` when done."""
        subscription = Subscription(next(self._ids), self._max_queue_size)
        self._subscriptions[subscription.subscription_id] = subscription
        logger.debug(f"Subscriber {subscription.subscription_id} attached")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        if self._subscriptions.pop(subscription.subscription_id, None) is not None:
            logger.debug(f"Subscriber {subscription.subscription_id} detached")

    async def stream(self) -> AsyncIterator[Notification]:
        """Async iterator over all notifications published from now on.

        Usage:
            async for notification in broadcaster.stream():
                yield f"data: {json.dumps(notification.to_event())}\\n\\n"
        """
        subscription = self.subscribe()
        try:
            async for notification in subscription:
                yield notification
        finally:
            self.unsubscribe(subscription)

    def close(self) -> None:
        """Close all subscriptions (relay shutdown)."""
        for subscription in list(self._subscriptions.values()):
            self.unsubscribe(subscription)
