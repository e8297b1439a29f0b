"""Event bus: the only coupling point between the core and presentation.

Every subscriber owns an asyncio.Queue; publish() fans a notification
out to all of them without blocking the publisher, so a slow view can
never stall a streaming turn. No acknowledgment, at-least-once delivery.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from echo_chat.notifications.events import Notification

logger = logging.getLogger(__name__)


class Subscription:
    """A subscriber's view of the bus: async-iterable, closable."""

    def __init__(self, bus: EventBus, conversation_id: str | None) -> None:
        self._bus = bus
        self.conversation_id = conversation_id
        self.queue: asyncio.Queue[Notification] = asyncio.Queue()
        self.closed = False

    def wants(self, notification: Notification) -> bool:
        return self.conversation_id is None or notification.conversation_id == self.conversation_id

    async def get(self) -> Notification:
        return await self.queue.get()

    def get_nowait(self) -> Notification:
        return self.queue.get_nowait()

    def drain(self) -> list[Notification]:
        """Everything queued so far, without waiting."""
        items: list[Notification] = []
        while not self.queue.empty():
            items.append(self.queue.get_nowait())
        return items

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[Notification]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Notification]:
        while not self.closed:
            yield await self.queue.get()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, conversation_id: str | None = None) -> Subscription:
        """Subscribe to every notification, or only one conversation's."""
        subscription = Subscription(self, conversation_id)
        self._subscriptions.append(subscription)
        logger.debug("Bus subscription added (conversation=%s)", conversation_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            logger.debug("Bus subscription removed (conversation=%s)", subscription.conversation_id)

    def publish(self, notification: Notification) -> None:
        """Fan out; never blocks, never raises into the publisher."""
        for subscription in list(self._subscriptions):
            if subscription.wants(notification):
                subscription.queue.put_nowait(notification)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
