"""One-way notification channel for conversation observers.

Publishing never blocks: each subscriber owns a bounded buffer that drops its
oldest events when full, so a slow or absent observer cannot stall the
conversation.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, List, Optional

import httpx

from handoff_orchestrator.constants import EVENT_BUFFER_SIZE, OBSERVER_DRAIN_SECONDS, WEBHOOK_TIMEOUT_SECONDS
from handoff_orchestrator.models.events import ConversationEvent

logger = logging.getLogger(__name__)


class Subscription:
    """Drop-oldest buffer of events for one observer."""

    def __init__(self, channel: "EventChannel", maxsize: int = EVENT_BUFFER_SIZE):
        self._channel = channel
        self._buffer: Deque[ConversationEvent] = deque(maxlen=maxsize)
        self._ready = asyncio.Event()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return len(self._buffer)

    def _push(self, event: ConversationEvent) -> None:
        if self._closed:
            return
        if len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1
        self._buffer.append(event)
        self._ready.set()

    def get_nowait(self) -> Optional[ConversationEvent]:
        if self._buffer:
            return self._buffer.popleft()
        return None

    async def get(self) -> Optional[ConversationEvent]:
        """Wait for the next event; None once closed and drained."""
        while not self._buffer:
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self._buffer.popleft()

    def close(self) -> None:
        self._closed = True
        self._ready.set()
        self._channel._unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ConversationEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventChannel:
    """Fan-out of conversation events to any number of subscriptions."""

    def __init__(self, buffer_size: int = EVENT_BUFFER_SIZE):
        self.buffer_size = buffer_size
        self._subscriptions: List[Subscription] = []

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, maxsize or self.buffer_size)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: ConversationEvent) -> None:
        for subscription in list(self._subscriptions):
            subscription._push(event)

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()


class Observer:
    """Consumes a subscription on a background task until it is closed."""

    def __init__(self, channel: EventChannel):
        self.subscription = channel.subscribe()
        self._task: Optional["asyncio.Task[None]"] = None

    def start(self) -> "asyncio.Task[None]":
        if self._task is None:
            self._task = asyncio.create_task(self._consume())
        return self._task

    async def _consume(self) -> None:
        async for event in self.subscription:
            try:
                await self.handle(event)
            except Exception as e:
                logger.warning(f"{type(self).__name__} failed to handle {event.type.value}: {e}")

    async def handle(self, event: ConversationEvent) -> None:
        raise NotImplementedError

    async def stop(self, timeout: Optional[float] = OBSERVER_DRAIN_SECONDS) -> None:
        """Close the subscription and let the observer drain for up to ``timeout`` seconds.

        Events still buffered when the window closes are dropped and counted in
        ``subscription.dropped``.
        """
        self.subscription.close()
        if self._task is not None:
            done, _ = await asyncio.wait({self._task}, timeout=timeout)
            if not done:
                abandoned = self.subscription.pending() + 1
                self.subscription.dropped += abandoned
                logger.warning(
                    f"{type(self).__name__} did not drain within {timeout}s, dropping {abandoned} event(s)"
                )
                self._task.cancel()
                await asyncio.wait({self._task})
            self._task = None
        await self.aclose()

    async def aclose(self) -> None:
        pass


class LoggingObserver(Observer):
    """Logs every conversation event."""

    def __init__(self, channel: EventChannel, level: int = logging.INFO):
        super().__init__(channel)
        self.level = level

    async def handle(self, event: ConversationEvent) -> None:
        details = ", ".join(f"{k}={v}" for k, v in event.payload.items() if k != "content")
        logger.log(self.level, f"[{event.conversation_id}] {event.type.value} {details}".rstrip())


class WebhookObserver(Observer):
    """POSTs each event as JSON to ``url``. Delivery failures are logged and dropped."""

    def __init__(
        self,
        channel: EventChannel,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
    ):
        super().__init__(channel)
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.delivered = 0
        self.failed = 0

    async def handle(self, event: ConversationEvent) -> None:
        try:
            r = await self._client.post(self.url, json=event.model_dump(mode="json"))
            r.raise_for_status()
            self.delivered += 1
        except httpx.HTTPError as e:
            self.failed += 1
            logger.warning(f"Webhook delivery to {self.url} failed for {event.type.value}: {e}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
