from typing import Any, Dict, Iterable, List, Optional
import asyncio
import logging

logger = logging.getLogger(__name__)

STATUS_TOPIC = "status"
BATCH_COMPLETED_TOPIC = "batch_completed"
JOB_COMPLETED_TOPIC = "job_completed"

_CLOSED = object()


class Event:
    __slots__ = ("topic", "payload")

    def __init__(self, topic: str, payload: Dict[str, Any]):
        self.topic = topic
        self.payload = payload

    def to_message(self) -> Dict[str, Any]:
        return {"type": self.topic, **self.payload}

    def __repr__(self):
        return f"Event(topic={self.topic!r})"


class Subscription:
    """Bounded buffer of events for one observer.

    When the buffer is full the oldest event is discarded to make room, so a
    slow observer never blocks the producer.
    """

    def __init__(self, publisher: "EventPublisher", topics: Optional[Iterable[str]], maxsize: int):
        self._publisher = publisher
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.topics = frozenset(topics) if topics else None
        self.dropped = 0
        self.closed = False

    def wants(self, topic: str) -> bool:
        return self.topics is None or topic in self.topics

    def offer(self, event: Event):
        if self.closed:
            return
        if self._queue.full():
            try:
                self._queue.get_nowait()
                self._queue.task_done()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(event)

    async def get(self) -> Event:
        event = await self._queue.get()
        if event is _CLOSED:
            # Put the sentinel back so every later get() also stops
            self._put_sentinel()
            raise StopAsyncIteration
        self._queue.task_done()
        return event

    def pending(self) -> int:
        return self._queue.qsize()

    async def join(self):
        await self._queue.join()

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._publisher.unsubscribe(self)
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        # Wake a consumer blocked in get()
        self._put_sentinel()

    def _put_sentinel(self):
        # The sentinel is not an event: it never holds up join()
        self._queue.put_nowait(_CLOSED)
        self._queue.task_done()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        return await self.get()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()


class EventPublisher:
    """Broadcast of pipeline events to any number of observers.

    ``publish`` is synchronous and never waits on observers; each
    subscription buffers up to ``buffer_size`` events. Events of one topic
    reach every observer in the order they were published.
    """

    def __init__(self, buffer_size: int = 100):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.buffer_size = buffer_size
        self._subscriptions: List[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, topics: Optional[Iterable[str]] = None, maxsize: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, topics, maxsize or self.buffer_size)
        self._subscriptions.append(subscription)
        logger.debug(f"Observer subscribed ({self.subscriber_count} active)")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            logger.debug(f"Observer unsubscribed ({self.subscriber_count} active)")

    def publish(self, topic: str, payload: Dict[str, Any]):
        event = Event(topic, payload)
        for subscription in list(self._subscriptions):
            if subscription.wants(topic):
                subscription.offer(event)

    async def drain(self, timeout: float) -> bool:
        """Wait until every observer has consumed its buffered events.

        Returns ``False`` if the timeout expired first.
        """
        subscriptions = [s for s in self._subscriptions if s.pending()]
        if not subscriptions:
            return True
        try:
            await asyncio.wait_for(
                asyncio.gather(*(s.join() for s in subscriptions)),
                timeout=timeout
            )
            return True
        except asyncio.TimeoutError:
            logger.debug(f"Event drain timed out after {timeout}s")
            return False
