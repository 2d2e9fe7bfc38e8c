# File: src/lotsync/infrastructure/messaging.py
"""
Change Feed Infrastructure

The change feed is the store-level watch primitive: repositories publish a
ChangeEvent after every successful write, and the propagation service
listens to decide which snapshots to refresh.

Implementations:
- InMemoryChangeFeed: intra-process fan-out, used by tests and the demo
- RedisChangeFeed: Redis Pub/Sub, for engines running in several processes

Listeners are plain callables invoked on the event loop thread. They must
not block; the propagation service only schedules work from them.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional
import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from ..domain.exceptions import TransientError
from ..domain.models import ChangeEvent


ChangeListener = Callable[[ChangeEvent], None]
Unsubscribe = Callable[[], None]


class ChangeFeed(ABC):
    """Abstract base class for change feeds"""

    def __init__(self):
        self._listeners: Dict[int, ChangeListener] = {}
        self._next_token = 0
        self._logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> None:
        """Announce a write"""
        pass

    def subscribe(self, listener: ChangeListener) -> Unsubscribe:
        """Register a listener; the returned callable removes it (idempotent)"""
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = listener
        self._logger.debug(f"Listener {token} attached ({len(self._listeners)} active)")
        if len(self._listeners) == 1:
            self._on_first_listener()

        def unsubscribe() -> None:
            if self._listeners.pop(token, None) is None:
                return
            self._logger.debug(f"Listener {token} detached ({len(self._listeners)} active)")
            if not self._listeners:
                self._on_last_listener()

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def listening(self) -> bool:
        """Whether events published now reach this process's listeners"""
        return True

    async def ready(self) -> None:
        """Wait until the feed is listening"""
        return None

    def _dispatch(self, event: ChangeEvent) -> None:
        for token, listener in list(self._listeners.items()):
            try:
                listener(event)
            except Exception as e:
                self._logger.error(f"Change listener {token} failed on {event.collection.value}/{event.lot_id}: {e}")

    def _on_first_listener(self) -> None:
        pass

    def _on_last_listener(self) -> None:
        pass

    async def close(self) -> None:
        self._listeners.clear()


class InMemoryChangeFeed(ChangeFeed):
    """Delivers events synchronously to listeners in this process"""

    def __init__(self):
        super().__init__()
        self.published: List[ChangeEvent] = []

    async def publish(self, event: ChangeEvent) -> None:
        self.published.append(event)
        self._logger.debug(f"Change on {event.collection.value} for lot {event.lot_id}")
        self._dispatch(event)


class RedisChangeFeed(ChangeFeed):
    """
    Redis Pub/Sub change feed.

    Events published by any process reach the listeners of every process,
    including the publisher's own (delivery goes through the channel, never
    short-circuited locally, so each event is seen exactly once per process).

    A lost connection does not end the listener: it resubscribes with
    exponential backoff (base_delay * 2 ** failures, capped at max_delay)
    and then dispatches a resync event, since anything published while it
    was away never arrives.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", channel: str = "lotsync:changes",
                 client: Optional[aioredis.Redis] = None, *,
                 reconnect_base_delay: float = 0.1, reconnect_max_delay: float = 5.0):
        super().__init__()
        self.channel = channel
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay
        self._client = client or aioredis.Redis.from_url(redis_url)
        self._listener_task: Optional[asyncio.Task] = None
        self._subscribed = asyncio.Event()

    async def publish(self, event: ChangeEvent) -> None:
        try:
            receivers = await self._client.publish(self.channel, event.to_json())
            self._logger.debug(f"Published change for lot {event.lot_id} to {receivers} receiver(s)")
        except (RedisConnectionError, RedisTimeoutError) as e:
            self._logger.warning(f"Redis unavailable while publishing change for lot {event.lot_id}: {e}")
            raise TransientError(f"Change feed unavailable: {e}", cause=e)

    async def ready(self) -> None:
        await self._subscribed.wait()

    @property
    def listening(self) -> bool:
        return self._subscribed.is_set()

    def _on_first_listener(self) -> None:
        if self._listener_task is None or self._listener_task.done():
            self._listener_task = asyncio.get_running_loop().create_task(self._listen())

    def _on_last_listener(self) -> None:
        if self._listener_task is not None:
            self._listener_task.cancel()
            self._listener_task = None
        self._subscribed.clear()

    async def _listen(self) -> None:
        failures = 0
        reconnecting = False
        while True:
            pubsub = self._client.pubsub(ignore_subscribe_messages=True)
            try:
                await pubsub.subscribe(self.channel)
                self._subscribed.set()
                self._logger.info(f"Listening on Redis channel {self.channel}")
                if reconnecting:
                    self._dispatch(ChangeEvent.resync_all())
                failures = 0
                async for message in pubsub.listen():
                    self._handle(message)
                self._logger.warning(f"Subscription to {self.channel} ended")
            except (RedisConnectionError, RedisTimeoutError) as e:
                self._logger.warning(f"Lost Redis channel {self.channel}: {e}")
            finally:
                self._subscribed.clear()
                await self._release(pubsub)

            reconnecting = True
            delay = min(self.reconnect_base_delay * (2 ** failures), self.reconnect_max_delay)
            failures += 1
            self._logger.info(f"Resubscribing to {self.channel} in {delay:.3f}s (attempt {failures})")
            await asyncio.sleep(delay)

    def _handle(self, message: dict) -> None:
        if message.get('type') != 'message':
            return
        try:
            event = ChangeEvent.from_json(message['data'])
        except (ValueError, KeyError) as e:
            self._logger.error(f"Discarding malformed change message: {e}")
            return
        self._dispatch(event)

    async def _release(self, pubsub) -> None:
        try:
            await pubsub.unsubscribe(self.channel)
        except (RedisConnectionError, RedisTimeoutError) as e:
            self._logger.debug(f"Ignoring error while releasing subscription: {e}")
        finally:
            await pubsub.aclose()

    async def close(self) -> None:
        await super().close()
        task, self._listener_task = self._listener_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._subscribed.clear()
        await self._client.aclose()
        self._logger.info("Redis change feed closed")
