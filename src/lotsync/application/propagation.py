# File: src/lotsync/application/propagation.py
"""
Change Propagation Service

Pushes full snapshots to observers whenever the watched collection changes.

Watch keys:
- one lot           -> snapshot is the ParkingLot (None once deleted)
- all lots          -> snapshot is the list of ParkingLot
- one lot's spaces  -> snapshot is the list of ParkingSpace ordered by number

Structure:
- one _Channel per watch key; it opens its change-feed listener with the
  first subscription and closes it with the last
- a channel runs at most one snapshot fetch at a time; changes arriving
  during a fetch schedule exactly one follow-up fetch, so the last change is
  always covered and fetches complete in the order they started
- each fetch is stamped with an increasing sequence number
- no fetch starts before the change feed listens, and a feed resync
  (announcements possibly lost) refreshes every channel
- each Subscription owns a single pending slot and a delivery task: a slow
  observer only ever receives the latest snapshot, and a snapshot older than
  one already delivered is dropped
- every observer receives its own copy of the list and of its records

Delivery is at-least-once: an observer may see the same snapshot twice
(for instance when another observer joins the same key).
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
import asyncio
import copy
import inspect
import logging

from ..domain.exceptions import LotSyncError, TransientError
from ..domain.models import ChangeCollection, ChangeEvent
from ..infrastructure.messaging import ChangeFeed
from ..infrastructure.repositories import LotRepository, SpaceRepository
from .retry import retry_transient, with_timeout


Observer = Callable[[Any], Union[None, Awaitable[None]]]
ChannelKey = Tuple[str, Optional[str]]

LOT = "lot"
ALL_LOTS = "lots"
SPACES = "spaces"


def private_copy(snapshot: Any) -> Any:
    """Give each observer its own list and records to mutate"""
    if isinstance(snapshot, list):
        return [copy.copy(item) for item in snapshot]
    return copy.copy(snapshot)


class Subscription:
    """
    Handle for one observer. Calling it (or ``cancel()``) unsubscribes.

    Cancelling is idempotent. Once it returns, no new delivery starts; a
    delivery already running is allowed to finish.
    """

    def __init__(self, channel: '_Channel', observer: Observer):
        self._channel = channel
        self._observer = observer
        self._pending: Optional[Tuple[int, Any]] = None
        self._delivered_sequence = -1
        self._delivering = False
        self._closed = False
        self._wakeup = asyncio.Event()
        self._logger = logging.getLogger(self.__class__.__name__)
        self._task = asyncio.get_running_loop().create_task(self._deliver())

    @property
    def key(self) -> ChannelKey:
        return self._channel.key

    @property
    def active(self) -> bool:
        return not self._closed

    @property
    def idle(self) -> bool:
        return self._closed or (self._pending is None and not self._delivering)

    def offer(self, sequence: int, snapshot: Any) -> None:
        """Replace the pending snapshot if ``sequence`` is newer"""
        if self._closed or sequence <= self._delivered_sequence:
            return
        if self._pending is not None and self._pending[0] >= sequence:
            return
        self._pending = (sequence, snapshot)
        self._wakeup.set()

    async def _deliver(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            if self._closed:
                return
            if self._pending is None:
                continue
            sequence, snapshot = self._pending
            self._pending = None
            self._delivered_sequence = sequence
            self._delivering = True
            try:
                result = self._observer(private_copy(snapshot))
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._logger.error(f"Observer on {self.key} failed for snapshot {sequence}: {e!r}")
            finally:
                self._delivering = False

    def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pending = None
        self._wakeup.set()
        self._channel.detach(self)

    __call__ = cancel


class _Channel:
    """Observers of one watch key plus the machinery refreshing their snapshot"""

    def __init__(self, service: 'ChangePropagationService', key: ChannelKey,
                 fetch: Callable[[], Awaitable[Any]], accepts: Callable[[ChangeEvent], bool]):
        self.service = service
        self.key = key
        self.subscriptions: List[Subscription] = []
        self._fetch = fetch
        self._accepts = accepts
        self._sequence = 0
        self._dirty = False
        self._refresh_task: Optional[asyncio.Task] = None
        self._logger = logging.getLogger(self.__class__.__name__)
        self._unwatch = service.feed.subscribe(self._on_change)

    @property
    def refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def attach(self, subscription: Subscription) -> None:
        self.subscriptions.append(subscription)
        # Initial snapshot for the newcomer
        self.request_refresh()

    def detach(self, subscription: Subscription) -> None:
        if subscription in self.subscriptions:
            self.subscriptions.remove(subscription)
        if not self.subscriptions:
            self.close()

    def close(self) -> None:
        self._unwatch()
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = None
        self.service._forget(self)

    def _on_change(self, event: ChangeEvent) -> None:
        if event.resync or self._accepts(event):
            self.request_refresh()

    def request_refresh(self) -> None:
        if self.refreshing:
            self._dirty = True
            return
        self._refresh_task = asyncio.get_running_loop().create_task(self._refresh())

    async def _wait_for_feed(self) -> None:
        """A fetch must not start before later changes can reach this channel"""
        try:
            await with_timeout(self.service.feed.ready(), self.service.timeout, f"change feed for {self.key}")
        except TransientError as e:
            self._logger.warning(f"Fetching {self.key} before the change feed listens: {e}")

    async def _refresh(self) -> None:
        if not self.service.feed.listening:
            await self._wait_for_feed()
        while self.subscriptions:
            self._dirty = False
            self._sequence += 1
            sequence = self._sequence
            try:
                snapshot = await self.service._fetch_snapshot(self._fetch, self.key)
            except LotSyncError as e:
                self._logger.error(f"Could not refresh {self.key}: {e!r}")
            else:
                for subscription in list(self.subscriptions):
                    subscription.offer(sequence, snapshot)
            if not self._dirty:
                return


class ChangePropagationService:
    """Registry of observers per lot, per lot's spaces, and for all lots"""

    def __init__(
        self,
        lots: LotRepository,
        spaces: SpaceRepository,
        feed: ChangeFeed,
        *,
        timeout: Optional[float] = 10.0,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.05,
    ):
        self.lots = lots
        self.spaces = spaces
        self.feed = feed
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self._channels: Dict[ChannelKey, _Channel] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    # ========================================================================
    # SUBSCRIPTIONS
    # ========================================================================
    # The subscribe methods are synchronous but must run on the event loop
    # thread: they start delivery tasks on the running loop.

    def subscribe_to_lot(self, lot_id: str, observer: Observer) -> Subscription:
        """Observer receives the lot (or None once it is deleted) after every change to it"""
        return self._subscribe(
            (LOT, lot_id),
            lambda: self.lots.get(lot_id),
            lambda event: event.collection is ChangeCollection.LOTS and event.lot_id == lot_id,
            observer,
        )

    def subscribe_to_all_lots(self, observer: Observer) -> Subscription:
        """Observer receives the list of all lots after any lot changes"""
        return self._subscribe(
            (ALL_LOTS, None),
            self.lots.get_all,
            lambda event: event.collection is ChangeCollection.LOTS,
            observer,
        )

    def subscribe_to_spaces(self, lot_id: str, observer: Observer) -> Subscription:
        """Observer receives the lot's spaces, ordered by number, after any of them changes"""
        return self._subscribe(
            (SPACES, lot_id),
            lambda: self.spaces.find_by_lot(lot_id),
            lambda event: event.collection is ChangeCollection.SPACES and event.lot_id == lot_id,
            observer,
        )

    def _subscribe(self, key: ChannelKey, fetch: Callable[[], Awaitable[Any]],
                   accepts: Callable[[ChangeEvent], bool], observer: Observer) -> Subscription:
        if not callable(observer):
            raise TypeError("observer must be callable")
        channel = self._channels.get(key)
        if channel is None:
            channel = self._channels[key] = _Channel(self, key, fetch, accepts)
            self._logger.debug(f"Opened watch on {key}")
        subscription = Subscription(channel, observer)
        channel.attach(subscription)
        self._logger.debug(f"Observer added on {key} ({len(channel.subscriptions)} total)")
        return subscription

    def _forget(self, channel: _Channel) -> None:
        if self._channels.get(channel.key) is channel:
            del self._channels[channel.key]
            self._logger.debug(f"Closed watch on {channel.key}")

    async def _fetch_snapshot(self, fetch: Callable[[], Awaitable[Any]], key: ChannelKey) -> Any:
        return await retry_transient(
            lambda: with_timeout(fetch(), self.timeout, f"snapshot of {key}"),
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            description=f"snapshot of {key}",
            logger=self._logger,
        )

    # ========================================================================
    # INTROSPECTION AND SHUTDOWN
    # ========================================================================

    def observer_count(self, key: Optional[ChannelKey] = None) -> int:
        if key is not None:
            channel = self._channels.get(key)
            return len(channel.subscriptions) if channel else 0
        return sum(len(channel.subscriptions) for channel in self._channels.values())

    @property
    def watched_keys(self) -> List[ChannelKey]:
        return list(self._channels)

    async def drain(self, include_observers: bool = True) -> None:
        """
        Wait until no snapshot fetch is running and, unless
        ``include_observers`` is false, every observer is idle.
        """
        while True:
            channels = list(self._channels.values())
            refreshing = [c._refresh_task for c in channels if c.refreshing]
            if refreshing:
                await asyncio.gather(*refreshing, return_exceptions=True)
                continue
            if not include_observers or all(s.idle for c in channels for s in c.subscriptions):
                return
            await asyncio.sleep(0)

    def close(self) -> None:
        """Cancel every subscription and detach from the change feed"""
        for channel in list(self._channels.values()):
            for subscription in list(channel.subscriptions):
                subscription.cancel()
        self._logger.info("Change propagation stopped")
