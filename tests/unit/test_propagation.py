#!/usr/bin/env python3
"""
Unit tests for change propagation to observers
"""

import asyncio
import unittest

from redis.exceptions import ConnectionError as RedisConnectionError

from lotsync.config import EngineConfig
from lotsync.domain.models import SpaceStatus
from lotsync.application.propagation import ALL_LOTS, LOT, SPACES
from lotsync.infrastructure.factories import EngineFactory
from lotsync.infrastructure.messaging import RedisChangeFeed
from lotsync.infrastructure.repositories import InMemoryLotRepository, InMemorySpaceRepository
from tests.support import (
    ADMIN, FakePubSub, FlakyLotRepository, build_engine, fake_redis_client, lot_with_spaces, settle
)


class BlockingObserver:
    """Async observer whose first call waits until released"""

    def __init__(self):
        self.calls = []
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, snapshot):
        self.calls.append(snapshot)
        if len(self.calls) == 1:
            self.entered.set()
            await self.release.wait()


class PropagationTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.engine = await build_engine()
        self.propagation = self.engine.propagation
        self.lot, self.spaces = await lot_with_spaces(self.engine, count=5)

    async def asyncTearDown(self):
        await self.engine.close()

    async def occupy(self, index):
        await self.engine.transitions.set_status(self.spaces[index].id, SpaceStatus.OCCUPIED)


class TestLotObservers(PropagationTestCase):

    async def test_initial_snapshot(self):
        seen = []
        self.propagation.subscribe_to_lot(self.lot.id, seen.append)
        await self.propagation.drain()

        self.assertEqual(len(seen), 1)
        self.assertEqual(seen[0].total_spaces, 5)
        self.assertEqual(seen[0].available_spaces, 5)

    async def test_receives_counter_updates(self):
        seen = []
        self.propagation.subscribe_to_lot(self.lot.id, seen.append)
        await self.propagation.drain()

        await self.occupy(0)
        await self.propagation.drain()

        self.assertEqual(seen[-1].occupied_spaces, 1)
        self.assertEqual(seen[-1].available_spaces, 4)

    async def test_snapshots_arrive_in_order(self):
        seen = []
        self.propagation.subscribe_to_lot(self.lot.id, seen.append)
        for index in range(4):
            await self.occupy(index)
        await self.propagation.drain()

        available = [lot.available_spaces for lot in seen]
        self.assertEqual(available, sorted(available, reverse=True))
        self.assertEqual(available[-1], 1)

    async def test_async_observer(self):
        seen = []

        async def observer(lot):
            await asyncio.sleep(0)
            seen.append(lot)

        self.propagation.subscribe_to_lot(self.lot.id, observer)
        await self.occupy(0)
        await self.propagation.drain()
        self.assertEqual(seen[-1].occupied_spaces, 1)

    async def test_lot_deletion_delivers_none(self):
        seen = []
        self.propagation.subscribe_to_lot(self.lot.id, seen.append)
        await self.propagation.drain()

        await self.engine.administration.delete_lot(self.lot.id, actor=ADMIN)
        await self.propagation.drain()

        self.assertIsNone(seen[-1])

    async def test_changes_to_other_lots_are_ignored(self):
        seen = []
        self.propagation.subscribe_to_lot(self.lot.id, seen.append)
        await self.propagation.drain()

        other, other_spaces = await lot_with_spaces(self.engine, count=2, name="Other")
        await self.engine.transitions.set_status(other_spaces[0].id, SpaceStatus.BOOKED)
        await self.propagation.drain()

        self.assertEqual(len(seen), 1)

    async def test_all_lots_observer(self):
        seen = []
        self.propagation.subscribe_to_all_lots(seen.append)
        await self.propagation.drain()
        self.assertEqual([lot.id for lot in seen[-1]], [self.lot.id])

        other = await self.engine.administration.create_lot("Other", actor=ADMIN)
        await self.propagation.drain()
        self.assertEqual({lot.id for lot in seen[-1]}, {self.lot.id, other.id})


class TestSpaceObservers(PropagationTestCase):

    async def test_space_list_snapshots(self):
        seen = []
        self.propagation.subscribe_to_spaces(self.lot.id, seen.append)
        await self.propagation.drain()
        self.assertEqual([s.number for s in seen[-1]], [1, 2, 3, 4, 5])

        await self.occupy(1)
        await self.engine.transitions.create_space(self.lot.id, 6)
        await self.propagation.drain()

        latest = seen[-1]
        self.assertEqual([s.number for s in latest], [1, 2, 3, 4, 5, 6])
        self.assertIs(latest[1].status, SpaceStatus.OCCUPIED)


class TestSubscriptionLifecycle(PropagationTestCase):

    async def test_unsubscribe_is_idempotent(self):
        seen = []
        subscription = self.propagation.subscribe_to_lot(self.lot.id, seen.append)
        await self.propagation.drain()

        subscription()
        subscription.cancel()
        self.assertFalse(subscription.active)

        await self.occupy(0)
        await self.propagation.drain()
        self.assertEqual(len(seen), 1)

    async def test_watch_closes_with_last_observer(self):
        first = self.propagation.subscribe_to_lot(self.lot.id, lambda lot: None)
        second = self.propagation.subscribe_to_lot(self.lot.id, lambda lot: None)
        spaces = self.propagation.subscribe_to_spaces(self.lot.id, lambda spaces: None)
        self.assertEqual(self.propagation.observer_count((LOT, self.lot.id)), 2)
        self.assertEqual(self.propagation.observer_count((SPACES, self.lot.id)), 1)
        self.assertEqual(self.engine.feed.listener_count, 2)

        first.cancel()
        self.assertEqual(self.engine.feed.listener_count, 2)
        second.cancel()
        spaces.cancel()

        self.assertEqual(self.engine.feed.listener_count, 0)
        self.assertEqual(self.propagation.watched_keys, [])
        self.assertEqual(self.propagation.observer_count(), 0)

    async def test_one_watch_per_key(self):
        self.propagation.subscribe_to_all_lots(lambda lots: None)
        self.propagation.subscribe_to_all_lots(lambda lots: None)
        self.assertEqual(self.propagation.watched_keys, [(ALL_LOTS, None)])
        self.assertEqual(self.engine.feed.listener_count, 1)

    async def test_non_callable_observer(self):
        with self.assertRaises(TypeError):
            self.propagation.subscribe_to_lot(self.lot.id, "not a function")
        self.assertEqual(self.propagation.watched_keys, [])

    async def test_failing_observer_does_not_affect_others(self):
        seen = []

        def broken(lot):
            raise RuntimeError("render failed")

        self.propagation.subscribe_to_lot(self.lot.id, broken)
        self.propagation.subscribe_to_lot(self.lot.id, seen.append)
        with self.assertLogs("Subscription", level="ERROR"):
            await self.occupy(0)
            await self.propagation.drain()

        self.assertEqual(seen[-1].occupied_spaces, 1)

    async def test_observers_get_their_own_copies(self):
        def scribble(spaces):
            spaces[0].number = 99
            spaces.clear()

        seen = []
        self.propagation.subscribe_to_spaces(self.lot.id, scribble)
        self.propagation.subscribe_to_spaces(self.lot.id, seen.append)
        await self.propagation.drain()

        self.assertEqual([s.number for s in seen[-1]], [1, 2, 3, 4, 5])

    async def test_lot_snapshot_edits_stay_local(self):
        seen = []

        def rename(lot):
            lot.name = "Scribbled"

        self.propagation.subscribe_to_lot(self.lot.id, rename)
        self.propagation.subscribe_to_lot(self.lot.id, seen.append)
        await self.propagation.drain()

        self.assertEqual(seen[-1].name, "Main Campus")
        self.assertEqual((await self.engine.lots.get(self.lot.id)).name, "Main Campus")

    async def test_slow_observer_gets_latest_snapshot_only(self):
        observer = BlockingObserver()
        self.propagation.subscribe_to_lot(self.lot.id, observer)
        await observer.entered.wait()

        for index in range(3):
            await self.occupy(index)
            await self.propagation.drain(include_observers=False)

        observer.release.set()
        await self.propagation.drain()

        self.assertEqual(len(observer.calls), 2)
        self.assertEqual(observer.calls[0].occupied_spaces, 0)
        self.assertEqual(observer.calls[1].occupied_spaces, 3)

    async def test_cancel_during_delivery(self):
        observer = BlockingObserver()
        subscription = self.propagation.subscribe_to_lot(self.lot.id, observer)
        await observer.entered.wait()

        subscription.cancel()
        await self.occupy(0)
        observer.release.set()
        await settle()
        await self.propagation.drain()

        self.assertEqual(len(observer.calls), 1)
        self.assertEqual(self.engine.feed.listener_count, 0)


class TestPropagationOverRedis(unittest.IsolatedAsyncioTestCase):

    async def build(self, *pubsubs):
        feed = RedisChangeFeed(client=fake_redis_client(*pubsubs), reconnect_base_delay=0.0)
        self.engine = await EngineFactory.build(
            EngineConfig(retry_base_delay=0.0),
            spaces=InMemorySpaceRepository(), lots=InMemoryLotRepository(), feed=feed,
        )
        self.addAsyncCleanup(self.engine.close)
        self.lot = await self.engine.administration.create_lot("North", actor=ADMIN)

    async def test_first_snapshot_waits_for_the_subscription(self):
        gate = asyncio.Event()
        await self.build(FakePubSub(subscribe_gate=gate))
        seen = []

        self.engine.propagation.subscribe_to_lot(self.lot.id, seen.append)
        await settle()
        self.assertEqual(seen, [])

        gate.set()
        await self.engine.propagation.drain()
        self.assertEqual([lot.id for lot in seen], [self.lot.id])

    async def test_reconnect_refreshes_observers(self):
        drop = asyncio.Event()
        await self.build(
            FakePubSub(drop=RedisConnectionError("Connection reset by peer"), drop_gate=drop),
            FakePubSub(),
        )
        seen = []
        self.engine.propagation.subscribe_to_lot(self.lot.id, seen.append)
        await self.engine.propagation.drain()
        self.assertEqual(seen[-1].name, "North")

        # The fake client never echoes publishes, so this change goes unannounced
        await self.engine.administration.update_lot_details(self.lot.id, name="North Deck", actor=ADMIN)
        await settle()
        self.assertEqual(seen[-1].name, "North")

        with self.assertLogs("RedisChangeFeed", level="WARNING"):
            drop.set()
            await settle()
        await self.engine.propagation.drain()

        self.assertEqual(seen[-1].name, "North Deck")
        self.assertEqual(self.engine.feed.listener_count, 1)


class TestSnapshotRetries(unittest.IsolatedAsyncioTestCase):

    async def test_transient_fetch_is_retried(self):
        flaky = FlakyLotRepository(failures=0)
        engine = await build_engine(lots=flaky)
        try:
            lot = await engine.administration.create_lot("Flaky", actor=ADMIN)
            flaky.failures = 2
            seen = []
            engine.propagation.subscribe_to_lot(lot.id, seen.append)
            await engine.propagation.drain()
            self.assertEqual([snapshot.id for snapshot in seen], [lot.id])
        finally:
            await engine.close()

    async def test_exhausted_retries_are_logged(self):
        flaky = FlakyLotRepository(failures=0)
        engine = await build_engine(lots=flaky, propagation_retry_attempts=2)
        try:
            lot = await engine.administration.create_lot("Flaky", actor=ADMIN)
            flaky.failures = 2
            seen = []
            with self.assertLogs("_Channel", level="ERROR"):
                engine.propagation.subscribe_to_lot(lot.id, seen.append)
                await engine.propagation.drain()
            self.assertEqual(seen, [])
        finally:
            await engine.close()


if __name__ == '__main__':
    unittest.main()
