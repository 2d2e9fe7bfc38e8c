#!/usr/bin/env python3
"""
Unit tests for the change feeds
"""

import asyncio
import unittest

from redis.exceptions import ConnectionError as RedisConnectionError

from lotsync.domain.exceptions import TransientError
from lotsync.domain.models import ChangeCollection, ChangeEvent
from lotsync.infrastructure.messaging import InMemoryChangeFeed, RedisChangeFeed
from tests.support import T0, FakePubSub, fake_redis_client, settle


class TestInMemoryChangeFeed(unittest.IsolatedAsyncioTestCase):

    async def test_publish_reaches_listeners(self):
        feed = InMemoryChangeFeed()
        received = []
        feed.subscribe(received.append)
        event = ChangeEvent(ChangeCollection.LOTS, "lot-1")
        await feed.publish(event)
        self.assertEqual(received, [event])
        self.assertEqual(feed.published, [event])

    async def test_unsubscribe_is_idempotent(self):
        feed = InMemoryChangeFeed()
        received = []
        unsubscribe = feed.subscribe(received.append)
        unsubscribe()
        unsubscribe()
        await feed.publish(ChangeEvent(ChangeCollection.LOTS, "lot-1"))
        self.assertEqual(received, [])
        self.assertEqual(feed.listener_count, 0)

    async def test_failing_listener_is_isolated(self):
        feed = InMemoryChangeFeed()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        feed.subscribe(broken)
        feed.subscribe(received.append)
        with self.assertLogs("InMemoryChangeFeed", level="ERROR"):
            await feed.publish(ChangeEvent(ChangeCollection.SPACES, "lot-1", "space-1"))
        self.assertEqual(len(received), 1)


class TestRedisChangeFeed(unittest.IsolatedAsyncioTestCase):

    def make_client(self, *pubsubs):
        self.pubsubs = list(pubsubs) or [FakePubSub()]
        return fake_redis_client(*self.pubsubs)

    async def test_publish_serialises_event(self):
        client = self.make_client()
        feed = RedisChangeFeed(channel="test:changes", client=client)
        event = ChangeEvent(ChangeCollection.LOTS, "lot-1", occurred_at=T0)

        await feed.publish(event)

        client.publish.assert_awaited_once_with("test:changes", event.to_json())

    async def test_connection_failure_is_transient(self):
        client = self.make_client()
        client.publish.side_effect = RedisConnectionError("refused")
        feed = RedisChangeFeed(client=client)

        with self.assertRaises(TransientError):
            await feed.publish(ChangeEvent(ChangeCollection.LOTS, "lot-1"))

    async def test_messages_are_dispatched(self):
        event = ChangeEvent(ChangeCollection.SPACES, "lot-1", "space-3", occurred_at=T0)
        client = self.make_client(FakePubSub([
            {'type': 'subscribe', 'data': 1},
            {'type': 'message', 'data': b"not json"},
            {'type': 'message', 'data': event.to_json().encode()},
        ]))
        feed = RedisChangeFeed(channel="test:changes", client=client)
        received = []

        with self.assertLogs("RedisChangeFeed", level="ERROR"):
            feed.subscribe(received.append)
            await settle()

        self.assertEqual(received, [event])
        self.assertEqual(self.pubsubs[0].subscribed, ["test:changes"])
        self.assertTrue(feed.listening)

        await feed.close()
        self.assertTrue(self.pubsubs[0].closed)
        self.assertFalse(feed.listening)
        client.aclose.assert_awaited_once()

    async def test_listener_stops_with_last_subscriber(self):
        client = self.make_client()
        feed = RedisChangeFeed(client=client)
        unsubscribe = feed.subscribe(lambda event: None)
        await settle()
        unsubscribe()
        await settle()
        self.assertTrue(self.pubsubs[0].closed)
        await feed.close()

    async def test_resubscribes_and_resyncs_after_connection_loss(self):
        event = ChangeEvent(ChangeCollection.LOTS, "lot-1", occurred_at=T0)
        client = self.make_client(
            FakePubSub(drop=RedisConnectionError("Connection reset by peer")),
            FakePubSub([{'type': 'message', 'data': event.to_json()}]),
        )
        feed = RedisChangeFeed(client=client, reconnect_base_delay=0.0)
        received = []

        with self.assertLogs("RedisChangeFeed", level="WARNING") as logs:
            feed.subscribe(received.append)
            await settle()

        self.assertEqual(client.pubsub.call_count, 2)
        self.assertTrue(self.pubsubs[0].closed)
        self.assertTrue(received[0].resync)
        self.assertEqual(received[1:], [event])
        self.assertTrue(feed.listening)
        self.assertTrue(any("Lost Redis channel" in line for line in logs.output))
        await feed.close()

    async def test_failed_subscribe_is_retried(self):
        class RefusingPubSub(FakePubSub):
            async def subscribe(self, channel):
                raise RedisConnectionError("Connection refused")

        client = self.make_client(RefusingPubSub(), RefusingPubSub(), FakePubSub())
        feed = RedisChangeFeed(client=client, reconnect_base_delay=0.0)
        received = []

        with self.assertLogs("RedisChangeFeed", level="WARNING"):
            feed.subscribe(received.append)
            await settle(40)

        self.assertEqual(client.pubsub.call_count, 3)
        self.assertTrue(feed.listening)
        self.assertEqual([event.resync for event in received], [True])
        await feed.close()

    async def test_ready_waits_for_the_subscription(self):
        gate = asyncio.Event()
        feed = RedisChangeFeed(client=self.make_client(FakePubSub(subscribe_gate=gate)))
        feed.subscribe(lambda event: None)
        waiter = asyncio.ensure_future(feed.ready())
        await settle()
        self.assertFalse(waiter.done())

        gate.set()
        await asyncio.wait_for(waiter, 1)
        self.assertTrue(feed.listening)
        await feed.close()


if __name__ == '__main__':
    unittest.main()
