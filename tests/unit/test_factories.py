#!/usr/bin/env python3
"""
Unit tests for engine wiring
"""

import unittest
from unittest.mock import AsyncMock, patch

from lotsync.config import EngineConfig
from lotsync.domain.exceptions import InvalidArgumentError
from lotsync.infrastructure.factories import EngineFactory
from lotsync.infrastructure.messaging import InMemoryChangeFeed
from lotsync.infrastructure.repositories import (
    EventPublishingLotRepository, EventPublishingSpaceRepository,
    InMemoryLotRepository, InMemorySpaceRepository
)


class TestEngineFactory(unittest.IsolatedAsyncioTestCase):

    async def test_half_injected_repositories_are_rejected(self):
        with patch.object(EngineFactory, 'create_repositories', new=AsyncMock()) as create:
            with self.assertRaises(InvalidArgumentError):
                await EngineFactory.build(EngineConfig(), spaces=InMemorySpaceRepository())
            with self.assertRaises(InvalidArgumentError):
                await EngineFactory.build(EngineConfig(), lots=InMemoryLotRepository())
        create.assert_not_awaited()

    async def test_injected_pair_skips_backend_construction(self):
        spaces, lots = InMemorySpaceRepository(), InMemoryLotRepository()
        with patch.object(EngineFactory, 'create_repositories', new=AsyncMock()) as create:
            engine = await EngineFactory.build(EngineConfig(backend="sqlalchemy", database_url="sqlite://"),
                                               spaces=spaces, lots=lots)
        async with engine:
            create.assert_not_awaited()
            self.assertIsInstance(engine.spaces, EventPublishingSpaceRepository)
            self.assertIsInstance(engine.lots, EventPublishingLotRepository)
            self.assertIsInstance(engine.feed, InMemoryChangeFeed)

    async def test_memory_backend_by_default(self):
        async with await EngineFactory.build() as engine:
            lot = await engine.administration.create_lot("North")
            self.assertEqual(await engine.lots.get(lot.id), lot)


if __name__ == '__main__':
    unittest.main()
