# File: src/lotsync/infrastructure/factories.py
"""
Factory Pattern Implementation for engine wiring

EngineFactory is the composition root: it turns an EngineConfig into a
ParkingEngine with repositories for the configured backend, a change feed,
and the four application services sharing them.

Backends:
- memory: in-process dictionaries (tests, demo)
- sqlalchemy: any SQLAlchemy URL; the schema is created on build
- mongo: MongoDB through motor; indexes are created on build

A redis_url in the config swaps the in-memory change feed for Redis Pub/Sub.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple
import logging

from ..config import EngineConfig
from ..domain.exceptions import InvalidArgumentError
from ..domain.models import utcnow
from ..application.lot_service import LotAdministrationService
from ..application.parking_service import StatusTransitionService, LotLockRegistry, Clock
from ..application.propagation import ChangePropagationService
from ..application.reconciliation import ReconciliationEngine
from .messaging import ChangeFeed, InMemoryChangeFeed, RedisChangeFeed
from .repositories import (
    SpaceRepository, LotRepository, InMemorySpaceRepository, InMemoryLotRepository,
    EventPublishingSpaceRepository, EventPublishingLotRepository
)
from .sql_repositories import SQLAlchemyStore, SQLAlchemySpaceRepository, SQLAlchemyLotRepository
from .mongo_repositories import MongoSpaceRepository, MongoLotRepository, connect

Closer = Callable[[], Awaitable[None]]


@dataclass
class ParkingEngine:
    """Everything the calling layer needs, wired to one store and one feed"""
    config: EngineConfig
    lots: LotRepository
    spaces: SpaceRepository
    feed: ChangeFeed
    reconciler: ReconciliationEngine
    transitions: StatusTransitionService
    administration: LotAdministrationService
    propagation: ChangePropagationService
    _closers: List[Closer] = field(default_factory=list, repr=False)

    async def close(self) -> None:
        self.propagation.close()
        await self.feed.close()
        for closer in reversed(self._closers):
            await closer()
        self._closers.clear()
        logging.getLogger(self.__class__.__name__).info("Engine closed")

    async def __aenter__(self) -> 'ParkingEngine':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class EngineFactory:
    """Factory for building engines from configuration"""

    _logger = logging.getLogger("EngineFactory")

    @staticmethod
    def create_feed(config: EngineConfig) -> ChangeFeed:
        if config.redis_url:
            return RedisChangeFeed(config.redis_url, channel=config.redis_channel)
        return InMemoryChangeFeed()

    @classmethod
    async def create_repositories(cls, config: EngineConfig) -> Tuple[SpaceRepository, LotRepository, List[Closer]]:
        """Raw (non-publishing) repositories for the configured backend"""
        if config.backend == "memory":
            return InMemorySpaceRepository(), InMemoryLotRepository(), []

        if config.backend == "sqlalchemy":
            store = SQLAlchemyStore(config.database_url)
            await store.prepare()

            async def dispose() -> None:
                store.dispose()

            return SQLAlchemySpaceRepository(store), SQLAlchemyLotRepository(store), [dispose]

        if config.backend == "mongo":
            client = connect(config.mongo_url)
            database = client[config.mongo_database]
            spaces = MongoSpaceRepository(database)
            await spaces.ensure_indexes()

            async def disconnect() -> None:
                client.close()

            return spaces, MongoLotRepository(database), [disconnect]

        raise ValueError(f"Unknown backend: {config.backend}")

    @classmethod
    async def build(
        cls,
        config: Optional[EngineConfig] = None,
        *,
        spaces: Optional[SpaceRepository] = None,
        lots: Optional[LotRepository] = None,
        feed: Optional[ChangeFeed] = None,
        clock: Clock = utcnow,
    ) -> ParkingEngine:
        """
        Build an engine. Repositories (as a pair) and feed may be injected
        (tests); injected repositories are wrapped so their writes reach the feed.
        """
        config = config or EngineConfig()
        closers: List[Closer] = []
        if (spaces is None) != (lots is None):
            raise InvalidArgumentError("Inject both the space and the lot repository, or neither")
        if spaces is None:
            spaces, lots, closers = await cls.create_repositories(config)
        feed = feed or cls.create_feed(config)

        spaces = EventPublishingSpaceRepository(spaces, feed)
        lots = EventPublishingLotRepository(lots, feed)
        lot_locks = LotLockRegistry()
        timeout = config.store_timeout_seconds

        reconciler = ReconciliationEngine(
            lots, spaces,
            timeout=timeout,
            max_write_attempts=config.max_write_attempts,
            retry_base_delay=config.retry_base_delay,
        )
        engine = ParkingEngine(
            config=config,
            lots=lots,
            spaces=spaces,
            feed=feed,
            reconciler=reconciler,
            transitions=StatusTransitionService(
                spaces, lots, reconciler,
                rates=config.billing_rates,
                lot_locks=lot_locks,
                timeout=timeout,
                max_write_attempts=config.max_write_attempts,
                clock=clock,
            ),
            administration=LotAdministrationService(lots, spaces, lot_locks=lot_locks, timeout=timeout),
            propagation=ChangePropagationService(
                lots, spaces, feed,
                timeout=timeout,
                retry_attempts=config.propagation_retry_attempts,
                retry_base_delay=config.retry_base_delay,
            ),
            _closers=closers,
        )
        cls._logger.info(
            f"Engine ready: backend={config.backend}, feed={feed.__class__.__name__}"
        )
        return engine
