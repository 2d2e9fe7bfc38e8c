"""
Shared test helpers

Builds in-memory engines with a manual clock so tests control time, and
exposes the actors used across the suites, plus a fake Redis pub/sub for
the change feed.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
import asyncio
from unittest.mock import AsyncMock, MagicMock

from lotsync.config import EngineConfig
from lotsync.domain.exceptions import TransientError
from lotsync.domain.models import Actor, UserRole
from lotsync.infrastructure.factories import EngineFactory, ParkingEngine
from lotsync.infrastructure.repositories import InMemoryLotRepository, InMemorySpaceRepository


ADMIN = Actor(user_id="admin-1", role=UserRole.ADMIN)
WORKER = Actor(user_id="worker-1", role=UserRole.WORKER)
STUDENT = Actor(user_id="student-1", role=UserRole.STUDENT)
GUEST = Actor(user_id="guest-1", role=UserRole.GUEST)

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when told to"""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FlakyLotRepository(InMemoryLotRepository):
    """Lot store whose reads fail with TransientError a set number of times"""

    def __init__(self, failures: int = 1, latency: float = 0.0):
        super().__init__(latency)
        self.failures = failures
        self.read_attempts = 0

    async def get(self, lot_id):
        self.read_attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise TransientError("lot store unavailable")
        return await super().get(lot_id)


async def build_engine(clock: Optional[ManualClock] = None, latency: float = 0.0,
                       lots: Optional[InMemoryLotRepository] = None, **overrides) -> ParkingEngine:
    """In-memory engine; keyword overrides go to EngineConfig"""
    overrides.setdefault('retry_base_delay', 0.0)
    config = EngineConfig(**overrides)
    return await EngineFactory.build(
        config,
        spaces=InMemorySpaceRepository(latency),
        lots=lots or InMemoryLotRepository(latency),
        clock=clock or ManualClock(),
    )


async def lot_with_spaces(engine: ParkingEngine, count: int = 10, name: str = "Main Campus"):
    """Create a lot holding ``count`` vacant spaces numbered from 1"""
    lot = await engine.administration.create_lot(name, "Gate A", actor=ADMIN)
    result = await engine.transitions.create_multiple_spaces(lot.id, 1, count, actor=ADMIN)
    return result.aggregate, result.spaces


async def settle(rounds: int = 20) -> None:
    """Let scheduled tasks run"""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakePubSub:
    """
    Stand-in for a redis.asyncio PubSub.

    Replays ``messages``, then idles like a quiet subscription, or raises
    ``drop`` (once ``drop_gate`` is set, when given). ``subscribe_gate``
    holds subscribe() until it is set.
    """

    def __init__(self, messages=(), drop: Optional[Exception] = None,
                 drop_gate: Optional[asyncio.Event] = None,
                 subscribe_gate: Optional[asyncio.Event] = None):
        self.messages = list(messages)
        self.drop = drop
        self.drop_gate = drop_gate
        self.subscribe_gate = subscribe_gate
        self.subscribed = []
        self.closed = False

    async def subscribe(self, channel):
        if self.subscribe_gate is not None:
            await self.subscribe_gate.wait()
        self.subscribed.append(channel)

    async def listen(self):
        for message in self.messages:
            yield message
        if self.drop is None:
            await asyncio.Event().wait()
        if self.drop_gate is not None:
            await self.drop_gate.wait()
        raise self.drop

    async def unsubscribe(self, channel):
        if channel in self.subscribed:
            self.subscribed.remove(channel)

    async def aclose(self):
        self.closed = True


def fake_redis_client(*pubsubs: FakePubSub) -> MagicMock:
    """Redis client handing out ``pubsubs`` in order, one per subscription attempt"""
    client = MagicMock()
    client.pubsub = MagicMock(side_effect=list(pubsubs))
    client.publish = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    return client
