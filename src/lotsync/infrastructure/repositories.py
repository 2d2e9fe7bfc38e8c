# File: src/lotsync/infrastructure/repositories.py
"""
Repository Pattern Implementation for the Occupancy Engine

Repositories give the services a collection-like, asynchronous view of the
Space Record Store and the Lot Aggregate Store while hiding the storage
technology.

Write contract shared by every backend:
- every successful write increments the record's ``revision``
- ``replace`` and ``write_counts`` are compare-and-swap on that revision and
  raise StaleWriteError when another writer got there first
- a space number already held in the lot raises ConflictError
- driver failures surface as TransientError

Storage Implementations:
- InMemory*Repository - for testing and development (this module)
- SQLAlchemy*Repository - relational databases (sql_repositories.py)
- Mongo*Repository - MongoDB through motor (mongo_repositories.py)

Decorators:
- EventPublishing*Repository - announces writes on a ChangeFeed
"""

from abc import ABC, abstractmethod
from dataclasses import replace as clone
from typing import Dict, List, Optional, Iterable
import asyncio
import logging

from ..domain.exceptions import ConflictError, NotFoundError, StaleWriteError, InvalidArgumentError
from ..domain.models import (
    ParkingSpace, ParkingLot, LotCounts, ChangeEvent, ChangeCollection,
    sort_spaces, utcnow
)
from .messaging import ChangeFeed


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class SpaceRepository(ABC):
    """Space Record Store"""

    @abstractmethod
    async def get(self, space_id: str) -> Optional[ParkingSpace]:
        """Point read by id"""
        pass

    @abstractmethod
    async def find_by_lot(self, lot_id: str) -> List[ParkingSpace]:
        """Range read by lot, ordered by space number"""
        pass

    @abstractmethod
    async def find_by_number(self, lot_id: str, number: int) -> Optional[ParkingSpace]:
        pass

    @abstractmethod
    async def find_active(self) -> List[ParkingSpace]:
        """Every occupied or booked space across all lots"""
        pass

    @abstractmethod
    async def add(self, space: ParkingSpace) -> ParkingSpace:
        """Insert a new space; ConflictError if its number is taken"""
        pass

    @abstractmethod
    async def add_many(self, spaces: List[ParkingSpace]) -> List[ParkingSpace]:
        """Insert a batch; either every space is stored or none is"""
        pass

    @abstractmethod
    async def replace(self, space: ParkingSpace, expected_revision: int) -> ParkingSpace:
        """Full-record write guarded by the stored revision"""
        pass

    @abstractmethod
    async def delete(self, space_id: str) -> Optional[ParkingSpace]:
        """Delete and return the removed record, or None if absent"""
        pass

    @abstractmethod
    async def delete_by_lot(self, lot_id: str) -> int:
        """Delete every space of a lot; returns how many were removed"""
        pass


class LotRepository(ABC):
    """Lot Aggregate Store"""

    @abstractmethod
    async def get(self, lot_id: str) -> Optional[ParkingLot]:
        pass

    @abstractmethod
    async def get_all(self) -> List[ParkingLot]:
        pass

    @abstractmethod
    async def add(self, lot: ParkingLot) -> ParkingLot:
        pass

    @abstractmethod
    async def write_counts(self, lot_id: str, counts: LotCounts, expected_revision: int) -> ParkingLot:
        """Write all four counters in one operation, guarded by the stored revision"""
        pass

    @abstractmethod
    async def update_details(self, lot_id: str, name: Optional[str] = None,
                             location: Optional[str] = None) -> ParkingLot:
        """Change descriptive fields only; counters are untouched"""
        pass

    @abstractmethod
    async def delete(self, lot_id: str) -> bool:
        pass


# ============================================================================
# IN-MEMORY REPOSITORIES
# ============================================================================

class InMemoryRepositoryBase:
    """
    Shared plumbing for the in-memory stores.

    Every call yields to the event loop once (optionally after ``latency``
    seconds) before touching the data, so concurrent callers interleave the
    way they would against a real store. The check-and-write part of each
    operation runs without a suspension point and is therefore atomic.
    """

    def __init__(self, latency: float = 0.0):
        self._latency = latency
        self._logger = logging.getLogger(self.__class__.__name__)

    async def _io(self) -> None:
        await asyncio.sleep(self._latency)


class InMemorySpaceRepository(InMemoryRepositoryBase, SpaceRepository):
    """In-memory space store for testing"""

    def __init__(self, latency: float = 0.0):
        super().__init__(latency)
        self._storage: Dict[str, ParkingSpace] = {}

    def _number_holder(self, lot_id: str, number: int) -> Optional[ParkingSpace]:
        for space in self._storage.values():
            if space.lot_id == lot_id and space.number == number:
                return space
        return None

    def _check_insertable(self, space: ParkingSpace) -> None:
        if space.id in self._storage:
            raise ConflictError(f"Space {space.id} already exists")
        if self._number_holder(space.lot_id, space.number) is not None:
            raise ConflictError(f"Space #{space.number} already exists in this lot")

    async def get(self, space_id: str) -> Optional[ParkingSpace]:
        await self._io()
        space = self._storage.get(space_id)
        return clone(space) if space else None

    async def find_by_lot(self, lot_id: str) -> List[ParkingSpace]:
        await self._io()
        return sort_spaces(clone(s) for s in self._storage.values() if s.lot_id == lot_id)

    async def find_by_number(self, lot_id: str, number: int) -> Optional[ParkingSpace]:
        await self._io()
        space = self._number_holder(lot_id, number)
        return clone(space) if space else None

    async def find_active(self) -> List[ParkingSpace]:
        await self._io()
        return sort_spaces(clone(s) for s in self._storage.values() if s.is_active)

    async def add(self, space: ParkingSpace) -> ParkingSpace:
        await self._io()
        self._check_insertable(space)
        stored = clone(space, revision=1)
        self._storage[stored.id] = stored
        self._logger.debug(f"Added space {stored.id} (#{stored.number}) to lot {stored.lot_id}")
        return clone(stored)

    async def add_many(self, spaces: List[ParkingSpace]) -> List[ParkingSpace]:
        await self._io()
        seen = set()
        for space in spaces:
            self._check_insertable(space)
            key = (space.lot_id, space.number)
            if key in seen:
                raise ConflictError(f"Space #{space.number} appears twice in the batch")
            seen.add(key)
        stored = [clone(space, revision=1) for space in spaces]
        for space in stored:
            self._storage[space.id] = space
        self._logger.debug(f"Added {len(stored)} spaces")
        return [clone(space) for space in stored]

    async def replace(self, space: ParkingSpace, expected_revision: int) -> ParkingSpace:
        await self._io()
        current = self._storage.get(space.id)
        if current is None:
            raise NotFoundError(f"Space {space.id} not found")
        if current.lot_id != space.lot_id:
            raise InvalidArgumentError(f"Space {space.id} cannot move between lots")
        if current.revision != expected_revision:
            raise StaleWriteError(
                f"Space {space.id} is at revision {current.revision}, expected {expected_revision}",
                expected_revision=expected_revision,
            )
        if space.number != current.number:
            holder = self._number_holder(space.lot_id, space.number)
            if holder is not None and holder.id != space.id:
                raise ConflictError(f"Space #{space.number} already exists in this lot")
        stored = clone(space, revision=expected_revision + 1)
        self._storage[stored.id] = stored
        self._logger.debug(f"Replaced space {stored.id} at revision {stored.revision}")
        return clone(stored)

    async def delete(self, space_id: str) -> Optional[ParkingSpace]:
        await self._io()
        removed = self._storage.pop(space_id, None)
        if removed is not None:
            self._logger.debug(f"Deleted space {space_id}")
        return removed

    async def delete_by_lot(self, lot_id: str) -> int:
        await self._io()
        doomed = [space_id for space_id, space in self._storage.items() if space.lot_id == lot_id]
        for space_id in doomed:
            del self._storage[space_id]
        self._logger.debug(f"Deleted {len(doomed)} spaces of lot {lot_id}")
        return len(doomed)

    def clear(self):
        """Clear all data (for testing)"""
        self._storage.clear()


class InMemoryLotRepository(InMemoryRepositoryBase, LotRepository):
    """In-memory lot store for testing"""

    def __init__(self, latency: float = 0.0):
        super().__init__(latency)
        self._storage: Dict[str, ParkingLot] = {}
        self.count_writes = 0

    def _require(self, lot_id: str) -> ParkingLot:
        lot = self._storage.get(lot_id)
        if lot is None:
            raise NotFoundError(f"Lot {lot_id} not found")
        return lot

    async def get(self, lot_id: str) -> Optional[ParkingLot]:
        await self._io()
        lot = self._storage.get(lot_id)
        return clone(lot) if lot else None

    async def get_all(self) -> List[ParkingLot]:
        await self._io()
        return [clone(lot) for lot in sorted(self._storage.values(), key=lambda l: (l.created_at, l.id))]

    async def add(self, lot: ParkingLot) -> ParkingLot:
        await self._io()
        if lot.id in self._storage:
            raise ConflictError(f"Lot {lot.id} already exists")
        stored = clone(lot, revision=1)
        self._storage[stored.id] = stored
        self._logger.debug(f"Added lot {stored.id} ({stored.name})")
        return clone(stored)

    async def write_counts(self, lot_id: str, counts: LotCounts, expected_revision: int) -> ParkingLot:
        await self._io()
        current = self._require(lot_id)
        if current.revision != expected_revision:
            raise StaleWriteError(
                f"Lot {lot_id} is at revision {current.revision}, expected {expected_revision}",
                expected_revision=expected_revision,
            )
        stored = clone(current.with_counts(counts, now=utcnow()), revision=expected_revision + 1)
        self._storage[lot_id] = stored
        self.count_writes += 1
        return clone(stored)

    async def update_details(self, lot_id: str, name: Optional[str] = None,
                             location: Optional[str] = None) -> ParkingLot:
        await self._io()
        current = self._require(lot_id)
        stored = clone(current.with_details(name=name, location=location, now=utcnow()),
                         revision=current.revision + 1)
        self._storage[lot_id] = stored
        return clone(stored)

    async def delete(self, lot_id: str) -> bool:
        await self._io()
        return self._storage.pop(lot_id, None) is not None

    def clear(self):
        """Clear all data (for testing)"""
        self._storage.clear()


# ============================================================================
# EVENT PUBLISHING REPOSITORIES (Decorator Pattern)
# ============================================================================

class _EventPublisher:
    def __init__(self, feed: ChangeFeed):
        self.feed = feed
        self._logger = logging.getLogger(self.__class__.__name__)

    async def _announce(self, collection: ChangeCollection, lot_id: str, space_id: Optional[str] = None) -> None:
        event = ChangeEvent(collection=collection, lot_id=lot_id, space_id=space_id)
        try:
            await self.feed.publish(event)
        except Exception as e:
            # The write itself is committed; observers catch up on the next change
            self._logger.warning(f"Could not announce change to {collection.value} for lot {lot_id}: {e}")


class EventPublishingSpaceRepository(_EventPublisher, SpaceRepository):
    """Space repository decorator that announces writes on a change feed"""

    def __init__(self, repository: SpaceRepository, feed: ChangeFeed):
        super().__init__(feed)
        self.repository = repository

    async def add(self, space: ParkingSpace) -> ParkingSpace:
        result = await self.repository.add(space)
        await self._announce(ChangeCollection.SPACES, result.lot_id, result.id)
        return result

    async def add_many(self, spaces: List[ParkingSpace]) -> List[ParkingSpace]:
        result = await self.repository.add_many(spaces)
        for lot_id in _distinct(space.lot_id for space in result):
            await self._announce(ChangeCollection.SPACES, lot_id)
        return result

    async def replace(self, space: ParkingSpace, expected_revision: int) -> ParkingSpace:
        result = await self.repository.replace(space, expected_revision)
        await self._announce(ChangeCollection.SPACES, result.lot_id, result.id)
        return result

    async def delete(self, space_id: str) -> Optional[ParkingSpace]:
        removed = await self.repository.delete(space_id)
        if removed is not None:
            await self._announce(ChangeCollection.SPACES, removed.lot_id, removed.id)
        return removed

    async def delete_by_lot(self, lot_id: str) -> int:
        removed = await self.repository.delete_by_lot(lot_id)
        if removed:
            await self._announce(ChangeCollection.SPACES, lot_id)
        return removed

    # Delegate reads to wrapped repository
    async def get(self, space_id: str) -> Optional[ParkingSpace]:
        return await self.repository.get(space_id)

    async def find_by_lot(self, lot_id: str) -> List[ParkingSpace]:
        return await self.repository.find_by_lot(lot_id)

    async def find_by_number(self, lot_id: str, number: int) -> Optional[ParkingSpace]:
        return await self.repository.find_by_number(lot_id, number)

    async def find_active(self) -> List[ParkingSpace]:
        return await self.repository.find_active()


class EventPublishingLotRepository(_EventPublisher, LotRepository):
    """Lot repository decorator that announces writes on a change feed"""

    def __init__(self, repository: LotRepository, feed: ChangeFeed):
        super().__init__(feed)
        self.repository = repository

    async def add(self, lot: ParkingLot) -> ParkingLot:
        result = await self.repository.add(lot)
        await self._announce(ChangeCollection.LOTS, result.id)
        return result

    async def write_counts(self, lot_id: str, counts: LotCounts, expected_revision: int) -> ParkingLot:
        result = await self.repository.write_counts(lot_id, counts, expected_revision)
        await self._announce(ChangeCollection.LOTS, lot_id)
        return result

    async def update_details(self, lot_id: str, name: Optional[str] = None,
                             location: Optional[str] = None) -> ParkingLot:
        result = await self.repository.update_details(lot_id, name, location)
        await self._announce(ChangeCollection.LOTS, lot_id)
        return result

    async def delete(self, lot_id: str) -> bool:
        removed = await self.repository.delete(lot_id)
        if removed:
            await self._announce(ChangeCollection.LOTS, lot_id)
        return removed

    async def get(self, lot_id: str) -> Optional[ParkingLot]:
        return await self.repository.get(lot_id)

    async def get_all(self) -> List[ParkingLot]:
        return await self.repository.get_all()


def _distinct(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(values))
