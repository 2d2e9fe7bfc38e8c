# File: src/lotsync/infrastructure/mongo_repositories.py
"""
MongoDB Repositories

Document backend for the space and lot stores, using motor's asyncio
client. Documents use the record id as ``_id``.

Guarantees provided by the collections:
- a unique compound index on (lot_id, number) in ``parking_spaces``
- revision-guarded replace_one / find_one_and_update implement compare-and-swap

Error translation:
- DuplicateKeyError, BulkWriteError with duplicate keys -> ConflictError
- ConnectionFailure (AutoReconnect, ServerSelectionTimeoutError, ...),
  ExecutionTimeout, NetworkTimeout -> TransientError
"""

from contextlib import contextmanager
from dataclasses import replace as clone
from typing import Any, Dict, Iterator, List, Optional
import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import (
    BulkWriteError, ConnectionFailure, DuplicateKeyError, ExecutionTimeout,
    NetworkTimeout, PyMongoError
)

from ..domain.exceptions import ConflictError, NotFoundError, StaleWriteError, TransientError, InvalidArgumentError
from ..domain.models import (
    ParkingSpace, ParkingLot, LotCounts, Occupant, SpaceStatus, as_utc, utcnow
)
from .repositories import SpaceRepository, LotRepository


LOTS_COLLECTION = "parking_lots"
SPACES_COLLECTION = "parking_spaces"

_DUPLICATE_KEY = 11000


# ============================================================================
# DOCUMENT MAPPING
# ============================================================================

def space_to_document(space: ParkingSpace) -> Dict[str, Any]:
    occupant = space.occupant or Occupant()
    return {
        '_id': space.id,
        'lot_id': space.lot_id,
        'number': space.number,
        'status': space.status.value,
        'user_id': occupant.user_id,
        'user_email': occupant.user_email,
        'vehicle_info': occupant.vehicle_info,
        'start_time': space.start_time,
        'booking_expiry_time': space.booking_expiry_time,
        'current_booking_id': space.current_booking_id,
        'revision': space.revision,
        'created_at': space.created_at,
        'updated_at': space.updated_at,
    }


def space_from_document(document: Dict[str, Any]) -> ParkingSpace:
    status = SpaceStatus(document['status'])
    occupant = None
    if not status.is_vacant:
        occupant = Occupant(
            user_id=document.get('user_id'),
            user_email=document.get('user_email'),
            vehicle_info=document.get('vehicle_info'),
        )
    return ParkingSpace(
        id=document['_id'],
        lot_id=document['lot_id'],
        number=document['number'],
        status=status,
        occupant=occupant,
        start_time=as_utc(document.get('start_time')),
        booking_expiry_time=as_utc(document.get('booking_expiry_time')),
        current_booking_id=document.get('current_booking_id'),
        revision=document.get('revision', 0),
        created_at=as_utc(document.get('created_at')) or utcnow(),
        updated_at=as_utc(document.get('updated_at')) or utcnow(),
    )


def lot_to_document(lot: ParkingLot) -> Dict[str, Any]:
    return {
        '_id': lot.id,
        'name': lot.name,
        'location': lot.location,
        'total_spaces': lot.total_spaces,
        'available_spaces': lot.available_spaces,
        'occupied_spaces': lot.occupied_spaces,
        'booked_spaces': lot.booked_spaces,
        'revision': lot.revision,
        'created_at': lot.created_at,
        'updated_at': lot.updated_at,
    }


def lot_from_document(document: Dict[str, Any]) -> ParkingLot:
    return ParkingLot(
        id=document['_id'],
        name=document['name'],
        location=document.get('location', ""),
        total_spaces=document.get('total_spaces', 0),
        available_spaces=document.get('available_spaces', 0),
        occupied_spaces=document.get('occupied_spaces', 0),
        booked_spaces=document.get('booked_spaces', 0),
        revision=document.get('revision', 0),
        created_at=as_utc(document.get('created_at')) or utcnow(),
        updated_at=as_utc(document.get('updated_at')) or utcnow(),
    )


# ============================================================================
# MONGODB REPOSITORIES
# ============================================================================

class MongoRepositoryBase:
    """Shared error translation for the motor repositories"""

    def __init__(self, database: AsyncIOMotorDatabase, collection: str):
        self.collection = database[collection]
        self._logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def _translate_errors(self, description: str, conflict_message: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except DuplicateKeyError as e:
            raise ConflictError(conflict_message or f"Conflicting write during {description}", cause=e)
        except BulkWriteError as e:
            if any(err.get('code') == _DUPLICATE_KEY for err in e.details.get('writeErrors', [])):
                raise ConflictError(conflict_message or f"Conflicting write during {description}", cause=e)
            self._logger.error(f"Bulk write failed during {description}: {e.details}")
            raise
        except (ConnectionFailure, ExecutionTimeout, NetworkTimeout) as e:
            self._logger.warning(f"MongoDB unavailable during {description}: {e}")
            raise TransientError(f"MongoDB unavailable during {description}", cause=e)
        except PyMongoError as e:
            self._logger.error(f"MongoDB error during {description}: {e}")
            raise


class MongoSpaceRepository(MongoRepositoryBase, SpaceRepository):
    """MongoDB-backed space store"""

    def __init__(self, database: AsyncIOMotorDatabase):
        super().__init__(database, SPACES_COLLECTION)

    async def ensure_indexes(self) -> None:
        with self._translate_errors("create space indexes"):
            await self.collection.create_index(
                [('lot_id', ASCENDING), ('number', ASCENDING)],
                unique=True, name='uq_lot_number',
            )
            await self.collection.create_index([('status', ASCENDING)], name='ix_status')

    async def get(self, space_id: str) -> Optional[ParkingSpace]:
        with self._translate_errors(f"get space {space_id}"):
            document = await self.collection.find_one({'_id': space_id})
        return space_from_document(document) if document else None

    async def find_by_lot(self, lot_id: str) -> List[ParkingSpace]:
        with self._translate_errors(f"list spaces of lot {lot_id}"):
            cursor = self.collection.find({'lot_id': lot_id}).sort('number', ASCENDING)
            return [space_from_document(document) async for document in cursor]

    async def find_by_number(self, lot_id: str, number: int) -> Optional[ParkingSpace]:
        with self._translate_errors(f"find space #{number} in lot {lot_id}"):
            document = await self.collection.find_one({'lot_id': lot_id, 'number': number})
        return space_from_document(document) if document else None

    async def find_active(self) -> List[ParkingSpace]:
        with self._translate_errors("list active spaces"):
            cursor = self.collection.find({'status': {'$ne': SpaceStatus.VACANT.value}}).sort('number', ASCENDING)
            return [space_from_document(document) async for document in cursor]

    async def add(self, space: ParkingSpace) -> ParkingSpace:
        stored = clone(space, revision=1)
        with self._translate_errors(f"add space {space.id}",
                                    f"Space #{space.number} already exists in this lot"):
            await self.collection.insert_one(space_to_document(stored))
        self._logger.debug(f"Added space {stored.id} (#{stored.number}) to lot {stored.lot_id}")
        return stored

    async def add_many(self, spaces: List[ParkingSpace]) -> List[ParkingSpace]:
        if not spaces:
            return []
        stored = [clone(space, revision=1) for space in spaces]
        try:
            with self._translate_errors(f"add {len(spaces)} spaces",
                                        "One of the requested space numbers already exists in this lot"):
                await self.collection.insert_many([space_to_document(s) for s in stored], ordered=True)
        except ConflictError:
            # insert_many is not transactional; undo whatever landed before the clash
            with self._translate_errors("roll back partial batch"):
                await self.collection.delete_many({'_id': {'$in': [s.id for s in stored]}})
            raise
        return stored

    async def replace(self, space: ParkingSpace, expected_revision: int) -> ParkingSpace:
        stored = clone(space, revision=expected_revision + 1)
        with self._translate_errors(f"replace space {space.id}",
                                    f"Space #{space.number} already exists in this lot"):
            result = await self.collection.replace_one(
                {'_id': space.id, 'lot_id': space.lot_id, 'revision': expected_revision},
                space_to_document(stored),
            )
            if result.matched_count:
                return stored
            current = await self.collection.find_one({'_id': space.id}, {'lot_id': 1, 'revision': 1})
        if current is None:
            raise NotFoundError(f"Space {space.id} not found")
        if current['lot_id'] != space.lot_id:
            raise InvalidArgumentError(f"Space {space.id} cannot move between lots")
        raise StaleWriteError(
            f"Space {space.id} is at revision {current.get('revision')}, expected {expected_revision}",
            expected_revision=expected_revision,
        )

    async def delete(self, space_id: str) -> Optional[ParkingSpace]:
        with self._translate_errors(f"delete space {space_id}"):
            document = await self.collection.find_one_and_delete({'_id': space_id})
        return space_from_document(document) if document else None

    async def delete_by_lot(self, lot_id: str) -> int:
        with self._translate_errors(f"delete spaces of lot {lot_id}"):
            result = await self.collection.delete_many({'lot_id': lot_id})
        return result.deleted_count


class MongoLotRepository(MongoRepositoryBase, LotRepository):
    """MongoDB-backed lot store"""

    def __init__(self, database: AsyncIOMotorDatabase):
        super().__init__(database, LOTS_COLLECTION)

    async def get(self, lot_id: str) -> Optional[ParkingLot]:
        with self._translate_errors(f"get lot {lot_id}"):
            document = await self.collection.find_one({'_id': lot_id})
        return lot_from_document(document) if document else None

    async def get_all(self) -> List[ParkingLot]:
        with self._translate_errors("list lots"):
            cursor = self.collection.find({}).sort([('created_at', ASCENDING), ('_id', ASCENDING)])
            return [lot_from_document(document) async for document in cursor]

    async def add(self, lot: ParkingLot) -> ParkingLot:
        stored = clone(lot, revision=1)
        with self._translate_errors(f"add lot {lot.id}", f"Lot {lot.id} already exists"):
            await self.collection.insert_one(lot_to_document(stored))
        return stored

    async def write_counts(self, lot_id: str, counts: LotCounts, expected_revision: int) -> ParkingLot:
        with self._translate_errors(f"write counts of lot {lot_id}"):
            document = await self.collection.find_one_and_update(
                {'_id': lot_id, 'revision': expected_revision},
                {'$set': {
                    'total_spaces': counts.total,
                    'available_spaces': counts.available,
                    'occupied_spaces': counts.occupied,
                    'booked_spaces': counts.booked,
                    'updated_at': utcnow(),
                }, '$inc': {'revision': 1}},
                return_document=ReturnDocument.AFTER,
            )
            if document is not None:
                return lot_from_document(document)
            current = await self.collection.find_one({'_id': lot_id}, {'revision': 1})
        if current is None:
            raise NotFoundError(f"Lot {lot_id} not found")
        raise StaleWriteError(
            f"Lot {lot_id} is at revision {current.get('revision')}, expected {expected_revision}",
            expected_revision=expected_revision,
        )

    async def update_details(self, lot_id: str, name: Optional[str] = None,
                             location: Optional[str] = None) -> ParkingLot:
        changes: Dict[str, Any] = {'updated_at': utcnow()}
        if name is not None:
            changes['name'] = name
        if location is not None:
            changes['location'] = location
        with self._translate_errors(f"update lot {lot_id}"):
            document = await self.collection.find_one_and_update(
                {'_id': lot_id},
                {'$set': changes, '$inc': {'revision': 1}},
                return_document=ReturnDocument.AFTER,
            )
        if document is None:
            raise NotFoundError(f"Lot {lot_id} not found")
        return lot_from_document(document)

    async def delete(self, lot_id: str) -> bool:
        with self._translate_errors(f"delete lot {lot_id}"):
            result = await self.collection.delete_one({'_id': lot_id})
        return result.deleted_count > 0


def connect(mongo_url: str, **client_options) -> AsyncIOMotorClient:
    """Motor client returning timezone-aware datetimes"""
    client_options.setdefault('tz_aware', True)
    client_options.setdefault('serverSelectionTimeoutMS', 5000)
    return AsyncIOMotorClient(mongo_url, **client_options)
