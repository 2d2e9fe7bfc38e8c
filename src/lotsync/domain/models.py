# File: src/lotsync/domain/models.py
"""
Domain Models for the Occupancy Engine

This module contains:
1. Enums: closed status, role and collection types
2. Value Objects: Occupant, LotCounts, Actor
3. Entities: ParkingSpace, ParkingLot
4. Domain Events: ChangeEvent, emitted after every store write

ParkingSpace and ParkingLot are plain records. Mutation goes through
methods that return a modified copy, so a record read from a repository is
never changed in place behind the repository's back.
"""

from dataclasses import dataclass, field, replace, asdict
from typing import Optional, List, Dict, Any, Iterable, Union, Mapping
from datetime import datetime, timezone
from enum import Enum
import json
import uuid

from .exceptions import InvalidArgumentError


def utcnow() -> datetime:
    """Timezone-aware current time in UTC"""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from a store"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================================
# ENUMS
# ============================================================================

class SpaceStatus(str, Enum):
    """Status of a single parking space"""
    VACANT = "vacant"
    OCCUPIED = "occupied"
    BOOKED = "booked"

    @property
    def is_vacant(self) -> bool:
        return self is SpaceStatus.VACANT

    @classmethod
    def coerce(cls, value: Union['SpaceStatus', str]) -> 'SpaceStatus':
        try:
            return cls(value)
        except ValueError:
            raise InvalidArgumentError(f"Unknown space status: {value!r}")


class UserRole(str, Enum):
    """Roles known to the engine"""
    ADMIN = "admin"
    WORKER = "worker"
    STUDENT = "student"
    GUEST = "guest"

    @classmethod
    def coerce(cls, value: Union['UserRole', str]) -> 'UserRole':
        try:
            return cls(value)
        except ValueError:
            raise InvalidArgumentError(f"Unknown user role: {value!r}")


class ChangeCollection(str, Enum):
    """Collections whose writes are announced on the change feed"""
    LOTS = "lots"
    SPACES = "spaces"


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class Occupant:
    """Who holds a space: all fields optional, the UI decides what is required"""
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    vehicle_info: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.user_id or self.user_email or self.vehicle_info)

    def merged(self, other: Optional['Occupant']) -> 'Occupant':
        """Overlay the fields set on ``other`` onto this occupant"""
        if other is None:
            return self
        return Occupant(
            user_id=other.user_id if other.user_id is not None else self.user_id,
            user_email=other.user_email if other.user_email is not None else self.user_email,
            vehicle_info=other.vehicle_info if other.vehicle_info is not None else self.vehicle_info,
        )

    @classmethod
    def coerce(cls, value: Union['Occupant', Mapping[str, Any], None]) -> Optional['Occupant']:
        """Accept an Occupant, a mapping of its fields, or None"""
        if value is None or isinstance(value, Occupant):
            return value
        if isinstance(value, Mapping):
            unknown = set(value) - {'user_id', 'user_email', 'vehicle_info'}
            if unknown:
                raise InvalidArgumentError(f"Unknown occupant fields: {sorted(unknown)}")
            return cls(**value)
        raise InvalidArgumentError(f"Occupant must be a mapping or Occupant, got {type(value).__name__}")


@dataclass(frozen=True)
class LotCounts:
    """
    Value Object: the aggregate counter view of one lot

    available + occupied + booked == total always holds for a tally;
    stored aggregates are only ever replaced by a fresh tally.
    """
    total: int = 0
    available: int = 0
    occupied: int = 0
    booked: int = 0

    def __post_init__(self):
        for name in ('total', 'available', 'occupied', 'booked'):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 0:
                raise InvalidArgumentError(f"Lot count '{name}' must be a non-negative integer, got {value!r}")

    @classmethod
    def tally(cls, spaces: Iterable['ParkingSpace']) -> 'LotCounts':
        """Recompute the counters from a space set"""
        by_status = {status: 0 for status in SpaceStatus}
        for space in spaces:
            by_status[space.status] += 1
        return cls(
            total=sum(by_status.values()),
            available=by_status[SpaceStatus.VACANT],
            occupied=by_status[SpaceStatus.OCCUPIED],
            booked=by_status[SpaceStatus.BOOKED],
        )

    @property
    def is_consistent(self) -> bool:
        return self.available + self.occupied + self.booked == self.total

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class Actor:
    """Identity of the caller on whose behalf a mutation runs"""
    user_id: str
    role: UserRole

    def __post_init__(self):
        object.__setattr__(self, 'role', UserRole.coerce(self.role))


# ============================================================================
# ENTITIES
# ============================================================================

@dataclass
class ParkingSpace:
    """
    Entity: one numbered slot within a lot

    Occupant and start_time are present iff the status is not vacant.
    ``revision`` is managed by the store and guards compare-and-swap writes.
    """
    lot_id: str
    number: int
    status: SpaceStatus = SpaceStatus.VACANT
    occupant: Optional[Occupant] = None
    start_time: Optional[datetime] = None
    booking_expiry_time: Optional[datetime] = None
    current_booking_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    revision: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.number = validate_space_number(self.number)
        self.status = SpaceStatus.coerce(self.status)
        if self.status.is_vacant:
            if self.occupant is not None or self.start_time is not None:
                raise InvalidArgumentError(f"Vacant space {self.id} cannot carry occupant data")
        elif self.start_time is None:
            raise InvalidArgumentError(f"Space {self.id} is {self.status.value} without a start time")

    @property
    def is_active(self) -> bool:
        return not self.status.is_vacant

    def transition(
        self,
        new_status: Union[SpaceStatus, str],
        occupant: Optional[Occupant] = None,
        *,
        now: datetime,
        start_time: Optional[datetime] = None,
        booking_expiry_time: Optional[datetime] = None,
        current_booking_id: Optional[str] = None,
    ) -> 'ParkingSpace':
        """Return a copy of this space moved to ``new_status``"""
        new_status = SpaceStatus.coerce(new_status)

        if new_status.is_vacant:
            return replace(
                self,
                status=new_status,
                occupant=None,
                start_time=None,
                booking_expiry_time=None,
                current_booking_id=None,
                updated_at=now,
            )

        if self.status.is_vacant:
            effective_start = start_time or now
            effective_occupant = occupant or Occupant()
        else:
            # Reclassification keeps the running clock unless overridden
            effective_start = start_time or self.start_time
            effective_occupant = (self.occupant or Occupant()).merged(occupant)

        return replace(
            self,
            status=new_status,
            occupant=effective_occupant,
            start_time=effective_start,
            booking_expiry_time=booking_expiry_time or (None if self.status.is_vacant else self.booking_expiry_time),
            current_booking_id=current_booking_id or (None if self.status.is_vacant else self.current_booking_id),
            updated_at=now,
        )

    def renumbered(self, number: int, *, now: datetime) -> 'ParkingSpace':
        return replace(self, number=validate_space_number(number), updated_at=now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'lot_id': self.lot_id,
            'number': self.number,
            'status': self.status.value,
            'occupant': asdict(self.occupant) if self.occupant else None,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'booking_expiry_time': self.booking_expiry_time.isoformat() if self.booking_expiry_time else None,
            'current_booking_id': self.current_booking_id,
            'revision': self.revision,
        }


@dataclass
class ParkingLot:
    """
    Entity: a parking facility and its denormalised counters

    Counters are written only through reconciliation, as a full tally.
    A stored aggregate may have drifted (external writers, legacy data), so
    inconsistent counters are loaded as they are and left for reconciliation
    to repair; check ``counts.is_consistent`` where it matters.
    """
    name: str
    location: str = ""
    total_spaces: int = 0
    available_spaces: int = 0
    occupied_spaces: int = 0
    booked_spaces: int = 0
    id: str = field(default_factory=new_id)
    revision: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.name or not str(self.name).strip():
            raise InvalidArgumentError("Lot name cannot be empty")

    @property
    def counts(self) -> LotCounts:
        return LotCounts(
            total=self.total_spaces,
            available=self.available_spaces,
            occupied=self.occupied_spaces,
            booked=self.booked_spaces,
        )

    @property
    def stored_counters(self) -> Dict[str, int]:
        """Counters exactly as stored, even negative ones left by legacy writers"""
        return {
            'total': self.total_spaces,
            'available': self.available_spaces,
            'occupied': self.occupied_spaces,
            'booked': self.booked_spaces,
        }

    def matches(self, counts: LotCounts) -> bool:
        return self.stored_counters == counts.to_dict()

    def with_counts(self, counts: LotCounts, *, now: datetime) -> 'ParkingLot':
        return replace(
            self,
            total_spaces=counts.total,
            available_spaces=counts.available,
            occupied_spaces=counts.occupied,
            booked_spaces=counts.booked,
            updated_at=now,
        )

    def with_details(self, *, name: Optional[str] = None, location: Optional[str] = None,
                     now: datetime) -> 'ParkingLot':
        return replace(
            self,
            name=self.name if name is None else name,
            location=self.location if location is None else location,
            updated_at=now,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'location': self.location,
            **{f"{key}_spaces": value for key, value in self.stored_counters.items()},
            'revision': self.revision,
        }


def validate_space_number(number: Any) -> int:
    if isinstance(number, bool) or not isinstance(number, int) or number <= 0:
        raise InvalidArgumentError(f"Space number must be a positive integer, got {number!r}")
    return number


# ============================================================================
# DOMAIN EVENTS
# ============================================================================

@dataclass(frozen=True)
class ChangeEvent:
    """
    Announces that a record in ``collection`` belonging to ``lot_id`` was written

    A ``resync`` event is never published; a feed raises it locally when
    announcements may have been lost, and every watcher must refetch.
    """
    collection: ChangeCollection
    lot_id: str
    space_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)
    resync: bool = False

    @classmethod
    def resync_all(cls) -> 'ChangeEvent':
        return cls(collection=ChangeCollection.LOTS, lot_id="*", resync=True)

    def to_json(self) -> str:
        return json.dumps({
            'collection': self.collection.value,
            'lot_id': self.lot_id,
            'space_id': self.space_id,
            'occurred_at': self.occurred_at.isoformat(),
        })

    @classmethod
    def from_json(cls, payload: Union[str, bytes]) -> 'ChangeEvent':
        data = json.loads(payload)
        return cls(
            collection=ChangeCollection(data['collection']),
            lot_id=data['lot_id'],
            space_id=data.get('space_id'),
            occurred_at=datetime.fromisoformat(data['occurred_at']),
        )


def sort_spaces(spaces: Iterable[ParkingSpace]) -> List[ParkingSpace]:
    """Spaces in the order observers and listings expect"""
    return sorted(spaces, key=lambda space: (space.number, space.id))
