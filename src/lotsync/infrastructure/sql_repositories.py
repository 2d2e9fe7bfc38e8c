# File: src/lotsync/infrastructure/sql_repositories.py
"""
SQLAlchemy Repositories

Relational backend for the space and lot stores. Sessions are synchronous;
each repository call runs one short transaction on a worker thread through
``loop.run_in_executor`` so the event loop never blocks on the database.

Guarantees provided by the schema:
- UNIQUE (lot_id, number) on parking_spaces backs the in-process number lock
- revision-guarded UPDATE statements implement compare-and-swap

Error translation:
- IntegrityError -> ConflictError
- OperationalError, DisconnectionError, pool TimeoutError -> TransientError
"""

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import replace as clone
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar
import asyncio
import logging

from sqlalchemy import (
    create_engine, Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Index,
    select, update as sql_update, delete as sql_delete
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    SQLAlchemyError, IntegrityError, OperationalError, DisconnectionError,
    TimeoutError as PoolTimeoutError
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from ..domain.exceptions import ConflictError, NotFoundError, StaleWriteError, TransientError, InvalidArgumentError
from ..domain.models import (
    ParkingSpace, ParkingLot, LotCounts, Occupant, SpaceStatus, as_utc, utcnow
)
from .repositories import SpaceRepository, LotRepository

T = TypeVar('T')

Base = declarative_base()


# ============================================================================
# ORM MODELS
# ============================================================================

class LotModel(Base):
    """ORM model for parking lots"""
    __tablename__ = 'parking_lots'

    id = Column(String(36), primary_key=True)
    name = Column(String(200), nullable=False)
    location = Column(String(500), nullable=False, default="")
    total_spaces = Column(Integer, nullable=False, default=0)
    available_spaces = Column(Integer, nullable=False, default=0)
    occupied_spaces = Column(Integer, nullable=False, default=0)
    booked_spaces = Column(Integer, nullable=False, default=0)
    revision = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class SpaceModel(Base):
    """ORM model for parking spaces"""
    __tablename__ = 'parking_spaces'

    id = Column(String(36), primary_key=True)
    lot_id = Column(String(36), ForeignKey('parking_lots.id'), nullable=False)
    number = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default=SpaceStatus.VACANT.value)
    user_id = Column(String(128))
    user_email = Column(String(320))
    vehicle_info = Column(String(500))
    start_time = Column(DateTime(timezone=True))
    booking_expiry_time = Column(DateTime(timezone=True))
    current_booking_id = Column(String(128))
    revision = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint('lot_id', 'number', name='uq_parking_spaces_lot_number'),
        Index('ix_parking_spaces_status', 'status'),
    )


# ============================================================================
# MAPPER
# ============================================================================

class Mapper:
    """Maps between domain models and ORM models"""

    @staticmethod
    def space_values(space: ParkingSpace) -> Dict[str, Any]:
        """Column values of a space, excluding the primary key"""
        occupant = space.occupant or Occupant()
        return {
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

    @staticmethod
    def space_to_orm(space: ParkingSpace) -> SpaceModel:
        return SpaceModel(id=space.id, **Mapper.space_values(space))

    @staticmethod
    def space_to_domain(model: SpaceModel) -> ParkingSpace:
        status = SpaceStatus(model.status)
        occupant = None
        if not status.is_vacant:
            occupant = Occupant(
                user_id=model.user_id,
                user_email=model.user_email,
                vehicle_info=model.vehicle_info,
            )
        return ParkingSpace(
            id=model.id,
            lot_id=model.lot_id,
            number=model.number,
            status=status,
            occupant=occupant,
            start_time=as_utc(model.start_time),
            booking_expiry_time=as_utc(model.booking_expiry_time),
            current_booking_id=model.current_booking_id,
            revision=model.revision,
            created_at=as_utc(model.created_at),
            updated_at=as_utc(model.updated_at),
        )

    @staticmethod
    def lot_to_orm(lot: ParkingLot) -> LotModel:
        return LotModel(
            id=lot.id,
            name=lot.name,
            location=lot.location,
            total_spaces=lot.total_spaces,
            available_spaces=lot.available_spaces,
            occupied_spaces=lot.occupied_spaces,
            booked_spaces=lot.booked_spaces,
            revision=lot.revision,
            created_at=lot.created_at,
            updated_at=lot.updated_at,
        )

    @staticmethod
    def lot_to_domain(model: LotModel) -> ParkingLot:
        return ParkingLot(
            id=model.id,
            name=model.name,
            location=model.location,
            total_spaces=model.total_spaces,
            available_spaces=model.available_spaces,
            occupied_spaces=model.occupied_spaces,
            booked_spaces=model.booked_spaces,
            revision=model.revision,
            created_at=as_utc(model.created_at),
            updated_at=as_utc(model.updated_at),
        )


# ============================================================================
# STORE
# ============================================================================

class SQLAlchemyStore:
    """
    Engine, session factory and worker threads shared by the SQL repositories.

    SQLite connections are not safe to share between threads, so SQLite
    stores default to a single worker.
    """

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None,
                 max_workers: Optional[int] = None):
        if engine is None:
            if not database_url:
                raise InvalidArgumentError("Either database_url or engine is required")
            engine = create_engine(database_url, pool_pre_ping=True)
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        if max_workers is None and engine.dialect.name == 'sqlite':
            max_workers = 1
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='lotsync-sql')
        self._logger = logging.getLogger(self.__class__.__name__)

    def create_schema(self) -> None:
        Base.metadata.create_all(bind=self.engine)
        self._logger.info(f"Schema ready on {self.engine.url.render_as_string(hide_password=True)}")

    async def prepare(self) -> None:
        """Create the schema from the store's own worker thread"""
        await asyncio.get_running_loop().run_in_executor(self._executor, self.create_schema)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Transactional scope: commit on success, roll back on any error"""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    async def run(self, operation: Callable[[Session], T], description: str,
                  conflict_message: Optional[str] = None) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, self._run_sync, operation, description, conflict_message
        )

    def _run_sync(self, operation: Callable[[Session], T], description: str,
                  conflict_message: Optional[str]) -> T:
        try:
            with self.session_scope() as session:
                return operation(session)
        except IntegrityError as e:
            self._logger.info(f"Integrity error during {description}: {e.orig}")
            raise ConflictError(conflict_message or f"Conflicting write during {description}", cause=e)
        except (OperationalError, DisconnectionError, PoolTimeoutError) as e:
            self._logger.warning(f"Database unavailable during {description}: {e}")
            raise TransientError(f"Database unavailable during {description}", cause=e)
        except SQLAlchemyError as e:
            self._logger.error(f"Database error during {description}: {e}")
            raise

    def dispose(self) -> None:
        self._executor.shutdown(wait=True)
        self.engine.dispose()
        self._logger.info("SQLAlchemy store disposed")


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemySpaceRepository(SpaceRepository):
    """SQL-backed space store"""

    def __init__(self, store: SQLAlchemyStore):
        self.store = store
        self._logger = logging.getLogger(self.__class__.__name__)

    async def get(self, space_id: str) -> Optional[ParkingSpace]:
        def operation(session: Session) -> Optional[ParkingSpace]:
            model = session.get(SpaceModel, space_id)
            return Mapper.space_to_domain(model) if model else None
        return await self.store.run(operation, f"get space {space_id}")

    async def find_by_lot(self, lot_id: str) -> List[ParkingSpace]:
        def operation(session: Session) -> List[ParkingSpace]:
            query = select(SpaceModel).where(SpaceModel.lot_id == lot_id).order_by(SpaceModel.number)
            return [Mapper.space_to_domain(m) for m in session.scalars(query)]
        return await self.store.run(operation, f"list spaces of lot {lot_id}")

    async def find_by_number(self, lot_id: str, number: int) -> Optional[ParkingSpace]:
        def operation(session: Session) -> Optional[ParkingSpace]:
            query = select(SpaceModel).where(SpaceModel.lot_id == lot_id, SpaceModel.number == number)
            model = session.scalars(query).first()
            return Mapper.space_to_domain(model) if model else None
        return await self.store.run(operation, f"find space #{number} in lot {lot_id}")

    async def find_active(self) -> List[ParkingSpace]:
        def operation(session: Session) -> List[ParkingSpace]:
            query = (select(SpaceModel)
                     .where(SpaceModel.status != SpaceStatus.VACANT.value)
                     .order_by(SpaceModel.number, SpaceModel.id))
            return [Mapper.space_to_domain(m) for m in session.scalars(query)]
        return await self.store.run(operation, "list active spaces")

    async def add(self, space: ParkingSpace) -> ParkingSpace:
        stored = clone(space, revision=1)

        def operation(session: Session) -> ParkingSpace:
            session.add(Mapper.space_to_orm(stored))
            session.flush()
            return stored
        result = await self.store.run(
            operation, f"add space {space.id}",
            conflict_message=f"Space #{space.number} already exists in this lot",
        )
        self._logger.debug(f"Added space {result.id} (#{result.number}) to lot {result.lot_id}")
        return result

    async def add_many(self, spaces: List[ParkingSpace]) -> List[ParkingSpace]:
        stored = [clone(space, revision=1) for space in spaces]

        def operation(session: Session) -> List[ParkingSpace]:
            session.add_all([Mapper.space_to_orm(space) for space in stored])
            session.flush()
            return stored
        numbers = ", ".join(f"#{space.number}" for space in spaces)
        return await self.store.run(
            operation, f"add {len(spaces)} spaces",
            conflict_message=f"One of the spaces {numbers} already exists in this lot",
        )

    async def replace(self, space: ParkingSpace, expected_revision: int) -> ParkingSpace:
        stored = clone(space, revision=expected_revision + 1)

        def operation(session: Session) -> ParkingSpace:
            result = session.execute(
                sql_update(SpaceModel)
                .where(SpaceModel.id == space.id,
                       SpaceModel.lot_id == space.lot_id,
                       SpaceModel.revision == expected_revision)
                .values(**Mapper.space_values(stored))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = session.get(SpaceModel, space.id)
                if current is None:
                    raise NotFoundError(f"Space {space.id} not found")
                if current.lot_id != space.lot_id:
                    raise InvalidArgumentError(f"Space {space.id} cannot move between lots")
                raise StaleWriteError(
                    f"Space {space.id} is at revision {current.revision}, expected {expected_revision}",
                    expected_revision=expected_revision,
                )
            return stored
        return await self.store.run(
            operation, f"replace space {space.id}",
            conflict_message=f"Space #{space.number} already exists in this lot",
        )

    async def delete(self, space_id: str) -> Optional[ParkingSpace]:
        def operation(session: Session) -> Optional[ParkingSpace]:
            model = session.get(SpaceModel, space_id)
            if model is None:
                return None
            removed = Mapper.space_to_domain(model)
            session.delete(model)
            return removed
        return await self.store.run(operation, f"delete space {space_id}")

    async def delete_by_lot(self, lot_id: str) -> int:
        def operation(session: Session) -> int:
            result = session.execute(
                sql_delete(SpaceModel)
                .where(SpaceModel.lot_id == lot_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount
        return await self.store.run(operation, f"delete spaces of lot {lot_id}")


class SQLAlchemyLotRepository(LotRepository):
    """SQL-backed lot store"""

    def __init__(self, store: SQLAlchemyStore):
        self.store = store
        self._logger = logging.getLogger(self.__class__.__name__)

    async def get(self, lot_id: str) -> Optional[ParkingLot]:
        def operation(session: Session) -> Optional[ParkingLot]:
            model = session.get(LotModel, lot_id)
            return Mapper.lot_to_domain(model) if model else None
        return await self.store.run(operation, f"get lot {lot_id}")

    async def get_all(self) -> List[ParkingLot]:
        def operation(session: Session) -> List[ParkingLot]:
            query = select(LotModel).order_by(LotModel.created_at, LotModel.id)
            return [Mapper.lot_to_domain(m) for m in session.scalars(query)]
        return await self.store.run(operation, "list lots")

    async def add(self, lot: ParkingLot) -> ParkingLot:
        stored = clone(lot, revision=1)

        def operation(session: Session) -> ParkingLot:
            session.add(Mapper.lot_to_orm(stored))
            session.flush()
            return stored
        return await self.store.run(operation, f"add lot {lot.id}", conflict_message=f"Lot {lot.id} already exists")

    async def write_counts(self, lot_id: str, counts: LotCounts, expected_revision: int) -> ParkingLot:
        def operation(session: Session) -> ParkingLot:
            result = session.execute(
                sql_update(LotModel)
                .where(LotModel.id == lot_id, LotModel.revision == expected_revision)
                .values(
                    total_spaces=counts.total,
                    available_spaces=counts.available,
                    occupied_spaces=counts.occupied,
                    booked_spaces=counts.booked,
                    revision=expected_revision + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            model = session.get(LotModel, lot_id)
            if model is None:
                raise NotFoundError(f"Lot {lot_id} not found")
            if result.rowcount == 0:
                raise StaleWriteError(
                    f"Lot {lot_id} is at revision {model.revision}, expected {expected_revision}",
                    expected_revision=expected_revision,
                )
            return Mapper.lot_to_domain(model)
        return await self.store.run(operation, f"write counts of lot {lot_id}")

    async def update_details(self, lot_id: str, name: Optional[str] = None,
                             location: Optional[str] = None) -> ParkingLot:
        values: Dict[str, Any] = {'revision': LotModel.revision + 1, 'updated_at': utcnow()}
        if name is not None:
            values['name'] = name
        if location is not None:
            values['location'] = location

        def operation(session: Session) -> ParkingLot:
            result = session.execute(
                sql_update(LotModel)
                .where(LotModel.id == lot_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Lot {lot_id} not found")
            return Mapper.lot_to_domain(session.get(LotModel, lot_id))
        return await self.store.run(operation, f"update lot {lot_id}")

    async def delete(self, lot_id: str) -> bool:
        def operation(session: Session) -> bool:
            model = session.get(LotModel, lot_id)
            if model is None:
                return False
            session.delete(model)
            return True
        return await self.store.run(operation, f"delete lot {lot_id}")
