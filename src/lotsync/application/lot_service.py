# File: src/lotsync/application/lot_service.py
"""
Lot Administration Service

CRUD for parking lots and read-side listings used by the administration
and worker screens. Lots are created with zero counters; counters are
afterwards written only by the reconciliation engine.
"""

from typing import List, Optional
import logging

from ..domain.exceptions import InvalidArgumentError, NotFoundError
from ..domain.models import Actor, ParkingLot, ParkingSpace, utcnow
from ..infrastructure.repositories import LotRepository, SpaceRepository
from .dtos import LotDeletionResult
from .parking_service import LotLockRegistry
from .permissions import Operation, authorize
from .retry import with_timeout


class LotAdministrationService:
    """Creates, edits, lists and deletes lots"""

    def __init__(self, lots: LotRepository, spaces: SpaceRepository, *,
                 lot_locks: Optional[LotLockRegistry] = None, timeout: Optional[float] = 10.0):
        self.lots = lots
        self.spaces = spaces
        self.lot_locks = lot_locks or LotLockRegistry()
        self.timeout = timeout
        self._logger = logging.getLogger(self.__class__.__name__)

    async def create_lot(self, name: str, location: str = "", *, actor: Optional[Actor] = None) -> ParkingLot:
        authorize(actor, Operation.CREATE_LOT)
        name = _required_text(name, "Lot name")
        now = utcnow()
        lot = await with_timeout(
            self.lots.add(ParkingLot(name=name, location=(location or "").strip(), created_at=now, updated_at=now)),
            self.timeout, f"create lot {name}",
        )
        self._logger.info(f"Created lot {lot.id} ({lot.name})")
        return lot

    async def update_lot_details(self, lot_id: str, *, name: Optional[str] = None,
                                 location: Optional[str] = None, actor: Optional[Actor] = None) -> ParkingLot:
        """Rename or relocate a lot; counters are never touched here"""
        authorize(actor, Operation.UPDATE_LOT)
        if name is None and location is None:
            raise InvalidArgumentError("Nothing to update: pass a name or a location")
        if name is not None:
            name = _required_text(name, "Lot name")
        if location is not None:
            location = location.strip()
        lot = await with_timeout(self.lots.update_details(lot_id, name=name, location=location),
                                 self.timeout, f"update lot {lot_id}")
        self._logger.info(f"Updated lot {lot_id}")
        return lot

    async def delete_lot(self, lot_id: str, *, actor: Optional[Actor] = None) -> LotDeletionResult:
        """Delete a lot together with all of its spaces"""
        authorize(actor, Operation.DELETE_LOT)

        async def cascade() -> int:
            async with self.lot_locks.lock(lot_id):
                if await self.lots.get(lot_id) is None:
                    raise NotFoundError(f"Lot {lot_id} not found")
                removed = await self.spaces.delete_by_lot(lot_id)
                await self.lots.delete(lot_id)
                return removed

        removed = await with_timeout(cascade(), self.timeout, f"delete lot {lot_id}")
        self._logger.info(f"Deleted lot {lot_id} and {removed} spaces")
        return LotDeletionResult(lot_id=lot_id, deleted_spaces=removed)

    async def get_lot(self, lot_id: str) -> ParkingLot:
        lot = await with_timeout(self.lots.get(lot_id), self.timeout, f"get lot {lot_id}")
        if lot is None:
            raise NotFoundError(f"Lot {lot_id} not found")
        return lot

    async def list_lots(self) -> List[ParkingLot]:
        return await with_timeout(self.lots.get_all(), self.timeout, "list lots")

    async def list_spaces(self, lot_id: str) -> List[ParkingSpace]:
        await self.get_lot(lot_id)
        return await with_timeout(self.spaces.find_by_lot(lot_id), self.timeout, f"list spaces of lot {lot_id}")

    async def list_active_spaces(self) -> List[ParkingSpace]:
        """Occupied and booked spaces across all lots, for the worker screen"""
        return await with_timeout(self.spaces.find_active(), self.timeout, "list active spaces")


def _required_text(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        raise InvalidArgumentError(f"{label} cannot be empty")
    return str(value).strip()
