# File: src/lotsync/application/parking_service.py
"""
Status Transition Service

Applies status changes and administrative edits to individual spaces and
triggers reconciliation of the owning lot after every committed write.

Responsibilities:
1. Per-space state machine (vacant / occupied / booked, any to any)
2. Number uniqueness within a lot for creation, bulk creation and renumbering
3. Reconciliation after each write, reported in the result rather than raised
4. Charge estimates and check-out settlement through the billing calculator

Concurrency:
- writes to one space are linearised with compare-and-swap on the space
  revision; a lost race re-reads and re-applies the caller's intent
- number checks and the following write run under a lot-scoped asyncio.Lock,
  the only lock held across store I/O, always under the store timeout
"""

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple, Union, Mapping, Any
import asyncio
import logging

from ..domain.exceptions import (
    LotSyncError, NotFoundError, ConflictError, InvalidArgumentError, StaleWriteError
)
from ..domain.models import (
    ParkingSpace, ParkingLot, SpaceStatus, Occupant, Actor, UserRole,
    validate_space_number, utcnow
)
from ..domain.strategies import BillingRates, compute_charge, strategy_for_role, to_amount, Amount
from ..infrastructure.repositories import LotRepository, SpaceRepository
from .dtos import SpaceWriteResult, TransitionResult, BulkCreateResult, CheckoutResult, ChargeEstimate
from .permissions import Operation, authorize
from .reconciliation import ReconciliationEngine
from .retry import with_timeout


Clock = Callable[[], datetime]
SpaceMutation = Callable[[ParkingSpace], ParkingSpace]


class LotLockRegistry:
    """
    Lot-scoped locks serialising number checks with the writes that follow.

    An entry lives only while some task holds or waits for its lock, so ids
    that never named a lot, or name a deleted one, leave nothing behind.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, lot_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(lot_id)
        if lock is None:
            lock = self._locks[lot_id] = asyncio.Lock()
        self._users[lot_id] = self._users.get(lot_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[lot_id] -= 1
            if not self._users[lot_id]:
                del self._users[lot_id]
                del self._locks[lot_id]

    def __len__(self) -> int:
        return len(self._locks)


class StatusTransitionService:
    """Validates and applies changes to single spaces"""

    def __init__(
        self,
        spaces: SpaceRepository,
        lots: LotRepository,
        reconciler: ReconciliationEngine,
        *,
        rates: BillingRates = BillingRates(),
        lot_locks: Optional[LotLockRegistry] = None,
        timeout: Optional[float] = 10.0,
        max_write_attempts: int = 5,
        clock: Clock = utcnow,
    ):
        self.spaces = spaces
        self.lots = lots
        self.reconciler = reconciler
        self.rates = rates
        self.lot_locks = lot_locks or LotLockRegistry()
        self.timeout = timeout
        self.max_write_attempts = max_write_attempts
        self._clock = clock
        self._logger = logging.getLogger(self.__class__.__name__)

    # ========================================================================
    # STATUS TRANSITIONS
    # ========================================================================

    async def set_status(
        self,
        space_id: str,
        new_status: Union[SpaceStatus, str],
        occupant: Union[Occupant, Mapping[str, Any], None] = None,
        *,
        start_time: Optional[datetime] = None,
        booking_expiry_time: Optional[datetime] = None,
        current_booking_id: Optional[str] = None,
        actor: Optional[Actor] = None,
        timeout: Optional[float] = None,
    ) -> TransitionResult:
        """
        Move a space to ``new_status``.

        Vacating clears occupant data and timing. Entering occupied or booked
        from vacant starts the clock now; switching between occupied and
        booked keeps the running start time unless ``start_time`` is given.
        Occupant fields passed in are merged over the existing ones.
        """
        authorize(actor, Operation.SET_STATUS)
        new_status = SpaceStatus.coerce(new_status)
        occupant = Occupant.coerce(occupant)

        def mutate(current: ParkingSpace) -> ParkingSpace:
            return current.transition(
                new_status,
                occupant,
                now=self._clock(),
                start_time=start_time,
                booking_expiry_time=booking_expiry_time,
                current_booking_id=current_booking_id,
            )

        stored, previous = await with_timeout(
            self._apply(space_id, mutate),
            self._timeout(timeout),
            f"set status of space {space_id}",
        )
        self._logger.info(
            f"Space #{stored.number} in lot {stored.lot_id}: {previous.status.value} -> {stored.status.value}"
        )
        aggregate, error = await self._reconcile_after_write(stored.lot_id, timeout)
        return TransitionResult(
            space=stored,
            aggregate=aggregate,
            reconciliation_error=error,
            previous_status=previous.status.value,
        )

    async def _apply(self, space_id: str, mutate: SpaceMutation) -> Tuple[ParkingSpace, ParkingSpace]:
        """Compare-and-swap loop: returns (stored record, record it replaced)"""
        for attempt in range(1, self.max_write_attempts + 1):
            current = await self.spaces.get(space_id)
            if current is None:
                raise NotFoundError(f"Space {space_id} not found")
            try:
                stored = await self.spaces.replace(mutate(current), expected_revision=current.revision)
            except StaleWriteError:
                self._logger.debug(f"Space {space_id} changed concurrently (attempt {attempt}), retrying")
                continue
            return stored, current
        raise StaleWriteError(f"Space {space_id} kept changing; gave up after {self.max_write_attempts} attempts")

    async def _reconcile_after_write(
        self, lot_id: str, timeout: Optional[float]
    ) -> Tuple[Optional[ParkingLot], Optional[LotSyncError]]:
        try:
            result = await self.reconciler.reconcile(lot_id, self._timeout(timeout))
            return result.aggregate, None
        except LotSyncError as e:
            self._logger.warning(f"Space write committed but reconciliation of lot {lot_id} failed: {e!r}")
            return None, e

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return self.timeout if timeout is None else timeout

    # ========================================================================
    # SPACE ADMINISTRATION
    # ========================================================================

    async def create_space(self, lot_id: str, number: int, *, actor: Optional[Actor] = None,
                           timeout: Optional[float] = None) -> SpaceWriteResult:
        """Add one vacant space; ConflictError if the number is taken"""
        authorize(actor, Operation.CREATE_SPACE)
        number = validate_space_number(number)

        async def write() -> ParkingSpace:
            async with self.lot_locks.lock(lot_id):
                await self._require_lot(lot_id)
                if await self.spaces.find_by_number(lot_id, number) is not None:
                    raise ConflictError(f"Space #{number} already exists in this lot")
                now = self._clock()
                return await self.spaces.add(
                    ParkingSpace(lot_id=lot_id, number=number, created_at=now, updated_at=now)
                )

        space = await with_timeout(write(), self._timeout(timeout), f"create space #{number} in lot {lot_id}")
        self._logger.info(f"Created space #{number} in lot {lot_id}")
        aggregate, error = await self._reconcile_after_write(lot_id, timeout)
        return SpaceWriteResult(space=space, aggregate=aggregate, reconciliation_error=error)

    async def create_multiple_spaces(self, lot_id: str, start_number: int, count: int, *,
                                     actor: Optional[Actor] = None,
                                     timeout: Optional[float] = None) -> BulkCreateResult:
        """
        Add ``count`` vacant spaces numbered from ``start_number``.

        The whole range is checked before anything is written: one clash
        fails the batch and leaves the lot untouched. Reconciles once.
        """
        authorize(actor, Operation.BULK_CREATE_SPACES)
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            raise InvalidArgumentError(f"Count must be a positive integer, got {count!r}")
        start_number = validate_space_number(start_number)
        numbers = range(start_number, start_number + count)

        async def write() -> List[ParkingSpace]:
            async with self.lot_locks.lock(lot_id):
                await self._require_lot(lot_id)
                existing = {space.number for space in await self.spaces.find_by_lot(lot_id)}
                clashes = [number for number in numbers if number in existing]
                if clashes:
                    taken = ", ".join(f"#{number}" for number in clashes)
                    raise ConflictError(f"Space {taken} already exists in this lot")
                now = self._clock()
                return await self.spaces.add_many([
                    ParkingSpace(lot_id=lot_id, number=number, created_at=now, updated_at=now)
                    for number in numbers
                ])

        spaces = await with_timeout(
            write(), self._timeout(timeout),
            f"create spaces #{numbers.start}-#{numbers.stop - 1} in lot {lot_id}",
        )
        self._logger.info(f"Created {len(spaces)} spaces (#{numbers.start}-#{numbers.stop - 1}) in lot {lot_id}")
        aggregate, error = await self._reconcile_after_write(lot_id, timeout)
        return BulkCreateResult(spaces=spaces, aggregate=aggregate, reconciliation_error=error)

    async def renumber_space(self, space_id: str, new_number: int, *, actor: Optional[Actor] = None,
                             timeout: Optional[float] = None) -> SpaceWriteResult:
        authorize(actor, Operation.RENUMBER_SPACE)
        new_number = validate_space_number(new_number)

        async def write() -> ParkingSpace:
            current = await self.spaces.get(space_id)
            if current is None:
                raise NotFoundError(f"Space {space_id} not found")
            async with self.lot_locks.lock(current.lot_id):
                holder = await self.spaces.find_by_number(current.lot_id, new_number)
                if holder is not None and holder.id != space_id:
                    raise ConflictError(f"Space #{new_number} already exists in this lot")
                stored, _ = await self._apply(
                    space_id, lambda space: space.renumbered(new_number, now=self._clock())
                )
                return stored

        space = await with_timeout(write(), self._timeout(timeout), f"renumber space {space_id}")
        self._logger.info(f"Space {space_id} in lot {space.lot_id} renumbered to #{new_number}")
        aggregate, error = await self._reconcile_after_write(space.lot_id, timeout)
        return SpaceWriteResult(space=space, aggregate=aggregate, reconciliation_error=error)

    async def delete_space(self, space_id: str, *, actor: Optional[Actor] = None,
                           timeout: Optional[float] = None) -> SpaceWriteResult:
        """Remove a space, then reconcile its former lot"""
        authorize(actor, Operation.DELETE_SPACE)
        removed = await with_timeout(self.spaces.delete(space_id), self._timeout(timeout),
                                     f"delete space {space_id}")
        if removed is None:
            raise NotFoundError(f"Space {space_id} not found")
        self._logger.info(
            f"Deleted space #{removed.number} ({removed.status.value}) from lot {removed.lot_id}"
        )
        aggregate, error = await self._reconcile_after_write(removed.lot_id, timeout)
        return SpaceWriteResult(space=removed, aggregate=aggregate, reconciliation_error=error)

    async def _require_lot(self, lot_id: str) -> ParkingLot:
        lot = await self.lots.get(lot_id)
        if lot is None:
            raise NotFoundError(f"Lot {lot_id} not found")
        return lot

    # ========================================================================
    # BILLING
    # ========================================================================

    def _rate(self, role: UserRole, rate: Optional[Amount]) -> Decimal:
        return self.rates.rate_for(role) if rate is None else to_amount(rate)

    async def estimate_charge(self, space_id: str, role: Union[UserRole, str],
                              rate: Optional[Amount] = None, now: Optional[datetime] = None) -> ChargeEstimate:
        """Charge the current occupant would pay if they left at ``now``"""
        role = UserRole.coerce(role)
        space = await with_timeout(self.spaces.get(space_id), self.timeout, f"get space {space_id}")
        if space is None:
            raise NotFoundError(f"Space {space_id} not found")
        if space.start_time is None:
            raise InvalidArgumentError(f"Space #{space.number} is vacant; there is nothing to bill")
        rate = self._rate(role, rate)
        now = now or self._clock()
        amount = compute_charge(role, space.start_time, now, rate, self.rates.guest_free_minutes)
        return ChargeEstimate(
            space_id=space.id,
            role=role.value,
            amount=amount,
            rate=rate,
            billing_type=strategy_for_role(role).billing_type.value,
            duration_minutes=(now - space.start_time).total_seconds() / 60,
        )

    async def check_out(self, space_id: str, role: Union[UserRole, str], rate: Optional[Amount] = None, *,
                        actor: Optional[Actor] = None, timeout: Optional[float] = None) -> CheckoutResult:
        """
        Settle the stay and vacate the space.

        The charge is computed from the exact record that gets vacated, so a
        concurrent change to the space re-computes it.
        """
        authorize(actor, Operation.CHECK_OUT)
        role = UserRole.coerce(role)
        rate = self._rate(role, rate)
        settlement: Dict[str, Any] = {}

        def mutate(current: ParkingSpace) -> ParkingSpace:
            if current.start_time is None:
                raise InvalidArgumentError(f"Space #{current.number} is already vacant")
            now = self._clock()
            settlement['charge'] = compute_charge(
                role, current.start_time, now, rate, self.rates.guest_free_minutes
            )
            settlement['minutes'] = (now - current.start_time).total_seconds() / 60
            return current.transition(SpaceStatus.VACANT, now=now)

        stored, previous = await with_timeout(
            self._apply(space_id, mutate), self._timeout(timeout), f"check out space {space_id}"
        )
        self._logger.info(
            f"Checked out space #{stored.number} in lot {stored.lot_id} "
            f"({role.value}, {settlement['minutes']:.1f} min): charge {settlement['charge']}"
        )
        aggregate, error = await self._reconcile_after_write(stored.lot_id, timeout)
        return CheckoutResult(
            space=stored,
            aggregate=aggregate,
            reconciliation_error=error,
            charge=settlement['charge'],
            billing_type=strategy_for_role(role).billing_type.value,
            duration_minutes=settlement['minutes'],
        )
