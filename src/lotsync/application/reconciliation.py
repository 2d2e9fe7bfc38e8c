# File: src/lotsync/application/reconciliation.py
"""
Reconciliation Engine

Keeps each lot's aggregate counters equal to a tally of its space records.

Algorithm for one pass:
1. read the lot (with its revision), then the lot's spaces
2. tally total/available/occupied/booked from the spaces
3. equal to the stored counters -> no write, ``changed=False``
4. otherwise write all four counters in one revision-guarded write

A lost compare-and-swap means another writer touched the lot after step 1;
the pass starts over from fresh reads. Because the counters are a pure
function of the space set, concurrent passes converge on the tally of the
final space set. Counters are never incremented or decremented.

A pass that overlaps a later space write may store a tally that is already
stale; the later write triggers its own pass, which corrects it.
"""

from typing import Optional
import logging

from ..domain.exceptions import NotFoundError, StaleWriteError, LotSyncError
from ..domain.models import LotCounts, Actor
from ..infrastructure.repositories import LotRepository, SpaceRepository
from .dtos import ReconcileResult, ReconcileAllResult
from .permissions import Operation, authorize
from .retry import with_timeout, retry_transient


class ReconciliationEngine:
    """Recomputes lot aggregates from the authoritative space set"""

    def __init__(
        self,
        lots: LotRepository,
        spaces: SpaceRepository,
        *,
        timeout: Optional[float] = 10.0,
        max_write_attempts: int = 5,
        retry_base_delay: float = 0.05,
    ):
        self.lots = lots
        self.spaces = spaces
        self.timeout = timeout
        self.max_write_attempts = max_write_attempts
        self.retry_base_delay = retry_base_delay
        self._logger = logging.getLogger(self.__class__.__name__)

    async def reconcile(self, lot_id: str, timeout: Optional[float] = None, *,
                        actor: Optional[Actor] = None) -> ReconcileResult:
        """
        Bring the stored counters of ``lot_id`` in line with its spaces.

        Raises NotFoundError for an unknown lot and TransientError when the
        store is unavailable, times out, or the lot kept changing for
        ``max_write_attempts`` passes. On TransientError the caller must not
        assume the aggregate was updated.
        """
        authorize(actor, Operation.RECONCILE)
        return await with_timeout(
            self._reconcile(lot_id),
            timeout if timeout is not None else self.timeout,
            f"reconcile lot {lot_id}",
        )

    async def _reconcile(self, lot_id: str) -> ReconcileResult:
        for attempt in range(1, self.max_write_attempts + 1):
            lot = await self.lots.get(lot_id)
            if lot is None:
                raise NotFoundError(f"Lot {lot_id} not found")
            spaces = await self.spaces.find_by_lot(lot_id)
            counts = LotCounts.tally(spaces)

            if lot.matches(counts):
                self._logger.debug(f"Lot {lot_id} already consistent: {counts}")
                return ReconcileResult(changed=False, aggregate=lot, attempts=attempt)

            try:
                updated = await self.lots.write_counts(lot_id, counts, expected_revision=lot.revision)
            except StaleWriteError:
                self._logger.debug(f"Lot {lot_id} changed during pass {attempt}, recomputing")
                continue

            self._logger.info(
                f"Reconciled lot {lot_id}: {lot.stored_counters} -> {counts.to_dict()}"
            )
            return ReconcileResult(changed=True, aggregate=updated, attempts=attempt)

        raise StaleWriteError(
            f"Lot {lot_id} kept changing; gave up after {self.max_write_attempts} passes"
        )

    async def reconcile_with_retry(self, lot_id: str, attempts: int = 3,
                                   base_delay: Optional[float] = None) -> ReconcileResult:
        """Reconcile, retrying transient failures with exponential backoff"""
        return await retry_transient(
            lambda: self.reconcile(lot_id),
            attempts=attempts,
            base_delay=self.retry_base_delay if base_delay is None else base_delay,
            description=f"reconcile lot {lot_id}",
            logger=self._logger,
        )

    async def reconcile_all(self, *, actor: Optional[Actor] = None) -> ReconcileAllResult:
        """Repair pass over every lot; one lot failing does not stop the others"""
        authorize(actor, Operation.RECONCILE)
        outcome = ReconcileAllResult()
        lots = await with_timeout(self.lots.get_all(), self.timeout, "list lots")
        for lot in lots:
            try:
                outcome.results[lot.id] = await self.reconcile(lot.id)
            except LotSyncError as e:
                self._logger.warning(f"Reconciliation of lot {lot.id} failed: {e}")
                outcome.errors[lot.id] = e
        self._logger.info(
            f"Reconciled {len(outcome.results)} lots ({len(outcome.changed_lots)} changed, "
            f"{len(outcome.errors)} failed)"
        )
        return outcome
