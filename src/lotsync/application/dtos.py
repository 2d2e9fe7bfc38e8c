# File: src/lotsync/application/dtos.py
"""
Result objects returned by the application services

Services report a reconciliation failure that follows a successful space
write inside the result (``reconciliation_error``) instead of raising, so
the caller can retry reconciliation alone.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Dict, Any

from ..domain.exceptions import LotSyncError
from ..domain.models import ParkingLot, ParkingSpace


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation pass"""
    changed: bool
    aggregate: ParkingLot
    attempts: int = 1


@dataclass
class SpaceWriteResult:
    """A committed space write and the reconciliation that followed it"""
    space: Optional[ParkingSpace]
    aggregate: Optional[ParkingLot] = None
    reconciliation_error: Optional[LotSyncError] = None

    @property
    def reconciled(self) -> bool:
        return self.reconciliation_error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'space': self.space.to_dict() if self.space else None,
            'aggregate': self.aggregate.to_dict() if self.aggregate else None,
            'reconciliation_error': repr(self.reconciliation_error) if self.reconciliation_error else None,
        }


@dataclass
class TransitionResult(SpaceWriteResult):
    """Result of a status change"""
    previous_status: Optional[str] = None


@dataclass
class BulkCreateResult:
    """Spaces created by one batch, reconciled once"""
    spaces: List[ParkingSpace] = field(default_factory=list)
    aggregate: Optional[ParkingLot] = None
    reconciliation_error: Optional[LotSyncError] = None

    @property
    def reconciled(self) -> bool:
        return self.reconciliation_error is None


@dataclass
class CheckoutResult(SpaceWriteResult):
    """Final settlement of a stay followed by vacating the space"""
    charge: Decimal = Decimal('0')
    billing_type: Optional[str] = None
    duration_minutes: float = 0.0


@dataclass(frozen=True)
class ChargeEstimate:
    """Live charge shown before checkout"""
    space_id: str
    role: str
    amount: Decimal
    rate: Decimal
    billing_type: str
    duration_minutes: float


@dataclass(frozen=True)
class LotDeletionResult:
    lot_id: str
    deleted_spaces: int


@dataclass
class ReconcileAllResult:
    """Outcome of a repair pass over every lot"""
    results: Dict[str, ReconcileResult] = field(default_factory=dict)
    errors: Dict[str, LotSyncError] = field(default_factory=dict)

    @property
    def changed_lots(self) -> List[str]:
        return [lot_id for lot_id, result in self.results.items() if result.changed]
