# File: src/lotsync/application/permissions.py
"""
Role policy for mutating operations

Every mutating service method takes an optional ``actor``. ``None`` means a
trusted internal caller (background jobs, reconciliation repair) and skips
the check; otherwise the actor's role must be allowed before any write.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional
import logging

from ..domain.exceptions import PermissionDeniedError
from ..domain.models import Actor, UserRole


class Operation(str, Enum):
    CREATE_LOT = "create_lot"
    UPDATE_LOT = "update_lot"
    DELETE_LOT = "delete_lot"
    CREATE_SPACE = "create_space"
    BULK_CREATE_SPACES = "bulk_create_spaces"
    RENUMBER_SPACE = "renumber_space"
    DELETE_SPACE = "delete_space"
    SET_STATUS = "set_status"
    CHECK_OUT = "check_out"
    RECONCILE = "reconcile"


_ADMIN = frozenset({UserRole.ADMIN})
_STAFF = frozenset({UserRole.ADMIN, UserRole.WORKER})

POLICY: Dict[Operation, FrozenSet[UserRole]] = {
    Operation.CREATE_LOT: _ADMIN,
    Operation.UPDATE_LOT: _ADMIN,
    Operation.DELETE_LOT: _ADMIN,
    Operation.BULK_CREATE_SPACES: _ADMIN,
    Operation.DELETE_SPACE: _ADMIN,
    Operation.CREATE_SPACE: _STAFF,
    Operation.RENUMBER_SPACE: _STAFF,
    Operation.SET_STATUS: _STAFF,
    Operation.CHECK_OUT: _STAFF,
    Operation.RECONCILE: _STAFF,
}

_logger = logging.getLogger("Permissions")


def authorize(actor: Optional[Actor], operation: Operation) -> None:
    """Raise PermissionDeniedError unless ``actor`` may perform ``operation``"""
    if actor is None:
        return
    allowed = POLICY[operation]
    if actor.role not in allowed:
        _logger.info(f"Denied {operation.value} to {actor.user_id} ({actor.role.value})")
        roles = " or ".join(sorted(role.value for role in allowed))
        raise PermissionDeniedError(f"Operation {operation.value} requires role {roles}")
