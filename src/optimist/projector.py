"""
Effective-State Projector.

Effective state = confirmed state with every queued, non-rolled-back patch
replayed in submission order. Rollback is therefore just "remove the
operation and project again"; no inverse patches are ever computed.
"""

import copy
from typing import Any, Dict, Optional

from .models import ConfirmedState, OperationKind, OperationStatus
from .patches import apply_patch
from .store import EntityStore, OperationLog

CONFLICT_VISIBILITY_OPTIMISTIC = "optimistic"
CONFLICT_VISIBILITY_FROZEN = "frozen"

# Statuses whose patches still contribute to projection while queued
_REPLAYED = (
    OperationStatus.PENDING,
    OperationStatus.CONFLICTED,
    OperationStatus.CONFIRMED,
)


class Projector:
    """Side-effect-free view over an EntityStore and OperationLog."""

    def __init__(
        self,
        store: EntityStore,
        log: OperationLog,
        conflict_visibility: str = CONFLICT_VISIBILITY_OPTIMISTIC,
    ):
        self._store = store
        self._log = log
        self.conflict_visibility = conflict_visibility

    def project(self, entity_id: str) -> Optional[Dict[str, Any]]:
        """
        Compute the state a consumer should see for an entity.

        Returns:
            Deep copy of the effective field set, or None if the entity is
            unknown or (effectively) deleted
        """
        record = self._store.get(entity_id)
        if record is None:
            return None
        return self.replay(record.confirmed_state, entity_id)

    def replay(self, base: ConfirmedState, entity_id: str) -> Optional[Dict[str, Any]]:
        state = copy.deepcopy(base.fields)
        frozen = self.conflict_visibility == CONFLICT_VISIBILITY_FROZEN

        for operation in self._log.queue(entity_id):
            if operation.status not in _REPLAYED:
                continue
            if frozen and operation.status == OperationStatus.CONFLICTED:
                break
            state = fold(state, operation.kind, operation.forward_patch)

        return state


def fold(state: Optional[Dict[str, Any]], kind: OperationKind, patch) -> Optional[Dict[str, Any]]:
    """Apply one operation's effect to a state."""
    if kind == OperationKind.DELETE:
        return None
    if kind == OperationKind.CREATE:
        return apply_patch({}, patch)
    if state is None:
        # The Create this update was queued behind has been rolled back.
        return None
    return apply_patch(state, patch)
