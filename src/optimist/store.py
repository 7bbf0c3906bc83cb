"""
Entity Store and Operation Log.

Both are plain data holders owned by the Reconciler. Entities and operations
reference each other by id only; nothing outside the engine receives a live
reference to either structure.
"""

import logging
from collections import OrderedDict
from typing import Dict, Iterator, List, Optional

from .errors import UnknownOperationError
from .models import ConfirmedState, EntityRecord, Operation

logger = logging.getLogger(__name__)


class EntityStore:
    """Confirmed (server-acknowledged) entity state keyed by entity id."""

    def __init__(self):
        self._records: Dict[str, EntityRecord] = {}

    def get(self, entity_id: str) -> Optional[EntityRecord]:
        return self._records.get(entity_id)

    def ensure(self, entity_id: str) -> EntityRecord:
        """Get the record for entity_id, creating an empty one if needed."""
        record = self._records.get(entity_id)
        if record is None:
            record = EntityRecord(id=entity_id)
            self._records[entity_id] = record
            logger.debug(f"Created entity record {entity_id}")
        return record

    def set_confirmed(self, entity_id: str, state: ConfirmedState) -> EntityRecord:
        record = self.ensure(entity_id)
        record.confirmed_state = state
        return record

    def remove(self, entity_id: str) -> bool:
        """Drop an entity. Only legal once its pending queue is empty."""
        record = self._records.get(entity_id)
        if record is None:
            return False
        if record.pending_ops:
            raise ValueError(
                f"Cannot remove entity {entity_id}: "
                f"{len(record.pending_ops)} operations still queued"
            )
        del self._records[entity_id]
        logger.debug(f"Removed entity record {entity_id}")
        return True

    def ids(self) -> List[str]:
        return list(self._records)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._records

    def __iter__(self) -> Iterator[EntityRecord]:
        return iter(list(self._records.values()))

    def __len__(self) -> int:
        return len(self._records)


class OperationLog:
    """
    Per-entity ordered queues of in-flight operations.

    The queue order itself lives on EntityRecord.pending_ops; the log owns the
    live Operation objects. Once an operation is terminal and off its queue it
    is retired: kept in a bounded history so late outcomes can still be
    recognised and ignored, then evicted oldest first.
    """

    def __init__(self, store: EntityStore, retain: int = 1000):
        self._store = store
        self._operations: Dict[str, Operation] = {}
        self._retired: "OrderedDict[str, Operation]" = OrderedDict()
        self.retain = retain

    def append(self, operation: Operation) -> None:
        record = self._store.ensure(operation.entity_id)
        self._operations[operation.op_id] = operation
        record.pending_ops.append(operation.op_id)

    def get(self, op_id: str) -> Operation:
        operation = self.find(op_id)
        if operation is None:
            raise UnknownOperationError(op_id)
        return operation

    def find(self, op_id: str) -> Optional[Operation]:
        operation = self._operations.get(op_id)
        if operation is None:
            operation = self._retired.get(op_id)
        return operation

    def detach(self, op_id: str) -> None:
        """Remove an operation from its entity's queue (keeps the Operation)."""
        operation = self.get(op_id)
        record = self._store.get(operation.entity_id)
        if record is not None and op_id in record.pending_ops:
            record.pending_ops.remove(op_id)

    def queue(self, entity_id: str) -> List[Operation]:
        """Operations queued for an entity, in submission order."""
        record = self._store.get(entity_id)
        if record is None:
            return []
        return [self._operations[op_id] for op_id in record.pending_ops]

    def position(self, op_id: str) -> int:
        operation = self.get(op_id)
        record = self._store.get(operation.entity_id)
        if record is None or op_id not in record.pending_ops:
            return -1
        return record.pending_ops.index(op_id)

    def retire(self, op_id: str) -> List[str]:
        """
        Move a terminal, dequeued operation into the bounded history.

        Returns:
            Ids evicted from the history to stay within `retain`
        """
        operation = self._operations.pop(op_id, None)
        if operation is None:
            return []
        self._retired[op_id] = operation
        evicted = []
        while len(self._retired) > self.retain:
            old_id, _ = self._retired.popitem(last=False)
            evicted.append(old_id)
        if evicted:
            logger.debug(f"Evicted {len(evicted)} retired operations from history")
        return evicted

    def is_retired(self, op_id: str) -> bool:
        return op_id in self._retired

    def __contains__(self, op_id: str) -> bool:
        return op_id in self._operations or op_id in self._retired

    def __len__(self) -> int:
        """Number of live (not yet retired) operations."""
        return len(self._operations)
