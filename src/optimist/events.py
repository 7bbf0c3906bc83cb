"""
Event type definitions for the reconciliation engine.

This module defines typed events emitted during an operation's lifecycle:
- OperationSubmittedEvent: Operation applied optimistically
- OperationRetryingEvent: Transient failure, retry scheduled
- OperationConfirmedEvent: Server accepted the operation
- OperationRolledBackEvent: Operation removed after a failure or discard
- OperationConflictedEvent: Server reported a version mismatch
- OperationResolvedEvent: A conflict resolution was applied
- OperationCancelledEvent: Caller cancelled a pending operation
- EntityChangedEvent: Projected effective state of an entity changed

All events carry the entity id and a snapshot (copy) of the effective state
where relevant, so UI layers never need to re-derive it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


@dataclass
class OperationSubmittedEvent:
    """Event emitted when an operation is applied optimistically."""
    op_id: str
    entity_id: str
    kind: str
    state: Optional[Dict[str, Any]]
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "operation.submitted"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type,
            "op_id": self.op_id,
            "entity_id": self.entity_id,
            "kind": self.kind,
            "state": self.state,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class OperationRetryingEvent:
    """Event emitted before a transient failure is retried."""
    op_id: str
    entity_id: str
    attempt: int
    delay_ms: float
    reason: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "operation.retrying"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type,
            "op_id": self.op_id,
            "entity_id": self.entity_id,
            "attempt": self.attempt,
            "delay_ms": self.delay_ms,
            "reason": self.reason,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class OperationConfirmedEvent:
    """Event emitted when the server accepts an operation."""
    op_id: str
    entity_id: str
    version: Optional[int]
    state: Optional[Dict[str, Any]]
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "operation.confirmed"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type,
            "op_id": self.op_id,
            "entity_id": self.entity_id,
            "version": self.version,
            "state": self.state,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class OperationRolledBackEvent:
    """Event emitted when an operation's effect is removed.

    state is the re-projected effective state after rollback; with no other
    operations queued it equals previous_snapshot.
    """
    op_id: str
    entity_id: str
    previous_snapshot: Optional[Dict[str, Any]]
    state: Optional[Dict[str, Any]]
    reason: str  # terminal | exhausted | keep_remote
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "operation.rolled_back"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type,
            "op_id": self.op_id,
            "entity_id": self.entity_id,
            "previous_snapshot": self.previous_snapshot,
            "state": self.state,
            "reason": self.reason,
            "error": self.error,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class OperationConflictedEvent:
    """Event emitted when the server reports a version mismatch."""
    op_id: str
    entity_id: str
    local_patch: Dict[str, Any]
    remote_state: Optional[Dict[str, Any]]
    remote_version: int
    state: Optional[Dict[str, Any]]
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "operation.conflicted"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type,
            "op_id": self.op_id,
            "entity_id": self.entity_id,
            "local_patch": self.local_patch,
            "remote_state": self.remote_state,
            "remote_version": self.remote_version,
            "state": self.state,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class OperationResolvedEvent:
    """Event emitted when a conflict resolution is applied."""
    op_id: str
    entity_id: str
    policy: str
    action: str
    state: Optional[Dict[str, Any]]
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "operation.resolved"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type,
            "op_id": self.op_id,
            "entity_id": self.entity_id,
            "policy": self.policy,
            "action": self.action,
            "state": self.state,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class OperationCancelledEvent:
    """Event emitted when a caller cancels a pending operation."""
    op_id: str
    entity_id: str
    previous_snapshot: Optional[Dict[str, Any]]
    state: Optional[Dict[str, Any]]
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "operation.cancelled"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type,
            "op_id": self.op_id,
            "entity_id": self.entity_id,
            "previous_snapshot": self.previous_snapshot,
            "state": self.state,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class EntityChangedEvent:
    """Event emitted whenever an entity's projected state is republished.

    cause is one of: submitted, confirmed, rolled_back, conflicted, resolved,
    cancelled, loaded, restored.
    """
    entity_id: str
    state: Optional[Dict[str, Any]]
    version: int
    cause: str
    op_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "entity.changed"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type,
            "entity_id": self.entity_id,
            "state": self.state,
            "version": self.version,
            "cause": self.cause,
            "op_id": self.op_id,
            "timestamp": _iso(self.timestamp),
        }
