"""
Data models for the reconciliation engine.

This module contains the core dataclasses: confirmed entity state, the
operations queued against an entity, and the conflict records that exist
while an operation awaits resolution.
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .patches import Patch, encode_patch


class OperationKind(str, Enum):
    """Kind of mutation an operation performs."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def from_string(cls, kind: str) -> "OperationKind":
        """
        Convert string to OperationKind (case-insensitive).

        Raises:
            ValueError: If kind is invalid
        """
        try:
            return cls(kind.lower())
        except ValueError:
            raise ValueError(
                f"Invalid operation kind '{kind}'. Must be one of: create, update, delete"
            ) from None

    def __str__(self) -> str:
        return self.value


class OperationStatus(str, Enum):
    """
    Lifecycle status of an operation.

    PENDING: Applied optimistically, awaiting the server
    CONFLICTED: Server reported a version mismatch, awaiting resolution
    CONFIRMED: Server accepted (terminal)
    ROLLED_BACK: Server rejected or conflict discarded (terminal)
    CANCELLED: Caller cancelled before the server answered (terminal)
    """
    PENDING = "pending"
    CONFLICTED = "conflicted"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            OperationStatus.CONFIRMED,
            OperationStatus.ROLLED_BACK,
            OperationStatus.CANCELLED,
        )

    def __str__(self) -> str:
        return self.value


@dataclass
class ConfirmedState:
    """Last server-acknowledged field set. fields=None is a tombstone."""
    fields: Optional[Dict[str, Any]] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"fields": copy.deepcopy(self.fields), "version": self.version}


@dataclass
class EntityRecord:
    """An entity known to the store."""
    id: str
    confirmed_state: ConfirmedState = field(default_factory=ConfirmedState)
    pending_ops: List[str] = field(default_factory=list)


@dataclass
class Operation:
    """A mutation in flight against one entity."""
    op_id: str
    entity_id: str
    kind: OperationKind
    forward_patch: Patch
    previous_snapshot: Optional[Dict[str, Any]]
    base_version: int = 0
    status: OperationStatus = OperationStatus.PENDING
    submitted_at: datetime = None
    attempt: int = 0
    server_state: Optional[Dict[str, Any]] = None
    server_version: Optional[int] = None
    error: Optional[str] = None

    def __post_init__(self):
        if self.submitted_at is None:
            self.submitted_at = datetime.now()

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    def copy(self) -> "Operation":
        """Detached copy handed to executors and callers."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "op_id": self.op_id,
            "entity_id": self.entity_id,
            "kind": self.kind.value,
            "forward_patch": encode_patch(self.forward_patch),
            "previous_snapshot": copy.deepcopy(self.previous_snapshot),
            "base_version": self.base_version,
            "status": self.status.value,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "attempt": self.attempt,
            "server_version": self.server_version,
            "error": self.error,
        }


@dataclass
class ConflictRecord:
    """Open conflict for a Conflicted operation."""
    op_id: str
    entity_id: str
    local_patch: Patch
    remote_state: Optional[Dict[str, Any]]
    remote_version: int
    policy: Optional[Any] = None  # ConflictPolicy pre-selected at submit time
    detected_at: datetime = None

    def __post_init__(self):
        if self.detected_at is None:
            self.detected_at = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "op_id": self.op_id,
            "entity_id": self.entity_id,
            "local_patch": encode_patch(self.local_patch),
            "remote_state": copy.deepcopy(self.remote_state),
            "remote_version": self.remote_version,
            "policy": str(self.policy) if self.policy is not None else None,
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
        }


@dataclass
class OperationResult:
    """Value a submit/resolve future settles with once the operation is terminal."""
    op_id: str
    entity_id: str
    status: OperationStatus
    state: Optional[Dict[str, Any]]
    version: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == OperationStatus.CONFIRMED
