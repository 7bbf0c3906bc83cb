"""
Error types for Optimist.

This module defines the closed error taxonomy used by the engine:
- OptimistError: Base exception
- MisuseError: Programmer misuse, raised synchronously and never swallowed
- TransientError / TerminalError / ConflictError: Raised by mutation executors
  and converted into Outcome values by the RetryController
- JournalError: Durable journal failures

Invariants:
    - All errors inherit from OptimistError
    - Errors include context for debugging
    - Business-logic failures (conflict, failed) never cross the
      executor suspension boundary as exceptions
"""

from typing import Any, Dict, Optional


class OptimistError(Exception):
    """Base exception for all Optimist errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "OPTIMIST_ERROR"
        self.details = details or {}


class MisuseError(OptimistError):
    """The engine API was used incorrectly.

    Raised when:
    - An operation id is unknown
    - An operation is in the wrong state for the request
    - A mutation targets an entity that does not exist (or already exists)
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code or "MISUSE", details=details)


class UnknownOperationError(MisuseError):
    """No operation with the given id is known to the engine."""

    def __init__(self, op_id: str) -> None:
        super().__init__(
            f"Unknown operation: {op_id}",
            code="UNKNOWN_OPERATION",
            details={"op_id": op_id},
        )
        self.op_id = op_id


class OperationStateError(MisuseError):
    """Operation is not in a state that permits the requested action.

    Raised when:
    - resolve() is called on an operation that is not Conflicted
    - cancel() is called on an operation that is not Pending
    """

    def __init__(self, op_id: str, status: str, action: str) -> None:
        super().__init__(
            f"Cannot {action} operation {op_id}: status is {status}",
            code="OPERATION_STATE",
            details={"op_id": op_id, "status": status, "action": action},
        )
        self.op_id = op_id
        self.status = status
        self.action = action


class EntityNotFoundError(MisuseError):
    """Update or Delete submitted against an entity with no effective state."""

    def __init__(self, entity_id: str) -> None:
        super().__init__(
            f"Entity {entity_id} does not exist (deleted or never loaded); "
            "submit a Create to recreate it",
            code="ENTITY_NOT_FOUND",
            details={"entity_id": entity_id},
        )
        self.entity_id = entity_id


class EntityExistsError(MisuseError):
    """Create submitted against an entity that already has effective state."""

    def __init__(self, entity_id: str) -> None:
        super().__init__(
            f"Entity {entity_id} already exists; use an Update instead",
            code="ENTITY_EXISTS",
            details={"entity_id": entity_id},
        )
        self.entity_id = entity_id


class ConfigError(MisuseError, ValueError):
    """Invalid engine configuration."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message, code="CONFIG_ERROR", details={"key": key})
        self.key = key


class TransientError(OptimistError):
    """Executor failure worth retrying (timeout, 5xx, connectivity loss)."""

    def __init__(self, message: str = "transient failure") -> None:
        super().__init__(message, code="TRANSIENT")


class TerminalError(OptimistError):
    """Executor failure that must not be retried (validation, permission)."""

    def __init__(self, message: str = "terminal failure") -> None:
        super().__init__(message, code="TERMINAL")


class ConflictError(OptimistError):
    """Executor reports a version or precondition mismatch.

    Attributes:
        remote_state: Server's current field set for the entity
        version: Server's current version token
    """

    def __init__(
        self,
        remote_state: Optional[Dict[str, Any]],
        version: int,
        message: str = "version conflict",
    ) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={"remote_state": remote_state, "version": version},
        )
        self.remote_state = remote_state
        self.version = version


class JournalError(OptimistError):
    """Durable journal could not read or write engine state."""

    def __init__(self, message: str, op_id: Optional[str] = None) -> None:
        super().__init__(message, code="JOURNAL_ERROR", details={"op_id": op_id})
        self.op_id = op_id
