"""
Optimist - optimistic mutation reconciliation for client-side state.

Apply a mutation to the local read model immediately, send it to the server
in the background, and reconcile the answer: commit on success, roll back by
replay on failure, and hand version conflicts to a resolution policy.
"""

__version__ = "0.1.0"
__license__ = "MIT"

from .config import EngineConfig, load_config
from .conflict import ConflictPolicy, ConflictResolver, Resolution, ResolutionAction
from .engine import Reconciler
from .errors import (
    ConfigError,
    ConflictError,
    EntityExistsError,
    EntityNotFoundError,
    JournalError,
    MisuseError,
    OperationStateError,
    OptimistError,
    TerminalError,
    TransientError,
    UnknownOperationError,
)
from .event_bus import EventBus
from .journal import SQLiteJournal
from .models import (
    ConfirmedState,
    ConflictRecord,
    Operation,
    OperationKind,
    OperationResult,
    OperationStatus,
)
from .outcomes import Confirmed, Conflict, ErrorKind, Failed, Outcome
from .patches import UNSET, Increment
from .retry import RetryController, RetryPolicy
from .simulation import ScriptedExecutor, run_scenario

__all__ = [
    # Engine
    "Reconciler",
    "EngineConfig",
    "load_config",
    "EventBus",
    "SQLiteJournal",
    # Outcomes
    "Confirmed",
    "Conflict",
    "Failed",
    "ErrorKind",
    "Outcome",
    # Patches
    "Increment",
    "UNSET",
    # Models
    "Operation",
    "OperationKind",
    "OperationStatus",
    "OperationResult",
    "ConfirmedState",
    "ConflictRecord",
    # Conflicts
    "ConflictPolicy",
    "ConflictResolver",
    "Resolution",
    "ResolutionAction",
    # Retry
    "RetryController",
    "RetryPolicy",
    # Testing helpers
    "ScriptedExecutor",
    "run_scenario",
    # Errors
    "OptimistError",
    "MisuseError",
    "UnknownOperationError",
    "OperationStateError",
    "EntityNotFoundError",
    "EntityExistsError",
    "ConfigError",
    "TransientError",
    "TerminalError",
    "ConflictError",
    "JournalError",
]
