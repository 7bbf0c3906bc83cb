"""
Outcome values returned by mutation executors.

Executors resolve to one of three values instead of raising for business
results:
- Confirmed: the server applied the mutation
- Conflict: the server rejected it because the base version is stale
- Failed: the server (or the network) failed, classified by ErrorKind
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union


class ErrorKind(str, Enum):
    """
    Failure classification for Failed outcomes.

    TRANSIENT: Timeout, 5xx-equivalent, connectivity loss. Retried.
    TERMINAL: Validation or permission failure. Rolled back immediately.
    """
    TRANSIENT = "transient"
    TERMINAL = "terminal"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Confirmed:
    """Server accepted the mutation.

    Attributes:
        server_state: Canonical fields returned by the server, merged into
                      confirmed state. None means "apply the forward patch".
        version: New version token. None means "base version + 1".
    """
    server_state: Optional[Dict[str, Any]] = None
    version: Optional[int] = None


@dataclass(frozen=True)
class Conflict:
    """Server rejected the mutation because of a version mismatch."""
    remote_state: Optional[Dict[str, Any]]
    version: int


@dataclass(frozen=True)
class Failed:
    """Mutation failed.

    Attributes:
        kind: Transient or terminal classification
        message: Human-readable failure reason
        exhausted: True when transient retries ran out
    """
    kind: ErrorKind = ErrorKind.TERMINAL
    message: str = ""
    exhausted: bool = False


Outcome = Union[Confirmed, Conflict, Failed]


def describe(outcome: Outcome) -> str:
    """Short, log-friendly description of an outcome."""
    if isinstance(outcome, Confirmed):
        return f"confirmed(version={outcome.version})"
    if isinstance(outcome, Conflict):
        return f"conflict(remote_version={outcome.version})"
    if isinstance(outcome, Failed):
        suffix = ", exhausted" if outcome.exhausted else ""
        return f"failed({outcome.kind.value}{suffix}: {outcome.message})"
    return repr(outcome)


__all__ = ["ErrorKind", "Confirmed", "Conflict", "Failed", "Outcome", "describe"]
