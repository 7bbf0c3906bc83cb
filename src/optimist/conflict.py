"""
Conflict Resolution for optimistic mutations

Handles operations the server rejected because their base version was stale.
Supports three policies: keep-local, keep-remote, and merge.

Keep-Local: Adopt the remote version as the new base and resubmit the local
            patch unchanged.

Keep-Remote: Accept the server's state, discard the local patch. The operation
             is rolled back against the new confirmed state.

Merge: A caller-supplied function combines the local patch with the remote
       state into a new patch, which is resubmitted against the remote version.

The resolver is pure: it decides what should happen and returns a Resolution.
The Reconciler applies it.
"""

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from .errors import MisuseError
from .models import ConflictRecord
from .patches import Patch

logger = logging.getLogger(__name__)

MergeFn = Callable[[Patch, Optional[Dict[str, Any]]], Mapping[str, Any]]


class ConflictPolicy(str, Enum):
    """
    Conflict resolution policies.

    KEEP_LOCAL: Local intent wins; resubmit against the remote version.
                Best for: last-writer-wins fields, user-owned settings.

    KEEP_REMOTE: Server state wins; the local edit is discarded.
                 Best for: shared records where stale edits are harmful.

    MERGE: Combine local patch and remote state with a merge function.
           Best for: counters, sets, independent field edits.
    """
    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    MERGE = "merge"

    @classmethod
    def from_string(cls, policy: str) -> "ConflictPolicy":
        """
        Convert string to ConflictPolicy

        Args:
            policy: Policy string (case-insensitive)

        Returns:
            ConflictPolicy enum value

        Raises:
            ValueError: If policy is invalid
        """
        policy_lower = policy.lower()
        if policy_lower == "keep_local":
            return cls.KEEP_LOCAL
        elif policy_lower == "keep_remote":
            return cls.KEEP_REMOTE
        elif policy_lower == "merge":
            return cls.MERGE
        else:
            raise ValueError(
                f"Invalid conflict policy '{policy}'. "
                "Must be one of: keep_local, keep_remote, merge"
            )

    def __str__(self) -> str:
        return self.value


class ResolutionAction(str, Enum):
    """What the Reconciler should do with the conflicted operation."""
    RESUBMIT = "resubmit"
    DISCARD = "discard"


@dataclass
class Resolution:
    """
    Result of conflict resolution.

    Attributes:
        action: Resubmit the operation or discard it
        policy_used: Which policy produced this resolution
        forward_patch: Patch to resubmit (None when discarding)
        base_version: Version the resubmission is based on
        accepted_state: Remote snapshot to adopt as the confirmed base
        accepted_version: Version of the accepted snapshot
    """
    action: ResolutionAction
    policy_used: ConflictPolicy
    forward_patch: Optional[Patch]
    base_version: int
    accepted_state: Optional[Dict[str, Any]]
    accepted_version: int


class ConflictResolver:
    """
    Turns an open ConflictRecord plus a policy into a Resolution.

    Args:
        default_merge_fn: Merge function used when MERGE is requested
                          without an explicit one
    """

    def __init__(self, default_merge_fn: Optional[MergeFn] = None):
        self.default_merge_fn = default_merge_fn

    def resolve(
        self,
        record: ConflictRecord,
        policy: ConflictPolicy,
        merge_fn: Optional[MergeFn] = None,
    ) -> Resolution:
        """
        Resolve a conflict.

        Args:
            record: The open conflict
            policy: Policy to apply
            merge_fn: Merge function (required for MERGE unless a default is set)

        Returns:
            Resolution describing the next action

        Raises:
            MisuseError: MERGE without a merge function, or an unknown policy
        """
        if isinstance(policy, str) and not isinstance(policy, ConflictPolicy):
            policy = ConflictPolicy.from_string(policy)

        logger.debug(f"Resolving conflict on operation {record.op_id} using {policy.value}")

        if policy == ConflictPolicy.KEEP_LOCAL:
            return self._resolve_keep_local(record)
        elif policy == ConflictPolicy.KEEP_REMOTE:
            return self._resolve_keep_remote(record)
        elif policy == ConflictPolicy.MERGE:
            return self._resolve_merge(record, merge_fn or self.default_merge_fn)
        else:
            raise MisuseError(f"Unknown conflict policy: {policy!r}")

    def _resolve_keep_local(self, record: ConflictRecord) -> Resolution:
        logger.info(
            f"Keep-local: operation {record.op_id} resubmits against "
            f"remote version {record.remote_version}"
        )
        return Resolution(
            action=ResolutionAction.RESUBMIT,
            policy_used=ConflictPolicy.KEEP_LOCAL,
            forward_patch=record.local_patch,
            base_version=record.remote_version,
            accepted_state=copy.deepcopy(record.remote_state),
            accepted_version=record.remote_version,
        )

    def _resolve_keep_remote(self, record: ConflictRecord) -> Resolution:
        logger.info(
            f"Keep-remote: operation {record.op_id} discarded in favour of "
            f"remote version {record.remote_version}"
        )
        return Resolution(
            action=ResolutionAction.DISCARD,
            policy_used=ConflictPolicy.KEEP_REMOTE,
            forward_patch=None,
            base_version=record.remote_version,
            accepted_state=copy.deepcopy(record.remote_state),
            accepted_version=record.remote_version,
        )

    def _resolve_merge(self, record: ConflictRecord, merge_fn: Optional[MergeFn]) -> Resolution:
        """
        Resolve using a merge function.

        The merge function receives copies, so it cannot corrupt the conflict
        record or the engine's stored remote snapshot.
        """
        if merge_fn is None:
            raise MisuseError(
                f"MERGE policy for operation {record.op_id} requires a merge function",
                details={"op_id": record.op_id},
            )

        merged = merge_fn(copy.deepcopy(dict(record.local_patch)), copy.deepcopy(record.remote_state))
        if not isinstance(merged, Mapping):
            raise MisuseError(
                f"Merge function returned {type(merged).__name__}, expected a mapping",
                details={"op_id": record.op_id},
            )

        logger.info(
            f"Merge: operation {record.op_id} resubmits merged patch "
            f"({len(merged)} fields) against remote version {record.remote_version}"
        )
        return Resolution(
            action=ResolutionAction.RESUBMIT,
            policy_used=ConflictPolicy.MERGE,
            forward_patch=dict(merged),
            base_version=record.remote_version,
            accepted_state=copy.deepcopy(record.remote_state),
            accepted_version=record.remote_version,
        )
