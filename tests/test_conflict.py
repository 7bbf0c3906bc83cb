"""
Unit tests for Conflict Resolution

Tests cover:
- ConflictPolicy enum parsing
- Keep-local, keep-remote and merge resolutions
- Merge function isolation and validation
"""

import pytest

from optimist.conflict import ConflictPolicy, ConflictResolver, ResolutionAction
from optimist.errors import MisuseError
from optimist.models import ConflictRecord
from optimist.patches import Increment


def make_record(local_patch=None, remote_state=None, remote_version=6):
    return ConflictRecord(
        op_id="op-1",
        entity_id="todo-1",
        local_patch=local_patch if local_patch is not None else {"title": "B"},
        remote_state=remote_state if remote_state is not None else {"title": "C", "done": False},
        remote_version=remote_version,
    )


class TestConflictPolicy:
    """Tests for ConflictPolicy enum."""

    def test_from_string(self):
        assert ConflictPolicy.from_string("keep_local") == ConflictPolicy.KEEP_LOCAL
        assert ConflictPolicy.from_string("KEEP_REMOTE") == ConflictPolicy.KEEP_REMOTE
        assert ConflictPolicy.from_string("merge") == ConflictPolicy.MERGE

    def test_from_string_invalid(self):
        with pytest.raises(ValueError, match="Invalid conflict policy"):
            ConflictPolicy.from_string("last_writer_wins")

    def test_str(self):
        assert str(ConflictPolicy.KEEP_LOCAL) == "keep_local"


class TestConflictResolver:
    """Tests for ConflictResolver.resolve."""

    def test_keep_local_resubmits_against_remote_version(self):
        resolution = ConflictResolver().resolve(make_record(), ConflictPolicy.KEEP_LOCAL)

        assert resolution.action == ResolutionAction.RESUBMIT
        assert resolution.forward_patch == {"title": "B"}
        assert resolution.base_version == 6
        assert resolution.accepted_state == {"title": "C", "done": False}
        assert resolution.accepted_version == 6

    def test_keep_remote_discards(self):
        resolution = ConflictResolver().resolve(make_record(), "keep_remote")

        assert resolution.action == ResolutionAction.DISCARD
        assert resolution.policy_used == ConflictPolicy.KEEP_REMOTE
        assert resolution.forward_patch is None
        assert resolution.accepted_state == {"title": "C", "done": False}

    def test_merge_uses_returned_patch(self):
        def merge(local, remote):
            return {**local, "title": f"{remote['title']}+{local['title']}"}

        resolution = ConflictResolver().resolve(make_record(), ConflictPolicy.MERGE, merge)

        assert resolution.action == ResolutionAction.RESUBMIT
        assert resolution.forward_patch == {"title": "C+B"}
        assert resolution.base_version == 6

    def test_merge_falls_back_to_default_fn(self):
        resolver = ConflictResolver(default_merge_fn=lambda local, remote: {"done": True})

        resolution = resolver.resolve(make_record(), ConflictPolicy.MERGE)

        assert resolution.forward_patch == {"done": True}

    def test_merge_keeps_markers(self):
        record = make_record(local_patch={"count": Increment(1)}, remote_state={"count": 10})

        resolution = ConflictResolver().resolve(record, "merge", lambda local, remote: local)

        assert resolution.forward_patch == {"count": Increment(1)}

    def test_merge_without_function_is_misuse(self):
        with pytest.raises(MisuseError, match="requires a merge function"):
            ConflictResolver().resolve(make_record(), ConflictPolicy.MERGE)

    def test_merge_returning_non_mapping_is_misuse(self):
        with pytest.raises(MisuseError, match="expected a mapping"):
            ConflictResolver().resolve(make_record(), ConflictPolicy.MERGE, lambda local, remote: None)

    def test_merge_function_cannot_corrupt_record(self):
        record = make_record(remote_state={"tags": ["a"]})

        def greedy(local, remote):
            remote["tags"].append("mutated")
            local["title"] = "mutated"
            return {"tags": remote["tags"]}

        ConflictResolver().resolve(record, ConflictPolicy.MERGE, greedy)

        assert record.remote_state == {"tags": ["a"]}
        assert record.local_patch == {"title": "B"}
