"""
Forward patches and how they are applied.

A patch is a mapping of field name -> value. Plain values overwrite the
field. Two markers express non-idempotent edits:

    Increment(n)  add n to a numeric field (missing counts as 0)
    UNSET         remove the field

Patches are replayed many times (every projection), so apply_patch never
mutates its inputs.
"""

import copy
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from .errors import JournalError


@dataclass(frozen=True)
class Increment:
    """Add `amount` to the current value of a field."""
    amount: Union[int, float] = 1


class _Unset:
    """Marker that removes a field from the state."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __deepcopy__(self, memo):
        return self


UNSET = _Unset()

Patch = Mapping[str, Any]


def apply_patch(state: Optional[Dict[str, Any]], patch: Patch) -> Dict[str, Any]:
    """
    Apply a forward patch to a state and return the new state.

    Args:
        state: Current field set (None is treated as empty)
        patch: Field updates, possibly containing Increment/UNSET markers

    Returns:
        A new dict; neither argument is modified

    Raises:
        TypeError: If an Increment targets a non-numeric field
    """
    result = copy.deepcopy(dict(state or {}))
    for field_name, value in patch.items():
        if value is UNSET:
            result.pop(field_name, None)
        elif isinstance(value, Increment):
            current = result.get(field_name, 0)
            if isinstance(current, bool) or not isinstance(current, (int, float)):
                raise TypeError(
                    f"Cannot increment non-numeric field '{field_name}' "
                    f"(value={current!r})"
                )
            result[field_name] = current + value.amount
        else:
            result[field_name] = copy.deepcopy(value)
    return result


def encode_patch(patch: Patch) -> Dict[str, Any]:
    """
    Encode a patch into a JSON-compatible dict.

    Markers become {"$inc": n} and {"$unset": true}.

    Raises:
        JournalError: If a value is callable (cannot be persisted)
    """
    encoded = {}
    for field_name, value in patch.items():
        if value is UNSET:
            encoded[field_name] = {"$unset": True}
        elif isinstance(value, Increment):
            encoded[field_name] = {"$inc": value.amount}
        elif callable(value):
            raise JournalError(f"Patch field '{field_name}' is not serializable")
        else:
            encoded[field_name] = value
    return encoded


def decode_patch(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Inverse of encode_patch."""
    decoded = {}
    for field_name, value in data.items():
        if isinstance(value, dict) and value.keys() == {"$inc"}:
            decoded[field_name] = Increment(value["$inc"])
        elif isinstance(value, dict) and value.keys() == {"$unset"}:
            decoded[field_name] = UNSET
        else:
            decoded[field_name] = value
    return decoded


__all__ = ["Increment", "UNSET", "Patch", "apply_patch", "encode_patch", "decode_patch"]
