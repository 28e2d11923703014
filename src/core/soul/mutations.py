"""
Soul mutations — pure functions applying one proposed change to a soul dict.

Public API:
    apply_change(soul, field, operation, proposed_value, previous_value) → dict
    normalize_value(value) → str
    values_overlap(a, b) → bool
    compute_soul_diff(old, new) → list[str]

Fields may be dotted paths into nested mappings ("tone.formality").
"""

from __future__ import annotations

import copy
import re
from typing import Any, Dict, List, Optional

from src.core.governance.errors import InvalidSoulChange

_WS = re.compile(r"\s+")
_EDGE_PUNCT = re.compile(r"^[\W_]+|[\W_]+$")


# ---------------------------------------------------------------------------
# Value normalization
# ---------------------------------------------------------------------------

def normalize_value(value: Any) -> str:
    """Lower-case, collapse whitespace, strip leading/trailing punctuation."""
    if value is None:
        return ""
    text = _WS.sub(" ", str(value).lower()).strip()
    return _EDGE_PUNCT.sub("", text)


def values_overlap(a: Any, b: Any) -> bool:
    """True if either normalized value is a prefix of the other."""
    na, nb = normalize_value(a), normalize_value(b)
    if not na or not nb:
        return False
    return na.startswith(nb) or nb.startswith(na)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def _split(field: str) -> List[str]:
    parts = [p for p in field.split(".") if p]
    if not parts:
        raise InvalidSoulChange("field must not be empty")
    return parts


def _parent(soul: Dict[str, Any], parts: List[str]) -> Dict[str, Any]:
    node = soul
    for key in parts[:-1]:
        child = node.get(key)
        if child is None:
            child = {}
            node[key] = child
        elif not isinstance(child, dict):
            raise InvalidSoulChange(f"{key} is not a mapping")
        node = child
    return node


def apply_change(
    soul: Dict[str, Any],
    field: str,
    operation: str,
    proposed_value: Any,
    previous_value: Optional[Any] = None,
) -> Dict[str, Any]:
    """Return a new soul with one change applied. The input is not modified.

    add     append to an array field (created if missing); no duplicates
    modify  replace a scalar field, or the array entry equal to previous_value
    remove  drop entries equal to previous_value (else proposed_value) from an array

    Raises InvalidSoulChange when the field's shape does not fit the operation.
    """
    updated = copy.deepcopy(soul)
    parts = _split(field)
    parent = _parent(updated, parts)
    key = parts[-1]
    current = parent.get(key)

    if operation == "add":
        if current is None:
            parent[key] = [proposed_value]
        elif isinstance(current, list):
            if proposed_value not in current:
                current.append(proposed_value)
        else:
            raise InvalidSoulChange(f"Cannot add to non-array field {field}")

    elif operation == "modify":
        if isinstance(current, list):
            if previous_value is None:
                raise InvalidSoulChange(f"Modifying array field {field} requires previous_value")
            if previous_value not in current:
                raise InvalidSoulChange(f"{previous_value!r} not found in {field}")
            replaced: List[Any] = []
            for item in current:
                value = proposed_value if item == previous_value else item
                if value not in replaced:
                    replaced.append(value)
            parent[key] = replaced
        elif isinstance(current, dict):
            raise InvalidSoulChange(f"Cannot modify mapping field {field} as a scalar")
        else:
            parent[key] = proposed_value

    elif operation == "remove":
        if current is None:
            return updated
        if not isinstance(current, list):
            raise InvalidSoulChange(f"Cannot remove from non-array field {field}")
        target = previous_value if previous_value is not None else proposed_value
        parent[key] = [item for item in current if item != target]

    else:
        raise InvalidSoulChange(f"Unknown operation: {operation}")

    return updated


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------

def compute_soul_diff(
    old: Dict[str, Any],
    new: Dict[str, Any],
    prefix: str = "",
) -> List[str]:
    """Human-readable diff between two souls ("added: x", "changed: a.b", ...)."""
    changes: List[str] = []
    for key in sorted(set(old) | set(new)):
        full_key = f"{prefix}.{key}" if prefix else key
        if key not in old:
            changes.append(f"added: {full_key}")
        elif key not in new:
            changes.append(f"removed: {full_key}")
        elif isinstance(old[key], dict) and isinstance(new[key], dict):
            changes.extend(compute_soul_diff(old[key], new[key], full_key))
        elif old[key] != new[key]:
            changes.append(f"changed: {full_key}")
    return changes
