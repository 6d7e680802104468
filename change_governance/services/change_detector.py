"""
Change Detector — field-level diff between two entity snapshots.

Snapshots are opaque ``{field: value}`` maps (the ORM layer of the host
application serialises its entities before calling the engine). Values are
compared through a canonical serialisation:

    - mappings compare by key, regardless of insertion order
    - lists and tuples compare positionally
    - sets and frozensets compare as unordered collections
    - anything else JSON cannot encode (datetime, Decimal, UUID) compares by ``str()``

Field order in the result is stable: fields of the prior snapshot in their
original order, followed by fields that only exist in the new snapshot.

Usage:
    from change_governance.services.change_detector import detect_changes

    detect_changes("FAILURE_MODE", {"severityRating": 5}, {"severityRating": 9})
    # ['severityRating']
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

_MISSING = object()


def _normalize(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize(v) for v in value), key=canonical)
    return value


def canonical(value: Any) -> str:
    """Deterministic serialisation used for equality of field values."""
    if value is _MISSING:
        return "<missing>"
    return json.dumps(_normalize(value), sort_keys=True, default=str, ensure_ascii=False)


def detect_changes(
    entity_type: str,
    old_value: Mapping[str, Any] | None,
    new_value: Mapping[str, Any] | None,
) -> list[str]:
    """Return the ordered list of field names that differ between two snapshots.

    ``entity_type`` is accepted for symmetry with the classifier; detection
    itself is type-agnostic.

    - creation (no prior snapshot): every field of the new snapshot
    - deletion (no new snapshot): every field of the prior snapshot
    - update: every field, present in either snapshot, whose canonical
      value differs (a field missing on one side counts as changed)
    """
    if old_value is None and new_value is None:
        return []
    if old_value is None:
        return list(new_value.keys())
    if new_value is None:
        return list(old_value.keys())

    fields = list(old_value.keys())
    seen = set(fields)
    fields.extend(k for k in new_value.keys() if k not in seen)

    return [
        f for f in fields
        if canonical(old_value.get(f, _MISSING)) != canonical(new_value.get(f, _MISSING))
    ]


def to_json_safe(snapshot: Mapping[str, Any] | None) -> dict | None:
    """Copy of a snapshot that a JSON column can store; key order is preserved."""
    if snapshot is None:
        return None
    return json.loads(json.dumps(_normalize(snapshot), default=str, ensure_ascii=False))
