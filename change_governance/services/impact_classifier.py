"""
Impact Classifier — maps a change to an impact level and its governance needs.

Pure functions, no database access. Rule order for ``classify_impact``
(first match wins):

    1. DELETE of any entity                              → HIGH
    2. critical field of this entity type changed and its
       new numeric value reaches the threshold           → CRITICAL
    3. a high-impact field of this entity type changed   → HIGH
    4. more than 3 fields changed                        → MEDIUM
    5. otherwise                                         → LOW

Field names are matched after camelCase → snake_case normalisation, so
``severityRating`` and ``severity_rating`` are the same field.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

# ── Rule tables ──────────────────────────────────────────────────────────────

CRITICAL_THRESHOLDS: dict[str, dict[str, float]] = {
    "FAILURE_MODE": {"severity_rating": 8},
    "FAILURE_CAUSE": {"occurrence_rating": 7},
    "FAILURE_CONTROL": {"detection_rating": 8},
}

HIGH_IMPACT_FIELDS: dict[str, frozenset[str]] = {
    "PROCESS_STEP": frozenset({"step_type", "quality_requirements", "safety_requirements"}),
    "FAILURE_MODE": frozenset({"severity_rating", "failure_mode"}),
    "FAILURE_CAUSE": frozenset({"occurrence_rating", "is_root_cause"}),
    "FAILURE_CONTROL": frozenset({"detection_rating", "control_type"}),
    "CONTROL_ITEM": frozenset({"control_type", "reaction_plan", "responsible_person"}),
}

SAFETY_CRITICAL_ENTITIES = frozenset({"FAILURE_MODE", "FAILURE_CONTROL", "CONTROL_ITEM"})

AFFECTED_MODULES: dict[str, tuple[str, ...]] = {
    "PROCESS_STEP": ("PROCESS_FLOW", "FMEA", "CONTROL_PLAN"),
    "PROCESS_FLOW": ("PROCESS_FLOW", "FMEA"),
    "FMEA": ("FMEA",),
    "FAILURE_MODE": ("FMEA", "CONTROL_PLAN"),
    "FAILURE_CAUSE": ("FMEA", "CONTROL_PLAN"),
    "FAILURE_CONTROL": ("FMEA", "CONTROL_PLAN"),
    "CONTROL_PLAN": ("CONTROL_PLAN",),
    "CONTROL_ITEM": ("CONTROL_PLAN",),
}

MEDIUM_FIELD_COUNT = 3

# change_event.change_action is String(500)
CHANGE_ACTION_MAX_LENGTH = 500
ACTION_FIELD_LIMIT = 10

# Impact analysis tables
ENTITY_SCORE_WEIGHTS = {"FAILURE_MODE": 2.0, "FAILURE_CONTROL": 1.5, "PROCESS_STEP": 1.0}
EFFORT_HOURS = {"LOW": 1.0, "MEDIUM": 4.0, "HIGH": 8.0, "CRITICAL": 16.0}
MAX_IMPACT_SCORE = 10.0

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def normalize_field_name(name: str) -> str:
    """``severityRating`` → ``severity_rating``; snake_case passes through."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _lookup(snapshot: Mapping[str, Any] | None, field_name: str) -> Any:
    if not snapshot:
        return None
    if field_name in snapshot:
        return snapshot[field_name]
    wanted = normalize_field_name(field_name)
    for key, value in snapshot.items():
        if normalize_field_name(key) == wanted:
            return value
    return None


# ═══════════════════════════════════════════════════════════════════════════
#  Classification
# ═══════════════════════════════════════════════════════════════════════════

def classify_impact(
    entity_type: str,
    change_type: str,
    changed_fields: Sequence[str],
    new_value: Mapping[str, Any] | None,
) -> str:
    """Return LOW, MEDIUM, HIGH or CRITICAL for a single change."""
    if change_type == "DELETE":
        return "HIGH"

    thresholds = CRITICAL_THRESHOLDS.get(entity_type, {})
    for name in changed_fields:
        threshold = thresholds.get(normalize_field_name(name))
        if threshold is None:
            continue
        number = _as_number(_lookup(new_value, name))
        if number is not None and number >= threshold:
            return "CRITICAL"

    high_fields = HIGH_IMPACT_FIELDS.get(entity_type, frozenset())
    if any(normalize_field_name(name) in high_fields for name in changed_fields):
        return "HIGH"

    if len(changed_fields) > MEDIUM_FIELD_COUNT:
        return "MEDIUM"
    return "LOW"


def requires_approval(entity_type: str, change_type: str, impact_level: str) -> bool:
    return (
        impact_level in ("HIGH", "CRITICAL")
        or change_type == "DELETE"
        or entity_type in SAFETY_CRITICAL_ENTITIES
    )


def affected_modules(entity_type: str) -> list[str]:
    return list(AFFECTED_MODULES.get(entity_type, ()))


def _field_list(changed_fields: Sequence[str]) -> str:
    shown = ", ".join(changed_fields[:ACTION_FIELD_LIMIT])
    hidden = len(changed_fields) - ACTION_FIELD_LIMIT
    if hidden > 0:
        return f"{shown}, … +{hidden} more"
    return shown


def _fit(text: str) -> str:
    if len(text) <= CHANGE_ACTION_MAX_LENGTH:
        return text
    return text[: CHANGE_ACTION_MAX_LENGTH - 1] + "…"


def describe_change(entity_type: str, change_type: str, changed_fields: Sequence[str]) -> str:
    """Human-readable action text stored on the change event."""
    entity_name = entity_type.lower().replace("_", " ")
    if change_type == "CREATE":
        return f"Created new {entity_name}"
    if change_type == "DELETE":
        return f"Deleted {entity_name}"
    if change_type == "UPDATE":
        return _fit(f"Updated {entity_name} ({_field_list(changed_fields)})")
    return f"{change_type} on {entity_name}"


@dataclass(frozen=True)
class Classification:
    """Everything the classifier decides about one change."""

    impact_level: str
    approval_required: bool
    affected_modules: list[str] = field(default_factory=list)
    change_action: str = ""


def classify(
    entity_type: str,
    change_type: str,
    changed_fields: Sequence[str],
    new_value: Mapping[str, Any] | None,
) -> Classification:
    level = classify_impact(entity_type, change_type, changed_fields, new_value)
    return Classification(
        impact_level=level,
        approval_required=requires_approval(entity_type, change_type, level),
        affected_modules=affected_modules(entity_type),
        change_action=describe_change(entity_type, change_type, changed_fields),
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Impact analysis helpers
# ═══════════════════════════════════════════════════════════════════════════

def impact_score(entity_type: str, change_type: str, changed_fields: Sequence[str]) -> float:
    """Numeric impact score in [0, 10]."""
    score = 0.0
    if change_type == "DELETE":
        score += 3
    elif change_type == "CREATE":
        score += 1
    score += min(len(changed_fields) * 0.5, 3)
    weight = ENTITY_SCORE_WEIGHTS.get(entity_type, 1.0)
    return min(score * weight, MAX_IMPACT_SCORE)


def affected_stakeholders(modules: Sequence[str]) -> list[str]:
    stakeholders = ["Process Engineer"]
    if "FMEA" in modules:
        stakeholders.append("Quality Engineer")
    if "CONTROL_PLAN" in modules:
        stakeholders.append("Production Manager")
    return stakeholders


def estimated_effort_hours(impact_level: str) -> float:
    return EFFORT_HOURS.get(impact_level, 2.0)


def risk_mitigation_actions(impact_level: str) -> list[str]:
    actions = ["Review change with team"]
    if impact_level == "CRITICAL":
        actions.extend(["Conduct risk assessment", "Update documentation"])
    return actions
