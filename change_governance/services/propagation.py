"""
Propagation Rule Engine — best-effort downstream actions for recorded changes.

A rule matches a change event when its source entity type and change type
match, and either it has no field patterns or at least one changed field
matches one of its regular expressions. Patterns are compiled once, when a
rule is created or loaded, so an invalid pattern fails loudly at
configuration time instead of silently never matching.

Execution is a saga, not a transaction:

    - matched rules run independently, lowest ``priority`` first
    - each rule's handler runs in its own savepoint; one failure never
      aborts the others
    - every attempt leaves a PropagationExecution row
    - the event ends COMPLETED only if every rule succeeded, otherwise
      FAILED plus a PROPAGATION_FAILED notice to the administrative roles
    - rules flagged ``requires_approval`` are DEFERRED while the change
      waits for approval (AWAITING_APPROVAL) and run once it is approved,
      or are CANCELLED when it is rejected

Action handlers are looked up by ``target_action``. NOTIFY has a built-in
handler; UPDATE / CREATE / VALIDATE default to recording the requested
downstream action in the audit log, and host applications replace them
with ``register_handler`` to touch their own FMEA / control plan tables.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from change_governance.core.exceptions import ValidationError
from change_governance.core.settings import setting
from change_governance.models import db, utcnow
from change_governance.models.audit import write_audit
from change_governance.models.change import (
    CHANGE_TYPES,
    ENTITY_TYPES,
    TARGET_ACTIONS,
    ChangeEvent,
    PropagationExecution,
    PropagationRule,
)
from change_governance.services.notification import NotificationEmitter
from change_governance.services.outcomes import PropagationOutcome, RuleResult

logger = logging.getLogger(__name__)

DEFAULT_NOTIFY_ROLES = ("QUALITY_MANAGER",)


# ═══════════════════════════════════════════════════════════════════════════
#  Compiled rules
# ═══════════════════════════════════════════════════════════════════════════

def compile_patterns(patterns: Sequence[str] | None) -> tuple[re.Pattern, ...]:
    """Compile field-name patterns, raising ValidationError on the first bad one."""
    compiled = []
    for pattern in patterns or ():
        if not isinstance(pattern, str):
            raise ValidationError(
                "Field patterns must be strings",
                details={"source_field_patterns": repr(pattern)},
            )
        try:
            compiled.append(re.compile(pattern))
        except re.error as exc:
            raise ValidationError(
                f"Invalid field pattern {pattern!r}: {exc}",
                details={"source_field_patterns": pattern},
            ) from exc
    return tuple(compiled)


@dataclass(frozen=True)
class CompiledRule:
    rule_id: int
    rule_name: str
    source_entity_type: str
    source_change_type: str
    patterns: tuple[re.Pattern, ...]
    target_entity_type: str
    target_action: str
    target_field_mappings: dict
    priority: int
    requires_approval: bool

    @classmethod
    def from_model(cls, rule: PropagationRule) -> "CompiledRule":
        return cls(
            rule_id=rule.id,
            rule_name=rule.rule_name,
            source_entity_type=rule.source_entity_type,
            source_change_type=rule.source_change_type,
            patterns=compile_patterns(rule.source_field_patterns),
            target_entity_type=rule.target_entity_type,
            target_action=rule.target_action,
            target_field_mappings=dict(rule.target_field_mappings or {}),
            priority=rule.priority if rule.priority is not None else 100,
            requires_approval=bool(rule.requires_approval),
        )

    def matches(self, entity_type: str, change_type: str, changed_fields: Sequence[str]) -> bool:
        if entity_type != self.source_entity_type or change_type != self.source_change_type:
            return False
        if not self.patterns:
            return True
        return any(p.search(f) for p in self.patterns for f in changed_fields)


ActionHandler = Callable[[ChangeEvent, CompiledRule], "dict | None"]


# ═══════════════════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════════════════

class PropagationRuleEngine:
    """Match and execute propagation rules for change events."""

    def __init__(
        self,
        emitter: NotificationEmitter | None = None,
        handlers: dict[str, ActionHandler] | None = None,
    ) -> None:
        self.emitter = emitter or NotificationEmitter()
        self._handlers: dict[str, ActionHandler] = {
            "UPDATE": self._record_downstream_action,
            "CREATE": self._record_downstream_action,
            "VALIDATE": self._record_downstream_action,
            "NOTIFY": self._notify_action,
        }
        if handlers:
            self._handlers.update(handlers)

    def register_handler(self, action: str, handler: ActionHandler) -> None:
        self._handlers[action] = handler

    # ── Administration ───────────────────────────────────────────────────

    def create_rule(
        self,
        *,
        project_id: int,
        rule_name: str,
        source_entity_type: str,
        source_change_type: str,
        target_entity_type: str,
        target_action: str = "UPDATE",
        source_field_patterns: Sequence[str] | None = None,
        target_field_mappings: dict | None = None,
        priority: int = 100,
        requires_approval: bool = False,
        description: str = "",
        created_by_id: int | None = None,
    ) -> PropagationRule:
        """Validate and persist a propagation rule."""
        errors = {}
        if not rule_name or not rule_name.strip():
            errors["rule_name"] = "required"
        if source_entity_type not in ENTITY_TYPES:
            errors["source_entity_type"] = f"must be one of {', '.join(ENTITY_TYPES)}"
        if source_change_type not in CHANGE_TYPES:
            errors["source_change_type"] = f"must be one of {', '.join(CHANGE_TYPES)}"
        if target_entity_type not in ENTITY_TYPES:
            errors["target_entity_type"] = f"must be one of {', '.join(ENTITY_TYPES)}"
        if target_action not in TARGET_ACTIONS and target_action not in self._handlers:
            errors["target_action"] = f"no handler registered for {target_action!r}"
        if errors:
            raise ValidationError("Invalid propagation rule", details=errors)

        compile_patterns(source_field_patterns)

        rule = PropagationRule(
            project_id=project_id,
            rule_name=rule_name.strip(),
            description=description,
            source_entity_type=source_entity_type,
            source_change_type=source_change_type,
            source_field_patterns=list(source_field_patterns or []),
            target_entity_type=target_entity_type,
            target_action=target_action,
            target_field_mappings=dict(target_field_mappings or {}),
            priority=priority,
            requires_approval=requires_approval,
            created_by_id=created_by_id,
        )
        db.session.add(rule)
        db.session.commit()
        logger.info("Propagation rule created: %s", rule.rule_name,
                    extra={"project_id": project_id, "rule_id": rule.id})
        return rule

    # ── Matching ─────────────────────────────────────────────────────────

    def load_rules(self, project_id: int, entity_type: str, change_type: str) -> list[CompiledRule]:
        """Active rules for a source, compiled, ordered by priority then id.

        A stored rule whose pattern no longer compiles is skipped and logged.
        """
        rows = (
            PropagationRule.query
            .filter_by(project_id=project_id, source_entity_type=entity_type,
                       source_change_type=change_type, is_active=True)
            .order_by(PropagationRule.priority.asc(), PropagationRule.id.asc())
            .all()
        )
        compiled = []
        for row in rows:
            try:
                compiled.append(CompiledRule.from_model(row))
            except ValidationError as exc:
                logger.error("Skipping propagation rule %s: %s", row.id, exc,
                             extra={"project_id": project_id, "rule_id": row.id})
        return compiled

    def matching_rules(
        self, project_id: int, entity_type: str, change_type: str, changed_fields: Sequence[str],
    ) -> list[CompiledRule]:
        return [
            r for r in self.load_rules(project_id, entity_type, change_type)
            if r.matches(entity_type, change_type, changed_fields)
        ]

    def is_propagation_required(
        self, project_id: int, entity_type: str, change_type: str, changed_fields: Sequence[str],
    ) -> bool:
        return bool(self.matching_rules(project_id, entity_type, change_type, changed_fields))

    # ── Execution ────────────────────────────────────────────────────────

    def execute(self, event: ChangeEvent) -> PropagationOutcome:
        """Run every matching rule for ``event``; flushes, caller commits."""
        rules = self.matching_rules(
            event.project_id, event.entity_type, event.change_type, event.changed_fields or [],
        )
        event.propagation_status = "IN_PROGRESS"
        db.session.flush()

        results = []
        for rule in rules:
            if rule.requires_approval and event.approval_status in ("PENDING", "REJECTED"):
                status = "DEFERRED" if event.approval_status == "PENDING" else "CANCELLED"
                self._record(event, rule, status)
                results.append(RuleResult(rule.rule_id, rule.rule_name, status))
            else:
                results.append(self._run_rule(event, rule))

        return self._finish(event, results, results)

    def run_deferred(self, event: ChangeEvent) -> PropagationOutcome | None:
        """Run rules deferred until approval. Returns None if nothing was deferred."""
        deferred = (
            PropagationExecution.query
            .filter_by(change_event_id=event.id, status="DEFERRED")
            .order_by(PropagationExecution.id)
            .all()
        )
        if not deferred:
            return None

        results = []
        for execution in deferred:
            rule_row = execution.rule
            if rule_row is None or not rule_row.is_active:
                execution.status = "CANCELLED"
                execution.error_message = "Rule removed or deactivated before approval"
                execution.executed_at = utcnow()
                continue
            try:
                rule = CompiledRule.from_model(rule_row)
            except ValidationError as exc:
                execution.status = "FAILED"
                execution.error_message = str(exc)
                execution.executed_at = utcnow()
                results.append(RuleResult(rule_row.id, rule_row.rule_name, "FAILED", str(exc)))
                continue
            results.append(self._run_rule(event, rule, execution=execution))

        earlier = (
            PropagationExecution.query
            .filter(PropagationExecution.change_event_id == event.id,
                    PropagationExecution.status.in_(("SUCCEEDED", "FAILED")),
                    PropagationExecution.id.notin_([e.id for e in deferred]))
            .all()
        )
        history = [RuleResult(e.rule_id, e.rule.rule_name if e.rule else "", e.status, e.error_message)
                   for e in earlier]
        return self._finish(event, history + results, results)

    def cancel_deferred(self, event: ChangeEvent) -> int:
        """Drop deferred rules of a rejected change. Returns the number cancelled."""
        deferred = PropagationExecution.query.filter_by(
            change_event_id=event.id, status="DEFERRED",
        ).all()
        for execution in deferred:
            execution.status = "CANCELLED"
            execution.executed_at = utcnow()
        if deferred and event.propagation_status == "AWAITING_APPROVAL":
            event.propagation_status = "CANCELLED"
        db.session.flush()
        if deferred:
            logger.info("Cancelled %d deferred propagation rule(s)", len(deferred),
                        extra={"change_event_id": event.id})
        return len(deferred)

    # ── Internals ────────────────────────────────────────────────────────

    def _record(self, event, rule, status, result=None, error=None, execution=None):
        if execution is None:
            execution = PropagationExecution(change_event_id=event.id, rule_id=rule.rule_id)
            db.session.add(execution)
        execution.status = status
        execution.result = result
        execution.error_message = error
        execution.executed_at = utcnow()
        db.session.flush()
        return execution

    def _run_rule(self, event, rule: CompiledRule, execution=None) -> RuleResult:
        handler = self._handlers.get(rule.target_action)
        if handler is None:
            error = f"No handler registered for action {rule.target_action!r}"
            logger.error(error, extra={"change_event_id": event.id, "rule_id": rule.rule_id})
            self._record(event, rule, "FAILED", error=error, execution=execution)
            return RuleResult(rule.rule_id, rule.rule_name, "FAILED", error)

        try:
            with db.session.begin_nested():
                result = handler(event, rule)
        except Exception as exc:
            logger.exception("Propagation rule %s failed", rule.rule_name,
                             extra={"change_event_id": event.id, "rule_id": rule.rule_id})
            self._record(event, rule, "FAILED", error=str(exc), execution=execution)
            return RuleResult(rule.rule_id, rule.rule_name, "FAILED", str(exc))

        self._record(event, rule, "SUCCEEDED",
                     result=result if isinstance(result, dict) else None, execution=execution)
        return RuleResult(rule.rule_id, rule.rule_name, "SUCCEEDED")

    def _finish(self, event, results: list[RuleResult], attempted: list[RuleResult]) -> PropagationOutcome:
        """Derive the event status from all results; notify only about ``attempted`` failures."""
        outcome = PropagationOutcome(change_event_id=event.id, status="COMPLETED", results=results)
        if outcome.failed:
            outcome.status = "FAILED"
        elif outcome.deferred:
            outcome.status = "AWAITING_APPROVAL"
        event.propagation_status = outcome.status
        db.session.flush()

        log = logger.warning if outcome.failed else logger.info
        log("Propagation %s: %d succeeded, %d failed, %d deferred",
            outcome.status, len(outcome.succeeded), len(outcome.failed), len(outcome.deferred),
            extra={"change_event_id": event.id, "project_id": event.project_id})

        new_failures = [r.rule_name for r in attempted if r.status == "FAILED"]
        if new_failures:
            self.emitter.propagation_failed(event, new_failures, setting("PROPAGATION_FAILURE_ROLES"))
        return outcome

    # ── Built-in handlers ────────────────────────────────────────────────

    def _record_downstream_action(self, event: ChangeEvent, rule: CompiledRule) -> dict:
        payload = {
            "rule_id": rule.rule_id,
            "target_entity_type": rule.target_entity_type,
            "target_action": rule.target_action,
            "field_mappings": rule.target_field_mappings,
            "changed_fields": list(event.changed_fields or []),
        }
        write_audit(
            entity_type=rule.target_entity_type,
            entity_id=event.entity_id,
            action="propagation.action",
            project_id=event.project_id,
            diff=payload,
        )
        return payload

    def _notify_action(self, event: ChangeEvent, rule: CompiledRule) -> dict:
        roles = tuple(rule.target_field_mappings.get("notify_roles") or DEFAULT_NOTIFY_ROLES)
        if not self.emitter.propagation_notice(event, rule.rule_name, roles):
            raise RuntimeError(f"Notification for rule {rule.rule_name!r} was not delivered")
        return {"notified_roles": list(roles)}
