"""
Change Tracking Service — entry point for every tracked mutation.

``track_change`` runs the whole governance pipeline:

    detect fields → classify impact → record ChangeEvent (committed)
        → impact analysis → approval workflow → propagation → notifications

Only recording the ChangeEvent is mandatory. Every later step is
best-effort: it runs in its own transaction, and a failure is rolled back,
logged, and reported in ``TrackChangeOutcome.failures``; it never reaches
the caller and never undoes the recorded event.

The workflow starts before propagation so that rules requiring approval can
see whether the change is waiting on a workflow (deferred) or was
auto/self-approved (run immediately).

Usage:
    outcome = ChangeTrackingService().track_change(
        project_id=1, entity_type="FAILURE_MODE", entity_id="fm-17",
        change_type="UPDATE", old_value={"severityRating": 5},
        new_value={"severityRating": 9}, actor_id=42,
    )
    outcome.change_event_id, outcome.impact_level, outcome.failures
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from change_governance.core.exceptions import NotFoundError, ValidationError
from change_governance.core.settings import setting
from change_governance.models import db
from change_governance.models.audit import write_audit
from change_governance.models.auth import User
from change_governance.models.change import (
    APPROVAL_STATUSES,
    CHANGE_TYPES,
    ENTITY_TYPES,
    IMPACT_LEVELS,
    ChangeEvent,
    ChangeImpactAnalysis,
)
from change_governance.services import impact_classifier
from change_governance.services.approval_workflow import ApprovalWorkflowService
from change_governance.services.change_detector import detect_changes, to_json_safe
from change_governance.services.notification import NotificationEmitter
from change_governance.services.outcomes import SideEffectFailure, TrackChangeOutcome
from change_governance.services.propagation import PropagationRuleEngine

logger = logging.getLogger(__name__)


class ChangeTrackingService:
    """Record mutations and drive their governance side effects."""

    def __init__(
        self,
        emitter: NotificationEmitter | None = None,
        propagation: PropagationRuleEngine | None = None,
        workflows: ApprovalWorkflowService | None = None,
    ) -> None:
        self.emitter = emitter or NotificationEmitter()
        self.propagation = propagation or PropagationRuleEngine(emitter=self.emitter)
        self.workflows = workflows or ApprovalWorkflowService(
            emitter=self.emitter, propagation=self.propagation,
        )

    # ── Primary operation ────────────────────────────────────────────────

    def track_change(
        self,
        project_id: int,
        entity_type: str,
        entity_id,
        change_type: str,
        old_value: Mapping[str, Any] | None,
        new_value: Mapping[str, Any] | None,
        actor_id: int,
        batch_id: str | None = None,
    ) -> TrackChangeOutcome:
        """Record one mutation and run its governance pipeline.

        Raises:
            ValidationError: unknown entity type or change type. Nothing is
                recorded in that case.
        """
        errors = {}
        if entity_type not in ENTITY_TYPES:
            errors["entity_type"] = f"must be one of {', '.join(ENTITY_TYPES)}"
        if change_type not in CHANGE_TYPES:
            errors["change_type"] = f"must be one of {', '.join(CHANGE_TYPES)}"
        if errors:
            raise ValidationError("Invalid change", details=errors)

        changed_fields = detect_changes(entity_type, old_value, new_value)
        classification = impact_classifier.classify(entity_type, change_type, changed_fields, new_value)

        failures: list[SideEffectFailure] = []
        try:
            propagation_required = self.propagation.is_propagation_required(
                project_id, entity_type, change_type, changed_fields,
            )
        except Exception as exc:
            logger.exception("Propagation rule lookup failed", extra={"project_id": project_id})
            failures.append(SideEffectFailure("propagation", str(exc)))
            db.session.rollback()
            propagation_required = False

        event = ChangeEvent(
            project_id=project_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            change_type=change_type,
            change_action=classification.change_action,
            changed_fields=changed_fields,
            old_value=to_json_safe(old_value),
            new_value=to_json_safe(new_value),
            impact_level=classification.impact_level,
            affected_modules=classification.affected_modules,
            propagation_required=propagation_required,
            propagation_status="PENDING",
            approval_required=classification.approval_required,
            approval_status="NONE",
            triggered_by_id=actor_id,
            batch_id=batch_id,
        )
        db.session.add(event)
        db.session.flush()
        write_audit(
            entity_type=entity_type,
            entity_id=event.entity_id,
            action="change_event.record",
            actor_user_id=actor_id,
            project_id=project_id,
            diff={f: {"old": (old_value or {}).get(f), "new": (new_value or {}).get(f)}
                  for f in changed_fields},
        )
        db.session.commit()

        logger.info("Change tracked: %s [%s]", event.change_action, event.impact_level,
                    extra={"change_event_id": event.id, "project_id": project_id,
                           "actor_id": actor_id})

        event_id = event.id
        outcome = TrackChangeOutcome(
            change_event_id=event_id,
            impact_level=event.impact_level,
            approval_required=event.approval_required,
            failures=failures,
        )

        self._best_effort(outcome, "impact_analysis", lambda: self.perform_impact_analysis(event_id))
        if event.approval_required:
            outcome.workflow = self._best_effort(
                outcome, "workflow", lambda: self.workflows.start_approval_process(event_id),
            )
        if propagation_required:
            outcome.propagation = self._best_effort(
                outcome, "propagation", lambda: self.propagation.execute(self.get_change_event(event_id)),
            )
        self._best_effort(outcome, "notification", lambda: self.generate_notifications(event_id))
        return outcome

    def _best_effort(self, outcome: TrackChangeOutcome, step: str, fn: Callable):
        try:
            result = fn()
            db.session.commit()
            return result
        except Exception as exc:
            db.session.rollback()
            logger.exception("Governance step %s failed", step,
                             extra={"change_event_id": outcome.change_event_id})
            outcome.failures.append(SideEffectFailure(step, str(exc)))
            return None

    # ── Side effects ─────────────────────────────────────────────────────

    def perform_impact_analysis(self, change_event_id: int) -> ChangeImpactAnalysis:
        event = self.get_change_event(change_event_id)
        modules = list(event.affected_modules or [])
        approvers = [
            u.id for u in
            User.query.filter_by(role="QUALITY_MANAGER", is_active=True).order_by(User.id).all()
        ]
        analysis = ChangeImpactAnalysis(
            change_event_id=event.id,
            impact_score=impact_classifier.impact_score(
                event.entity_type, event.change_type, event.changed_fields or [],
            ),
            affected_stakeholders=impact_classifier.affected_stakeholders(modules),
            estimated_effort_hours=impact_classifier.estimated_effort_hours(event.impact_level),
            risk_mitigation_actions=impact_classifier.risk_mitigation_actions(event.impact_level),
            recommended_approvers=approvers,
            analysis_data={
                "risk_level": event.impact_level,
                "affected_modules": modules,
                "changed_field_count": len(event.changed_fields or []),
            },
        )
        db.session.add(analysis)
        db.session.flush()
        logger.debug("Impact analysis score=%.1f", analysis.impact_score,
                     extra={"change_event_id": event.id})
        return analysis

    def generate_notifications(self, change_event_id: int) -> int:
        """Emit change-level notices; raises if any could not be delivered."""
        event = self.get_change_event(change_event_id)
        results = []
        if event.impact_level in ("HIGH", "CRITICAL"):
            results.append(self.emitter.high_impact(event, setting("IMPACT_NOTIFICATION_ROLES")))
        # Workflows notify their own approvers; this covers the rest
        if event.approval_required and event.approval_status == "NONE":
            results.append(self.emitter.approval_required(event, setting("APPROVAL_NOTICE_HOURS")))
        if not all(results):
            raise RuntimeError(f"{results.count(False)} notification(s) could not be delivered")
        return len(results)

    # ── Queries ──────────────────────────────────────────────────────────

    def get_change_event(self, change_event_id: int) -> ChangeEvent:
        event = db.session.get(ChangeEvent, change_event_id)
        if event is None:
            raise NotFoundError("ChangeEvent", change_event_id)
        return event

    def list_change_events(
        self,
        project_id: int,
        entity_type: str | None = None,
        impact_level: str | None = None,
        batch_id: str | None = None,
        approval_status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ChangeEvent], int]:
        """Change events of a project, newest first."""
        errors = {}
        if impact_level and impact_level not in IMPACT_LEVELS:
            errors["impact_level"] = f"must be one of {', '.join(IMPACT_LEVELS)}"
        if approval_status and approval_status not in APPROVAL_STATUSES:
            errors["approval_status"] = f"must be one of {', '.join(APPROVAL_STATUSES)}"
        if errors:
            raise ValidationError("Invalid change event filter", details=errors)

        q = ChangeEvent.query.filter_by(project_id=project_id)
        if entity_type:
            q = q.filter_by(entity_type=entity_type)
        if impact_level:
            q = q.filter_by(impact_level=impact_level)
        if batch_id:
            q = q.filter_by(batch_id=batch_id)
        if approval_status:
            q = q.filter_by(approval_status=approval_status)
        total = q.count()
        items = (q.order_by(ChangeEvent.triggered_at.desc(), ChangeEvent.id.desc())
                 .offset(offset).limit(limit).all())
        return items, total
