"""
Approval Workflow Engine — the change-approval state machine.

Per-approval states:

    PENDING ──► APPROVED | REJECTED | ESCALATED | BYPASSED

ESCALATED is written by the overdue sweep (or an explicit ESCALATED
decision) and is terminal for decisions; only an emergency bypass resolves
it afterwards.

Per-change states (ChangeEvent.approval_status):

    NONE      no workflow matched; the change is implicitly self-approved
    PENDING   a workflow is running
    APPROVED  completion predicate satisfied, auto-approved, or bypassed
    REJECTED  any step rejected

Concurrency:
    - decisions and escalations are conditional writes
      (``UPDATE … WHERE approval_status = 'PENDING'``); losing the race
      raises ConflictError instead of overwriting a decision
    - the change event row is locked (``SELECT … FOR UPDATE`` where the
      database supports it) before the approval set is re-read for the
      completion check

Usage:
    svc = ApprovalWorkflowService()
    svc.create_workflow(project_id=1, workflow_name="Critical FMEA change", approval_steps=[...])
    execution = svc.start_approval_process(change_event_id)
    svc.process_approval_decision(approval_id, "APPROVED", actor_id=7)
    svc.process_overdue_approvals()
    svc.bypass_approval(change_event_id, actor_id=1, reason="Line stop")
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update

from change_governance.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from change_governance.core.settings import setting
from change_governance.models import db, utcnow
from change_governance.models.audit import write_audit
from change_governance.models.auth import User
from change_governance.models.change import ChangeEvent
from change_governance.models.workflow import (
    DECISIONS,
    DEFAULT_TIMEOUT_HOURS,
    OPEN_APPROVAL_STATUSES,
    Approval,
    WorkflowDefinition,
    WorkflowStep,
)
from change_governance.services.notification import NotificationEmitter
from change_governance.services.outcomes import WorkflowExecution
from change_governance.services.propagation import PropagationRuleEngine

logger = logging.getLogger(__name__)

TRIGGER_KEYS = ("impact_level", "entity_type", "change_type")


# ═══════════════════════════════════════════════════════════════════════════
#  Predicates (pure)
# ═══════════════════════════════════════════════════════════════════════════

def matches_trigger(event: ChangeEvent, conditions) -> bool:
    """Attribute-equality predicate over impact level / entity type / change type.

    NULL or empty conditions match every change. A malformed structure never
    matches and is logged.
    """
    if not conditions:
        return True
    if not isinstance(conditions, Mapping):
        logger.warning("Malformed trigger conditions %r; treating as no match", conditions,
                       extra={"change_event_id": event.id})
        return False
    for key in TRIGGER_KEYS:
        expected = conditions.get(key)
        if expected is None:
            continue
        if not isinstance(expected, str):
            logger.warning("Malformed trigger condition %s=%r; treating as no match", key, expected,
                           extra={"change_event_id": event.id})
            return False
        if getattr(event, key) != expected:
            return False
    return True


def matches_auto_approve(event: ChangeEvent, conditions) -> bool:
    """Exact impact-level match, or entity type membership.

    Recognised keys: ``impact_level`` (str) and ``entity_types`` (list of
    str). Either satisfied condition auto-approves.
    """
    if not conditions:
        return False
    if not isinstance(conditions, Mapping):
        logger.warning("Malformed auto-approve conditions %r; treating as no match", conditions,
                       extra={"change_event_id": event.id})
        return False

    level = conditions.get("impact_level")
    if level is not None:
        if not isinstance(level, str):
            logger.warning("Malformed auto-approve impact_level %r", level,
                           extra={"change_event_id": event.id})
        elif level == event.impact_level:
            return True

    entity_types = conditions.get("entity_types")
    if entity_types is not None:
        if isinstance(entity_types, (list, tuple)) and all(isinstance(t, str) for t in entity_types):
            if event.entity_type in entity_types:
                return True
        else:
            logger.warning("Malformed auto-approve entity_types %r", entity_types,
                           extra={"change_event_id": event.id})
    return False


def check_workflow_completion(
    approvals: Iterable, steps: Sequence[WorkflowStep], parallel: bool,
) -> bool:
    """Whether a workflow's approval set satisfies its completion predicate.

    - any REJECTED approval: never complete
    - parallel: every non-optional step has an APPROVED approval
    - sequential: with H the highest approved step number, every
      non-optional step ≤ H is approved and H is the last step
    """
    approvals = list(approvals)
    if any(a.approval_status == "REJECTED" for a in approvals):
        return False

    approved = {a.step_number for a in approvals if a.approval_status == "APPROVED"}
    required = [s.step_number for s in steps if not s.is_optional]

    if parallel:
        return all(n in approved for n in required)

    if not approved:
        return False
    highest = max(approved)
    if any(n <= highest and n not in approved for n in required):
        return False
    last_step = max((s.step_number for s in steps), default=0)
    return highest == last_step


def validate_steps(approval_steps, default_timeout: int) -> list[WorkflowStep]:
    """Parse and validate step dicts; numbers must be unique and contiguous from 1."""
    if not isinstance(approval_steps, (list, tuple)) or not approval_steps:
        raise ValidationError("A workflow needs at least one approval step",
                              details={"approval_steps": "required"})

    steps = []
    errors = {}
    for index, raw in enumerate(approval_steps):
        if not isinstance(raw, Mapping):
            errors[f"approval_steps[{index}]"] = "must be an object"
            continue
        try:
            step = WorkflowStep.from_dict(raw, default_timeout)
        except (KeyError, TypeError, ValueError):
            errors[f"approval_steps[{index}]"] = "step_number must be an integer"
            continue
        if not step.approver_role and step.approver_user_id is None:
            errors[f"approval_steps[{index}]"] = "approver_role or approver_user_id is required"
        if step.timeout_hours <= 0:
            errors[f"approval_steps[{index}].timeout_hours"] = "must be positive"
        steps.append(step)
    if errors:
        raise ValidationError("Invalid approval steps", details=errors)

    numbers = sorted(s.step_number for s in steps)
    if numbers != list(range(1, len(numbers) + 1)):
        raise ValidationError(
            "Step numbers must be unique and contiguous starting at 1",
            details={"approval_steps": f"got {numbers}"},
        )
    return sorted(steps, key=lambda s: s.step_number)


# ═══════════════════════════════════════════════════════════════════════════
#  Service
# ═══════════════════════════════════════════════════════════════════════════

class ApprovalWorkflowService:
    """Drive approval workflows for change events."""

    def __init__(
        self,
        emitter: NotificationEmitter | None = None,
        propagation: PropagationRuleEngine | None = None,
    ) -> None:
        self.emitter = emitter or NotificationEmitter()
        self.propagation = propagation or PropagationRuleEngine(emitter=self.emitter)

    # ── Administration ───────────────────────────────────────────────────

    def create_workflow(
        self,
        *,
        project_id: int,
        workflow_name: str,
        approval_steps: list[dict],
        trigger_conditions: dict | None = None,
        parallel_approval: bool = False,
        auto_approve_conditions: dict | None = None,
        default_timeout_hours: int = DEFAULT_TIMEOUT_HOURS,
        escalation_rules: dict | None = None,
        emergency_bypass_roles: list[str] | None = None,
        description: str = "",
        created_by_id: int | None = None,
    ) -> WorkflowDefinition:
        """Validate and persist a workflow definition."""
        errors = {}
        if not workflow_name or not workflow_name.strip():
            errors["workflow_name"] = "required"
        if trigger_conditions is not None and not isinstance(trigger_conditions, Mapping):
            errors["trigger_conditions"] = "must be an object"
        if auto_approve_conditions is not None and not isinstance(auto_approve_conditions, Mapping):
            errors["auto_approve_conditions"] = "must be an object"
        if escalation_rules is not None and not isinstance(escalation_rules, Mapping):
            errors["escalation_rules"] = "must be an object"
        if default_timeout_hours is None or default_timeout_hours <= 0:
            errors["default_timeout_hours"] = "must be positive"
        if emergency_bypass_roles is not None and not (
            isinstance(emergency_bypass_roles, (list, tuple))
            and all(isinstance(r, str) for r in emergency_bypass_roles)
        ):
            errors["emergency_bypass_roles"] = "must be a list of role names"
        if errors:
            raise ValidationError("Invalid workflow definition", details=errors)

        steps = validate_steps(approval_steps, default_timeout_hours)

        workflow = WorkflowDefinition(
            project_id=project_id,
            workflow_name=workflow_name.strip(),
            description=description,
            trigger_conditions=dict(trigger_conditions) if trigger_conditions else None,
            approval_steps=[s.to_dict() for s in steps],
            parallel_approval=parallel_approval,
            auto_approve_conditions=dict(auto_approve_conditions) if auto_approve_conditions else None,
            default_timeout_hours=default_timeout_hours,
            escalation_rules=dict(escalation_rules) if escalation_rules else None,
            emergency_bypass_roles=list(emergency_bypass_roles or []),
            created_by_id=created_by_id,
        )
        db.session.add(workflow)
        db.session.commit()
        logger.info("Workflow created: %s (%d steps, %s)", workflow.workflow_name, len(steps),
                    "parallel" if parallel_approval else "sequential",
                    extra={"project_id": project_id, "workflow_id": workflow.id})
        return workflow

    def find_applicable_workflow(self, event: ChangeEvent) -> WorkflowDefinition | None:
        """Newest active workflow of the event's project whose trigger matches."""
        candidates = (
            WorkflowDefinition.query
            .filter_by(project_id=event.project_id, is_active=True)
            .order_by(WorkflowDefinition.created_at.desc(), WorkflowDefinition.id.desc())
            .all()
        )
        for workflow in candidates:
            if matches_trigger(event, workflow.trigger_conditions):
                return workflow
        return None

    # ── Start ────────────────────────────────────────────────────────────

    def start_approval_process(self, change_event_id: int) -> WorkflowExecution | None:
        """Select a workflow and create one Approval per step.

        Returns None when no workflow applies (the change stays NONE).

        Sequential workflows notify only the step-1 approver set. Parallel
        workflows notify the approvers of every step at once, since each
        step can be decided immediately.
        """
        event = db.session.get(ChangeEvent, change_event_id)
        if event is None:
            raise NotFoundError("ChangeEvent", change_event_id)
        if event.approval_status != "NONE" or self._load_approvals(event.id):
            raise ConflictError("ChangeEvent", "approval_status", event.approval_status)

        workflow = self.find_applicable_workflow(event)
        if workflow is None:
            logger.info("No applicable workflow; change is self-approved",
                        extra={"change_event_id": event.id, "project_id": event.project_id})
            return None

        now = utcnow()
        if matches_auto_approve(event, workflow.auto_approve_conditions):
            event.approval_status = "APPROVED"
            event.approved_at = now
            event.completed_at = now
            db.session.commit()
            logger.info("Change auto-approved by workflow %s", workflow.workflow_name,
                        extra={"change_event_id": event.id, "workflow_id": workflow.id})
            return self._execution(event, workflow, auto_approved=True)

        steps = workflow.steps
        for step in steps:
            db.session.add(Approval(
                change_event_id=event.id,
                workflow_id=workflow.id,
                step_number=step.step_number,
                step_name=step.step_name,
                approver_role=step.approver_role,
                approver_user_id=step.approver_user_id,
                approval_status="PENDING",
                assigned_at=now,
                due_date=now + timedelta(hours=step.timeout_hours),
            ))
        event.approval_status = "PENDING"
        db.session.flush()

        # Parallel workflows have every step actionable at once
        to_notify = steps if workflow.parallel_approval else steps[:1]
        for step in to_notify:
            self.emitter.step_approvers(event, step, now + timedelta(hours=step.timeout_hours))

        db.session.commit()
        logger.info("Approval workflow %s started with %d step(s)", workflow.workflow_name, len(steps),
                    extra={"change_event_id": event.id, "workflow_id": workflow.id})
        return self._execution(event, workflow)

    # ── Decisions ────────────────────────────────────────────────────────

    def process_approval_decision(
        self,
        approval_id: int,
        decision: str,
        comments: str | None = None,
        actor_id: int | None = None,
    ) -> Approval:
        """Record a decision on a PENDING approval and advance the workflow.

        Raises:
            ValidationError: unknown decision value.
            NotFoundError: approval, actor or workflow missing.
            ConflictError: the approval is no longer PENDING, or the change
                is no longer awaiting approval.
        """
        if decision not in DECISIONS:
            raise ValidationError(f"Unknown decision {decision!r}",
                                  details={"decision": f"must be one of {', '.join(DECISIONS)}"})
        approval = db.session.get(Approval, approval_id)
        if approval is None:
            raise NotFoundError("Approval", approval_id)
        if actor_id is None or db.session.get(User, actor_id) is None:
            raise NotFoundError("User", actor_id)

        try:
            event = self._lock_event(approval.change_event_id)
            if event.approval_status != "PENDING":
                raise ConflictError("ChangeEvent", "approval_status", event.approval_status)

            now = utcnow()
            values = {
                "approval_status": decision,
                "decided_by_id": actor_id,
                "decision_date": now,
                "comments": comments,
            }
            if decision == "ESCALATED":
                values["escalated_at"] = now
            result = db.session.execute(
                update(Approval)
                .where(Approval.id == approval_id, Approval.approval_status == "PENDING")
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.session.refresh(approval)
                raise ConflictError("Approval", "approval_status", approval.approval_status)
            db.session.refresh(approval)

            write_audit(
                entity_type="approval",
                entity_id=approval.id,
                action="approval.decide",
                actor_user_id=actor_id,
                project_id=event.project_id,
                diff={"approval_status": {"old": "PENDING", "new": decision}, "comments": comments},
            )

            if decision == "APPROVED":
                self._on_approved(event, approval, actor_id, now)
            elif decision == "REJECTED":
                self._on_rejected(event, approval, comments, now)
            elif decision == "ESCALATED":
                logger.info("Approval step %s escalated by decision", approval.step_number,
                            extra={"change_event_id": event.id, "approval_id": approval.id})
            else:
                logger.info("Approval step %s bypassed by user %s", approval.step_number, actor_id,
                            extra={"change_event_id": event.id, "approval_id": approval.id})

            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("Approval decision processed: %s", decision,
                    extra={"change_event_id": approval.change_event_id, "approval_id": approval.id,
                           "actor_id": actor_id})
        return approval

    def is_workflow_complete(self, change_event_id: int) -> bool:
        approvals = self._load_approvals(change_event_id)
        if not approvals:
            return False
        workflow = approvals[0].workflow
        if workflow is None:
            raise NotFoundError("WorkflowDefinition", approvals[0].workflow_id)
        return check_workflow_completion(approvals, workflow.steps, workflow.parallel_approval)

    def _on_approved(self, event: ChangeEvent, approval: Approval, actor_id: int, now: datetime) -> None:
        workflow = approval.workflow
        if workflow is None:
            raise NotFoundError("WorkflowDefinition", approval.workflow_id)

        approvals = self._load_approvals(event.id)
        if check_workflow_completion(approvals, workflow.steps, workflow.parallel_approval):
            event.approval_status = "APPROVED"
            event.approved_by_id = actor_id
            event.approved_at = now
            event.completed_at = now
            db.session.flush()
            logger.info("Approval workflow completed",
                        extra={"change_event_id": event.id, "workflow_id": workflow.id})
            self.emitter.change_approved(event)
            self._run_deferred_propagation(event)
            return

        if not workflow.parallel_approval:
            next_step = workflow.step(approval.step_number + 1)
            if next_step is not None:
                next_approval = next((a for a in approvals if a.step_number == next_step.step_number), None)
                if next_approval is None or next_approval.approval_status == "PENDING":
                    deadline = next_approval.due_date if next_approval else None
                    self.emitter.step_approvers(event, next_step, deadline)

    def _on_rejected(self, event: ChangeEvent, approval: Approval, comments: str | None, now: datetime) -> None:
        event.approval_status = "REJECTED"
        event.completed_at = now
        db.session.flush()
        logger.info("Change rejected at step %s", approval.step_number,
                    extra={"change_event_id": event.id, "approval_id": approval.id})
        self.emitter.change_rejected(event, comments)
        self.propagation.cancel_deferred(event)

    # ── Overdue sweep ────────────────────────────────────────────────────

    def process_overdue_approvals(self, now: datetime | None = None) -> dict:
        """Escalate PENDING approvals past their due date.

        Only changes still awaiting approval are considered. Each approval
        is escalated in its own transaction; a failure is logged and the
        sweep continues.
        """
        now = now or utcnow()
        overdue = (
            Approval.query
            .join(ChangeEvent, Approval.change_event_id == ChangeEvent.id)
            .filter(
                Approval.approval_status == "PENDING",
                Approval.due_date < now,
                ChangeEvent.approval_status == "PENDING",
            )
            .order_by(Approval.due_date.asc(), Approval.id.asc())
            .all()
        )

        summary = {"overdue": len(overdue), "escalated": 0, "skipped": 0, "errors": 0}
        for approval in overdue:
            try:
                result = db.session.execute(
                    update(Approval)
                    .where(Approval.id == approval.id, Approval.approval_status == "PENDING")
                    .values(approval_status="ESCALATED", escalated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    # Decided between the scan and the write
                    db.session.rollback()
                    summary["skipped"] += 1
                    continue
                db.session.refresh(approval)

                write_audit(
                    entity_type="approval",
                    entity_id=approval.id,
                    action="approval.escalate",
                    diff={"approval_status": {"old": "PENDING", "new": "ESCALATED"},
                          "due_date": approval.due_date},
                )
                roles = self._escalation_roles(approval)
                if roles:
                    self.emitter.approval_escalated(approval, roles)
                else:
                    logger.warning("No escalation roles configured for step %s", approval.step_number,
                                   extra={"change_event_id": approval.change_event_id,
                                          "approval_id": approval.id})
                db.session.commit()
                summary["escalated"] += 1
                logger.info("Overdue approval escalated",
                            extra={"change_event_id": approval.change_event_id, "approval_id": approval.id})
            except Exception:
                db.session.rollback()
                summary["errors"] += 1
                logger.exception("Failed to escalate approval %s", approval.id,
                                 extra={"approval_id": approval.id})

        logger.info("Overdue sweep: %s", summary)
        return summary

    @staticmethod
    def _escalation_roles(approval: Approval) -> list[str]:
        workflow = approval.workflow
        if workflow is None:
            return []
        step = workflow.step(approval.step_number)
        if step is not None and step.escalation_roles:
            return list(step.escalation_roles)
        rules = workflow.escalation_rules
        if isinstance(rules, Mapping) and isinstance(rules.get("roles"), (list, tuple)):
            return [r for r in rules["roles"] if isinstance(r, str)]
        return []

    # ── Emergency bypass ─────────────────────────────────────────────────

    def bypass_approval(self, change_event_id: int, actor_id: int, reason: str) -> WorkflowExecution:
        """Resolve every open approval of a change as BYPASSED and approve it.

        Raises:
            NotFoundError: actor or change event missing.
            AuthorizationError: the actor's role may not bypass.
            ValidationError: empty reason.
            ConflictError: the change is already APPROVED or REJECTED.
        """
        actor = db.session.get(User, actor_id)
        if actor is None:
            raise NotFoundError("User", actor_id)
        event = db.session.get(ChangeEvent, change_event_id)
        if event is None:
            raise NotFoundError("ChangeEvent", change_event_id)

        approvals = self._load_approvals(event.id)
        workflow = approvals[0].workflow if approvals else self.find_applicable_workflow(event)
        allowed = set(workflow.emergency_bypass_roles or []) if workflow else set()
        if actor.role != setting("ADMIN_ROLE") and actor.role not in allowed:
            logger.warning("Bypass refused for user %s with role %s", actor.id, actor.role,
                           extra={"change_event_id": event.id, "actor_id": actor.id})
            raise AuthorizationError(
                f"Role {actor.role!r} may not bypass approval for change event {event.id}",
                actor_id=actor.id, role=actor.role,
            )
        if not reason or not reason.strip():
            raise ValidationError("A bypass reason is required", details={"reason": "required"})

        try:
            event = self._lock_event(event.id)
            if event.approval_status in ("APPROVED", "REJECTED"):
                raise ConflictError("ChangeEvent", "approval_status", event.approval_status)

            now = utcnow()
            open_ids = [a.id for a in approvals if a.approval_status in OPEN_APPROVAL_STATUSES]
            if open_ids:
                db.session.execute(
                    update(Approval)
                    .where(Approval.id.in_(open_ids),
                           Approval.approval_status.in_(OPEN_APPROVAL_STATUSES))
                    .values(approval_status="BYPASSED", decided_by_id=actor.id,
                            decision_date=now, comments=f"Emergency bypass: {reason.strip()}")
                    .execution_options(synchronize_session=False)
                )

            previous = event.approval_status
            event.approval_status = "APPROVED"
            event.approved_by_id = actor.id
            event.approved_at = now
            event.completed_at = now
            write_audit(
                entity_type="change_event",
                entity_id=event.id,
                action="change_event.approval_bypass",
                actor=actor.email,
                actor_user_id=actor.id,
                project_id=event.project_id,
                diff={
                    "approval_status": {"old": previous, "new": "APPROVED"},
                    "reason": reason.strip(),
                    "bypassed_approval_ids": open_ids,
                },
            )
            self.emitter.change_approved(event)
            self._run_deferred_propagation(event)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.warning("Emergency bypass by user %s: %s", actor.id, reason.strip(),
                       extra={"change_event_id": event.id, "actor_id": actor.id})
        return self._execution(event, workflow)

    # ── Queries ──────────────────────────────────────────────────────────

    def get_pending_approvals(self, user_id: int) -> list[Approval]:
        """Open, not-yet-due approvals assigned to the user or the user's role."""
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return (
            Approval.query
            .join(ChangeEvent, Approval.change_event_id == ChangeEvent.id)
            .filter(
                Approval.approval_status == "PENDING",
                Approval.due_date > utcnow(),
                ChangeEvent.approval_status == "PENDING",
                or_(Approval.approver_user_id == user.id, Approval.approver_role == user.role),
            )
            .order_by(Approval.assigned_at.asc(), Approval.id.asc())
            .all()
        )

    def get_approval_history(self, change_event_id: int) -> list[Approval]:
        if db.session.get(ChangeEvent, change_event_id) is None:
            raise NotFoundError("ChangeEvent", change_event_id)
        return self._load_approvals(change_event_id)

    def get_execution(self, change_event_id: int) -> WorkflowExecution | None:
        event = db.session.get(ChangeEvent, change_event_id)
        if event is None:
            raise NotFoundError("ChangeEvent", change_event_id)
        approvals = self._load_approvals(event.id)
        if not approvals:
            return None
        return self._execution(event, approvals[0].workflow)

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _load_approvals(change_event_id: int) -> list[Approval]:
        return list(db.session.execute(
            select(Approval)
            .where(Approval.change_event_id == change_event_id)
            .order_by(Approval.step_number.asc())
            .execution_options(populate_existing=True)
        ).scalars())

    @staticmethod
    def _lock_event(change_event_id: int) -> ChangeEvent:
        event = db.session.execute(
            select(ChangeEvent)
            .where(ChangeEvent.id == change_event_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if event is None:
            raise NotFoundError("ChangeEvent", change_event_id)
        return event

    def _run_deferred_propagation(self, event: ChangeEvent) -> None:
        try:
            self.propagation.run_deferred(event)
        except Exception:
            logger.exception("Deferred propagation failed",
                             extra={"change_event_id": event.id})

    def _execution(self, event: ChangeEvent, workflow: WorkflowDefinition | None,
                   auto_approved: bool = False) -> WorkflowExecution:
        return WorkflowExecution(
            change_event_id=event.id,
            workflow_id=workflow.id if workflow else None,
            workflow_name=workflow.workflow_name if workflow else None,
            parallel=bool(workflow.parallel_approval) if workflow else False,
            approval_status=event.approval_status,
            auto_approved=auto_approved,
            approvals=[a.to_dict() for a in self._load_approvals(event.id)],
        )
