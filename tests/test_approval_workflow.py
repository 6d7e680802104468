"""
Tests: approval workflow selection, decisions, completion, overdue sweep
and emergency bypass.

Covers:
    - predicates: trigger matching, auto-approve, step validation
    - sequential and parallel completion, including the skipped-step case
    - rejection short-circuit, double decisions, ESCALATED as terminal
    - overdue sweep with an explicit clock
    - bypass authorization and its audit trail
"""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy import update as sa_update

from change_governance.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from change_governance.models import as_utc
from change_governance.models import db as _db
from change_governance.models import utcnow
from change_governance.models.audit import AuditLog
from change_governance.models.change import ChangeEvent, PropagationExecution
from change_governance.models.notification import ChangeNotification
from change_governance.models.workflow import Approval, WorkflowStep
from change_governance.services.approval_workflow import (
    ApprovalWorkflowService,
    check_workflow_completion,
    matches_auto_approve,
    matches_trigger,
    validate_steps,
)
from change_governance.services.propagation import PropagationRuleEngine


# ── Helpers ──────────────────────────────────────────────────────────────────


def _make_event(actor_id: int, impact_level="CRITICAL", entity_type="FAILURE_MODE",
                change_type="UPDATE", project_id=1) -> ChangeEvent:
    event = ChangeEvent(
        project_id=project_id,
        entity_type=entity_type,
        entity_id="fm-1",
        change_type=change_type,
        change_action="Updated failure mode (severityRating)",
        changed_fields=["severityRating"],
        old_value={"severityRating": 5},
        new_value={"severityRating": 9},
        impact_level=impact_level,
        affected_modules=["FMEA", "CONTROL_PLAN"],
        approval_required=True,
        triggered_by_id=actor_id,
    )
    _db.session.add(event)
    _db.session.commit()
    return event


def _steps(*roles, timeout_hours=24):
    return [
        {"step_number": i, "step_name": f"{role.title()} review", "approver_role": role,
         "timeout_hours": timeout_hours}
        for i, role in enumerate(roles, start=1)
    ]


def _make_workflow(svc: ApprovalWorkflowService, name="Critical change", roles=("QUALITY_MANAGER",),
                   **kwargs):
    params = {"project_id": 1, "workflow_name": name, "approval_steps": _steps(*roles)}
    params.update(kwargs)
    return svc.create_workflow(**params)


def _approvals(change_event_id: int) -> list[Approval]:
    return (Approval.query.filter_by(change_event_id=change_event_id)
            .order_by(Approval.step_number).all())


def _stub(step_number, status):
    return SimpleNamespace(step_number=step_number, approval_status=status)


# ── Predicates ───────────────────────────────────────────────────────────────


class TestPredicates:
    def _event(self, **kw):
        base = {"id": 1, "impact_level": "CRITICAL", "entity_type": "FAILURE_MODE", "change_type": "UPDATE"}
        base.update(kw)
        return SimpleNamespace(**base)

    def test_empty_trigger_matches_everything(self):
        assert matches_trigger(self._event(), None)
        assert matches_trigger(self._event(), {})

    def test_trigger_is_attribute_equality(self):
        conditions = {"impact_level": "CRITICAL", "entity_type": "FAILURE_MODE"}
        assert matches_trigger(self._event(), conditions)
        assert not matches_trigger(self._event(impact_level="HIGH"), conditions)

    def test_malformed_trigger_never_matches(self):
        assert not matches_trigger(self._event(), ["CRITICAL"])
        assert not matches_trigger(self._event(), {"impact_level": ["CRITICAL", "HIGH"]})

    def test_auto_approve_by_impact_or_entity(self):
        assert matches_auto_approve(self._event(impact_level="LOW"), {"impact_level": "LOW"})
        assert matches_auto_approve(self._event(entity_type="FMEA"), {"entity_types": ["FMEA", "CONTROL_PLAN"]})
        assert not matches_auto_approve(self._event(), {"impact_level": "LOW", "entity_types": ["FMEA"]})
        assert not matches_auto_approve(self._event(), None)

    def test_malformed_auto_approve_never_matches(self):
        assert not matches_auto_approve(self._event(), "always")
        assert not matches_auto_approve(self._event(), {"entity_types": "FAILURE_MODE"})

    def test_step_validation(self):
        with pytest.raises(ValidationError):
            validate_steps([], 48)
        with pytest.raises(ValidationError):
            validate_steps([{"step_number": 1, "step_name": "x"}], 48)
        with pytest.raises(ValidationError):
            validate_steps(_steps("A", "B")[1:], 48)
        with pytest.raises(ValidationError):
            validate_steps([{"step_number": 1, "approver_role": "A", "timeout_hours": 0}], 48)
        duplicate = _steps("A", "B")
        duplicate[1]["step_number"] = 1
        with pytest.raises(ValidationError):
            validate_steps(duplicate, 48)

    def test_steps_are_sorted_and_default_timeout_applied(self):
        steps = validate_steps(
            [{"step_number": 2, "approver_role": "B"}, {"step_number": 1, "approver_role": "A"}], 12,
        )
        assert [s.step_number for s in steps] == [1, 2]
        assert steps[0].timeout_hours == 12


class TestCompletionPredicate:
    STEPS = [WorkflowStep(n, f"s{n}", approver_role="QUALITY_MANAGER") for n in (1, 2, 3)]

    def test_sequential_all_approved(self):
        approvals = [_stub(1, "APPROVED"), _stub(2, "APPROVED"), _stub(3, "APPROVED")]
        assert check_workflow_completion(approvals, self.STEPS, parallel=False)

    def test_sequential_skipped_step_is_not_complete(self):
        approvals = [_stub(1, "APPROVED"), _stub(2, "PENDING"), _stub(3, "APPROVED")]
        assert not check_workflow_completion(approvals, self.STEPS, parallel=False)

    def test_sequential_prefix_is_not_complete(self):
        approvals = [_stub(1, "APPROVED"), _stub(2, "APPROVED"), _stub(3, "PENDING")]
        assert not check_workflow_completion(approvals, self.STEPS, parallel=False)

    def test_sequential_optional_step_may_be_skipped(self):
        steps = [self.STEPS[0], WorkflowStep(2, "s2", approver_role="X", is_optional=True), self.STEPS[2]]
        approvals = [_stub(1, "APPROVED"), _stub(2, "PENDING"), _stub(3, "APPROVED")]
        assert check_workflow_completion(approvals, steps, parallel=False)

    def test_parallel_needs_every_step(self):
        approvals = [_stub(1, "APPROVED"), _stub(2, "PENDING"), _stub(3, "APPROVED")]
        assert not check_workflow_completion(approvals, self.STEPS, parallel=True)
        approvals[1] = _stub(2, "APPROVED")
        assert check_workflow_completion(approvals, self.STEPS, parallel=True)

    def test_any_rejection_blocks_completion(self):
        approvals = [_stub(1, "APPROVED"), _stub(2, "APPROVED"), _stub(3, "REJECTED")]
        assert not check_workflow_completion(approvals, self.STEPS, parallel=True)
        assert not check_workflow_completion(approvals, self.STEPS, parallel=False)


# ── Workflow selection and start ─────────────────────────────────────────────


class TestStartApprovalProcess:
    def test_newest_matching_workflow_wins(self, users):
        svc = ApprovalWorkflowService()
        _make_workflow(svc, name="older")
        newer = _make_workflow(svc, name="newer")
        _make_workflow(svc, name="other trigger", trigger_conditions={"impact_level": "LOW"})
        event = _make_event(users["PROCESS_ENGINEER"].id)

        assert svc.find_applicable_workflow(event).id == newer.id

    def test_workflows_of_other_projects_are_ignored(self, users):
        svc = ApprovalWorkflowService()
        _make_workflow(svc, project_id=2)
        event = _make_event(users["PROCESS_ENGINEER"].id)
        assert svc.start_approval_process(event.id) is None
        assert _db.session.get(ChangeEvent, event.id).approval_status == "NONE"

    def test_malformed_conditions_are_skipped_not_fatal(self, users):
        svc = ApprovalWorkflowService()
        good = _make_workflow(svc, name="good")
        bad = _make_workflow(svc, name="bad")
        bad.trigger_conditions = {"impact_level": 5}
        _db.session.commit()
        event = _make_event(users["PROCESS_ENGINEER"].id)

        assert svc.find_applicable_workflow(event).id == good.id

    def test_creates_one_pending_approval_per_step(self, users):
        svc = ApprovalWorkflowService()
        _make_workflow(svc, roles=("QUALITY_MANAGER", "PRODUCTION_MANAGER"))
        event = _make_event(users["PROCESS_ENGINEER"].id)

        execution = svc.start_approval_process(event.id)

        assert execution.approval_status == "PENDING"
        assert not execution.is_complete
        approvals = _approvals(event.id)
        assert [a.step_number for a in approvals] == [1, 2]
        assert all(a.approval_status == "PENDING" for a in approvals)
        for a in approvals:
            assert as_utc(a.due_date) - as_utc(a.assigned_at) == timedelta(hours=24)
        assert _db.session.get(ChangeEvent, event.id).approval_status == "PENDING"

    def test_sequential_start_notifies_first_step_only(self, users):
        svc = ApprovalWorkflowService()
        _make_workflow(svc, roles=("QUALITY_MANAGER", "PRODUCTION_MANAGER"))
        event = _make_event(users["PROCESS_ENGINEER"].id)
        svc.start_approval_process(event.id)

        notices = ChangeNotification.query.filter_by(notification_type="APPROVAL_REQUIRED").all()
        assert [n.recipient_user_id for n in notices] == [users["QUALITY_MANAGER"].id]
        assert notices[0].action_required is True

    def test_parallel_start_notifies_every_step(self, users):
        svc = ApprovalWorkflowService()
        _make_workflow(svc, roles=("QUALITY_MANAGER", "PRODUCTION_MANAGER"), parallel_approval=True)
        event = _make_event(users["PROCESS_ENGINEER"].id)
        svc.start_approval_process(event.id)

        notices = ChangeNotification.query.filter_by(notification_type="APPROVAL_REQUIRED").all()
        assert {n.recipient_user_id for n in notices} == {
            users["QUALITY_MANAGER"].id, users["PRODUCTION_MANAGER"].id,
        }

    def test_auto_approve_creates_no_approvals(self, users):
        svc = ApprovalWorkflowService()
        _make_workflow(svc, auto_approve_conditions={"entity_types": ["FAILURE_MODE"]})
        event = _make_event(users["PROCESS_ENGINEER"].id)

        execution = svc.start_approval_process(event.id)

        assert execution.auto_approved
        assert execution.is_complete
        assert _approvals(event.id) == []
        stored = _db.session.get(ChangeEvent, event.id)
        assert stored.approval_status == "APPROVED"
        assert stored.completed_at is not None

    def test_cannot_start_twice(self, users):
        svc = ApprovalWorkflowService()
        _make_workflow(svc)
        event = _make_event(users["PROCESS_ENGINEER"].id)
        svc.start_approval_process(event.id)
        with pytest.raises(ConflictError):
            svc.start_approval_process(event.id)

    def test_unknown_event(self):
        with pytest.raises(NotFoundError):
            ApprovalWorkflowService().start_approval_process(999)

    def test_invalid_definition_is_rejected(self):
        svc = ApprovalWorkflowService()
        with pytest.raises(ValidationError):
            svc.create_workflow(project_id=1, workflow_name=" ", approval_steps=_steps("A"))
        with pytest.raises(ValidationError):
            svc.create_workflow(project_id=1, workflow_name="x", approval_steps=_steps("A"),
                                trigger_conditions=["CRITICAL"])


# ── Decisions ────────────────────────────────────────────────────────────────


class TestDecisions:
    def _start(self, users, roles=("QUALITY_MANAGER", "PRODUCTION_MANAGER"), **kwargs):
        svc = ApprovalWorkflowService()
        _make_workflow(svc, roles=roles, **kwargs)
        event = _make_event(users["PROCESS_ENGINEER"].id)
        svc.start_approval_process(event.id)
        return svc, event.id, _approvals(event.id)

    def test_sequential_two_step_approval(self, users):
        svc, event_id, (first, second) = self._start(users)

        svc.process_approval_decision(first.id, "APPROVED", actor_id=users["QUALITY_MANAGER"].id)
        event = _db.session.get(ChangeEvent, event_id)
        assert event.approval_status == "PENDING"
        assert not svc.is_workflow_complete(event_id)
        # step 2 approver is notified once step 1 is approved
        assert ChangeNotification.query.filter_by(
            notification_type="APPROVAL_REQUIRED", recipient_user_id=users["PRODUCTION_MANAGER"].id,
        ).count() == 1

        svc.process_approval_decision(second.id, "APPROVED", actor_id=users["PRODUCTION_MANAGER"].id)
        event = _db.session.get(ChangeEvent, event_id)
        assert event.approval_status == "APPROVED"
        assert event.approved_by_id == users["PRODUCTION_MANAGER"].id
        assert event.approved_at is not None
        assert event.completed_at is not None
        assert svc.is_workflow_complete(event_id)
        assert ChangeNotification.query.filter_by(
            notification_type="CHANGE_APPROVED", recipient_user_id=users["PROCESS_ENGINEER"].id,
        ).count() == 1

    def test_skipping_a_middle_step_does_not_complete(self, users):
        svc, event_id, (first, _second, third) = self._start(
            users, roles=("QUALITY_MANAGER", "PRODUCTION_MANAGER", "ADMIN"),
        )
        svc.process_approval_decision(first.id, "APPROVED", actor_id=users["QUALITY_MANAGER"].id)
        svc.process_approval_decision(third.id, "APPROVED", actor_id=users["ADMIN"].id)

        assert _db.session.get(ChangeEvent, event_id).approval_status == "PENDING"
        assert not svc.is_workflow_complete(event_id)

    def test_parallel_completes_when_every_step_is_approved(self, users):
        svc, event_id, (first, second) = self._start(users, parallel_approval=True)
        svc.process_approval_decision(second.id, "APPROVED", actor_id=users["PRODUCTION_MANAGER"].id)
        assert _db.session.get(ChangeEvent, event_id).approval_status == "PENDING"
        svc.process_approval_decision(first.id, "APPROVED", actor_id=users["QUALITY_MANAGER"].id)
        assert _db.session.get(ChangeEvent, event_id).approval_status == "APPROVED"

    def test_rejection_short_circuits(self, users):
        svc, event_id, (first, second) = self._start(users)
        svc.process_approval_decision(first.id, "REJECTED", comments="Severity not justified",
                                      actor_id=users["QUALITY_MANAGER"].id)

        event = _db.session.get(ChangeEvent, event_id)
        assert event.approval_status == "REJECTED"
        assert event.completed_at is not None
        notice = ChangeNotification.query.filter_by(notification_type="CHANGE_REJECTED").one()
        assert notice.recipient_user_id == users["PROCESS_ENGINEER"].id
        assert notice.priority == "HIGH"
        assert "Severity not justified" in notice.message

        with pytest.raises(ConflictError):
            svc.process_approval_decision(second.id, "APPROVED", actor_id=users["PRODUCTION_MANAGER"].id)
        assert _db.session.get(Approval, second.id).approval_status == "PENDING"

    def test_second_decision_on_same_approval_conflicts(self, users):
        svc, _event_id, (first, _second) = self._start(users)
        svc.process_approval_decision(first.id, "APPROVED", actor_id=users["QUALITY_MANAGER"].id)
        with pytest.raises(ConflictError):
            svc.process_approval_decision(first.id, "REJECTED", actor_id=users["ADMIN"].id)
        assert _db.session.get(Approval, first.id).approval_status == "APPROVED"

    def test_escalated_is_terminal_for_decisions(self, users):
        svc, event_id, (first, _second) = self._start(users)
        svc.process_approval_decision(first.id, "ESCALATED", actor_id=users["QUALITY_MANAGER"].id)
        approval = _db.session.get(Approval, first.id)
        assert approval.approval_status == "ESCALATED"
        assert approval.escalated_at is not None

        with pytest.raises(ConflictError):
            svc.process_approval_decision(first.id, "APPROVED", actor_id=users["QUALITY_MANAGER"].id)
        assert _db.session.get(ChangeEvent, event_id).approval_status == "PENDING"

    def test_decision_is_audited(self, users):
        svc, _event_id, (first, _second) = self._start(users)
        svc.process_approval_decision(first.id, "APPROVED", comments="ok",
                                      actor_id=users["QUALITY_MANAGER"].id)
        log = AuditLog.query.filter_by(action="approval.decide").one()
        assert log.entity_id == str(first.id)
        assert log.actor_user_id == users["QUALITY_MANAGER"].id
        assert log.diff["approval_status"] == {"old": "PENDING", "new": "APPROVED"}

    def test_unknown_decision_and_records(self, users):
        svc, _event_id, (first, _second) = self._start(users)
        with pytest.raises(ValidationError):
            svc.process_approval_decision(first.id, "MAYBE", actor_id=users["QUALITY_MANAGER"].id)
        with pytest.raises(NotFoundError):
            svc.process_approval_decision(9999, "APPROVED", actor_id=users["QUALITY_MANAGER"].id)
        with pytest.raises(NotFoundError):
            svc.process_approval_decision(first.id, "APPROVED", actor_id=9999)

    def test_approval_runs_deferred_propagation(self, users):
        engine = PropagationRuleEngine()
        engine.create_rule(project_id=1, rule_name="update control plan",
                           source_entity_type="FAILURE_MODE", source_change_type="UPDATE",
                           target_entity_type="CONTROL_ITEM", requires_approval=True)
        svc = ApprovalWorkflowService(propagation=engine)
        _make_workflow(svc)
        event = _make_event(users["PROCESS_ENGINEER"].id)
        svc.start_approval_process(event.id)
        engine.execute(_db.session.get(ChangeEvent, event.id))
        _db.session.commit()
        assert PropagationExecution.query.one().status == "DEFERRED"

        (approval,) = _approvals(event.id)
        svc.process_approval_decision(approval.id, "APPROVED", actor_id=users["QUALITY_MANAGER"].id)

        assert PropagationExecution.query.one().status == "SUCCEEDED"
        assert _db.session.get(ChangeEvent, event.id).propagation_status == "COMPLETED"


# ── Overdue sweep ────────────────────────────────────────────────────────────


class TestOverdueSweep:
    def _start(self, users, **kwargs):
        svc = ApprovalWorkflowService()
        _make_workflow(svc, roles=("QUALITY_MANAGER", "PRODUCTION_MANAGER"), **kwargs)
        event = _make_event(users["PROCESS_ENGINEER"].id)
        svc.start_approval_process(event.id)
        return svc, event.id

    def test_nothing_escalated_before_due_date(self, users):
        svc, event_id = self._start(users)
        summary = svc.process_overdue_approvals(now=utcnow() + timedelta(hours=23))
        assert summary["escalated"] == 0
        assert all(a.approval_status == "PENDING" for a in _approvals(event_id))

    def test_overdue_approvals_are_escalated(self, users):
        svc, event_id = self._start(users, escalation_rules={"roles": ["ADMIN"]})
        summary = svc.process_overdue_approvals(now=utcnow() + timedelta(hours=25))

        assert summary == {"overdue": 2, "escalated": 2, "skipped": 0, "errors": 0}
        approvals = _approvals(event_id)
        assert all(a.approval_status == "ESCALATED" for a in approvals)
        assert all(a.escalated_at is not None for a in approvals)
        notices = ChangeNotification.query.filter_by(notification_type="APPROVAL_ESCALATED").all()
        assert len(notices) == 2
        assert {n.recipient_user_id for n in notices} == {users["ADMIN"].id}
        assert all(n.priority == "URGENT" for n in notices)
        assert AuditLog.query.filter_by(action="approval.escalate").count() == 2

    def test_step_escalation_roles_take_precedence(self, users):
        svc = ApprovalWorkflowService()
        steps = _steps("QUALITY_MANAGER")
        steps[0]["escalation_roles"] = ["PRODUCTION_MANAGER"]
        _make_workflow(svc, approval_steps=steps, escalation_rules={"roles": ["ADMIN"]})
        event = _make_event(users["PROCESS_ENGINEER"].id)
        svc.start_approval_process(event.id)

        svc.process_overdue_approvals(now=utcnow() + timedelta(hours=25))
        notice = ChangeNotification.query.filter_by(notification_type="APPROVAL_ESCALATED").one()
        assert notice.recipient_user_id == users["PRODUCTION_MANAGER"].id

    def test_decided_approvals_are_left_alone(self, users):
        svc, event_id = self._start(users)
        first = _approvals(event_id)[0]
        svc.process_approval_decision(first.id, "APPROVED", actor_id=users["QUALITY_MANAGER"].id)

        summary = svc.process_overdue_approvals(now=utcnow() + timedelta(hours=25))
        assert summary["escalated"] == 1
        assert [a.approval_status for a in _approvals(event_id)] == ["APPROVED", "ESCALATED"]

    def test_rejected_changes_are_not_swept(self, users):
        svc, event_id = self._start(users)
        first = _approvals(event_id)[0]
        svc.process_approval_decision(first.id, "REJECTED", actor_id=users["QUALITY_MANAGER"].id)

        summary = svc.process_overdue_approvals(now=utcnow() + timedelta(hours=25))
        assert summary["overdue"] == 0

    def test_sweep_is_idempotent(self, users):
        svc, _event_id = self._start(users)
        later = utcnow() + timedelta(hours=25)
        svc.process_overdue_approvals(now=later)
        assert svc.process_overdue_approvals(now=later)["overdue"] == 0

    def test_decision_between_scan_and_write_is_kept(self, users):
        svc = ApprovalWorkflowService()
        _make_workflow(svc)
        event = _make_event(users["PROCESS_ENGINEER"].id)
        svc.start_approval_process(event.id)
        target = _approvals(event.id)[0]
        target_id, approver_id = target.id, users["QUALITY_MANAGER"].id
        calls = []

        def racing_update(*args):
            if not calls:
                _db.session.execute(
                    sa_update(Approval)
                    .where(Approval.id == target_id)
                    .values(approval_status="APPROVED", decided_by_id=approver_id)
                )
                _db.session.commit()
            calls.append(args)
            return sa_update(*args)

        with patch("change_governance.services.approval_workflow.update", side_effect=racing_update):
            summary = svc.process_overdue_approvals(now=utcnow() + timedelta(hours=25))

        assert summary == {"overdue": 1, "escalated": 0, "skipped": 1, "errors": 0}
        approval = _db.session.get(Approval, target_id)
        assert approval.approval_status == "APPROVED"
        assert approval.escalated_at is None
        assert ChangeNotification.query.filter_by(notification_type="APPROVAL_ESCALATED").count() == 0


# ── Emergency bypass ─────────────────────────────────────────────────────────


class TestBypass:
    def _start(self, users, **kwargs):
        svc = ApprovalWorkflowService()
        _make_workflow(svc, roles=("QUALITY_MANAGER", "PRODUCTION_MANAGER"), **kwargs)
        event = _make_event(users["PROCESS_ENGINEER"].id)
        svc.start_approval_process(event.id)
        return svc, event.id

    def test_unauthorized_role_changes_nothing(self, users):
        svc, event_id = self._start(users)
        with pytest.raises(AuthorizationError):
            svc.bypass_approval(event_id, users["OPERATOR"].id, "Line stop")

        assert _db.session.get(ChangeEvent, event_id).approval_status == "PENDING"
        assert all(a.approval_status == "PENDING" for a in _approvals(event_id))
        assert AuditLog.query.filter_by(action="change_event.approval_bypass").count() == 0

    def test_admin_may_always_bypass(self, users):
        svc, event_id = self._start(users)
        execution = svc.bypass_approval(event_id, users["ADMIN"].id, "Line stop on press 4")

        assert execution.is_complete
        event = _db.session.get(ChangeEvent, event_id)
        assert event.approval_status == "APPROVED"
        assert event.approved_by_id == users["ADMIN"].id
        approvals = _approvals(event_id)
        assert all(a.approval_status == "BYPASSED" for a in approvals)
        assert approvals[0].comments == "Emergency bypass: Line stop on press 4"

        log = AuditLog.query.filter_by(action="change_event.approval_bypass").one()
        assert log.actor_user_id == users["ADMIN"].id
        assert log.diff["reason"] == "Line stop on press 4"
        assert sorted(log.diff["bypassed_approval_ids"]) == sorted(a.id for a in approvals)

    def test_workflow_bypass_role(self, users):
        svc, event_id = self._start(users, emergency_bypass_roles=["PRODUCTION_MANAGER"])
        svc.bypass_approval(event_id, users["PRODUCTION_MANAGER"].id, "Customer shipment")
        assert _db.session.get(ChangeEvent, event_id).approval_status == "APPROVED"

    def test_escalated_approvals_are_bypassed_too(self, users):
        svc, event_id = self._start(users)
        svc.process_overdue_approvals(now=utcnow() + timedelta(hours=25))
        svc.bypass_approval(event_id, users["ADMIN"].id, "Escalation unanswered")
        assert all(a.approval_status == "BYPASSED" for a in _approvals(event_id))

    def test_reason_is_required(self, users):
        svc, event_id = self._start(users)
        with pytest.raises(ValidationError):
            svc.bypass_approval(event_id, users["ADMIN"].id, "  ")

    def test_rejected_change_cannot_be_bypassed(self, users):
        svc, event_id = self._start(users)
        first = _approvals(event_id)[0]
        svc.process_approval_decision(first.id, "REJECTED", actor_id=users["QUALITY_MANAGER"].id)
        with pytest.raises(ConflictError):
            svc.bypass_approval(event_id, users["ADMIN"].id, "Override")

    def test_unknown_actor(self, users):
        svc, event_id = self._start(users)
        with pytest.raises(NotFoundError):
            svc.bypass_approval(event_id, 9999, "x")


# ── Queries ──────────────────────────────────────────────────────────────────


class TestQueries:
    def test_pending_approvals_by_role(self, users):
        svc = ApprovalWorkflowService()
        _make_workflow(svc, roles=("QUALITY_MANAGER", "PRODUCTION_MANAGER"))
        event = _make_event(users["PROCESS_ENGINEER"].id)
        svc.start_approval_process(event.id)

        qm_queue = svc.get_pending_approvals(users["QUALITY_MANAGER"].id)
        assert [a.step_number for a in qm_queue] == [1]
        assert svc.get_pending_approvals(users["OPERATOR"].id) == []

    def test_pending_approvals_by_named_user(self, users):
        svc = ApprovalWorkflowService()
        steps = [{"step_number": 1, "step_name": "Owner", "approver_user_id": users["OPERATOR"].id}]
        _make_workflow(svc, approval_steps=steps)
        event = _make_event(users["PROCESS_ENGINEER"].id)
        svc.start_approval_process(event.id)

        assert len(svc.get_pending_approvals(users["OPERATOR"].id)) == 1

    def test_pending_queue_excludes_overdue_and_closed_changes(self, users):
        svc = ApprovalWorkflowService()
        _make_workflow(svc, roles=("QUALITY_MANAGER", "QUALITY_MANAGER"))
        event = _make_event(users["PROCESS_ENGINEER"].id)
        svc.start_approval_process(event.id)
        first, _second = _approvals(event.id)

        svc.process_approval_decision(first.id, "REJECTED", actor_id=users["QUALITY_MANAGER"].id)
        assert svc.get_pending_approvals(users["QUALITY_MANAGER"].id) == []

        other = _make_event(users["PROCESS_ENGINEER"].id)
        svc.start_approval_process(other.id)
        for a in _approvals(other.id):
            a.due_date = utcnow() - timedelta(minutes=1)
        _db.session.commit()
        assert svc.get_pending_approvals(users["QUALITY_MANAGER"].id) == []

    def test_history_and_execution(self, users):
        svc = ApprovalWorkflowService()
        workflow = _make_workflow(svc, roles=("QUALITY_MANAGER", "PRODUCTION_MANAGER"))
        event = _make_event(users["PROCESS_ENGINEER"].id)
        svc.start_approval_process(event.id)

        history = svc.get_approval_history(event.id)
        assert [a.step_number for a in history] == [1, 2]

        execution = svc.get_execution(event.id)
        assert execution.workflow_id == workflow.id
        assert [a["step_number"] for a in execution.to_dict()["approvals"]] == [1, 2]

    def test_execution_of_change_without_workflow(self, users):
        event = _make_event(users["PROCESS_ENGINEER"].id)
        assert ApprovalWorkflowService().get_execution(event.id) is None
