"""
QMS Change Governance Engine
Approval workflow domain models.

Models:
    - WorkflowDefinition: per-project ordered list of approval steps with
      trigger / auto-approve predicates and emergency bypass roles
    - Approval: runtime record of one step's decision for one change event

Value objects:
    - WorkflowStep: typed view over one entry of ``approval_steps`` JSON
"""

from dataclasses import dataclass, field

from change_governance.models import db, iso, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

DECISIONS = ("APPROVED", "REJECTED", "ESCALATED", "BYPASSED")

# Approvals still waiting on someone
OPEN_APPROVAL_STATUSES = ("PENDING", "ESCALATED")

DEFAULT_TIMEOUT_HOURS = 48


@dataclass(frozen=True)
class WorkflowStep:
    """One ordered approval step. Either ``approver_role`` or ``approver_user_id`` is set."""

    step_number: int
    step_name: str
    approver_role: str | None = None
    approver_user_id: int | None = None
    timeout_hours: int = DEFAULT_TIMEOUT_HOURS
    escalation_roles: tuple[str, ...] = field(default_factory=tuple)
    is_parallel: bool = False
    is_optional: bool = False

    @classmethod
    def from_dict(cls, data: dict, default_timeout: int = DEFAULT_TIMEOUT_HOURS) -> "WorkflowStep":
        timeout = data.get("timeout_hours")
        return cls(
            step_number=int(data["step_number"]),
            step_name=str(data.get("step_name") or f"Step {data['step_number']}"),
            approver_role=data.get("approver_role"),
            approver_user_id=data.get("approver_user_id"),
            timeout_hours=int(timeout) if timeout is not None else default_timeout,
            escalation_roles=tuple(data.get("escalation_roles") or ()),
            is_parallel=bool(data.get("is_parallel", False)),
            is_optional=bool(data.get("is_optional", False)),
        )

    def to_dict(self) -> dict:
        return {
            "step_number": self.step_number,
            "step_name": self.step_name,
            "approver_role": self.approver_role,
            "approver_user_id": self.approver_user_id,
            "timeout_hours": self.timeout_hours,
            "escalation_roles": list(self.escalation_roles),
            "is_parallel": self.is_parallel,
            "is_optional": self.is_optional,
        }


class WorkflowDefinition(db.Model):
    """
    Approval workflow configured for a project.

    ``trigger_conditions`` and ``auto_approve_conditions`` are attribute
    predicates over a change event; a NULL trigger matches every change.
    """

    __tablename__ = "change_approval_workflows"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=False, index=True)
    workflow_name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")

    trigger_conditions = db.Column(db.JSON, nullable=True,
                                   comment='{"impact_level": "CRITICAL", "entity_type": "FAILURE_MODE", "change_type": "UPDATE"}')
    approval_steps = db.Column(db.JSON, nullable=False, default=list,
                               comment="Ordered list of step dicts, step_number contiguous from 1")
    parallel_approval = db.Column(db.Boolean, nullable=False, default=False)
    auto_approve_conditions = db.Column(db.JSON, nullable=True,
                                        comment='{"impact_level": "LOW"} or {"entity_types": [...]}')
    default_timeout_hours = db.Column(db.Integer, nullable=False, default=DEFAULT_TIMEOUT_HOURS)
    escalation_rules = db.Column(db.JSON, nullable=True, comment='{"roles": ["QUALITY_MANAGER"]}')
    emergency_bypass_roles = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_by_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    approvals = db.relationship("Approval", back_populates="workflow", lazy="dynamic")

    @property
    def steps(self) -> list[WorkflowStep]:
        steps = [WorkflowStep.from_dict(s, self.default_timeout_hours or DEFAULT_TIMEOUT_HOURS)
                 for s in (self.approval_steps or [])]
        return sorted(steps, key=lambda s: s.step_number)

    def step(self, step_number: int) -> WorkflowStep | None:
        for s in self.steps:
            if s.step_number == step_number:
                return s
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "workflow_name": self.workflow_name,
            "description": self.description,
            "trigger_conditions": self.trigger_conditions,
            "approval_steps": [s.to_dict() for s in self.steps],
            "parallel_approval": self.parallel_approval,
            "auto_approve_conditions": self.auto_approve_conditions,
            "default_timeout_hours": self.default_timeout_hours,
            "escalation_rules": self.escalation_rules,
            "emergency_bypass_roles": list(self.emergency_bypass_roles or []),
            "is_active": self.is_active,
            "created_by_id": self.created_by_id,
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<WorkflowDefinition {self.id}: {self.workflow_name}>"


class Approval(db.Model):
    """
    Decision record for one (ChangeEvent, WorkflowStep) pair.

    ``due_date`` is fixed at creation (assigned_at + step timeout) and never
    recomputed.
    """

    __tablename__ = "change_approvals"
    __table_args__ = (
        db.UniqueConstraint("change_event_id", "step_number", name="uq_approval_event_step"),
        db.Index("ix_change_approvals_status_due", "approval_status", "due_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    change_event_id = db.Column(
        db.Integer, db.ForeignKey("change_events.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("change_approval_workflows.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    step_number = db.Column(db.Integer, nullable=False)
    step_name = db.Column(db.String(200), nullable=False)
    approver_role = db.Column(db.String(50), nullable=True)
    approver_user_id = db.Column(db.Integer, nullable=True, index=True)

    approval_status = db.Column(db.String(10), nullable=False, default="PENDING",
                                comment="PENDING | APPROVED | REJECTED | ESCALATED | BYPASSED")
    decided_by_id = db.Column(db.Integer, nullable=True)
    decision_date = db.Column(db.DateTime(timezone=True), nullable=True)
    comments = db.Column(db.Text, nullable=True)

    assigned_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    due_date = db.Column(db.DateTime(timezone=True), nullable=False)
    escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    change_event = db.relationship("ChangeEvent", back_populates="approvals")
    workflow = db.relationship("WorkflowDefinition", back_populates="approvals")

    def to_dict(self):
        return {
            "id": self.id,
            "change_event_id": self.change_event_id,
            "workflow_id": self.workflow_id,
            "step_number": self.step_number,
            "step_name": self.step_name,
            "approver_role": self.approver_role,
            "approver_user_id": self.approver_user_id,
            "approval_status": self.approval_status,
            "decided_by_id": self.decided_by_id,
            "decision_date": iso(self.decision_date),
            "comments": self.comments,
            "assigned_at": iso(self.assigned_at),
            "due_date": iso(self.due_date),
            "escalated_at": iso(self.escalated_at),
        }

    def __repr__(self):
        return f"<Approval {self.id}: event={self.change_event_id} step={self.step_number} [{self.approval_status}]>"
