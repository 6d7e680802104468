"""
QMS Change Governance Engine
Change tracking domain models.

Models:
    - ChangeEvent: one append-only record per tracked mutation
    - PropagationRule: administrator-owned rule mapping a source change to a
      downstream action
    - PropagationExecution: outcome of one rule for one change event
    - ChangeImpactAnalysis: best-effort impact assessment for a change event
"""

from change_governance.models import as_utc, db, iso, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

ENTITY_TYPES = (
    "FMEA",
    "PROCESS_FLOW",
    "PROCESS_STEP",
    "FAILURE_MODE",
    "FAILURE_CAUSE",
    "FAILURE_CONTROL",
    "CONTROL_PLAN",
    "CONTROL_ITEM",
)

CHANGE_TYPES = ("CREATE", "UPDATE", "DELETE")

IMPACT_LEVELS = ("LOW", "MEDIUM", "HIGH", "CRITICAL")

APPROVAL_STATUSES = ("NONE", "PENDING", "APPROVED", "REJECTED")

TARGET_ACTIONS = ("UPDATE", "CREATE", "VALIDATE", "NOTIFY")


class ChangeEvent(db.Model):
    """
    Audit record of a single mutation of a tracked entity.

    Immutable once written except for ``approval_status``,
    ``propagation_status`` and the approval/completion timestamps.
    Never deleted.
    """

    __tablename__ = "change_events"
    __table_args__ = (
        db.Index("ix_change_events_project_entity", "project_id", "entity_type", "entity_id"),
        db.Index("ix_change_events_approval_status", "approval_status"),
        db.Index("ix_change_events_batch", "batch_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=False, index=True,
                           comment="Owning project (external table)")
    entity_type = db.Column(db.String(30), nullable=False,
                            comment="FMEA | PROCESS_FLOW | PROCESS_STEP | FAILURE_MODE | …")
    entity_id = db.Column(db.String(64), nullable=False,
                          comment="PK of the mutated entity (int-as-string or UUID)")
    change_type = db.Column(db.String(10), nullable=False, comment="CREATE | UPDATE | DELETE")
    change_action = db.Column(db.String(500), nullable=False, default="",
                              comment="Human-readable summary, e.g. 'Updated failure mode (severityRating)'")

    changed_fields = db.Column(db.JSON, nullable=False, default=list,
                               comment="Ordered list of changed field names")
    old_value = db.Column(db.JSON, nullable=True, comment="Prior value snapshot")
    new_value = db.Column(db.JSON, nullable=True, comment="New value snapshot")

    impact_level = db.Column(db.String(10), nullable=False, default="LOW",
                             comment="LOW | MEDIUM | HIGH | CRITICAL")
    affected_modules = db.Column(db.JSON, nullable=False, default=list,
                                 comment="Module tags: FMEA, PROCESS_FLOW, CONTROL_PLAN")
    propagation_required = db.Column(db.Boolean, nullable=False, default=False)
    propagation_status = db.Column(db.String(20), nullable=False, default="PENDING",
                                   comment="PENDING | IN_PROGRESS | AWAITING_APPROVAL | COMPLETED | FAILED | CANCELLED")
    approval_required = db.Column(db.Boolean, nullable=False, default=False)
    approval_status = db.Column(db.String(10), nullable=False, default="NONE",
                                comment="NONE | PENDING | APPROVED | REJECTED")

    triggered_by_id = db.Column(db.Integer, nullable=False, index=True,
                                comment="User id of the actor who made the change")
    approved_by_id = db.Column(db.Integer, nullable=True,
                               comment="User id whose action completed the approval")
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    batch_id = db.Column(db.String(64), nullable=True,
                         comment="Groups related mutations submitted together")

    triggered_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    approvals = db.relationship(
        "Approval", back_populates="change_event", lazy="select",
        order_by="Approval.step_number",
    )
    impact_analysis = db.relationship(
        "ChangeImpactAnalysis", back_populates="change_event", uselist=False,
    )
    propagation_executions = db.relationship(
        "PropagationExecution", back_populates="change_event", lazy="select",
        order_by="PropagationExecution.id",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "change_type": self.change_type,
            "change_action": self.change_action,
            "changed_fields": list(self.changed_fields or []),
            "old_value": self.old_value,
            "new_value": self.new_value,
            "impact_level": self.impact_level,
            "affected_modules": list(self.affected_modules or []),
            "propagation_required": self.propagation_required,
            "propagation_status": self.propagation_status,
            "approval_required": self.approval_required,
            "approval_status": self.approval_status,
            "triggered_by_id": self.triggered_by_id,
            "approved_by_id": self.approved_by_id,
            "approved_at": iso(self.approved_at),
            "batch_id": self.batch_id,
            "triggered_at": iso(self.triggered_at),
            "completed_at": iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChangeEvent":
        """Rebuild a transient ChangeEvent from ``to_dict`` output."""
        from datetime import datetime

        def _dt(value):
            return as_utc(datetime.fromisoformat(value)) if value else None

        return cls(
            id=data.get("id"),
            project_id=data["project_id"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            change_type=data["change_type"],
            change_action=data.get("change_action", ""),
            changed_fields=list(data.get("changed_fields") or []),
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
            impact_level=data.get("impact_level", "LOW"),
            affected_modules=list(data.get("affected_modules") or []),
            propagation_required=data.get("propagation_required", False),
            propagation_status=data.get("propagation_status", "PENDING"),
            approval_required=data.get("approval_required", False),
            approval_status=data.get("approval_status", "NONE"),
            triggered_by_id=data["triggered_by_id"],
            approved_by_id=data.get("approved_by_id"),
            approved_at=_dt(data.get("approved_at")),
            batch_id=data.get("batch_id"),
            triggered_at=_dt(data.get("triggered_at")),
            completed_at=_dt(data.get("completed_at")),
        )

    def __repr__(self):
        return (f"<ChangeEvent {self.id}: {self.change_type} {self.entity_type}/{self.entity_id} "
                f"[{self.impact_level}, {self.approval_status}]>")


class PropagationRule(db.Model):
    """
    Configured downstream action for a class of changes.

    Matches on source entity type + change type, optionally narrowed by
    regular expressions over changed field names. Lower ``priority`` runs
    first.
    """

    __tablename__ = "change_propagation_rules"
    __table_args__ = (
        db.Index("ix_propagation_rules_source", "project_id", "source_entity_type", "source_change_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=False, index=True)
    rule_name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")

    source_entity_type = db.Column(db.String(30), nullable=False)
    source_change_type = db.Column(db.String(10), nullable=False)
    source_field_patterns = db.Column(db.JSON, nullable=False, default=list,
                                      comment="Regular expressions over changed field names")

    target_entity_type = db.Column(db.String(30), nullable=False)
    target_action = db.Column(db.String(20), nullable=False, default="UPDATE",
                              comment="UPDATE | CREATE | VALIDATE | NOTIFY")
    target_field_mappings = db.Column(db.JSON, nullable=False, default=dict)

    priority = db.Column(db.Integer, nullable=False, default=100)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    requires_approval = db.Column(db.Boolean, nullable=False, default=False)

    created_by_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "rule_name": self.rule_name,
            "description": self.description,
            "source_entity_type": self.source_entity_type,
            "source_change_type": self.source_change_type,
            "source_field_patterns": list(self.source_field_patterns or []),
            "target_entity_type": self.target_entity_type,
            "target_action": self.target_action,
            "target_field_mappings": dict(self.target_field_mappings or {}),
            "priority": self.priority,
            "is_active": self.is_active,
            "requires_approval": self.requires_approval,
            "created_by_id": self.created_by_id,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return (f"<PropagationRule {self.id}: {self.source_entity_type}/{self.source_change_type}"
                f" -> {self.target_entity_type}/{self.target_action}>")


class PropagationExecution(db.Model):
    """Result of running (or deferring) one rule for one change event."""

    __tablename__ = "change_propagation_executions"

    id = db.Column(db.Integer, primary_key=True)
    change_event_id = db.Column(
        db.Integer, db.ForeignKey("change_events.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    rule_id = db.Column(
        db.Integer, db.ForeignKey("change_propagation_rules.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    status = db.Column(db.String(20), nullable=False, comment="SUCCEEDED | FAILED | DEFERRED | CANCELLED")
    result = db.Column(db.JSON, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    executed_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    change_event = db.relationship("ChangeEvent", back_populates="propagation_executions")
    rule = db.relationship("PropagationRule")

    def to_dict(self):
        return {
            "id": self.id,
            "change_event_id": self.change_event_id,
            "rule_id": self.rule_id,
            "status": self.status,
            "result": self.result,
            "error_message": self.error_message,
            "executed_at": iso(self.executed_at),
        }

    def __repr__(self):
        return f"<PropagationExecution event={self.change_event_id} rule={self.rule_id} [{self.status}]>"


class ChangeImpactAnalysis(db.Model):
    """Impact assessment computed after a change event is recorded."""

    __tablename__ = "change_impact_analysis"

    id = db.Column(db.Integer, primary_key=True)
    change_event_id = db.Column(
        db.Integer, db.ForeignKey("change_events.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    impact_score = db.Column(db.Float, nullable=False, default=0.0, comment="0–10")
    affected_stakeholders = db.Column(db.JSON, nullable=False, default=list)
    estimated_effort_hours = db.Column(db.Float, nullable=False, default=0.0)
    risk_mitigation_actions = db.Column(db.JSON, nullable=False, default=list)
    recommended_approvers = db.Column(db.JSON, nullable=False, default=list,
                                      comment="User ids of suggested approvers")
    analysis_data = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    change_event = db.relationship("ChangeEvent", back_populates="impact_analysis")

    def to_dict(self):
        return {
            "id": self.id,
            "change_event_id": self.change_event_id,
            "impact_score": self.impact_score,
            "affected_stakeholders": list(self.affected_stakeholders or []),
            "estimated_effort_hours": self.estimated_effort_hours,
            "risk_mitigation_actions": list(self.risk_mitigation_actions or []),
            "recommended_approvers": list(self.recommended_approvers or []),
            "analysis_data": dict(self.analysis_data or {}),
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<ChangeImpactAnalysis event={self.change_event_id} score={self.impact_score}>"
