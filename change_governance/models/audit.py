"""
QMS Change Governance Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for governance actions.
"""

import json

from change_governance.models import db, iso, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ACTIONS = {
    "change_event.record",
    "change_event.approval_bypass",
    "approval.decide",
    "approval.escalate",
    "propagation.action",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every governance action.

    One row per action.  ``diff_json`` carries the old→new snapshot or the
    action payload.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_project", "project_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="change_event | approval | FAILURE_MODE | …",
    )
    entity_id = db.Column(
        db.String(64), nullable=False,
        comment="PK of the referenced entity (UUID or int-as-string)",
    )

    action = db.Column(
        db.String(60), nullable=False,
        comment="change_event.record | approval.decide | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")
    actor_user_id = db.Column(db.Integer, nullable=True, index=True)

    diff_json = db.Column(db.Text, default="{}")

    # Timestamp (immutable)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": iso(self.timestamp),
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    project_id: int | None = None,
    actor_user_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        project_id=project_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
