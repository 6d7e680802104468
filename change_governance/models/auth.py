"""
QMS Change Governance Engine
Actor model.

Models:
    - User: a person who triggers changes, approves steps or receives
      notifications. One role per user; the role drives approver and
      escalation recipient resolution.
"""

from change_governance.models import db, iso, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

KNOWN_ROLES = {
    "ADMIN",
    "QUALITY_MANAGER",
    "QUALITY_ENGINEER",
    "PROCESS_ENGINEER",
    "PRODUCTION_MANAGER",
    "OPERATOR",
    "VIEWER",
}


class User(db.Model):
    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_role_active", "role", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    role = db.Column(db.String(50), nullable=False, default="VIEWER",
                     comment="ADMIN | QUALITY_MANAGER | PROCESS_ENGINEER | …")
    department = db.Column(db.String(100), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "department": self.department,
            "is_active": self.is_active,
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} [{self.role}]>"
