"""
QMS Change Governance Engine
Notification domain model.

Models:
    - ChangeNotification: one queued notification per recipient, handed to
      the external delivery subsystem, with read tracking
"""

from change_governance.models import db, iso, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_TYPES = {
    "IMPACT_HIGH",
    "APPROVAL_REQUIRED",
    "CHANGE_APPROVED",
    "CHANGE_REJECTED",
    "APPROVAL_ESCALATED",
    "PROPAGATION_FAILED",
    "PROPAGATION_NOTICE",
}
NOTIFICATION_PRIORITIES = ("LOW", "NORMAL", "HIGH", "URGENT")
DELIVERY_STATUSES = {"QUEUED", "DELIVERED", "FAILED"}


class ChangeNotification(db.Model):
    """
    Notification request persisted for one recipient.

    One record per recipient per transition.
    """

    __tablename__ = "change_notifications"
    __table_args__ = (
        db.Index("ix_change_notifications_recipient_read", "recipient_user_id", "is_read"),
    )

    id = db.Column(db.Integer, primary_key=True)
    change_event_id = db.Column(
        db.Integer, db.ForeignKey("change_events.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    notification_type = db.Column(db.String(30), nullable=False,
                                  comment="IMPACT_HIGH | APPROVAL_REQUIRED | CHANGE_REJECTED | …")
    priority = db.Column(db.String(10), nullable=False, default="NORMAL",
                         comment="LOW | NORMAL | HIGH | URGENT")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")

    recipient_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    recipient_role = db.Column(db.String(50), nullable=True,
                               comment="Role that selected this recipient, if any")
    recipient_department = db.Column(db.String(100), nullable=True)

    delivery_status = db.Column(db.String(20), nullable=False, default="QUEUED")
    action_required = db.Column(db.Boolean, nullable=False, default=False)
    action_url = db.Column(db.String(500), nullable=True)
    action_deadline = db.Column(db.DateTime(timezone=True), nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def mark_read(self):
        self.is_read = True
        self.read_at = utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "change_event_id": self.change_event_id,
            "notification_type": self.notification_type,
            "priority": self.priority,
            "title": self.title,
            "message": self.message,
            "recipient_user_id": self.recipient_user_id,
            "recipient_role": self.recipient_role,
            "recipient_department": self.recipient_department,
            "delivery_status": self.delivery_status,
            "action_required": self.action_required,
            "action_url": self.action_url,
            "action_deadline": iso(self.action_deadline),
            "is_read": self.is_read,
            "read_at": iso(self.read_at),
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<ChangeNotification {self.id}: {self.notification_type} -> user {self.recipient_user_id}>"
