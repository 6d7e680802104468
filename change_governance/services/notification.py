"""
Notification Emitter — boundary between governance decisions and delivery.

The engine never delivers anything. Each transition is translated into a
``NotificationRequest`` (who should hear about what, how urgently, whether
they must act and by when) and handed to an injected ``NotificationSink``.

    NotificationEmitter(sink)           builds requests, calls sink.deliver()
    DatabaseNotificationSink            default sink: resolves recipient
                                        criteria against the users table and
                                        queues one ChangeNotification per user

Emission is best-effort: a sink failure is logged and reported as ``False``,
never raised into the calling state transition.

Usage:
    emitter = NotificationEmitter()                 # database sink
    emitter = NotificationEmitter(sink=my_sink)     # e.g. a message-bus adapter
    emitter.change_rejected(event, comments="Out of spec")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import and_, or_

from change_governance.models import db, utcnow
from change_governance.models.auth import User
from change_governance.models.notification import ChangeNotification

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Request types
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RecipientCriteria:
    """Who should receive a notification. Criteria are combined with OR."""

    roles: tuple[str, ...] = ()
    departments: tuple[str, ...] = ()
    user_ids: tuple[int, ...] = ()

    def is_empty(self) -> bool:
        return not (self.roles or self.departments or self.user_ids)


@dataclass(frozen=True)
class NotificationRequest:
    notification_type: str
    priority: str
    title: str
    message: str
    recipients: RecipientCriteria
    change_event_id: int | None = None
    action_required: bool = False
    action_url: str | None = None
    action_deadline: datetime | None = None


class NotificationSink(Protocol):
    def deliver(self, request: NotificationRequest) -> int:
        """Hand the request to delivery; return the number of recipients reached."""


# ═══════════════════════════════════════════════════════════════════════════
#  Default sink
# ═══════════════════════════════════════════════════════════════════════════

class DatabaseNotificationSink:
    """Queue one ChangeNotification row per resolved recipient.

    Role and department criteria only select active users; explicitly named
    user ids are always honoured. Rows are written inside a savepoint so a
    failed insert leaves the caller's transaction usable.
    """

    def resolve_recipients(self, criteria: RecipientCriteria) -> list[User]:
        if criteria.is_empty():
            return []
        clauses = []
        if criteria.roles:
            clauses.append(and_(User.role.in_(criteria.roles), User.is_active.is_(True)))
        if criteria.departments:
            clauses.append(and_(User.department.in_(criteria.departments), User.is_active.is_(True)))
        if criteria.user_ids:
            clauses.append(User.id.in_(criteria.user_ids))
        return User.query.filter(or_(*clauses)).order_by(User.id).all()

    def deliver(self, request: NotificationRequest) -> int:
        with db.session.begin_nested():
            users = self.resolve_recipients(request.recipients)
            for user in users:
                db.session.add(ChangeNotification(
                    change_event_id=request.change_event_id,
                    notification_type=request.notification_type,
                    priority=request.priority,
                    title=request.title,
                    message=request.message,
                    recipient_user_id=user.id,
                    recipient_role=user.role if user.role in request.recipients.roles else None,
                    recipient_department=(
                        user.department if user.department in request.recipients.departments else None
                    ),
                    action_required=request.action_required,
                    action_url=request.action_url,
                    action_deadline=request.action_deadline,
                ))
        return len(users)


# ═══════════════════════════════════════════════════════════════════════════
#  Emitter
# ═══════════════════════════════════════════════════════════════════════════

def _approval_url(change_event_id: int | None) -> str | None:
    return f"/approvals/{change_event_id}" if change_event_id is not None else None


class NotificationEmitter:
    """Translate governance transitions into notification requests."""

    def __init__(self, sink: NotificationSink | None = None) -> None:
        self.sink = sink or DatabaseNotificationSink()

    def emit(self, request: NotificationRequest) -> bool:
        try:
            count = self.sink.deliver(request)
        except Exception:
            logger.exception(
                "Notification %s could not be delivered", request.notification_type,
                extra={"change_event_id": request.change_event_id,
                       "event_type": request.notification_type},
            )
            return False
        logger.info(
            "Notification %s queued for %d recipient(s)", request.notification_type, count or 0,
            extra={"change_event_id": request.change_event_id,
                   "event_type": request.notification_type},
        )
        return True

    # ── Change tracking ──────────────────────────────────────────────────

    def high_impact(self, event, roles) -> bool:
        priority = "URGENT" if event.impact_level == "CRITICAL" else "HIGH"
        return self.emit(NotificationRequest(
            change_event_id=event.id,
            notification_type="IMPACT_HIGH",
            priority=priority,
            title=f"{event.impact_level.title()} impact change",
            message=f"{event.change_action} ({event.entity_type} {event.entity_id})",
            recipients=RecipientCriteria(roles=tuple(roles)),
            action_required=True,
        ))

    def approval_required(self, event, notice_hours: int, roles=("QUALITY_MANAGER",)) -> bool:
        """Generic notice for changes that need approval but run no workflow."""
        return self.emit(NotificationRequest(
            change_event_id=event.id,
            notification_type="APPROVAL_REQUIRED",
            priority="HIGH",
            title="Approval required",
            message=f"{event.change_action} requires approval",
            recipients=RecipientCriteria(roles=tuple(roles)),
            action_required=True,
            action_url=_approval_url(event.id),
            action_deadline=utcnow() + timedelta(hours=notice_hours),
        ))

    def propagation_failed(self, event, failed_rules: list[str], roles) -> bool:
        return self.emit(NotificationRequest(
            change_event_id=event.id,
            notification_type="PROPAGATION_FAILED",
            priority="HIGH",
            title="Change propagation failed",
            message=(f"{len(failed_rules)} propagation rule(s) failed for "
                     f"{event.change_action}: {', '.join(failed_rules)}"),
            recipients=RecipientCriteria(roles=tuple(roles)),
            action_required=True,
        ))

    def propagation_notice(self, event, rule_name: str, roles) -> bool:
        return self.emit(NotificationRequest(
            change_event_id=event.id,
            notification_type="PROPAGATION_NOTICE",
            priority="NORMAL",
            title=f"Propagation: {rule_name}",
            message=f"{event.change_action} affects downstream artifacts",
            recipients=RecipientCriteria(roles=tuple(roles)),
        ))

    # ── Approval workflow ────────────────────────────────────────────────

    def step_approvers(self, event, step, deadline: datetime | None = None) -> bool:
        """Notify the approver set of one workflow step.

        A named approver is notified alone; otherwise every active holder
        of the step's role.
        """
        if step.approver_user_id is not None:
            recipients = RecipientCriteria(user_ids=(step.approver_user_id,))
        elif step.approver_role:
            recipients = RecipientCriteria(roles=(step.approver_role,))
        else:
            logger.warning("Step %s has no approver configured", step.step_number,
                           extra={"change_event_id": event.id})
            return False
        return self.emit(NotificationRequest(
            change_event_id=event.id,
            notification_type="APPROVAL_REQUIRED",
            priority="HIGH",
            title="Approval required",
            message=f"Change approval required for step {step.step_number}: {step.step_name}",
            recipients=recipients,
            action_required=True,
            action_url=_approval_url(event.id),
            action_deadline=deadline or utcnow() + timedelta(hours=step.timeout_hours),
        ))

    def change_approved(self, event) -> bool:
        return self.emit(NotificationRequest(
            change_event_id=event.id,
            notification_type="CHANGE_APPROVED",
            priority="NORMAL",
            title="Change approved",
            message=f"{event.change_action} has been approved",
            recipients=RecipientCriteria(user_ids=(event.triggered_by_id,)),
        ))

    def change_rejected(self, event, comments: str | None = None) -> bool:
        message = "Your change request has been rejected."
        if comments:
            message += f" {comments}"
        return self.emit(NotificationRequest(
            change_event_id=event.id,
            notification_type="CHANGE_REJECTED",
            priority="HIGH",
            title="Change rejected",
            message=message,
            recipients=RecipientCriteria(user_ids=(event.triggered_by_id,)),
        ))

    def approval_escalated(self, approval, roles) -> bool:
        return self.emit(NotificationRequest(
            change_event_id=approval.change_event_id,
            notification_type="APPROVAL_ESCALATED",
            priority="URGENT",
            title="Approval escalated",
            message=(f"Approval for step {approval.step_number} ({approval.step_name}) "
                     "is overdue and has been escalated"),
            recipients=RecipientCriteria(roles=tuple(roles)),
            action_required=True,
            action_url=_approval_url(approval.change_event_id),
        ))
