"""
QMS Change Governance Engine
Scheduled Jobs.

Jobs:
    - overdue_approval_sweep: escalates PENDING approvals past their due date
"""

from __future__ import annotations

from typing import Any

from change_governance.services.scheduler_service import register_job


@register_job("overdue_approval_sweep")
def sweep_overdue_approvals(app) -> dict[str, Any]:
    """Escalate overdue approvals and notify escalation roles."""
    from change_governance.services.approval_workflow import ApprovalWorkflowService

    return ApprovalWorkflowService().process_overdue_approvals()
