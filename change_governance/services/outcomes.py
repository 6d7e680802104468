"""
Result types for governance operations with best-effort side effects.

``track_change`` must succeed once its ChangeEvent is durable, whatever
happens afterwards. These types carry what did and did not happen so that
callers and tests can tell "primary effect succeeded" apart from "side
effect failed" without reading logs.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class SideEffectFailure:
    """A best-effort step that raised after the change event was recorded."""

    step: str          # impact_analysis | propagation | workflow | notification
    error: str


@dataclass(frozen=True)
class RuleResult:
    rule_id: int
    rule_name: str
    status: str        # SUCCEEDED | FAILED | DEFERRED | CANCELLED
    error: str | None = None


@dataclass
class PropagationOutcome:
    change_event_id: int
    status: str
    results: list[RuleResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[RuleResult]:
        return [r for r in self.results if r.status == "SUCCEEDED"]

    @property
    def failed(self) -> list[RuleResult]:
        return [r for r in self.results if r.status == "FAILED"]

    @property
    def deferred(self) -> list[RuleResult]:
        return [r for r in self.results if r.status == "DEFERRED"]

    @property
    def is_partial(self) -> bool:
        return bool(self.failed) and bool(self.succeeded)


@dataclass
class WorkflowExecution:
    """Read model of one change event's approval workflow."""

    change_event_id: int
    workflow_id: int | None
    workflow_name: str | None
    parallel: bool
    approval_status: str
    auto_approved: bool = False
    approvals: list[dict] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.approval_status == "APPROVED"

    def to_dict(self) -> dict:
        return {
            "change_event_id": self.change_event_id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "parallel": self.parallel,
            "approval_status": self.approval_status,
            "auto_approved": self.auto_approved,
            "approvals": list(self.approvals),
        }


@dataclass
class TrackChangeOutcome:
    change_event_id: int
    impact_level: str
    approval_required: bool
    propagation: PropagationOutcome | None = None
    workflow: WorkflowExecution | None = None
    failures: list[SideEffectFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures
