"""Per-run workflow state and the deltas the executor returns.

The host owns the authoritative ``WorkflowState``. Each executor turn reads
it and returns a ``StateDelta`` holding only the fields that changed; the
host merges the delta with ``WorkflowState.apply`` before the next turn.
"""

from dataclasses import dataclass, field, fields, replace
from typing import Any, Optional

from workflow.approval import ApprovalRequest
from workflow.plan import ExecutionPlan, ExecutionStep, StepStatus


@dataclass(frozen=True)
class StateDelta:
    """Partial update produced by one executor turn. ``None`` means unchanged."""

    current_step_index: Optional[int] = None
    execution_steps: Optional[tuple[ExecutionStep, ...]] = None
    mcp_responses: Optional[tuple[Any, ...]] = None
    awaiting_approval: Optional[bool] = None
    approval_requests: Optional[tuple[ApprovalRequest, ...]] = None
    should_exit: Optional[bool] = None
    error: Optional[str] = None

    def changes(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


@dataclass(frozen=True)
class WorkflowState:
    """Everything one plan run needs between turns."""

    user_id: str
    user_message: str
    plan: ExecutionPlan
    current_step_index: int = 0
    execution_steps: tuple[ExecutionStep, ...] = ()
    mcp_responses: tuple[Any, ...] = ()
    awaiting_approval: bool = False
    approval_requests: tuple[ApprovalRequest, ...] = field(default_factory=tuple)
    should_exit: bool = False
    error: Optional[str] = None

    def apply(self, delta: StateDelta) -> "WorkflowState":
        """Return a new state with the delta's fields merged in."""
        changes = delta.changes()
        if not changes:
            return self
        return replace(self, **changes)

    @property
    def current_step(self) -> Optional[ExecutionStep]:
        return self.plan.step_at(self.current_step_index)

    @property
    def is_finished(self) -> bool:
        return self.current_step_index >= self.plan.total_steps

    def steps_with_status(self, status: StepStatus) -> list[ExecutionStep]:
        return [s for s in self.execution_steps if s.status == status]

    @property
    def progress_percent(self) -> float:
        if self.plan.total_steps == 0:
            return 0.0
        return round((len(self.execution_steps) / self.plan.total_steps) * 100, 1)

    def summary(self) -> dict[str, int]:
        return {
            "total_steps": self.plan.total_steps,
            "completed": len(self.steps_with_status(StepStatus.COMPLETED)),
            "failed": len(self.steps_with_status(StepStatus.FAILED)),
            "skipped": len(self.steps_with_status(StepStatus.SKIPPED)),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_message": self.user_message,
            "plan": self.plan.to_dict(),
            "current_step_index": self.current_step_index,
            "execution_steps": [s.to_dict() for s in self.execution_steps],
            "mcp_responses": list(self.mcp_responses),
            "awaiting_approval": self.awaiting_approval,
            "approval_requests": [r.to_dict() for r in self.approval_requests],
            "should_exit": self.should_exit,
            "error": self.error,
            "progress_percent": self.progress_percent,
            "summary": self.summary(),
        }


def new_run_state(user_id: str, user_message: str, plan: ExecutionPlan) -> WorkflowState:
    return WorkflowState(user_id=user_id, user_message=user_message, plan=plan)
