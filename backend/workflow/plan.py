"""Execution plan and step records.

A plan is an ordered list of steps produced upstream by the planner. The
order of ``ExecutionPlan.steps`` is the execution order.

Steps are immutable snapshots. The executor never edits a step in place:
every status change goes through ``ExecutionStep.transition`` which returns
a new record, and the run history stores those records. The plan itself
keeps the original pending steps for the lifetime of the run.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from core.exceptions import InvalidTransitionError
from core.utils import utc_now


# ─── Enums ────────────────────────────────────────────────────

class StepStatus(str, Enum):
    """Status of a single plan step."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)


class RiskLevel(str, Enum):
    """Overall or per-request risk classification."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def coerce(cls, value: Any, default: "RiskLevel" = None) -> "RiskLevel":
        """Parse a risk label, falling back to ``default`` (medium)."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return default or cls.MEDIUM


# Forward-only status graph
_TRANSITIONS: dict[StepStatus, frozenset] = {
    StepStatus.PENDING: frozenset({StepStatus.IN_PROGRESS, StepStatus.SKIPPED}),
    StepStatus.IN_PROGRESS: frozenset({StepStatus.COMPLETED, StepStatus.FAILED}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}


# ─── Step ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExecutionStep:
    """One atomic unit of work inside a plan, plus its execution record.

    Only completed steps may hold a ``result``. The executor never records a
    completed step without one: actions that return nothing are recorded as
    ``{"acknowledged": True}``.
    """

    id: str
    action: str
    parameters: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    success_criteria: str = ""
    dependencies: tuple[str, ...] = ()
    requires_approval: bool = False
    fallback_action: Optional[str] = None
    status: StepStatus = StepStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.result is not None and self.status != StepStatus.COMPLETED:
            raise ValueError(f"Step {self.id}: result is only allowed on completed steps")
        needs_error = self.status in (StepStatus.FAILED, StepStatus.SKIPPED)
        if needs_error != (self.error is not None):
            raise ValueError(
                f"Step {self.id}: error must be set exactly when the step failed or was skipped"
            )

    @property
    def number(self) -> int:
        """1-based position encoded in the ``step_<n>`` id (0 if non-canonical)."""
        _, _, tail = self.id.partition("_")
        return int(tail) if tail.isdigit() else 0

    def transition(self, status: StepStatus, **changes: Any) -> "ExecutionStep":
        """Return a copy moved to ``status``.

        Raises:
            InvalidTransitionError: for anything but pending → in_progress →
                completed/failed, or pending → skipped
        """
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, status.value)
        return replace(self, status=status, **changes)

    def start(self) -> "ExecutionStep":
        return self.transition(StepStatus.IN_PROGRESS, started_at=utc_now())

    def with_action(self, action: str, description: str) -> "ExecutionStep":
        """Transient copy used to run a substitute action."""
        return replace(self, action=action, description=description)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "parameters": dict(self.parameters),
            "description": self.description,
            "success_criteria": self.success_criteria,
            "dependencies": list(self.dependencies),
            "requires_approval": self.requires_approval,
            "fallback_action": self.fallback_action,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "duration_ms": self.duration_ms,
            "metadata": dict(self.metadata),
        }


# ─── Plan ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExecutionPlan:
    """Ordered steps plus plan-level risk and approval flags."""

    id: str
    user_intent: str
    steps: tuple[ExecutionStep, ...]
    risk_level: RiskLevel = RiskLevel.MEDIUM
    requires_approval: bool = False
    estimated_duration: str = "Unknown"
    created_at: datetime = field(default_factory=utc_now)

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def step_at(self, index: int) -> Optional[ExecutionStep]:
        """Step at ``index`` or None once the plan is exhausted."""
        if 0 <= index < len(self.steps):
            return self.steps[index]
        return None

    def get_step(self, step_id: str) -> Optional[ExecutionStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def dependents_of(self, step_id: str) -> list[ExecutionStep]:
        """Steps that declare a dependency on ``step_id``."""
        return [s for s in self.steps if s.id != step_id and step_id in s.dependencies]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_intent": self.user_intent,
            "steps": [s.to_dict() for s in self.steps],
            "risk_level": self.risk_level.value,
            "requires_approval": self.requires_approval,
            "estimated_duration": self.estimated_duration,
            "created_at": self.created_at.isoformat(),
        }
