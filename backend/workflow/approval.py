"""Approval gate and registry for destructive plan steps.

Flow for a step that requires approval:

1. First turn: no request exists, so one is created and registered and the
   run pauses (``defer``).
2. Later turns while the user has not answered: the run stays paused
   (``wait``). Expiry is advisory unless configured to count as a denial.
3. Once the request is resolved (via the approve/deny command path, which
   calls ``ApprovalRegistry.resolve_latest``), the step either runs
   (``proceed``) or is skipped (``skip``).

Read-only discovery actions are never gated.

The registry is the only state shared between runs. It is keyed by user id
and injected into the executor; two runs for the same user must not advance
concurrently.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Optional

import structlog

from core.utils import generate_id, utc_now
from workflow.actions import (
    is_bulk_invocation,
    is_delete_action,
    is_safe_action,
    is_update_action,
)
from workflow.plan import ExecutionStep, RiskLevel

if TYPE_CHECKING:
    from workflow.state import WorkflowState

logger = structlog.get_logger(__name__)

APPROVAL_OPTIONS = ("✅ Approve", "❌ Deny", "⏭️ Skip")
DEFAULT_TIMEOUT_SECONDS = 300


# ─── Request record ───────────────────────────────────────────

@dataclass(frozen=True)
class ApprovalRequest:
    """A question put to the user about one step of one plan.

    ``approved`` is None while pending, True/False once resolved.
    """
    id: str
    user_id: str
    plan_id: str
    step_id: str
    action: str
    message: str
    options: tuple[str, ...] = APPROVAL_OPTIONS
    risk_level: RiskLevel = RiskLevel.LOW
    approved: Optional[bool] = None
    response: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    expires_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.approved is None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) > self.expires_at

    def resolve(self, approved: bool, response: Optional[str] = None) -> "ApprovalRequest":
        return replace(self, approved=approved, response=response, resolved_at=utc_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "step_id": self.step_id,
            "action": self.action,
            "message": self.message,
            "options": list(self.options),
            "risk_level": self.risk_level.value,
            "approved": self.approved,
            "response": self.response,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


# ─── Registry ─────────────────────────────────────────────────

class ApprovalRegistry:
    """In-memory store of approval requests, keyed by user id."""

    def __init__(self):
        self._requests: dict[str, list[ApprovalRequest]] = {}

    def add_request(self, user_id: str, request: ApprovalRequest) -> None:
        self._requests.setdefault(user_id, []).append(request)
        logger.info(
            "Approval request registered",
            user_id=user_id,
            request_id=request.id,
            step_id=request.step_id,
            pending_count=len(self.pending(user_id)),
        )

    def get_all_requests(self, user_id: str) -> list[ApprovalRequest]:
        return list(self._requests.get(user_id, []))

    def pending(self, user_id: str) -> list[ApprovalRequest]:
        return [r for r in self._requests.get(user_id, []) if r.is_pending]

    def find(self, user_id: str, plan_id: str, step_id: str) -> Optional[ApprovalRequest]:
        """Most recent request for this step of this plan."""
        for request in reversed(self._requests.get(user_id, [])):
            if request.plan_id == plan_id and request.step_id == step_id:
                return request
        return None

    def resolve(
        self,
        user_id: str,
        request_id: str,
        approved: bool,
        response: Optional[str] = None,
    ) -> Optional[ApprovalRequest]:
        """Record the user's answer to one request. Returns None if unknown."""
        requests = self._requests.get(user_id, [])
        for position, request in enumerate(requests):
            if request.id != request_id:
                continue
            resolved = request.resolve(approved, response)
            requests[position] = resolved
            logger.info(
                "Approval request resolved",
                user_id=user_id,
                request_id=request_id,
                step_id=request.step_id,
                approved=approved,
            )
            return resolved
        logger.warning("Approval request not found", user_id=user_id, request_id=request_id)
        return None

    def resolve_latest(
        self,
        user_id: str,
        approved: bool,
        response: Optional[str] = None,
    ) -> Optional[ApprovalRequest]:
        """Answer the user's most recent pending request (the /approve, /deny path)."""
        pending = self.pending(user_id)
        if not pending:
            logger.warning("No pending approvals to resolve", user_id=user_id, approved=approved)
            return None
        return self.resolve(user_id, pending[-1].id, approved, response)

    def cleanup(
        self,
        max_age_seconds: int,
        now: Optional[datetime] = None,
        live_plan_ids: Iterable[str] = (),
    ) -> int:
        """Drop requests older than ``max_age_seconds``. Returns how many went.

        Requests belonging to a plan in ``live_plan_ids`` (a run that is still
        running or paused for approval) are kept whatever their age, so a
        paused run never loses the answer it is waiting to consume.
        """
        cutoff = (now or utc_now()) - timedelta(seconds=max_age_seconds)
        live = set(live_plan_ids)
        removed = 0
        for user_id in list(self._requests):
            kept = [r for r in self._requests[user_id] if r.plan_id in live or r.created_at >= cutoff]
            removed += len(self._requests[user_id]) - len(kept)
            if kept:
                self._requests[user_id] = kept
            else:
                del self._requests[user_id]
        if removed:
            logger.info("Approval cleanup completed", removed=removed, live_plans=len(live))
        return removed

    def get_status(self) -> dict[str, int]:
        all_requests = [r for reqs in self._requests.values() for r in reqs]
        return {
            "total_requests": len(all_requests),
            "pending_requests": sum(1 for r in all_requests if r.is_pending),
            "users": len(self._requests),
        }


# ─── Risk classification ──────────────────────────────────────

def classify_risk(step: ExecutionStep) -> tuple[RiskLevel, str]:
    """Risk level and a short description for the approval prompt."""
    action = step.action.lower()
    params = step.parameters or {}

    if is_delete_action(action):
        return RiskLevel.HIGH, "will permanently delete data"
    if is_update_action(action) and len(params) > 1:
        return RiskLevel.MEDIUM, "will modify existing data"
    limit = params.get("limit")
    high_volume = isinstance(limit, (int, float)) and not isinstance(limit, bool) and limit > 5
    if "bulk" in action or high_volume or is_bulk_invocation(step.action, params):
        return RiskLevel.MEDIUM, "will affect multiple items"
    return RiskLevel.LOW, "may have side effects"


def approval_message(step: ExecutionStep, risk_description: str) -> str:
    return (
        "⚠️ APPROVAL REQUIRED\n\n"
        f"Step: {step.description}\n"
        f"Action: {step.action}\n"
        f"Risk: This operation {risk_description}\n\n"
        "Do you want to proceed?"
    )


# ─── Gate ─────────────────────────────────────────────────────

class ApprovalOutcome(str, Enum):
    NOT_REQUIRED = "not_required"
    AUTO_APPROVED = "auto_approved"
    PROCEED = "proceed"
    SKIP = "skip"
    WAIT = "wait"
    DEFER = "defer"


@dataclass(frozen=True)
class ApprovalDecision:
    outcome: ApprovalOutcome
    request: Optional[ApprovalRequest] = None
    reason: Optional[str] = None


class ApprovalGate:
    """Decides whether a step may run now, must wait, or is skipped."""

    def __init__(
        self,
        registry: ApprovalRegistry,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        deny_expired: bool = False,
    ):
        self._registry = registry
        self._timeout = timedelta(seconds=timeout_seconds)
        self._deny_expired = deny_expired

    @property
    def registry(self) -> ApprovalRegistry:
        return self._registry

    @staticmethod
    def normalize(step: ExecutionStep) -> ExecutionStep:
        """Safe actions never require approval, whatever the plan says."""
        if step.requires_approval and is_safe_action(step.action):
            logger.info(
                "Overriding approval requirement for safe action",
                step_id=step.id,
                action=step.action,
            )
            return replace(step, requires_approval=False)
        return step

    def evaluate(
        self,
        step: ExecutionStep,
        state: "WorkflowState",
        now: Optional[datetime] = None,
    ) -> ApprovalDecision:
        now = now or utc_now()

        if is_safe_action(step.action):
            declared = state.plan.get_step(step.id)
            if declared is not None and declared.requires_approval:
                return ApprovalDecision(
                    ApprovalOutcome.AUTO_APPROVED,
                    request=self._auto_approval(step, state, now),
                    reason="Auto-approved (safe operation)",
                )
            return ApprovalDecision(ApprovalOutcome.NOT_REQUIRED)

        if not step.requires_approval:
            return ApprovalDecision(ApprovalOutcome.NOT_REQUIRED)

        existing = self._registry.find(state.user_id, state.plan.id, step.id)

        if existing is None:
            request = self._new_request(step, state, now)
            self._registry.add_request(state.user_id, request)
            logger.info(
                "Approval requested",
                user_id=state.user_id,
                request_id=request.id,
                step_id=step.id,
                risk_level=request.risk_level.value,
            )
            return ApprovalDecision(ApprovalOutcome.DEFER, request=request)

        if existing.is_pending:
            if existing.is_expired(now):
                logger.warning(
                    "Approval request expired",
                    step_id=step.id,
                    request_id=existing.id,
                    deny_expired=self._deny_expired,
                )
                if self._deny_expired:
                    denied = self._registry.resolve(
                        state.user_id, existing.id, False, "Approval request expired"
                    ) or existing.resolve(False, "Approval request expired")
                    return ApprovalDecision(
                        ApprovalOutcome.SKIP,
                        request=denied,
                        reason=self._denial_reason(denied),
                    )
            logger.info("Still waiting for approval", step_id=step.id, request_id=existing.id)
            return ApprovalDecision(ApprovalOutcome.WAIT, request=existing)

        if existing.approved:
            logger.info("Step approval granted", step_id=step.id, response=existing.response)
            return ApprovalDecision(ApprovalOutcome.PROCEED, request=existing)

        logger.info("Step approval denied", step_id=step.id, response=existing.response)
        return ApprovalDecision(
            ApprovalOutcome.SKIP,
            request=existing,
            reason=self._denial_reason(existing),
        )

    @staticmethod
    def _denial_reason(request: ApprovalRequest) -> str:
        return f"User denied approval: {request.response or 'No reason provided'}"

    def _new_request(self, step: ExecutionStep, state: "WorkflowState", now: datetime) -> ApprovalRequest:
        risk_level, risk_description = classify_risk(step)
        return ApprovalRequest(
            id=generate_id("approval", suffix=step.id),
            user_id=state.user_id,
            plan_id=state.plan.id,
            step_id=step.id,
            action=step.action,
            message=approval_message(step, risk_description),
            risk_level=risk_level,
            created_at=now,
            expires_at=now + self._timeout,
        )

    @staticmethod
    def _auto_approval(step: ExecutionStep, state: "WorkflowState", now: datetime) -> ApprovalRequest:
        logger.info("Auto-approving safe operation", step_id=step.id, action=step.action)
        return ApprovalRequest(
            id=generate_id("auto_approval", suffix=step.id),
            user_id=state.user_id,
            plan_id=state.plan.id,
            step_id=step.id,
            action=step.action,
            message=f"Auto-approved safe operation: {step.description}",
            options=(),
            approved=True,
            response="Auto-approved (safe operation)",
            created_at=now,
            resolved_at=now,
        )
