"""Plan run and approval schemas."""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from workflow.schemas import PlanDocument


class RunCreate(BaseModel):
    """Request to start a plan run."""

    user_id: str = Field(min_length=1, description="User the run belongs to")
    user_message: str = Field(default="", description="The user's original request")
    plan: PlanDocument = Field(description="Plan document produced by the planner")


class StepResponse(BaseModel):
    """Execution record of one step."""

    id: str
    action: str
    description: str
    status: str = Field(description="pending, in_progress, completed, failed or skipped")
    result: Optional[Any] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    metadata: dict = Field(default_factory=dict)


class RunResponse(BaseModel):
    """A plan run and where it stands."""

    id: str = Field(description="Run ID")
    user_id: str
    plan_id: str
    status: str = Field(description="running, awaiting_approval, completed or aborted")
    current_step_index: int
    total_steps: int
    progress_percent: float
    awaiting_approval: bool
    error: Optional[str] = None
    steps: List[StepResponse] = Field(description="Steps executed so far, in order")
    summary: dict = Field(description="Counts of completed, failed and skipped steps")
    messages: List[str] = Field(description="Progress messages sent during the run")
    created_at: datetime
    updated_at: datetime


class ApprovalResponse(BaseModel):
    """An approval request."""

    id: str
    plan_id: str
    step_id: str
    action: str
    message: str
    options: List[str]
    risk_level: str
    approved: Optional[bool] = None
    response: Optional[str] = None
    created_at: datetime
    expires_at: Optional[datetime] = None


class ApprovalAnswer(BaseModel):
    """Body of an approve/deny command."""

    response: Optional[str] = Field(default=None, description="Optional free-text reason")


class ApprovalListResponse(BaseModel):
    """Pending approvals of a user."""

    approvals: List[ApprovalResponse]
    total: int
