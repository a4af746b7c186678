"""Plan document schemas and the plan builder.

The planner returns a JSON document. These models validate it (accepting
both the planner's camelCase keys and snake_case), and ``build_plan`` turns
a validated document into an ``ExecutionPlan`` with canonical step ids and
resolved dependencies.
"""

from typing import Any, List, Optional, Union

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.exceptions import PlanValidationError
from core.utils import extract_json, generate_id, utc_now
from workflow.actions import ActionKind
from workflow.dependencies import resolve_dependencies, step_id_for
from workflow.plan import ExecutionPlan, ExecutionStep, RiskLevel

logger = structlog.get_logger(__name__)

_KNOWN_ACTIONS = {kind.value for kind in ActionKind}


class PlanStepDocument(BaseModel):
    """One step as written by the planner."""

    action: str = Field(default="unknown", description="Action name or 'analysis'")
    parameters: dict[str, Any] = Field(default_factory=dict, description="Action parameters")
    description: str = Field(default="No description", description="What this step accomplishes")
    success_criteria: str = Field(
        default="Step completed", alias="successCriteria", description="How to tell it worked"
    )
    requires_approval: bool = Field(default=False, alias="requiresApproval")
    dependencies: List[Union[str, int]] = Field(default_factory=list)
    fallback_action: Optional[str] = Field(default=None, alias="fallbackAction")

    class Config:
        """Pydantic config."""

        populate_by_name = True

    @field_validator("parameters", mode="before")
    @classmethod
    def _none_parameters(cls, value):
        return value or {}

    @field_validator("dependencies", mode="before")
    @classmethod
    def _list_dependencies(cls, value):
        if value is None:
            return []
        if isinstance(value, (str, int)):
            return [value]
        return value


class PlanDocument(BaseModel):
    """A complete plan document as returned by the planner."""

    user_intent: Optional[str] = Field(default=None, alias="userIntent")
    steps: List[PlanStepDocument] = Field(description="Ordered steps")
    risk_level: Optional[str] = Field(default=None, alias="riskLevel")
    requires_approval: bool = Field(default=False, alias="requiresApproval")
    estimated_duration: Optional[str] = Field(default=None, alias="estimatedDuration")

    class Config:
        """Pydantic config."""

        populate_by_name = True


def _fallback_action(raw: Optional[str], step_number: int) -> Optional[str]:
    """Keep a fallback only when it names a real action.

    Planners often write prose here ("Retry or skip step"); that is not
    something the dispatcher can run.
    """
    if not raw:
        return None
    name = raw.strip()
    if name in _KNOWN_ACTIONS:
        return name
    logger.info("Ignoring non-action fallback", step_number=step_number, fallback=raw)
    return None


def build_plan(document: Union[PlanDocument, dict], user_intent: str = "") -> ExecutionPlan:
    """Build an execution plan from a planner document.

    Args:
        document: validated document or raw dict
        user_intent: the user's request, used when the document has none

    Returns:
        ExecutionPlan with ids ``step_1..step_n`` and canonical dependencies

    Raises:
        PlanValidationError: if the document is malformed or has no steps
    """
    if not isinstance(document, PlanDocument):
        try:
            document = PlanDocument.model_validate(document)
        except ValidationError as e:
            raise PlanValidationError(f"Invalid plan document: {e.errors()[0]['msg']}") from e

    if not document.steps:
        raise PlanValidationError("Execution plan has no steps")

    actions = [s.action for s in document.steps]
    steps: list[ExecutionStep] = []

    for index, raw in enumerate(document.steps):
        references = [str(dep) for dep in raw.dependencies]
        dependencies = resolve_dependencies(references, actions, index) if references else ()
        step = ExecutionStep(
            id=step_id_for(index + 1),
            action=raw.action,
            parameters=dict(raw.parameters),
            description=raw.description,
            success_criteria=raw.success_criteria,
            dependencies=dependencies,
            requires_approval=bool(raw.requires_approval),
            fallback_action=_fallback_action(raw.fallback_action, index + 1),
        )
        logger.debug(
            "Built plan step",
            step_id=step.id,
            action=step.action,
            original_dependencies=references,
            dependencies=list(dependencies),
        )
        steps.append(step)

    plan = ExecutionPlan(
        id=generate_id("plan"),
        user_intent=document.user_intent or user_intent,
        steps=tuple(steps),
        risk_level=RiskLevel.coerce(document.risk_level),
        requires_approval=bool(document.requires_approval or any(s.requires_approval for s in steps)),
        estimated_duration=document.estimated_duration or "Unknown",
        created_at=utc_now(),
    )

    logger.info(
        "Execution plan built",
        plan_id=plan.id,
        total_steps=plan.total_steps,
        risk_level=plan.risk_level.value,
        requires_approval=plan.requires_approval,
    )
    return plan


def parse_plan_text(text: str, user_intent: str = "") -> ExecutionPlan:
    """Build a plan from raw planner output (JSON, possibly fenced in markdown)."""
    try:
        data = extract_json(text)
    except ValueError as e:
        raise PlanValidationError(str(e)) from e
    if not isinstance(data, dict):
        raise PlanValidationError("Plan document must be a JSON object")
    return build_plan(data, user_intent=user_intent)
