"""Dependency resolution for plan steps.

Planners rarely reference dependencies by their canonical ids. A step may
say it depends on ``"1"``, on ``"list_todos"`` or on something free-form.
``resolve_dependencies`` maps those references onto ``step_<n>`` ids when
the plan is built.

At run time ``check_dependencies`` verifies that every dependency completed.
When one did not, the substitute rules decide whether some other completed
step is an acceptable stand-in (for example a delete that depends on a
mislabelled listing step). The rules live in a registry so that the full
set can be listed and tested on its own.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import structlog

from workflow.actions import (
    is_analysis_action,
    is_bulk_style_action,
    is_create_action,
    is_listing_action,
)
from workflow.plan import ExecutionStep, StepStatus

logger = structlog.get_logger(__name__)

STEP_ID_PATTERN = re.compile(r"^step_\d+$")


def step_id_for(number: int) -> str:
    return f"step_{number}"


# ─── Plan-build resolution ────────────────────────────────────

def resolve_reference(
    reference: str,
    actions: Sequence[str],
    index: int,
) -> Optional[str]:
    """Resolve one dependency reference for the step at ``index``.

    First match wins:
    1. a canonical ``step_<n>`` id is accepted verbatim
    2. a bare integer ``k`` within the plan maps to ``step_k``
    3. the action name of an earlier step maps to that step
    4. anything else on a non-first step means "the previous step"
    """
    ref = str(reference).strip()

    if STEP_ID_PATTERN.match(ref):
        return ref

    if ref.isdigit():
        number = int(ref)
        if 1 <= number <= len(actions):
            return step_id_for(number)
    else:
        for position, action in enumerate(actions[:index]):
            if action == ref:
                return step_id_for(position + 1)

    if index > 0:
        return step_id_for(index)

    return None


def resolve_dependencies(
    references: Sequence[str],
    actions: Sequence[str],
    index: int,
) -> tuple[str, ...]:
    """Resolve all dependency references of one step.

    Args:
        references: raw dependency references from the plan document
        actions: action names of every step in plan order
        index: 0-based position of the step being resolved

    Returns:
        Canonical step ids, de-duplicated, in order of first appearance.
        Unresolvable references are dropped and logged, never raised.
    """
    resolved: list[str] = []
    for reference in references:
        step_id = resolve_reference(reference, actions, index)
        if step_id is None:
            logger.warning(
                "Could not resolve dependency",
                dependency=reference,
                step_number=index + 1,
                available_steps=[step_id_for(i + 1) for i in range(len(actions))],
            )
            continue
        if step_id != reference:
            logger.info(
                "Resolved dependency",
                dependency=reference,
                resolved_id=step_id,
                step_number=index + 1,
            )
        if step_id not in resolved:
            resolved.append(step_id)
    return tuple(resolved)


# ─── Substitute satisfaction rules ────────────────────────────

@dataclass(frozen=True)
class SubstituteRule:
    """A stand-in for an unmet dependency.

    ``applies_to`` selects the steps the rule covers; ``satisfied_by`` is
    evaluated against the step and the run history and returns True when
    the history contains an acceptable substitute.
    """
    name: str
    description: str
    applies_to: Callable[[ExecutionStep], bool]
    satisfied_by: Callable[[ExecutionStep, Sequence[ExecutionStep]], bool]

    def matches(self, step: ExecutionStep, history: Sequence[ExecutionStep]) -> bool:
        return self.applies_to(step) and self.satisfied_by(step, history)


def _any_completed(predicate: Callable[[str], bool]):
    def check(step: ExecutionStep, history: Sequence[ExecutionStep]) -> bool:
        return any(
            s.status == StepStatus.COMPLETED and predicate(s.action) for s in history
        )
    return check


def _preceding_declared(step: ExecutionStep, history: Sequence[ExecutionStep]) -> bool:
    if not history:
        return False
    previous = history[-1]
    return previous.status == StepStatus.COMPLETED and previous.id in step.dependencies


DEFAULT_SUBSTITUTE_RULES: tuple[SubstituteRule, ...] = (
    SubstituteRule(
        name="analysis_after_listing",
        description="An analysis step may run once any listing step completed",
        applies_to=lambda step: is_analysis_action(step.action),
        satisfied_by=_any_completed(is_listing_action),
    ),
    SubstituteRule(
        name="bulk_after_listing",
        description="A delete or bulk step may run once any listing step completed",
        applies_to=lambda step: is_bulk_style_action(step.action),
        satisfied_by=_any_completed(is_listing_action),
    ),
    SubstituteRule(
        name="create_after_analysis",
        description="A create step may run once any analysis step completed",
        applies_to=lambda step: is_create_action(step.action),
        satisfied_by=_any_completed(is_analysis_action),
    ),
    SubstituteRule(
        name="preceding_declared_dependency",
        description="The step just before it in the run completed and is a declared dependency",
        applies_to=lambda step: True,
        satisfied_by=_preceding_declared,
    ),
)


class SubstituteRuleRegistry:
    """Ordered collection of substitute rules; the first match wins."""

    def __init__(self, rules: Optional[Sequence[SubstituteRule]] = None):
        self._rules: list[SubstituteRule] = list(
            DEFAULT_SUBSTITUTE_RULES if rules is None else rules
        )

    def register(self, rule: SubstituteRule) -> None:
        if any(r.name == rule.name for r in self._rules):
            raise ValueError(f"Substitute rule already registered: {rule.name}")
        self._rules.append(rule)

    def get(self, name: str) -> Optional[SubstituteRule]:
        for rule in self._rules:
            if rule.name == name:
                return rule
        return None

    @property
    def rule_names(self) -> list[str]:
        return [r.name for r in self._rules]

    def find_substitute(
        self, step: ExecutionStep, history: Sequence[ExecutionStep]
    ) -> Optional[SubstituteRule]:
        for rule in self._rules:
            if rule.matches(step, history):
                return rule
        return None


# ─── Run-time satisfaction ────────────────────────────────────

@dataclass
class DependencyCheck:
    """Outcome of a run-time dependency check."""
    satisfied: bool
    missing: list[str] = field(default_factory=list)
    rule: Optional[str] = None  # substitute rule that rescued the step


def check_dependencies(
    step: ExecutionStep,
    history: Sequence[ExecutionStep],
    rules: Optional[SubstituteRuleRegistry] = None,
) -> DependencyCheck:
    """Check ``step``'s dependencies against the steps run so far.

    A step with no dependencies is always satisfied. Otherwise every
    dependency id has to be among the completed steps, unless one of the
    substitute rules accepts the history as a stand-in.
    """
    if not step.dependencies:
        return DependencyCheck(satisfied=True)

    completed = {s.id for s in history if s.status == StepStatus.COMPLETED}
    missing = [dep for dep in step.dependencies if dep not in completed]
    if not missing:
        return DependencyCheck(satisfied=True)

    if rules is None:
        return DependencyCheck(satisfied=False, missing=missing)

    rule = rules.find_substitute(step, history)
    if rule is not None:
        logger.info(
            "Dependency satisfied by substitute rule",
            step_id=step.id,
            action=step.action,
            missing=missing,
            rule=rule.name,
        )
        return DependencyCheck(satisfied=True, missing=missing, rule=rule.name)

    return DependencyCheck(satisfied=False, missing=missing)
