"""Tests for dependency resolution and run-time satisfaction."""

import pytest

from workflow.dependencies import (
    DEFAULT_SUBSTITUTE_RULES,
    SubstituteRule,
    SubstituteRuleRegistry,
    check_dependencies,
    resolve_dependencies,
    resolve_reference,
)
from workflow.plan import ExecutionStep, StepStatus

ACTIONS = ["list_todos", "analysis", "delete_todo", "create_todo"]


def _done(step_id, action):
    return ExecutionStep(id=step_id, action=action).start().transition(StepStatus.COMPLETED, result="ok")


def _failed(step_id, action):
    return ExecutionStep(id=step_id, action=action).start().transition(StepStatus.FAILED, error="boom")


@pytest.mark.unit
class TestResolveReference:

    def test_canonical_id_verbatim(self):
        assert resolve_reference("step_9", ACTIONS, 2) == "step_9"

    def test_ordinal(self):
        assert resolve_reference("1", ACTIONS, 2) == "step_1"

    def test_ordinal_out_of_range_falls_back_to_previous(self):
        assert resolve_reference("12", ACTIONS, 2) == "step_2"

    def test_action_name_of_earlier_step(self):
        assert resolve_reference("list_todos", ACTIONS, 2) == "step_1"

    def test_action_name_of_later_step_not_matched(self):
        # create_todo is step 4; from step 3 it is not an earlier step
        assert resolve_reference("create_todo", ACTIONS, 2) == "step_2"

    def test_free_text_means_previous_step(self):
        assert resolve_reference("the listing", ACTIONS, 3) == "step_3"

    def test_unresolvable_on_first_step(self):
        assert resolve_reference("whatever", ACTIONS, 0) is None


@pytest.mark.unit
class TestResolveDependencies:

    def test_duplicates_collapse_in_order(self):
        assert resolve_dependencies(["2", "1", "analysis"], ACTIONS, 2) == ("step_2", "step_1")

    def test_unresolvable_dropped_without_error(self):
        assert resolve_dependencies(["nothing"], ACTIONS, 0) == ()


@pytest.mark.unit
class TestCheckDependencies:

    def test_no_dependencies_always_satisfied(self):
        step = ExecutionStep(id="step_1", action="delete_todo")
        assert check_dependencies(step, []).satisfied is True
        assert check_dependencies(step, [_failed("step_0", "list_todos")]).satisfied is True

    def test_all_completed(self):
        step = ExecutionStep(id="step_2", action="analysis", dependencies=("step_1",))
        check = check_dependencies(step, [_done("step_1", "list_todos")])
        assert check.satisfied is True
        assert check.missing == []

    def test_missing_without_rules(self):
        step = ExecutionStep(id="step_3", action="analysis", dependencies=("step_2",))
        check = check_dependencies(step, [_done("step_1", "list_todos"), _failed("step_2", "create_todo")])
        assert check.satisfied is False
        assert check.missing == ["step_2"]

    def test_analysis_rescued_by_listing(self):
        step = ExecutionStep(id="step_3", action="analysis", dependencies=("step_2",))
        history = [_done("step_1", "list_todos"), _failed("step_2", "create_todo")]
        check = check_dependencies(step, history, SubstituteRuleRegistry())
        assert check.satisfied is True
        assert check.rule == "analysis_after_listing"

    def test_delete_rescued_by_listing(self):
        step = ExecutionStep(id="step_3", action="delete_todo", dependencies=("step_2",))
        history = [_done("step_1", "list_todos"), _failed("step_2", "analysis")]
        check = check_dependencies(step, history, SubstituteRuleRegistry())
        assert check.rule == "bulk_after_listing"

    def test_create_rescued_by_analysis(self):
        step = ExecutionStep(id="step_3", action="create_todo", dependencies=("step_2",))
        history = [_done("step_1", "analysis"), _failed("step_2", "list_todos")]
        check = check_dependencies(step, history, SubstituteRuleRegistry())
        assert check.rule == "create_after_analysis"

    def test_preceding_declared_dependency(self):
        step = ExecutionStep(id="step_3", action="toggle_completion", dependencies=("step_1", "step_2"))
        history = [_failed("step_1", "list_todos"), _done("step_2", "get_active_timers")]
        check = check_dependencies(step, history, SubstituteRuleRegistry())
        assert check.satisfied is True
        assert check.rule == "preceding_declared_dependency"

    def test_no_rule_applies(self):
        step = ExecutionStep(id="step_3", action="toggle_completion", dependencies=("step_2",))
        history = [_done("step_1", "list_todos"), _failed("step_2", "create_todo")]
        check = check_dependencies(step, history, SubstituteRuleRegistry())
        assert check.satisfied is False
        assert check.rule is None


@pytest.mark.unit
class TestSubstituteRuleRegistry:

    def test_default_rules_enumerable_in_order(self):
        assert SubstituteRuleRegistry().rule_names == [
            "analysis_after_listing",
            "bulk_after_listing",
            "create_after_analysis",
            "preceding_declared_dependency",
        ]

    def test_register_custom_rule(self):
        registry = SubstituteRuleRegistry(rules=[])
        rule = SubstituteRule(
            name="timers_after_anything",
            description="Timer actions never wait",
            applies_to=lambda step: "tracking" in step.action,
            satisfied_by=lambda step, history: True,
        )
        registry.register(rule)
        step = ExecutionStep(id="step_2", action="stop_time_tracking", dependencies=("step_1",))
        assert registry.find_substitute(step, []) is rule

    def test_duplicate_name_rejected(self):
        registry = SubstituteRuleRegistry()
        with pytest.raises(ValueError):
            registry.register(DEFAULT_SUBSTITUTE_RULES[0])

    def test_get_by_name(self):
        registry = SubstituteRuleRegistry()
        assert registry.get("bulk_after_listing").name == "bulk_after_listing"
        assert registry.get("missing") is None

    def test_rule_in_isolation(self):
        rule = SubstituteRuleRegistry().get("create_after_analysis")
        step = ExecutionStep(id="step_2", action="create_todo")
        assert rule.matches(step, [_done("step_1", "analysis")]) is True
        assert rule.matches(step, [_failed("step_1", "analysis")]) is False
