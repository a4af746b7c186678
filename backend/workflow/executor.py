"""
Step executor: advances a plan run by one step per turn.

Per-step states: pending → in_progress → completed | failed, or
pending → skipped. The run index moves forward by one on every terminal
step outcome. It stays put while the run waits for an approval and when a
failure aborts the run.

Each turn reads the ``WorkflowState`` it is given and returns a
``StateDelta``; it never mutates the state or the plan. Calls to the action
service happen strictly one after another.
"""

from typing import Any, Optional

import structlog

from core.exceptions import SafetyViolationError, is_step_fatal
from core.utils import elapsed_ms
from workflow.approval import ApprovalGate, ApprovalOutcome, ApprovalRequest
from workflow.dependencies import SubstituteRuleRegistry, check_dependencies
from workflow.fallback import FallbackStrategy
from workflow.plan import ExecutionPlan, ExecutionStep, RiskLevel, StepStatus
from workflow.progress import ProgressReporter
from workflow.state import StateDelta, WorkflowState

logger = structlog.get_logger(__name__)

MAX_DEPENDENTS_TO_CONTINUE = 2

# Recorded for actions that succeed without returning anything
NO_RESULT = {"acknowledged": True}


def should_continue(failed_step: ExecutionStep, plan: ExecutionPlan) -> bool:
    """Whether the run may go on after ``failed_step`` failed for good.

    Abort when more than two other steps depend on it, or when the plan is
    high risk and the step needed approval.
    """
    dependents = plan.dependents_of(failed_step.id)
    if len(dependents) > MAX_DEPENDENTS_TO_CONTINUE:
        logger.warning(
            "Too many steps depend on failed step",
            step_id=failed_step.id,
            dependents=[s.id for s in dependents],
        )
        return False
    if plan.risk_level == RiskLevel.HIGH and failed_step.requires_approval:
        logger.warning("High-risk approved step failed", step_id=failed_step.id)
        return False
    return True


def _with_request(
    requests: tuple[ApprovalRequest, ...], request: ApprovalRequest
) -> tuple[ApprovalRequest, ...]:
    """Replace the record with the same id, or append it."""
    if any(r.id == request.id for r in requests):
        return tuple(request if r.id == request.id else r for r in requests)
    return requests + (request,)


class StepExecutor:
    """Runs the step at ``state.current_step_index``."""

    def __init__(
        self,
        dispatcher,
        gate: ApprovalGate,
        reporter: Optional[ProgressReporter] = None,
        rules: Optional[SubstituteRuleRegistry] = None,
    ):
        self.dispatcher = dispatcher
        self.gate = gate
        self.reporter = reporter or ProgressReporter()
        self.rules = rules if rules is not None else SubstituteRuleRegistry()
        self.fallback = FallbackStrategy(dispatcher)

    async def execute_turn(self, state: WorkflowState) -> StateDelta:
        plan = state.plan
        step = state.current_step
        if step is None:
            logger.info(
                "All steps completed",
                user_id=state.user_id,
                plan_id=plan.id,
                total_steps=plan.total_steps,
            )
            return StateDelta(should_exit=True)

        number = state.current_step_index + 1
        total = plan.total_steps
        logger.info(
            "Executing step",
            user_id=state.user_id,
            plan_id=plan.id,
            step_id=step.id,
            step_number=number,
            total_steps=total,
            action=step.action,
        )

        step = self.gate.normalize(step)

        # Approval
        decision = self.gate.evaluate(step, state)
        approval_requests = state.approval_requests

        if decision.outcome == ApprovalOutcome.DEFER:
            await self.reporter.approval_requested(decision.request)
            return StateDelta(
                awaiting_approval=True,
                should_exit=True,
                approval_requests=_with_request(approval_requests, decision.request),
            )

        if decision.outcome == ApprovalOutcome.WAIT:
            return StateDelta(awaiting_approval=True, should_exit=True)

        if decision.request is not None:
            approval_requests = _with_request(approval_requests, decision.request)

        if decision.outcome == ApprovalOutcome.SKIP:
            skipped = step.transition(StepStatus.SKIPPED, error=decision.reason)
            await self.reporter.step_skipped(skipped, number, total)
            return self._advance(state, skipped, None, approval_requests=approval_requests)

        if decision.outcome == ApprovalOutcome.PROCEED:
            await self.reporter.approval_granted(step)
        elif decision.outcome == ApprovalOutcome.AUTO_APPROVED:
            await self.reporter.auto_approved(step)

        # Dependencies
        dependency_check = check_dependencies(step, state.execution_steps, self.rules)
        if not dependency_check.satisfied:
            logger.warning(
                "Step dependencies not satisfied",
                step_id=step.id,
                dependencies=list(step.dependencies),
                missing=dependency_check.missing,
                completed_steps=[s.id for s in state.steps_with_status(StepStatus.COMPLETED)],
            )
            skipped = step.transition(
                StepStatus.SKIPPED,
                error=f"Dependencies not satisfied: {', '.join(dependency_check.missing)}",
            )
            await self.reporter.step_skipped(skipped, number, total)
            return self._advance(state, skipped, None, approval_requests=approval_requests)

        # Dispatch
        running = step.start()
        await self.reporter.step_started(running, number, total)

        try:
            result = await self.dispatcher.dispatch(running, state)
        except Exception as error:
            return await self._handle_failure(state, running, error, approval_requests)

        if result is None:
            result = dict(NO_RESULT)
        completed = running.transition(
            StepStatus.COMPLETED,
            result=result,
            duration_ms=elapsed_ms(running.started_at),
        )
        logger.info(
            "Step completed successfully",
            user_id=state.user_id,
            step_id=completed.id,
            duration_ms=completed.duration_ms,
            result_type=type(result).__name__,
        )
        await self.reporter.step_completed(completed, number, total)
        return self._advance(state, completed, result, approval_requests=approval_requests)

    async def _handle_failure(
        self,
        state: WorkflowState,
        running: ExecutionStep,
        error: Exception,
        approval_requests: tuple[ApprovalRequest, ...],
    ) -> StateDelta:
        number = state.current_step_index + 1
        total = state.plan.total_steps
        message = str(error) or type(error).__name__
        logger.error(
            "Step execution failed",
            user_id=state.user_id,
            step_id=running.id,
            action=running.action,
            error=message,
            error_type=type(error).__name__,
        )

        if isinstance(error, SafetyViolationError):
            failed = running.transition(
                StepStatus.FAILED,
                error=message,
                duration_ms=elapsed_ms(running.started_at),
                metadata={**running.metadata, "safety_violation": True},
            )
            await self.reporter.step_failed(failed, number, total)
            return self._advance(state, failed, None, approval_requests=approval_requests)

        metadata = dict(running.metadata)
        if is_step_fatal(error):
            metadata["validation_error"] = True

        if self.fallback.applies(running, error):
            outcome = await self.fallback.run(running, state)
            metadata["fallback_action"] = outcome.action
            if outcome.recovered:
                result = dict(NO_RESULT) if outcome.result is None else outcome.result
                recovered = running.transition(
                    StepStatus.COMPLETED,
                    result=result,
                    duration_ms=elapsed_ms(running.started_at),
                    metadata={**metadata, "recovered": True, "primary_error": message},
                )
                await self.reporter.step_recovered(recovered, number, total)
                return self._advance(state, recovered, result, approval_requests=approval_requests)
            metadata["fallback_error"] = outcome.error

        failed = running.transition(
            StepStatus.FAILED,
            error=message,
            duration_ms=elapsed_ms(running.started_at),
            metadata=metadata,
        )
        await self.reporter.step_failed(failed, number, total)

        if should_continue(failed, state.plan):
            return self._advance(state, failed, None, approval_requests=approval_requests)

        logger.error("Aborting plan run", plan_id=state.plan.id, step_id=failed.id)
        await self.reporter.run_aborted(failed, message)
        return StateDelta(
            should_exit=True,
            error=f"Step {failed.id} ({failed.description}) failed: {message}",
            execution_steps=state.execution_steps + (failed,),
            mcp_responses=state.mcp_responses + (None,),
            awaiting_approval=False,
            approval_requests=approval_requests,
        )

    @staticmethod
    def _advance(
        state: WorkflowState,
        snapshot: ExecutionStep,
        response: Any,
        approval_requests: tuple[ApprovalRequest, ...],
    ) -> StateDelta:
        return StateDelta(
            current_step_index=state.current_step_index + 1,
            execution_steps=state.execution_steps + (snapshot,),
            mcp_responses=state.mcp_responses + (response,),
            awaiting_approval=False,
            approval_requests=approval_requests,
        )
