"""Host loop for plan runs.

``PlanRunner`` drives ``StepExecutor.execute_turn`` until a turn asks it to
stop: the plan is exhausted, a failure aborted the run, or a step is
waiting for approval. A paused run is picked up again with ``resume``
once the user has answered.

``RunStore`` keeps runs in memory and hands out one lock per user so that
two runs of the same user never advance at the same time (the approval
registry is shared between them).
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog

from core.exceptions import ConflictError, NotFoundError
from core.logging_config import bind_run_context, clear_run_context
from core.utils import generate_id, utc_now
from workflow.executor import StepExecutor
from workflow.state import StateDelta, WorkflowState

logger = structlog.get_logger(__name__)


class RunStatus(str, Enum):
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    ABORTED = "aborted"


def run_status(state: WorkflowState) -> RunStatus:
    if state.error:
        return RunStatus.ABORTED
    if state.awaiting_approval:
        return RunStatus.AWAITING_APPROVAL
    if state.should_exit and state.is_finished:
        return RunStatus.COMPLETED
    return RunStatus.RUNNING


class PlanRunner:
    """Repeats executor turns and merges their deltas."""

    def __init__(self, executor: StepExecutor):
        self.executor = executor

    @staticmethod
    def turn_limit(state: WorkflowState) -> int:
        return state.plan.total_steps * 2 + 5

    async def run(self, state: WorkflowState, max_turns: Optional[int] = None) -> WorkflowState:
        """Advance ``state`` until a turn sets ``should_exit``."""
        limit = max_turns or self.turn_limit(state)
        bind_run_context(state.user_id, state.plan.id)
        logger.info(
            "Plan run started",
            start_index=state.current_step_index,
            total_steps=state.plan.total_steps,
        )
        try:
            for _ in range(limit):
                delta = await self.executor.execute_turn(state)
                state = state.apply(delta)
                if state.should_exit:
                    break
            else:
                logger.error("Plan run hit the turn limit", max_turns=limit)
                state = state.apply(
                    StateDelta(should_exit=True, error=f"Turn limit of {limit} reached")
                )

            logger.info(
                "Plan run stopped",
                status=run_status(state).value,
                current_step_index=state.current_step_index,
                **state.summary(),
            )
        finally:
            clear_run_context()
        return state

    async def resume(self, state: WorkflowState) -> WorkflowState:
        """Continue a paused run.

        Raises:
            ConflictError: the run was aborted by a failure
        """
        if state.error:
            raise ConflictError(f"Run was aborted and cannot be resumed: {state.error}")
        return await self.run(state.apply(StateDelta(should_exit=False)))


@dataclass
class RunRecord:
    """A run as kept by the API."""
    id: str
    state: WorkflowState
    messages: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def status(self) -> RunStatus:
        return run_status(self.state)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status.value,
            "state": self.state.to_dict(),
            "messages": list(self.messages),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class RunStore:
    """In-memory run storage."""

    def __init__(self):
        self._runs: dict[str, RunRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def create(self, state: WorkflowState) -> RunRecord:
        record = RunRecord(id=generate_id("run"), state=state)
        self._runs[record.id] = record
        return record

    def get(self, run_id: str) -> RunRecord:
        record = self._runs.get(run_id)
        if record is None:
            raise NotFoundError(f"Run not found: {run_id}")
        return record

    def update(self, run_id: str, state: WorkflowState) -> RunRecord:
        record = replace(self.get(run_id), state=state, updated_at=utc_now())
        self._runs[run_id] = record
        return record

    def list_for_user(self, user_id: str) -> list[RunRecord]:
        return [r for r in self._runs.values() if r.state.user_id == user_id]

    def count(self) -> int:
        return len(self._runs)

    def live_plan_ids(self) -> set[str]:
        """Plans of runs still running or paused for approval."""
        live = (RunStatus.RUNNING, RunStatus.AWAITING_APPROVAL)
        return {r.state.plan.id for r in self._runs.values() if r.status in live}

    def lock_for(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._locks:
            self._locks[user_id] = asyncio.Lock()
        return self._locks[user_id]
