"""Plan run endpoints: start a run, inspect it, resume it after an approval."""

import structlog
from fastapi import APIRouter, Depends, status as http_status

from api.schemas.run import RunCreate, RunResponse, StepResponse
from app.dependencies import RunnerFactory, get_run_store, get_runner_factory
from core.exceptions import ConflictError
from integrations.notifier import MemorySink
from workflow.runner import RunRecord, RunStatus, RunStore
from workflow.schemas import build_plan
from workflow.state import new_run_state

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["runs"])


def _run_to_response(record: RunRecord) -> RunResponse:
    state = record.state
    return RunResponse(
        id=record.id,
        user_id=state.user_id,
        plan_id=state.plan.id,
        status=record.status.value,
        current_step_index=state.current_step_index,
        total_steps=state.plan.total_steps,
        progress_percent=state.progress_percent,
        awaiting_approval=state.awaiting_approval,
        error=state.error,
        steps=[
            StepResponse(
                id=s.id,
                action=s.action,
                description=s.description,
                status=s.status.value,
                result=s.result,
                error=s.error,
                duration_ms=s.duration_ms,
                metadata=dict(s.metadata),
            )
            for s in state.execution_steps
        ],
        summary=state.summary(),
        messages=list(record.messages),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


@router.post("", response_model=RunResponse, status_code=http_status.HTTP_201_CREATED)
async def start_run(
    body: RunCreate,
    store: RunStore = Depends(get_run_store),
    factory: RunnerFactory = Depends(get_runner_factory),
) -> RunResponse:
    """
    Build the plan and run it until it finishes, aborts, or waits for approval.
    """
    plan = build_plan(body.plan, user_intent=body.user_message)
    factory.registry.cleanup(factory.settings.APPROVAL_RETENTION_SECONDS, live_plan_ids=store.live_plan_ids())
    record = store.create(new_run_state(body.user_id, body.user_message, plan))
    logger.info("Run created", run_id=record.id, user_id=body.user_id, plan_id=plan.id)

    async with store.lock_for(body.user_id):
        runner = factory.build(body.user_id, MemorySink(record.messages))
        state = await runner.run(record.state)

    return _run_to_response(store.update(record.id, state))


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(run_id: str, store: RunStore = Depends(get_run_store)) -> RunResponse:
    """
    Get a run by ID.
    """
    return _run_to_response(store.get(run_id))


@router.post("/{run_id}/resume", response_model=RunResponse)
async def resume_run(
    run_id: str,
    store: RunStore = Depends(get_run_store),
    factory: RunnerFactory = Depends(get_runner_factory),
) -> RunResponse:
    """
    Continue a run that paused for approval.
    """
    record = store.get(run_id)
    if record.status == RunStatus.COMPLETED:
        raise ConflictError(f"Run already completed: {run_id}")

    user_id = record.state.user_id
    async with store.lock_for(user_id):
        runner = factory.build(user_id, MemorySink(record.messages))
        state = await runner.resume(record.state)

    return _run_to_response(store.update(run_id, state))
