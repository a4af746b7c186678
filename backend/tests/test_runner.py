"""Tests for the plan runner and the run store."""

import pytest

from core.exceptions import ActionExecutionError, ConflictError, NotFoundError
from workflow.plan import StepStatus
from workflow.runner import PlanRunner, RunStatus, RunStore, run_status
from workflow.state import StateDelta


class LoopingExecutor:
    """Never finishes; used to hit the turn limit."""

    def __init__(self):
        self.turns = 0

    async def execute_turn(self, state):
        self.turns += 1
        return StateDelta(awaiting_approval=False)


@pytest.mark.unit
class TestPlanRunner:

    async def test_runs_to_completion(self, runner, make_state):
        state = make_state([
            {"action": "list_todos"},
            {"action": "create_todo", "parameters": {"title": "Plan week"}},
        ])
        final = await runner.run(state)
        assert final.should_exit is True
        assert final.current_step_index == 2
        assert run_status(final) == RunStatus.COMPLETED
        assert final.summary() == {"total_steps": 2, "completed": 2, "failed": 0, "skipped": 0}

    async def test_pauses_for_approval_and_resumes(self, runner, registry, fake_client, make_state):
        state = make_state([
            {"action": "list_todos"},
            {"action": "delete_todo", "parameters": {"id": "t2"}, "requiresApproval": True},
            {"action": "get_active_timers"},
        ])
        paused = await runner.run(state)
        assert run_status(paused) == RunStatus.AWAITING_APPROVAL
        assert paused.current_step_index == 1

        registry.resolve_latest("user-1", True)
        final = await runner.resume(paused)
        assert run_status(final) == RunStatus.COMPLETED
        assert fake_client.calls_to("delete_item") == [("delete_item", "t2")]
        assert [s.status for s in final.execution_steps] == [StepStatus.COMPLETED] * 3

    async def test_resume_without_answer_keeps_waiting(self, runner, make_state):
        state = make_state([{"action": "delete_todo", "parameters": {"id": "t2"}, "requiresApproval": True}])
        paused = await runner.run(state)
        again = await runner.resume(paused)
        assert run_status(again) == RunStatus.AWAITING_APPROVAL
        assert again.execution_steps == ()

    async def test_aborted_run_cannot_resume(self, runner, fake_client, make_state):
        fake_client.fail_methods["create_item"] = ActionExecutionError("MCP tool error: down")
        state = make_state([
            {"action": "create_todo", "parameters": {"title": "x"}},
            {"action": "toggle_completion", "dependencies": ["1"]},
            {"action": "start_time_tracking", "dependencies": ["1"]},
            {"action": "stop_time_tracking", "dependencies": ["1"]},
        ])
        aborted = await runner.run(state)
        assert run_status(aborted) == RunStatus.ABORTED
        with pytest.raises(ConflictError):
            await runner.resume(aborted)

    async def test_turn_limit(self, make_state):
        executor = LoopingExecutor()
        state = make_state([{"action": "list_todos"}])
        final = await PlanRunner(executor).run(state)
        assert executor.turns == 7
        assert final.error == "Turn limit of 7 reached"
        assert run_status(final) == RunStatus.ABORTED

    async def test_explicit_turn_limit(self, make_state):
        executor = LoopingExecutor()
        final = await PlanRunner(executor).run(make_state([{"action": "list_todos"}]), max_turns=2)
        assert executor.turns == 2
        assert final.should_exit is True


@pytest.mark.unit
class TestRunStore:

    def test_create_and_get(self, make_state):
        store = RunStore()
        record = store.create(make_state([{"action": "list_todos"}]))
        assert record.id.startswith("run_")
        assert store.get(record.id) is record
        assert record.status == RunStatus.RUNNING
        assert store.count() == 1

    def test_get_unknown(self):
        with pytest.raises(NotFoundError):
            RunStore().get("run_missing")

    def test_update_keeps_messages(self, make_state):
        store = RunStore()
        record = store.create(make_state([{"action": "list_todos"}]))
        record.messages.append("hello")
        updated = store.update(record.id, record.state.apply(StateDelta(current_step_index=1)))
        assert updated.messages == ["hello"]
        assert updated.state.current_step_index == 1
        assert updated.updated_at >= record.updated_at

    def test_list_for_user(self, make_state):
        store = RunStore()
        store.create(make_state([{"action": "list_todos"}], user_id="a"))
        store.create(make_state([{"action": "list_todos"}], user_id="b"))
        assert len(store.list_for_user("a")) == 1

    async def test_live_plan_ids(self, runner, fake_client, make_state):
        store = RunStore()
        waiting = store.create(make_state([
            {"action": "delete_todo", "parameters": {"id": "t2"}, "requiresApproval": True},
        ]))
        store.update(waiting.id, await runner.run(waiting.state))
        done = store.create(make_state([{"action": "list_todos"}]))
        store.update(done.id, await runner.run(done.state))
        fake_client.fail_methods["create_item"] = ActionExecutionError("MCP tool error: down")
        failed = store.create(make_state([
            {"action": "create_todo", "parameters": {"title": "x"}},
            {"action": "toggle_completion", "dependencies": ["1"]},
            {"action": "start_time_tracking", "dependencies": ["1"]},
            {"action": "stop_time_tracking", "dependencies": ["1"]},
        ]))
        store.update(failed.id, await runner.run(failed.state))
        fresh = store.create(make_state([{"action": "list_todos"}]))

        assert store.get(waiting.id).status == RunStatus.AWAITING_APPROVAL
        assert store.get(failed.id).status == RunStatus.ABORTED
        assert store.live_plan_ids() == {waiting.state.plan.id, fresh.state.plan.id}

    def test_lock_per_user(self):
        store = RunStore()
        assert store.lock_for("a") is store.lock_for("a")
        assert store.lock_for("a") is not store.lock_for("b")

    def test_record_to_dict(self, make_state):
        record = RunStore().create(make_state([{"action": "list_todos"}]))
        data = record.to_dict()
        assert data["status"] == "running"
        assert data["state"]["summary"]["total_steps"] == 1
