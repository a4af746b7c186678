"""API tests for runs, approvals and health."""

import pytest

RUNS = "/api/v1/runs"
APPROVALS = "/api/v1/approvals"


def _body(steps, user_id="user-1", risk_level="medium"):
    return {
        "user_id": user_id,
        "user_message": "clean up my work todos",
        "plan": {"steps": steps, "riskLevel": risk_level},
    }


GATED_PLAN = [
    {"action": "list_todos", "parameters": {"context": "work"}, "description": "List work todos"},
    {
        "action": "delete_todo",
        "parameters": {"id": "t2"},
        "description": "Delete the review todo",
        "requiresApproval": True,
        "dependencies": ["1"],
    },
]


@pytest.mark.integration
class TestRunsAPI:

    async def test_run_to_completion(self, client):
        response = await client.post(RUNS, json=_body([
            {"action": "list_todos", "description": "List todos"},
            {"action": "create_todo", "parameters": {"title": "Plan week"}, "description": "Add todo"},
        ]))
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "completed"
        assert data["current_step_index"] == 2
        assert data["progress_percent"] == 100.0
        assert [s["status"] for s in data["steps"]] == ["completed", "completed"]
        assert data["messages"][0].startswith("🔄 Step 1/2: List todos")
        assert "X-Request-ID" in response.headers

    async def test_get_run(self, client):
        created = (await client.post(RUNS, json=_body([{"action": "list_todos"}]))).json()
        response = await client.get(f"{RUNS}/{created['id']}")
        assert response.status_code == 200
        assert response.json()["id"] == created["id"]

    async def test_get_unknown_run(self, client):
        response = await client.get(f"{RUNS}/run_missing")
        assert response.status_code == 404
        assert response.json()["error_code"] == "NotFoundError"

    async def test_empty_plan_rejected(self, client):
        response = await client.post(RUNS, json=_body([]))
        assert response.status_code == 422
        assert response.json()["detail"] == "Execution plan has no steps"

    async def test_missing_plan_rejected(self, client):
        response = await client.post(RUNS, json={"user_id": "user-1"})
        assert response.status_code == 422

    async def test_approve_and_resume(self, client, fake_client):
        run = (await client.post(RUNS, json=_body(GATED_PLAN))).json()
        assert run["status"] == "awaiting_approval"
        assert run["current_step_index"] == 1
        assert fake_client.calls_to("delete_item") == []

        pending = (await client.get(f"{APPROVALS}/user-1")).json()
        assert pending["total"] == 1
        assert pending["approvals"][0]["risk_level"] == "high"
        assert pending["approvals"][0]["step_id"] == "step_2"

        answer = await client.post(f"{APPROVALS}/user-1/approve", json={"response": "yes"})
        assert answer.status_code == 200
        assert answer.json()["approved"] is True

        resumed = await client.post(f"{RUNS}/{run['id']}/resume")
        assert resumed.status_code == 200
        data = resumed.json()
        assert data["status"] == "completed"
        assert fake_client.calls_to("delete_item") == [("delete_item", "t2")]
        assert any(m.startswith("✅ APPROVED") for m in data["messages"])

    async def test_new_run_keeps_answer_of_paused_run(self, app, client, fake_client):
        from app.config import Settings, get_settings

        app.dependency_overrides[get_settings] = lambda: Settings(APPROVAL_RETENTION_SECONDS=0)
        run = (await client.post(RUNS, json=_body(GATED_PLAN))).json()
        await client.post(f"{APPROVALS}/user-1/approve")

        other = await client.post(RUNS, json=_body([{"action": "list_todos"}], user_id="user-2"))
        assert other.json()["status"] == "completed"

        data = (await client.post(f"{RUNS}/{run['id']}/resume")).json()
        assert data["status"] == "completed"
        assert data["steps"][1]["status"] == "completed"
        assert fake_client.calls_to("delete_item") == [("delete_item", "t2")]

    async def test_deny_and_resume_skips(self, client, fake_client):
        run = (await client.post(RUNS, json=_body(GATED_PLAN))).json()
        await client.post(f"{APPROVALS}/user-1/deny")

        data = (await client.post(f"{RUNS}/{run['id']}/resume")).json()
        assert data["status"] == "completed"
        assert data["steps"][1]["status"] == "skipped"
        assert data["steps"][1]["error"] == "User denied approval: No reason provided"
        assert fake_client.calls_to("delete_item") == []

    async def test_resume_completed_run_conflicts(self, client):
        run = (await client.post(RUNS, json=_body([{"action": "list_todos"}]))).json()
        response = await client.post(f"{RUNS}/{run['id']}/resume")
        assert response.status_code == 409

    async def test_aborted_run(self, client, fake_client):
        from core.exceptions import ActionExecutionError

        fake_client.fail_methods["create_item"] = ActionExecutionError("MCP tool error: down")
        steps = [{"action": "create_todo", "parameters": {"title": "x"}}] + [
            {"action": "toggle_completion", "parameters": {"id": "t1"}, "dependencies": ["1"]}
            for _ in range(3)
        ]
        data = (await client.post(RUNS, json=_body(steps))).json()
        assert data["status"] == "aborted"
        assert data["error"].startswith("Step step_1")

        response = await client.post(f"{RUNS}/{data['id']}/resume")
        assert response.status_code == 409


@pytest.mark.integration
class TestApprovalsAPI:

    async def test_no_pending(self, client):
        response = await client.get(f"{APPROVALS}/nobody")
        assert response.json() == {"approvals": [], "total": 0}

    async def test_approve_without_pending(self, client):
        response = await client.post(f"{APPROVALS}/nobody/approve")
        assert response.status_code == 404


@pytest.mark.integration
class TestHealthAPI:

    async def test_health(self, client):
        await client.post(RUNS, json=_body(GATED_PLAN))
        response = await client.get("/api/v1/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["runs"] == 1
        assert data["approvals"]["pending_requests"] == 1
