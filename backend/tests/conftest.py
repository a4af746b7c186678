"""Shared pytest fixtures for the plan engine test suite.

Provides:
- In-memory fake todo server client and analysis service
- Approval registry, dispatcher, gate, executor and runner wired to the fakes
- Plan and run-state factories
- FastAPI test client (httpx.AsyncClient) with the fakes injected
"""

import os
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("TODO_SERVER_URL", "http://todo-server.test/mcp")

from core.exceptions import ActionExecutionError  # noqa: E402
from integrations.notifier import MemorySink  # noqa: E402
from workflow.approval import ApprovalGate, ApprovalRegistry  # noqa: E402
from workflow.bulk_guard import BulkSafetyGuard  # noqa: E402
from workflow.dispatcher import ActionDispatcher  # noqa: E402
from workflow.executor import StepExecutor  # noqa: E402
from workflow.progress import ProgressReporter  # noqa: E402
from workflow.runner import PlanRunner, RunStore  # noqa: E402
from workflow.schemas import build_plan  # noqa: E402
from workflow.state import new_run_state  # noqa: E402


def make_todo(todo_id: str, context: str = "work", title: Optional[str] = None, completed: bool = False) -> dict:
    return {
        "_id": todo_id,
        "title": title or f"Todo {todo_id}",
        "context": context,
        "completed": completed,
    }


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeTodoClient:
    """In-memory stand-in for the todo server.

    ``fail_methods`` makes a whole operation raise; ``fail_ids`` makes
    update/delete raise for specific todos only.
    """

    def __init__(self, todos=None):
        self.todos = [dict(t) for t in (todos or [])]
        self.calls: list[tuple] = []
        self.fail_methods: dict[str, Exception] = {}
        self.fail_ids: set[str] = set()
        self._connected = False
        self.connect_count = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        self.connect_count += 1
        self._connected = True
        return True

    def _record(self, method: str, *args):
        self.calls.append((method, *args))
        if method in self.fail_methods:
            raise self.fail_methods[method]

    def calls_to(self, method: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == method]

    async def list_items(self, filters=None):
        filters = dict(filters or {})
        self._record("list_items", filters)
        items = list(self.todos)
        if filters.get("context"):
            items = [t for t in items if t.get("context") == filters["context"]]
        if "completed" in filters:
            items = [t for t in items if t.get("completed") == filters["completed"]]
        if filters.get("limit"):
            items = items[: filters["limit"]]
        return [dict(t) for t in items]

    async def create_item(self, fields):
        self._record("create_item", dict(fields))
        todo = {"_id": f"new-{len(self.todos) + 1}", "completed": False, **fields}
        self.todos.append(todo)
        return f"Todo created with ID: {todo['_id']}"

    async def update_item(self, item_id, fields):
        self._record("update_item", item_id, dict(fields))
        if item_id in self.fail_ids:
            raise ActionExecutionError(f"MCP tool error: cannot update {item_id}", action="updateTodo")
        return f"Todo {item_id} updated"

    async def delete_item(self, item_id):
        self._record("delete_item", item_id)
        if item_id in self.fail_ids:
            raise ActionExecutionError(f"MCP tool error: cannot delete {item_id}", action="deleteTodo")
        self.todos = [t for t in self.todos if t.get("_id") != item_id]
        return f"Todo {item_id} deleted"

    async def toggle_completion(self, item_id, completed):
        self._record("toggle_completion", item_id, completed)
        return f"Todo {item_id} completed={completed}"

    async def start_tracking(self, item_id):
        self._record("start_tracking", item_id)
        return f"Started tracking {item_id}"

    async def stop_tracking(self, item_id):
        self._record("stop_tracking", item_id)
        return f"Stopped tracking {item_id}"

    async def list_active_tracking(self):
        self._record("list_active_tracking")
        return []


class FakeAnalysisService:
    def __init__(self, reply: str = "Three todos are overdue."):
        self.reply = reply
        self.prompts: list[tuple[str, str]] = []

    async def generate_response(self, user_id: str, prompt: str) -> str:
        self.prompts.append((user_id, prompt))
        return self.reply


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def todos():
    return [
        make_todo("t1", "work", "Write report"),
        make_todo("t2", "work", "Review PR"),
        make_todo("t3", "home", "Buy milk", completed=True),
    ]


@pytest.fixture
def fake_client(todos):
    return FakeTodoClient(todos)


@pytest.fixture
def fake_analysis():
    return FakeAnalysisService()


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def registry():
    return ApprovalRegistry()


@pytest.fixture
def dispatcher(fake_client, fake_analysis):
    return ActionDispatcher(fake_client, analysis=fake_analysis, guard=BulkSafetyGuard(10, 2))


@pytest.fixture
def gate(registry):
    return ApprovalGate(registry, timeout_seconds=300)


@pytest.fixture
def executor(dispatcher, gate, sink):
    return StepExecutor(dispatcher, gate, ProgressReporter(sink))


@pytest.fixture
def runner(executor):
    return PlanRunner(executor)


@pytest.fixture
def make_plan():
    """Build a plan from step dicts written the way the planner writes them."""

    def _make(steps, risk_level="low", **extra):
        return build_plan({"steps": steps, "riskLevel": risk_level, **extra}, user_intent="test request")

    return _make


@pytest.fixture
def make_state(make_plan):
    def _make(steps, risk_level="low", user_id="user-1", user_message="tidy up my todos"):
        return new_run_state(user_id, user_message, make_plan(steps, risk_level=risk_level))

    return _make


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(registry, fake_client, fake_analysis):
    """FastAPI app with the in-memory fakes injected."""
    from app.dependencies import (
        get_action_client,
        get_analysis_service,
        get_approval_registry,
        get_run_store,
    )
    from app.main import create_app

    test_app = create_app()
    store = RunStore()
    test_app.dependency_overrides[get_approval_registry] = lambda: registry
    test_app.dependency_overrides[get_run_store] = lambda: store
    test_app.dependency_overrides[get_action_client] = lambda: fake_client
    test_app.dependency_overrides[get_analysis_service] = lambda: fake_analysis

    yield test_app

    test_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
