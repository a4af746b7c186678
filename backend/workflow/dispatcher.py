"""Action dispatch: runs one plan step against the todo server.

Every ``ActionKind`` maps to exactly one handler. The table is checked for
completeness when the dispatcher is built, so adding an action without a
handler fails at startup instead of on the first plan that uses it.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog

from core.exceptions import ActionExecutionError, StepValidationError
from workflow.actions import TARGET_KEYS, ActionKind, is_bulk_invocation, target_id
from workflow.bulk_guard import BulkSafetyGuard, find_candidates, item_id
from workflow.dates import fix_due_dates
from workflow.plan import ExecutionStep
from workflow.state import WorkflowState

logger = structlog.get_logger(__name__)

DEFAULT_ANALYSIS_TODO_LIMIT = 50

Handler = Callable[[ExecutionStep, dict, WorkflowState], Awaitable[Any]]


@dataclass
class BulkSummary:
    """Tally of a bulk update/delete. Item failures are recorded, not raised."""
    operation: str
    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)

    def record_failure(self, todo_id: Optional[str], error: str):
        self.failed += 1
        self.errors.append({"id": todo_id, "error": error})

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def _without_targets(params: dict) -> dict:
    return {k: v for k, v in params.items() if k not in TARGET_KEYS}


def analysis_prompt(user_message: str, description: str, todos: list) -> str:
    active = [t for t in todos if isinstance(t, dict) and not t.get("completed")]
    contexts: list[str] = []
    for todo in todos:
        context = todo.get("context") if isinstance(todo, dict) else None
        if context and context not in contexts:
            contexts.append(context)
    return (
        "Analyze the current todo state for the following request:\n\n"
        f"USER REQUEST: {user_message}\n"
        f"STEP DESCRIPTION: {description}\n\n"
        "CURRENT STATE:\n"
        f"- Total todos: {len(todos)}\n"
        f"- Active todos: {len(active)}\n"
        f"- Contexts: {', '.join(contexts)}\n\n"
        "Provide a brief analysis of what was discovered and what this means "
        "for the execution plan."
    )


class ActionDispatcher:
    """Maps action kinds to action-client calls."""

    def __init__(
        self,
        client,
        analysis=None,
        guard: Optional[BulkSafetyGuard] = None,
        analysis_todo_limit: int = DEFAULT_ANALYSIS_TODO_LIMIT,
    ):
        self.client = client
        self.analysis = analysis
        self.guard = guard or BulkSafetyGuard()
        self.analysis_todo_limit = analysis_todo_limit

        self._handlers: dict[ActionKind, Handler] = {
            ActionKind.ANALYSIS: self._analysis,
            ActionKind.LIST_TODOS: self._list_todos,
            ActionKind.CREATE_TODO: self._create_todo,
            ActionKind.UPDATE_TODO: self._update_todo,
            ActionKind.DELETE_TODO: self._delete_todo,
            ActionKind.TOGGLE_COMPLETION: self._toggle_completion,
            ActionKind.START_TIME_TRACKING: self._start_time_tracking,
            ActionKind.STOP_TIME_TRACKING: self._stop_time_tracking,
            ActionKind.GET_ACTIVE_TIMERS: self._get_active_timers,
        }
        missing = set(ActionKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for actions: {sorted(m.value for m in missing)}")

    async def ensure_connected(self) -> None:
        """Connect the action client if it is not connected yet."""
        if self.client.is_connected:
            return
        logger.info("Action client not connected, connecting")
        if not await self.client.connect():
            raise ActionExecutionError("Action service not available")

    async def dispatch(self, step: ExecutionStep, state: WorkflowState) -> Any:
        """Run ``step`` and return the action's result.

        Raises:
            UnknownActionError: action is not in the vocabulary
            StepValidationError: required parameters are missing
            SafetyViolationError: a bulk operation was refused
            ActionExecutionError: the action service failed
        """
        kind = ActionKind.parse(step.action)
        await self.ensure_connected()

        params = dict(step.parameters or {})
        if kind in (ActionKind.CREATE_TODO, ActionKind.UPDATE_TODO):
            params = fix_due_dates(params)

        logger.debug("Dispatching action", step_id=step.id, action=kind.value)
        return await self._handlers[kind](step, params, state)

    # ─── Handlers ─────────────────────────────────────────────────

    async def _analysis(self, step: ExecutionStep, params: dict, state: WorkflowState) -> str:
        if self.analysis is None:
            raise ActionExecutionError("Analysis service not configured", action=ActionKind.ANALYSIS.value)
        todos = await self.client.list_items({"limit": self.analysis_todo_limit})
        prompt = analysis_prompt(state.user_message, step.description, todos)
        return await self.analysis.generate_response(state.user_id, prompt)

    async def _list_todos(self, step: ExecutionStep, params: dict, state: WorkflowState) -> list:
        return await self.client.list_items(params)

    async def _create_todo(self, step: ExecutionStep, params: dict, state: WorkflowState) -> Any:
        if not params.get("title"):
            raise StepValidationError("create_todo requires a 'title' parameter")
        return await self.client.create_item(params)

    async def _update_todo(self, step: ExecutionStep, params: dict, state: WorkflowState) -> Any:
        fields = _without_targets(params)
        if not fields:
            raise StepValidationError("update_todo requires at least one field to change")
        if is_bulk_invocation(step.action, params):
            return await self._bulk(ActionKind.UPDATE_TODO, fields, state)
        return await self.client.update_item(str(target_id(params)), fields)

    async def _delete_todo(self, step: ExecutionStep, params: dict, state: WorkflowState) -> Any:
        if is_bulk_invocation(step.action, params):
            return await self._bulk(ActionKind.DELETE_TODO, {}, state)
        todo_id = await self._resolve_target(step.action, params)
        return await self.client.delete_item(todo_id)

    async def _toggle_completion(self, step: ExecutionStep, params: dict, state: WorkflowState) -> Any:
        todo_id = await self._resolve_target(step.action, params)
        completed = params.get("completed", True)
        if isinstance(completed, str):
            completed = completed.strip().lower() not in ("false", "0", "no")
        return await self.client.toggle_completion(todo_id, bool(completed))

    async def _start_time_tracking(self, step: ExecutionStep, params: dict, state: WorkflowState) -> Any:
        todo_id = await self._resolve_target(step.action, params)
        return await self.client.start_tracking(todo_id)

    async def _stop_time_tracking(self, step: ExecutionStep, params: dict, state: WorkflowState) -> Any:
        todo_id = await self._resolve_target(step.action, params)
        return await self.client.stop_tracking(todo_id)

    async def _get_active_timers(self, step: ExecutionStep, params: dict, state: WorkflowState) -> list:
        return await self.client.list_active_tracking()

    # ─── Targets ──────────────────────────────────────────────────

    async def _resolve_target(self, action: str, params: dict) -> str:
        """Todo id from the parameters, or looked up by ``title``."""
        explicit = target_id(params)
        if explicit is not None:
            return str(explicit)

        title = params.get("title")
        if not title:
            raise StepValidationError(f"{action} requires an 'id' or 'title' parameter")

        todos = await self.client.list_items({})
        wanted = str(title).strip().casefold()
        titled = [t for t in todos if isinstance(t, dict) and t.get("title")]

        matches = [t for t in titled if str(t["title"]).strip().casefold() == wanted]
        if not matches:
            matches = [t for t in titled if wanted in str(t["title"]).casefold()]

        if not matches:
            raise StepValidationError(f"No todo found matching title '{title}'")
        if len(matches) > 1:
            raise StepValidationError(
                f"Title '{title}' matches {len(matches)} todos; use an id instead"
            )

        todo_id = item_id(matches[0])
        if todo_id is None:
            raise StepValidationError(f"Todo '{title}' has no id")
        logger.info("Resolved todo by title", action=action, title=title, todo_id=todo_id)
        return todo_id

    # ─── Bulk ─────────────────────────────────────────────────────

    async def _bulk(self, kind: ActionKind, fields: dict, state: WorkflowState) -> dict:
        """Apply a singular update/delete to every candidate, one at a time."""
        candidates, listing_step = find_candidates(state.execution_steps)
        self.guard.check(candidates, listing_step)

        summary = BulkSummary(operation=kind.value, total=len(candidates))
        logger.info(
            "Bulk operation started",
            operation=kind.value,
            total=summary.total,
            listing_step=listing_step.id,
        )

        for item in candidates:
            todo_id = item_id(item)
            if todo_id is None:
                summary.record_failure(None, "Item has no id")
                continue
            try:
                if kind == ActionKind.DELETE_TODO:
                    await self.client.delete_item(todo_id)
                else:
                    await self.client.update_item(todo_id, dict(fields))
                summary.successful += 1
            except Exception as e:
                logger.warning("Bulk item failed", operation=kind.value, todo_id=todo_id, error=str(e))
                summary.record_failure(todo_id, str(e))

        logger.info(
            "Bulk operation finished",
            operation=kind.value,
            total=summary.total,
            successful=summary.successful,
            failed=summary.failed,
        )
        return summary.to_dict()
