"""Action vocabulary for plan steps.

Plans name their actions with plain strings. Every name the executor can
dispatch is a member of ``ActionKind``; anything else is rejected when the
step is dispatched. The classification helpers below work on raw names so
that the approval gate and dependency rules behave the same way for names
the planner invents.
"""

from enum import Enum
from typing import Any, Mapping


class ActionKind(str, Enum):
    """Closed set of actions the dispatcher knows how to run."""
    ANALYSIS = "analysis"
    LIST_TODOS = "list_todos"
    CREATE_TODO = "create_todo"
    UPDATE_TODO = "update_todo"
    DELETE_TODO = "delete_todo"
    TOGGLE_COMPLETION = "toggle_completion"
    START_TIME_TRACKING = "start_time_tracking"
    STOP_TIME_TRACKING = "stop_time_tracking"
    GET_ACTIVE_TIMERS = "get_active_timers"

    @classmethod
    def parse(cls, name: str) -> "ActionKind":
        """Map an action name to its kind.

        Raises:
            UnknownActionError: if the name is not part of the vocabulary
        """
        from core.exceptions import UnknownActionError

        try:
            return cls((name or "").strip())
        except ValueError:
            raise UnknownActionError(name) from None


# Read-only discovery actions. These are never gated behind approval.
SAFE_ACTIONS = frozenset({
    ActionKind.ANALYSIS.value,
    ActionKind.LIST_TODOS.value,
    ActionKind.GET_ACTIVE_TIMERS.value,
})

# Actions that may run in bulk form (no target id, applied to a listing result).
BULK_CAPABLE_ACTIONS = frozenset({
    ActionKind.UPDATE_TODO.value,
    ActionKind.DELETE_TODO.value,
})

# Parameter names that point a step at one specific todo.
TARGET_KEYS = ("id", "_id", "todoId", "todo_id")


def is_safe_action(action: str) -> bool:
    return action in SAFE_ACTIONS


def is_analysis_action(action: str) -> bool:
    return action == ActionKind.ANALYSIS.value


def is_listing_action(action: str) -> bool:
    """Actions whose result is a list of todos (``list_todos`` and friends)."""
    name = action.lower()
    return name == ActionKind.LIST_TODOS.value or name.startswith("list")


def is_delete_action(action: str) -> bool:
    name = action.lower()
    return "delete" in name or "remove" in name


def is_update_action(action: str) -> bool:
    return "update" in action.lower()


def is_bulk_style_action(action: str) -> bool:
    return is_delete_action(action) or "bulk" in action.lower()


def is_create_action(action: str) -> bool:
    return "create" in action.lower()


def target_id(parameters: Mapping[str, Any]) -> Any:
    """The todo id a step is aimed at, or None."""
    for key in TARGET_KEYS:
        value = parameters.get(key)
        if value not in (None, ""):
            return value
    return None


def is_bulk_invocation(action: str, parameters: Mapping[str, Any]) -> bool:
    """A delete/update step with no specific target applies to a listing result.

    ``title`` names the todo to delete, but for updates it is the new value.
    """
    if action not in BULK_CAPABLE_ACTIONS or target_id(parameters) is not None:
        return False
    if action == ActionKind.DELETE_TODO.value and parameters.get("title"):
        return False
    return True
