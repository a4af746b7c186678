"""Bulk safety guard.

A bulk delete or update (no target id) runs against every todo returned by
the most recent listing step. Before that happens the guard measures the
blast radius: when the candidate set is large, or spread over many
contexts, the listing step must have been filtered by context explicitly.
There is no override.
"""

from typing import Any, Optional, Sequence

import structlog

from core.exceptions import SafetyViolationError, StepValidationError
from core.utils import as_items
from workflow.actions import is_listing_action
from workflow.plan import ExecutionStep, StepStatus

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ITEMS = 10
DEFAULT_MAX_CONTEXTS = 2


def item_id(item: Any) -> Optional[str]:
    """Identifier of a todo record (``_id`` or ``id``)."""
    if not isinstance(item, dict):
        return None
    value = item.get("_id") or item.get("id")
    return str(value) if value not in (None, "") else None


def find_candidates(history: Sequence[ExecutionStep]) -> tuple[list, ExecutionStep]:
    """Items of the most recent completed listing step, and that step.

    Raises:
        StepValidationError: when no listing step has completed yet
    """
    for step in reversed(history):
        if step.status == StepStatus.COMPLETED and is_listing_action(step.action):
            return as_items(step.result), step
    raise StepValidationError(
        "Bulk operation needs a completed listing step to select todos from"
    )


class BulkSafetyGuard:
    """Refuses bulk mutations whose candidate set is large and unfiltered."""

    def __init__(self, max_items: int = DEFAULT_MAX_ITEMS, max_contexts: int = DEFAULT_MAX_CONTEXTS):
        self.max_items = max_items
        self.max_contexts = max_contexts

    @staticmethod
    def count_contexts(candidates: Sequence[Any]) -> int:
        contexts = {
            item.get("context")
            for item in candidates
            if isinstance(item, dict) and item.get("context")
        }
        return len(contexts)

    @staticmethod
    def has_context_filter(listing_step: Optional[ExecutionStep]) -> bool:
        if listing_step is None:
            return False
        value = (listing_step.parameters or {}).get("context")
        return value not in (None, "", [])

    def check(self, candidates: Sequence[Any], listing_step: Optional[ExecutionStep]) -> None:
        """Validate a bulk candidate set.

        Raises:
            SafetyViolationError: if the set exceeds the thresholds and the
                listing step was not filtered by context
        """
        total = len(candidates)
        contexts = self.count_contexts(candidates)

        if total <= self.max_items and contexts <= self.max_contexts:
            return

        if self.has_context_filter(listing_step):
            logger.info(
                "Large bulk operation allowed by context filter",
                item_count=total,
                context_count=contexts,
                context_filter=listing_step.parameters.get("context"),
            )
            return

        logger.warning(
            "Bulk operation blocked",
            item_count=total,
            context_count=contexts,
            max_items=self.max_items,
            max_contexts=self.max_contexts,
        )
        raise SafetyViolationError(
            f"Safety check failed: bulk operation would affect {total} items "
            f"across {contexts} contexts. Filter the listing by context first.",
            item_count=total,
            context_count=contexts,
        )
