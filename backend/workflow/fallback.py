"""Fallback strategy: one retry of a failed step under its declared substitute action."""

from dataclasses import dataclass
from typing import Any, Optional

import structlog

from core.exceptions import is_step_fatal
from workflow.plan import ExecutionStep

logger = structlog.get_logger(__name__)


@dataclass
class FallbackResult:
    """Outcome of a fallback attempt."""
    recovered: bool
    action: str
    result: Any = None
    error: Optional[str] = None


class FallbackStrategy:
    """Re-dispatches a failed step once with ``fallback_action`` substituted.

    The same action is never retried and a fallback's own fallback is never
    followed.
    """

    def __init__(self, dispatcher):
        self.dispatcher = dispatcher

    @staticmethod
    def applies(step: ExecutionStep, error: BaseException) -> bool:
        if is_step_fatal(error):
            return False
        return bool(step.fallback_action) and step.fallback_action != step.action

    async def run(self, step: ExecutionStep, state) -> FallbackResult:
        action = step.fallback_action
        substitute = step.with_action(action, f"Fallback: {action}")
        logger.info("Attempting fallback action", step_id=step.id, fallback_action=action)

        try:
            result = await self.dispatcher.dispatch(substitute, state)
        except Exception as e:
            logger.error("Fallback action also failed", step_id=step.id, fallback_action=action, error=str(e))
            return FallbackResult(recovered=False, action=action, error=str(e))

        logger.info("Fallback action succeeded", step_id=step.id, fallback_action=action)
        return FallbackResult(recovered=True, action=action, result=result)
