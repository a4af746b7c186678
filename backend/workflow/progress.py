"""User-facing progress messages for a plan run."""

from typing import Optional

import structlog

from workflow.approval import ApprovalRequest
from workflow.plan import ExecutionStep

logger = structlog.get_logger(__name__)


def progress_bar(current: int, total: int, width: int = 10) -> str:
    """Text bar such as ``[███░░░░░░░] 30%``."""
    if total <= 0:
        return f"[{'░' * width}] 0%"
    ratio = min(max(current / total, 0.0), 1.0)
    filled = round(ratio * width)
    return f"[{'█' * filled}{'░' * (width - filled)}] {round(ratio * 100)}%"


class ProgressReporter:
    """Formats step events and hands them to a ``ProgressSink``.

    Delivery problems are logged and never interrupt the step.
    """

    def __init__(self, sink=None):
        self.sink = sink

    async def _send(self, text: str) -> None:
        if self.sink is None:
            return
        try:
            await self.sink.notify(text)
        except Exception as e:
            logger.warning("Progress notification failed", error=str(e))

    async def step_started(self, step: ExecutionStep, number: int, total: int) -> None:
        await self._send(
            f"🔄 Step {number}/{total}: {step.description}\n{progress_bar(number - 1, total)}"
        )

    async def step_completed(self, step: ExecutionStep, number: int, total: int) -> None:
        await self._send(f"✅ Completed: {step.description}\n{progress_bar(number, total)}")

    async def step_failed(self, step: ExecutionStep, number: int, total: int) -> None:
        await self._send(
            f"❌ Failed: {step.description}\n{progress_bar(number, total)}\nError: {step.error}"
        )

    async def step_skipped(self, step: ExecutionStep, number: int, total: int) -> None:
        await self._send(
            f"⏭️ Skipped: {step.description}\n{progress_bar(number, total)}\nReason: {step.error}"
        )

    async def step_recovered(self, step: ExecutionStep, number: int, total: int) -> None:
        await self._send(
            f"🔄 Recovered: {step.description}\n{progress_bar(number, total)}\nFallback action succeeded"
        )

    async def approval_requested(self, request: ApprovalRequest) -> None:
        await self._send(request.message)
        await self._send("💡 TIP: Use /approve to approve or /deny to deny this request.")

    async def approval_granted(self, step: ExecutionStep) -> None:
        await self._send(f"✅ APPROVED: {step.description}\n\nContinuing execution...")

    async def auto_approved(self, step: ExecutionStep) -> None:
        await self._send(f"✅ AUTO-APPROVED: {step.description}\n\nContinuing execution...")

    async def run_aborted(self, step: ExecutionStep, reason: Optional[str] = None) -> None:
        text = (
            f"❌ EXECUTION STOPPED\n\nStep \"{step.description}\" failed and I cannot "
            "continue safely. Please review the plan and try again."
        )
        if reason:
            text += f"\n\nError: {reason}"
        await self._send(text)
