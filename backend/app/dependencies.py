"""FastAPI dependency injection functions.

The approval registry and the run store are process-wide singletons; tests
replace them through ``app.dependency_overrides``.
"""

from functools import lru_cache

from fastapi import Depends

from app.config import Settings, get_settings
from integrations.claude_client import get_claude_client
from integrations.notifier import FanOutSink, MemorySink, WebhookSink
from integrations.todo_client import get_todo_client
from workflow.approval import ApprovalGate, ApprovalRegistry
from workflow.bulk_guard import BulkSafetyGuard
from workflow.dispatcher import ActionDispatcher
from workflow.executor import StepExecutor
from workflow.progress import ProgressReporter
from workflow.runner import PlanRunner, RunStore


@lru_cache()
def get_approval_registry() -> ApprovalRegistry:
    return ApprovalRegistry()


@lru_cache()
def get_run_store() -> RunStore:
    return RunStore()


def get_action_client():
    return get_todo_client()


def get_analysis_service():
    return get_claude_client()


class RunnerFactory:
    """Builds a ``PlanRunner`` per run, wired to that run's progress sink."""

    def __init__(self, settings: Settings, registry: ApprovalRegistry, client, analysis):
        self.settings = settings
        self.registry = registry
        self.client = client
        self.analysis = analysis

    def sink_for(self, user_id: str, messages: MemorySink):
        if self.settings.PROGRESS_WEBHOOK_URL:
            return FanOutSink(messages, WebhookSink(self.settings.PROGRESS_WEBHOOK_URL, user_id=user_id))
        return messages

    def build(self, user_id: str, messages: MemorySink) -> PlanRunner:
        settings = self.settings
        dispatcher = ActionDispatcher(
            self.client,
            analysis=self.analysis,
            guard=BulkSafetyGuard(settings.BULK_MAX_ITEMS, settings.BULK_MAX_CONTEXTS),
            analysis_todo_limit=settings.ANALYSIS_TODO_LIMIT,
        )
        gate = ApprovalGate(
            self.registry,
            timeout_seconds=settings.APPROVAL_TIMEOUT_SECONDS,
            deny_expired=settings.deny_expired_approvals,
        )
        reporter = ProgressReporter(self.sink_for(user_id, messages))
        return PlanRunner(StepExecutor(dispatcher, gate, reporter))


def get_runner_factory(
    settings: Settings = Depends(get_settings),
    registry: ApprovalRegistry = Depends(get_approval_registry),
    client=Depends(get_action_client),
    analysis=Depends(get_analysis_service),
) -> RunnerFactory:
    return RunnerFactory(settings, registry, client, analysis)
