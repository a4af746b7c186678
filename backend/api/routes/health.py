"""Health check endpoints."""

import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from app.config import Settings, get_settings
from app.dependencies import get_approval_registry, get_run_store
from workflow.approval import ApprovalRegistry
from workflow.runner import RunStore

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("", response_model=dict[str, Any])
async def health(
    settings: Settings = Depends(get_settings),
    registry: ApprovalRegistry = Depends(get_approval_registry),
    store: RunStore = Depends(get_run_store),
) -> dict[str, Any]:
    """
    Liveness check with in-memory store counters.
    """
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "status": "ok",
        "started_at": _start_datetime,
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "approvals": registry.get_status(),
        "runs": store.count(),
    }
