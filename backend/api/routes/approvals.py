"""Approval endpoints: list pending requests and answer the latest one."""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends

from api.schemas.run import ApprovalAnswer, ApprovalListResponse, ApprovalResponse
from app.dependencies import get_approval_registry
from core.exceptions import NotFoundError
from workflow.approval import ApprovalRegistry, ApprovalRequest

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["approvals"])


def _approval_to_response(request: ApprovalRequest) -> ApprovalResponse:
    return ApprovalResponse(
        id=request.id,
        plan_id=request.plan_id,
        step_id=request.step_id,
        action=request.action,
        message=request.message,
        options=list(request.options),
        risk_level=request.risk_level.value,
        approved=request.approved,
        response=request.response,
        created_at=request.created_at,
        expires_at=request.expires_at,
    )


def _answer(
    registry: ApprovalRegistry,
    user_id: str,
    approved: bool,
    body: Optional[ApprovalAnswer],
) -> ApprovalResponse:
    response = body.response if body else None
    resolved = registry.resolve_latest(user_id, approved, response)
    if resolved is None:
        raise NotFoundError(f"No pending approval requests for user {user_id}")
    logger.info("Approval answered", user_id=user_id, request_id=resolved.id, approved=approved)
    return _approval_to_response(resolved)


@router.get("/{user_id}", response_model=ApprovalListResponse)
async def list_pending_approvals(
    user_id: str,
    registry: ApprovalRegistry = Depends(get_approval_registry),
) -> ApprovalListResponse:
    """
    List a user's pending approval requests, oldest first.
    """
    pending = registry.pending(user_id)
    return ApprovalListResponse(
        approvals=[_approval_to_response(r) for r in pending],
        total=len(pending),
    )


@router.post("/{user_id}/approve", response_model=ApprovalResponse)
async def approve_latest(
    user_id: str,
    body: Optional[ApprovalAnswer] = None,
    registry: ApprovalRegistry = Depends(get_approval_registry),
) -> ApprovalResponse:
    """
    Approve the user's most recent pending request.
    """
    return _answer(registry, user_id, True, body)


@router.post("/{user_id}/deny", response_model=ApprovalResponse)
async def deny_latest(
    user_id: str,
    body: Optional[ApprovalAnswer] = None,
    registry: ApprovalRegistry = Depends(get_approval_registry),
) -> ApprovalResponse:
    """
    Deny the user's most recent pending request.
    """
    return _answer(registry, user_id, False, body)
