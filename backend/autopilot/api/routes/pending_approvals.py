"""
Pending approvals API routes.

Provides endpoints for:
- Listing and reading approvals
- Approving/rejecting a single approval
- Bulk approve/reject
- Retrying execution of an approved action
- Viewing an approval's audit trail

SECURITY:
- All routes require valid tenant context from JWT
- Approvals are tenant-scoped; an id from another tenant is "not found"
- Only MERCHANT_ADMIN, AGENCY_ADMIN and SUPER_ADMIN can decide

Deciding an approval twice is not an error: the second call answers 200
with alreadyReviewed=true and changes nothing.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from autopilot.api.dependencies import get_action_executor
from autopilot.api.schemas.pending_approvals import (
    ApprovalDecisionResponse,
    AuditEntryResponse,
    AuditTrailResponse,
    BulkFailureResponse,
    BulkRequest,
    BulkResponse,
    PendingApprovalResponse,
    PendingApprovalsListResponse,
    RejectRequest,
)
from autopilot.constants.permissions import Permission
from autopilot.database.session import get_db_session
from autopilot.models.approval_audit import ApprovalAuditEntry
from autopilot.models.pending_approval import (
    ApprovalActionType,
    ApprovalStatus,
    PendingApproval,
)
from autopilot.platform.tenant_context import get_tenant_context, require_permission
from autopilot.services.approval_coordinator import (
    ApprovalCoordinator,
    BulkResult,
    ReviewOutcome,
)
from autopilot.services.approval_queue_service import ApprovalQueueService
from autopilot.services.audit_trail_service import AuditTrailService
from autopilot.services.governance_errors import (
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pending-approvals", tags=["pending-approvals"])

check_view_permission = require_permission(
    Permission.APPROVALS_VIEW,
    "You do not have permission to view pending approvals",
)
check_decide_permission = require_permission(
    Permission.APPROVALS_DECIDE,
    "You do not have permission to approve or reject actions",
)
check_audit_permission = require_permission(
    Permission.APPROVALS_AUDIT,
    "You do not have permission to view the audit trail",
)
check_execute_permission = require_permission(
    Permission.APPROVALS_EXECUTE,
    "You do not have permission to execute approved actions",
)


# =============================================================================
# Helper Functions
# =============================================================================


def approval_to_response(approval: PendingApproval) -> PendingApprovalResponse:
    """Convert PendingApproval model to response model."""
    return PendingApprovalResponse(
        id=approval.id,
        action_type=approval.action_type.value,
        entity_id=approval.entity_id,
        entity_type=approval.entity_type,
        recommended_action=approval.recommended_action or {},
        ai_reasoning=approval.ai_reasoning,
        estimated_impact=approval.estimated_impact,
        credit_cost=approval.credit_cost,
        priority=approval.priority.value,
        status=approval.status.value,
        channel=approval.channel.value if approval.channel else None,
        created_at=approval.created_at,
        reviewed_at=approval.reviewed_at,
        reviewed_by=approval.reviewed_by,
        executed_action_id=approval.executed_action_id,
        execution_error=approval.execution_error,
        execution_attempts=approval.execution_attempts or 0,
        execution_retryable=approval.execution_retryable is not False,
    )


def _audit_to_response(entry: ApprovalAuditEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        event=entry.event.value,
        from_status=entry.from_status.value if entry.from_status else None,
        to_status=entry.to_status.value,
        actor=entry.actor,
        executed_action_id=entry.executed_action_id,
        reason=entry.reason,
        performed_at=entry.performed_at,
    )


def _outcome_to_response(outcome: ReviewOutcome) -> ApprovalDecisionResponse:
    return ApprovalDecisionResponse(
        success=True,
        already_reviewed=outcome.already_reviewed,
        approval=approval_to_response(outcome.approval),
        execution_error=outcome.execution_error,
    )


def _bulk_to_response(result: BulkResult) -> BulkResponse:
    return BulkResponse(
        succeeded=result.succeeded,
        already_reviewed=result.already_reviewed,
        failed=[BulkFailureResponse(id=f.id, reason=f.reason) for f in result.failed],
    )


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Approval not found")


# =============================================================================
# Routes
# =============================================================================


@router.get(
    "",
    response_model=PendingApprovalsListResponse,
    dependencies=[Depends(check_view_permission)],
)
async def list_pending_approvals(
    request: Request,
    db_session=Depends(get_db_session),
    status_filter: Optional[str] = Query(None, alias="status", description="pending, approved, rejected"),
    action_type: Optional[str] = Query(None, alias="actionType", description="Filter by action type"),
    limit: int = Query(50, ge=1, le=100, description="Maximum approvals to return"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
):
    """
    List approvals for the current tenant, highest priority then newest first.

    SECURITY: Only returns approvals belonging to the authenticated tenant.
    """
    tenant_ctx = get_tenant_context(request)

    status_enum = None
    if status_filter:
        try:
            status_enum = ApprovalStatus(status_filter)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status: {status_filter}",
            )

    action_type_enum = None
    if action_type:
        try:
            action_type_enum = ApprovalActionType(action_type)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid action type: {action_type}",
            )

    service = ApprovalQueueService(db_session, tenant_ctx.tenant_id)
    approvals, total = service.list_approvals(
        status=status_enum,
        action_type=action_type_enum,
        limit=limit,
        offset=offset,
    )

    return PendingApprovalsListResponse(
        approvals=[approval_to_response(a) for a in approvals],
        total=total,
        has_more=offset + len(approvals) < total,
        pending_count=service.pending_count(),
    )


@router.post(
    "/bulk-approve",
    response_model=BulkResponse,
    dependencies=[Depends(check_decide_permission)],
)
async def bulk_approve(
    request: Request,
    body: BulkRequest,
    db_session=Depends(get_db_session),
    executor=Depends(get_action_executor),
):
    """
    Approve up to 100 approvals. Each id succeeds or fails on its own.
    """
    tenant_ctx = get_tenant_context(request)

    coordinator = ApprovalCoordinator(db_session, tenant_ctx.tenant_id, executor)
    try:
        result = await coordinator.bulk_approve(body.ids, reviewer=tenant_ctx.user_id)
    except InvalidArgumentError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    db_session.commit()

    return _bulk_to_response(result)


@router.post(
    "/bulk-reject",
    response_model=BulkResponse,
    dependencies=[Depends(check_decide_permission)],
)
async def bulk_reject(
    request: Request,
    body: BulkRequest,
    db_session=Depends(get_db_session),
):
    """
    Reject up to 100 approvals. Each id succeeds or fails on its own.
    """
    tenant_ctx = get_tenant_context(request)

    coordinator = ApprovalCoordinator(db_session, tenant_ctx.tenant_id, executor=None)
    try:
        result = coordinator.bulk_reject(body.ids, reviewer=tenant_ctx.user_id, reason=body.reason)
    except InvalidArgumentError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    db_session.commit()

    return _bulk_to_response(result)


@router.get(
    "/{approval_id}",
    response_model=PendingApprovalResponse,
    dependencies=[Depends(check_view_permission)],
)
async def get_pending_approval(
    request: Request,
    approval_id: str,
    db_session=Depends(get_db_session),
):
    """Get a single approval by ID."""
    tenant_ctx = get_tenant_context(request)

    try:
        approval = ApprovalQueueService(db_session, tenant_ctx.tenant_id).get(approval_id)
    except NotFoundError:
        raise _not_found()

    return approval_to_response(approval)


@router.post(
    "/{approval_id}/approve",
    response_model=ApprovalDecisionResponse,
    dependencies=[Depends(check_decide_permission)],
)
async def approve_pending_approval(
    request: Request,
    approval_id: str,
    db_session=Depends(get_db_session),
    executor=Depends(get_action_executor),
):
    """
    Approve an action and hand it to the executor.

    An executor failure does not undo the approval; it is recorded on the
    record (executionError) for retry.
    """
    tenant_ctx = get_tenant_context(request)

    coordinator = ApprovalCoordinator(db_session, tenant_ctx.tenant_id, executor)
    try:
        outcome = await coordinator.approve(approval_id, reviewer=tenant_ctx.user_id)
    except NotFoundError:
        raise _not_found()
    db_session.commit()

    logger.info(
        "Approval approved via API",
        extra={
            "tenant_id": tenant_ctx.tenant_id,
            "approval_id": approval_id,
            "user_id": tenant_ctx.user_id,
            "already_reviewed": outcome.already_reviewed,
        },
    )
    return _outcome_to_response(outcome)


@router.post(
    "/{approval_id}/reject",
    response_model=ApprovalDecisionResponse,
    dependencies=[Depends(check_decide_permission)],
)
async def reject_pending_approval(
    request: Request,
    approval_id: str,
    body: Optional[RejectRequest] = None,
    db_session=Depends(get_db_session),
):
    """Reject an action. The executor is never called."""
    tenant_ctx = get_tenant_context(request)

    coordinator = ApprovalCoordinator(db_session, tenant_ctx.tenant_id, executor=None)
    try:
        outcome = coordinator.reject(
            approval_id,
            reviewer=tenant_ctx.user_id,
            reason=body.reason if body else None,
        )
    except NotFoundError:
        raise _not_found()
    db_session.commit()

    logger.info(
        "Approval rejected via API",
        extra={
            "tenant_id": tenant_ctx.tenant_id,
            "approval_id": approval_id,
            "user_id": tenant_ctx.user_id,
            "already_reviewed": outcome.already_reviewed,
        },
    )
    return _outcome_to_response(outcome)


@router.post(
    "/{approval_id}/retry-execution",
    response_model=ApprovalDecisionResponse,
    dependencies=[Depends(check_execute_permission)],
)
async def retry_execution(
    request: Request,
    approval_id: str,
    db_session=Depends(get_db_session),
    executor=Depends(get_action_executor),
):
    """
    Re-run the executor for an approved action whose execution failed.

    Answers 503 if the executor fails again; the attempt is still recorded.
    """
    tenant_ctx = get_tenant_context(request)

    coordinator = ApprovalCoordinator(db_session, tenant_ctx.tenant_id, executor)
    try:
        outcome = await coordinator.retry_execution(approval_id, actor=tenant_ctx.user_id)
    except NotFoundError:
        raise _not_found()
    except InvalidArgumentError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    db_session.commit()

    if outcome.execution_error:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Executor unavailable: {outcome.execution_error}",
        )
    return _outcome_to_response(outcome)


@router.get(
    "/{approval_id}/audit",
    response_model=AuditTrailResponse,
    dependencies=[Depends(check_audit_permission)],
)
async def get_approval_audit_trail(
    request: Request,
    approval_id: str,
    db_session=Depends(get_db_session),
):
    """Audit trail of an approval, oldest first."""
    tenant_ctx = get_tenant_context(request)

    if ApprovalQueueService(db_session, tenant_ctx.tenant_id).find(approval_id) is None:
        raise _not_found()

    entries = AuditTrailService(db_session, tenant_ctx.tenant_id).get_trail(approval_id)
    return AuditTrailResponse(
        approval_id=approval_id,
        entries=[_audit_to_response(e) for e in entries],
    )
