"""
Executed actions history.

Lists every action the executor performed for the tenant, autonomous or
human-approved, as recorded in the approval audit trail.

SECURITY:
- All routes require valid tenant context from JWT
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from autopilot.api.schemas.pending_approvals import (
    ExecutedActionResponse,
    ExecutedActionsListResponse,
)
from autopilot.constants.permissions import Permission
from autopilot.database.session import get_db_session
from autopilot.models.pending_approval import ApprovalActionType
from autopilot.platform.tenant_context import get_tenant_context, require_permission
from autopilot.services.audit_trail_service import AuditTrailService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/autonomous-actions", tags=["autonomous-actions"])

check_audit_permission = require_permission(
    Permission.APPROVALS_AUDIT,
    "You do not have permission to view executed actions",
)


@router.get(
    "",
    response_model=ExecutedActionsListResponse,
    dependencies=[Depends(check_audit_permission)],
)
async def list_executed_actions(
    request: Request,
    db_session=Depends(get_db_session),
    action_type: Optional[str] = Query(None, alias="actionType", description="Filter by action type"),
    autonomous_only: bool = Query(False, alias="autonomousOnly", description="Only actions executed without approval"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Executed-action history, newest first."""
    tenant_ctx = get_tenant_context(request)

    action_type_enum = None
    if action_type:
        try:
            action_type_enum = ApprovalActionType(action_type)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid action type: {action_type}",
            )

    records, total = AuditTrailService(db_session, tenant_ctx.tenant_id).list_executed_actions(
        action_type=action_type_enum,
        autonomous_only=autonomous_only,
        limit=limit,
        offset=offset,
    )

    return ExecutedActionsListResponse(
        actions=[
            ExecutedActionResponse(
                approval_id=r.approval_id,
                executed_action_id=r.executed_action_id,
                action_type=r.action_type.value,
                entity_id=r.entity_id,
                entity_type=r.entity_type,
                credit_cost=r.credit_cost,
                actor=r.actor,
                autonomous=r.autonomous,
                executed_at=r.performed_at,
            )
            for r in records
        ],
        total=total,
        has_more=offset + len(records) < total,
    )
