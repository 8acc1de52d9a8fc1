"""
Proposal submission route (proposal source entry point).

The agent posts a candidate action; the guardrails decide whether it
executes now or waits in the approval queue.

SECURITY:
- tenant_id from the agent's JWT only
- Requires PROPOSALS_SUBMIT (automation_agent service account)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from autopilot.api.dependencies import get_action_executor
from autopilot.api.schemas.pending_approvals import ProposalRequest, ProposalResponse
from autopilot.constants.permissions import Permission
from autopilot.database.session import get_db_session
from autopilot.governance.guardrails import ProposalCandidate
from autopilot.platform.tenant_context import get_tenant_context, require_permission
from autopilot.services.approval_coordinator import ApprovalCoordinator
from autopilot.services.governance_errors import InvalidArgumentError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/proposals", tags=["proposals"])

check_submit_permission = require_permission(
    Permission.PROPOSALS_SUBMIT,
    "You do not have permission to submit proposals",
)


@router.post(
    "",
    response_model=ProposalResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(check_submit_permission)],
)
async def submit_proposal(
    request: Request,
    body: ProposalRequest,
    db_session=Depends(get_db_session),
    executor=Depends(get_action_executor),
):
    """
    Submit a candidate action.

    Returns the verdict and the approval record id. Malformed candidates
    answer 400.
    """
    tenant_ctx = get_tenant_context(request)

    candidate = ProposalCandidate(
        action_type=body.action_type,
        credit_cost=body.credit_cost,
        payload=body.payload,
        reasoning=body.reasoning,
        estimated_impact=body.estimated_impact,
        entity_id=body.entity_id,
        entity_type=body.entity_type,
        priority=body.priority,
        rule_id=body.rule_id,
        catalog_size=body.catalog_size,
        cooldown_seconds=body.cooldown_seconds,
    )

    coordinator = ApprovalCoordinator(db_session, tenant_ctx.tenant_id, executor)
    try:
        result = await coordinator.submit_proposal(candidate)
    except InvalidArgumentError as e:
        db_session.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    db_session.commit()

    return ProposalResponse(
        verdict=result.verdict.value,
        rule=result.decision.rule.value,
        reason=result.decision.reason,
        approval_id=result.approval.id,
        deduplicated=result.deduplicated,
        executed_action_id=result.approval.executed_action_id,
        execution_error=result.execution_error,
    )
