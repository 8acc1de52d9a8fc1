"""
Pydantic schemas for the pending approvals, autonomous actions and
proposals APIs.

Request and response models use camelCase JSON aliases.
"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import Field

from autopilot.api.schemas.base import CamelModel


# =============================================================================
# Approvals
# =============================================================================


class PendingApprovalResponse(CamelModel):
    """A proposed action and the decision on it."""

    id: str = Field(..., description="Unique approval identifier")
    action_type: str = Field(..., description="optimize_seo, send_campaign, send_cart_recovery, adjust_price")
    entity_id: Optional[str] = Field(None, description="Affected resource ID")
    entity_type: Optional[str] = Field(None, description="product, campaign, cart, customer")
    recommended_action: dict = Field(..., description="Payload executed if approved")
    ai_reasoning: str = Field(..., description="Why the agent recommends this action")
    estimated_impact: Optional[dict] = Field(None, description="Predicted metric changes")
    credit_cost: int = Field(..., description="Credits consumed if executed autonomously")
    priority: str = Field(..., description="low, medium, high, urgent")
    status: str = Field(..., description="pending, approved, rejected")
    channel: Optional[str] = Field(None, description="email or sms for customer-facing sends")
    created_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = Field(None, description="Reviewer user ID, or 'system'")
    executed_action_id: Optional[str] = Field(None, description="Set once the executor succeeds")
    execution_error: Optional[str] = Field(None, description="Last executor failure")
    execution_attempts: int = 0
    execution_retryable: bool = Field(True, description="False once the executor rejected the action permanently")


class PendingApprovalsListResponse(CamelModel):
    approvals: List[PendingApprovalResponse]
    total: int = Field(..., description="Total count of matching approvals")
    has_more: bool = Field(..., description="Whether more results are available")
    pending_count: int = Field(0, description="Count of approvals awaiting a decision")


class ApprovalDecisionResponse(CamelModel):
    """Response for approve, reject and retry-execution."""

    success: bool = True
    already_reviewed: bool = Field(False, description="The approval had already been decided; nothing changed")
    approval: PendingApprovalResponse
    execution_error: Optional[str] = Field(None, description="Executor failure, recorded for retry")


class RejectRequest(CamelModel):
    reason: Optional[str] = Field(None, max_length=500, description="Optional rejection reason")


class BulkRequest(CamelModel):
    ids: List[str] = Field(..., description="Approval IDs, 1 to 100")
    reason: Optional[str] = Field(None, max_length=500, description="Rejection reason (bulk-reject only)")


class BulkFailureResponse(CamelModel):
    id: str
    reason: str


class BulkResponse(CamelModel):
    succeeded: List[str] = Field(default_factory=list)
    already_reviewed: List[str] = Field(default_factory=list)
    failed: List[BulkFailureResponse] = Field(default_factory=list)


# =============================================================================
# Audit
# =============================================================================


class AuditEntryResponse(CamelModel):
    id: str
    event: str = Field(..., description="created, auto_approved, approved, rejected, execution_retried")
    from_status: Optional[str] = None
    to_status: str
    actor: str = Field(..., description="'system' or the reviewing user's ID")
    executed_action_id: Optional[str] = None
    reason: Optional[str] = None
    performed_at: datetime


class AuditTrailResponse(CamelModel):
    approval_id: str
    entries: List[AuditEntryResponse] = Field(..., description="Entries in chronological order")


class ExecutedActionResponse(CamelModel):
    approval_id: str
    executed_action_id: str
    action_type: str
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    credit_cost: int
    actor: str
    autonomous: bool = Field(..., description="Executed without human approval")
    executed_at: datetime


class ExecutedActionsListResponse(CamelModel):
    actions: List[ExecutedActionResponse]
    total: int
    has_more: bool


# =============================================================================
# Proposals
# =============================================================================


class ProposalRequest(CamelModel):
    """
    Candidate action from the proposal source.

    Fields are loosely typed on purpose: malformed candidates are denied by
    the guardrail evaluator with a 400, not rejected by schema validation.
    """

    action_type: Any
    credit_cost: Any = 0
    payload: Any = Field(default_factory=dict)
    reasoning: Any = None
    estimated_impact: Optional[dict] = None
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    priority: Optional[str] = None
    rule_id: Optional[str] = Field(None, description="Proposal source rule that generated the action")
    catalog_size: Any = Field(None, description="Store product count; enables the catalog change limit")
    cooldown_seconds: Any = Field(None, description="Per-rule cooldown override, default 24h")


class ProposalResponse(CamelModel):
    verdict: str = Field(..., description="allow_autonomous or require_approval")
    rule: str = Field(..., description="Guardrail rule that decided")
    reason: str
    approval_id: str
    deduplicated: bool = Field(False, description="An identical pending send already existed")
    executed_action_id: Optional[str] = None
    execution_error: Optional[str] = None
