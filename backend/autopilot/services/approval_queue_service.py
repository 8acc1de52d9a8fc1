"""
Approval queue and state machine.

Persists proposals and performs their status transitions.

KEY PRINCIPLES:
- pending -> approved | rejected, both terminal
- A transition is ONE compare-and-set UPDATE guarded by status = 'pending'.
  Concurrent reviewers of the same id produce exactly one winner.
- Application code never assigns status on a loaded instance
- executed_action_id is written once, guarded by IS NULL
- Audit entries are written by the caller (ApprovalCoordinator)

SECURITY:
- Tenant isolation via tenant_id in all queries
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from autopilot.governance.guardrails import (
    CATALOG_ACTIONS,
    ProposalCandidate,
    candidate_entity_id,
    candidate_rule_id,
)
from autopilot.governance.recipients import RecipientKey
from autopilot.models.approval_audit import SYSTEM_ACTOR
from autopilot.models.pending_approval import (
    DEFAULT_ENTITY_TYPES,
    PRIORITY_RANK,
    ApprovalActionType,
    ApprovalPriority,
    ApprovalStatus,
    MessageChannel,
    PendingApproval,
)
from autopilot.services.governance_errors import AlreadyReviewedError, NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

_PRIORITY_ORDER = case(
    *[(PendingApproval.priority == priority, rank) for priority, rank in PRIORITY_RANK.items()],
    else_=0,
)


def _parse_priority(value) -> ApprovalPriority:
    try:
        return ApprovalPriority(value) if value else ApprovalPriority.MEDIUM
    except ValueError:
        return ApprovalPriority.MEDIUM


class ApprovalQueueService:
    """
    Tenant-scoped approval records.

    Writes flush but never commit; routes and jobs own the transaction.
    """

    def __init__(
        self,
        db_session: Session,
        tenant_id: str,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not tenant_id:
            raise ValueError("tenant_id is required")

        self.db = db_session
        self.tenant_id = tenant_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _query(self):
        return self.db.query(PendingApproval).filter(PendingApproval.tenant_id == self.tenant_id)

    # =========================================================================
    # Reads
    # =========================================================================

    def find(self, approval_id: str) -> Optional[PendingApproval]:
        return (
            self._query()
            .filter(PendingApproval.id == approval_id)
            .populate_existing()
            .first()
        )

    def get(self, approval_id: str) -> PendingApproval:
        """
        Raises:
            NotFoundError: If the id does not exist in this tenant
        """
        approval = self.find(approval_id)
        if approval is None:
            raise NotFoundError(f"Approval not found: {approval_id}")
        return approval

    def list_approvals(
        self,
        status: Optional[ApprovalStatus] = None,
        action_type: Optional[ApprovalActionType] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> tuple[list[PendingApproval], int]:
        """
        List approvals, highest priority first, then newest first.

        Returns:
            Tuple of (approvals, total_count)
        """
        query = self._query()
        if status is not None:
            query = query.filter(PendingApproval.status == status)
        if action_type is not None:
            query = query.filter(PendingApproval.action_type == action_type)

        total = query.count()
        items = (
            query.order_by(
                _PRIORITY_ORDER.desc(),
                PendingApproval.created_at.desc(),
                PendingApproval.id.desc(),
            )
            .limit(min(limit, MAX_PAGE_SIZE))
            .offset(offset)
            .all()
        )
        return items, total

    def pending_count(self) -> int:
        return self._query().filter(PendingApproval.status == ApprovalStatus.PENDING).count()

    def find_pending_duplicate(
        self,
        action_type: ApprovalActionType,
        recipient: RecipientKey,
    ) -> Optional[PendingApproval]:
        """Existing pending send of the same action to the same recipient and channel."""
        query = self._query().filter(
            PendingApproval.status == ApprovalStatus.PENDING,
            PendingApproval.action_type == action_type,
            PendingApproval.channel == recipient.channel,
        )
        if recipient.channel == MessageChannel.EMAIL:
            query = query.filter(PendingApproval.recipient_email == recipient.email)
        else:
            query = query.filter(PendingApproval.recipient_phone == recipient.phone)
        return query.first()

    def catalog_entities_changed_since(self, since: datetime) -> frozenset:
        """Products touched by approved SEO or price actions reviewed at or after since."""
        rows = (
            self._query()
            .with_entities(PendingApproval.entity_id)
            .filter(
                PendingApproval.status == ApprovalStatus.APPROVED,
                PendingApproval.action_type.in_(CATALOG_ACTIONS),
                PendingApproval.entity_id.isnot(None),
                PendingApproval.reviewed_at >= since,
            )
            .distinct()
            .all()
        )
        return frozenset(entity_id for (entity_id,) in rows)

    def last_rule_change_at(self, rule_id: str, entity_id: str) -> Optional[datetime]:
        """When an approved action of this rule last touched this entity."""
        return (
            self._query()
            .with_entities(func.max(PendingApproval.reviewed_at))
            .filter(
                PendingApproval.status == ApprovalStatus.APPROVED,
                PendingApproval.rule_id == rule_id,
                PendingApproval.entity_id == entity_id,
            )
            .scalar()
        )

    # =========================================================================
    # Creation
    # =========================================================================

    def _build(
        self,
        candidate: ProposalCandidate,
        action_type: ApprovalActionType,
        recipient: Optional[RecipientKey],
    ) -> PendingApproval:
        payload = dict(candidate.payload)

        approval = PendingApproval(
            tenant_id=self.tenant_id,
            action_type=action_type,
            entity_id=candidate_entity_id(candidate, action_type),
            entity_type=candidate.entity_type or DEFAULT_ENTITY_TYPES[action_type],
            rule_id=candidate_rule_id(candidate),
            recommended_action=payload,
            ai_reasoning=candidate.reasoning,
            estimated_impact=candidate.estimated_impact,
            credit_cost=candidate.credit_cost,
            priority=_parse_priority(candidate.priority),
            execution_attempts=0,
            execution_retryable=True,
        )
        if recipient is not None:
            approval.channel = recipient.channel
            # Only the address on the chosen channel takes part in de-duplication
            if recipient.channel == MessageChannel.EMAIL:
                approval.recipient_email = recipient.email
            else:
                approval.recipient_phone = recipient.phone
        return approval

    def create_pending(
        self,
        candidate: ProposalCandidate,
        action_type: ApprovalActionType,
        recipient: Optional[RecipientKey] = None,
    ) -> tuple[PendingApproval, bool]:
        """
        Queue a proposal for human review.

        Customer-facing sends are de-duplicated by recipient and channel.

        Returns:
            Tuple of (approval, created). created is False when an existing
            pending send to the same recipient was returned instead.
        """
        if recipient is not None:
            existing = self.find_pending_duplicate(action_type, recipient)
            if existing:
                return existing, False

        approval = self._build(candidate, action_type, recipient)
        approval.status = ApprovalStatus.PENDING

        try:
            with self.db.begin_nested():
                self.db.add(approval)
        except IntegrityError:
            if recipient is None:
                raise
            # Lost a race with an identical send
            existing = self.find_pending_duplicate(action_type, recipient)
            if existing is None:
                raise
            return existing, False

        logger.info(
            "Approval queued",
            extra={
                "tenant_id": self.tenant_id,
                "approval_id": approval.id,
                "action_type": action_type.value,
            },
        )
        return approval, True

    def create_auto_approved(
        self,
        candidate: ProposalCandidate,
        action_type: ApprovalActionType,
        recipient: Optional[RecipientKey] = None,
    ) -> PendingApproval:
        """Record an autonomous execution as approved-at-creation by the system."""
        approval = self._build(candidate, action_type, recipient)
        approval.status = ApprovalStatus.APPROVED
        approval.reviewed_at = self._clock()
        approval.reviewed_by = SYSTEM_ACTOR

        self.db.add(approval)
        self.db.flush()
        return approval

    # =========================================================================
    # Transitions
    # =========================================================================

    def transition(
        self,
        approval_id: str,
        to_status: ApprovalStatus,
        reviewer: str,
    ) -> PendingApproval:
        """
        Move a pending approval to a terminal status.

        Raises:
            ValueError: If to_status is not terminal
            NotFoundError: If the id does not exist in this tenant
            AlreadyReviewedError: If the approval is no longer pending
        """
        if to_status == ApprovalStatus.PENDING:
            raise ValueError("Cannot transition to pending")

        updated = (
            self._query()
            .filter(
                PendingApproval.id == approval_id,
                PendingApproval.status == ApprovalStatus.PENDING,
            )
            .update(
                {
                    PendingApproval.status: to_status,
                    PendingApproval.reviewed_at: self._clock(),
                    PendingApproval.reviewed_by: reviewer,
                },
                synchronize_session=False,
            )
        )

        approval = self.get(approval_id)
        if not updated:
            raise AlreadyReviewedError(approval_id, approval.status.value)

        logger.info(
            "Approval transitioned",
            extra={
                "tenant_id": self.tenant_id,
                "approval_id": approval_id,
                "to_status": to_status.value,
                "user_id": reviewer,
            },
        )
        return approval

    def record_execution_success(self, approval_id: str, executed_action_id: str) -> bool:
        """
        Link the executed action. Written once.

        Returns:
            False if an execution was already linked
        """
        updated = (
            self._query()
            .filter(
                PendingApproval.id == approval_id,
                PendingApproval.status == ApprovalStatus.APPROVED,
                PendingApproval.executed_action_id.is_(None),
            )
            .update(
                {
                    PendingApproval.executed_action_id: executed_action_id,
                    PendingApproval.execution_error: None,
                    PendingApproval.execution_attempts: PendingApproval.execution_attempts + 1,
                    PendingApproval.last_execution_attempt_at: self._clock(),
                },
                synchronize_session=False,
            )
        )
        return updated == 1

    def record_execution_failure(self, approval_id: str, error: str, retryable: bool = True) -> None:
        """
        Record an executor failure. The approval decision is left intact.

        A non-retryable failure (the executor rejected the action) takes the
        approval out of the retry worker's scope.
        """
        (
            self._query()
            .filter(
                PendingApproval.id == approval_id,
                PendingApproval.executed_action_id.is_(None),
            )
            .update(
                {
                    PendingApproval.execution_error: error[:2000],
                    PendingApproval.execution_retryable: retryable,
                    PendingApproval.execution_attempts: PendingApproval.execution_attempts + 1,
                    PendingApproval.last_execution_attempt_at: self._clock(),
                },
                synchronize_session=False,
            )
        )
        logger.warning(
            "Execution failed for approved action",
            extra={
                "tenant_id": self.tenant_id,
                "approval_id": approval_id,
                "error": error,
                "retryable": retryable,
            },
        )
