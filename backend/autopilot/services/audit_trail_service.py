"""
Audit trail for approval transitions.

Append-only: entries are added and read, never updated or deleted.
Also backs the executed-action history (GET /api/autonomous-actions),
which is a projection of entries that carry an executed action id.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from autopilot.models.approval_audit import SYSTEM_ACTOR, ApprovalAuditEntry, AuditEvent
from autopilot.models.pending_approval import (
    ApprovalActionType,
    ApprovalStatus,
    PendingApproval,
)

logger = logging.getLogger(__name__)


@dataclass
class ExecutedActionRecord:
    """One executed action, joined with the approval that authorized it."""
    audit_id: str
    approval_id: str
    executed_action_id: str
    action_type: ApprovalActionType
    entity_id: Optional[str]
    entity_type: Optional[str]
    credit_cost: int
    actor: str
    event: AuditEvent
    performed_at: datetime
    approved_by: Optional[str] = None

    @property
    def autonomous(self) -> bool:
        """Cleared by the guardrails, whoever later retried the execution."""
        return self.approved_by == SYSTEM_ACTOR


class AuditTrailService:
    """
    Tenant-scoped audit trail.

    SECURITY: tenant_id from JWT only.
    """

    def __init__(self, db_session: Session, tenant_id: str):
        if not tenant_id:
            raise ValueError("tenant_id is required")

        self.db = db_session
        self.tenant_id = tenant_id

    def record_transition(
        self,
        approval_id: str,
        event: AuditEvent,
        to_status: ApprovalStatus,
        actor: str,
        from_status: Optional[ApprovalStatus] = None,
        executed_action_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ApprovalAuditEntry:
        entry = ApprovalAuditEntry.create_entry(
            tenant_id=self.tenant_id,
            approval_id=approval_id,
            event=event,
            to_status=to_status,
            actor=actor,
            from_status=from_status,
            executed_action_id=executed_action_id,
            reason=reason,
        )
        self.db.add(entry)
        self.db.flush()

        logger.info(
            "Approval audit recorded",
            extra={
                "tenant_id": self.tenant_id,
                "approval_id": approval_id,
                "event": event.value,
                "user_id": actor,
                "executed_action_id": executed_action_id,
            },
        )
        return entry

    def get_trail(self, approval_id: str) -> list[ApprovalAuditEntry]:
        """All entries for an approval, oldest first."""
        return (
            self.db.query(ApprovalAuditEntry)
            .filter(
                ApprovalAuditEntry.tenant_id == self.tenant_id,
                ApprovalAuditEntry.approval_id == approval_id,
            )
            .order_by(ApprovalAuditEntry.performed_at.asc())
            .all()
        )

    def list_executed_actions(
        self,
        action_type: Optional[ApprovalActionType] = None,
        autonomous_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ExecutedActionRecord], int]:
        """
        Executed-action history, newest first.

        Returns:
            Tuple of (records, total_count)
        """
        query = (
            self.db.query(ApprovalAuditEntry, PendingApproval)
            .join(PendingApproval, PendingApproval.id == ApprovalAuditEntry.approval_id)
            .filter(
                ApprovalAuditEntry.tenant_id == self.tenant_id,
                PendingApproval.tenant_id == self.tenant_id,
                ApprovalAuditEntry.executed_action_id.isnot(None),
            )
        )
        if action_type is not None:
            query = query.filter(PendingApproval.action_type == action_type)
        if autonomous_only:
            query = query.filter(PendingApproval.reviewed_by == SYSTEM_ACTOR)

        total = query.count()
        rows = (
            query.order_by(ApprovalAuditEntry.performed_at.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

        records = [
            ExecutedActionRecord(
                audit_id=entry.id,
                approval_id=approval.id,
                executed_action_id=entry.executed_action_id,
                action_type=approval.action_type,
                entity_id=approval.entity_id,
                entity_type=approval.entity_type,
                credit_cost=approval.credit_cost,
                actor=entry.actor,
                event=entry.event,
                performed_at=entry.performed_at,
                approved_by=approval.reviewed_by,
            )
            for entry, approval in rows
        ]
        return records, total
