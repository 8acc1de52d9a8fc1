"""
Approval audit model: the append-only record of what the agent did and who let it.

Every state transition of a PendingApproval (including guardrail-driven
auto-approvals and execution retries) appends exactly one entry.

SECURITY:
- Immutable records (no update/delete operations in code)
- Tenant isolation via TenantScopedMixin
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
)

from autopilot.db_base import Base
from autopilot.models.base import TenantScopedMixin, enum_values
from autopilot.models.pending_approval import ApprovalStatus


# Actor recorded for transitions performed by the guardrail evaluator
SYSTEM_ACTOR = "system"


class AuditEvent(str, enum.Enum):
    """Types of audit events that are recorded."""
    CREATED = "created"                 # Queued for human review
    AUTO_APPROVED = "auto_approved"     # Cleared by guardrails, executed autonomously
    APPROVED = "approved"               # Merchant approved
    REJECTED = "rejected"               # Merchant rejected
    EXECUTION_RETRIED = "execution_retried"  # Out-of-band executor retry


class ApprovalAuditEntry(Base, TenantScopedMixin):
    """
    Immutable audit trail entry for approval transitions.

    NOTE: This model intentionally does NOT inherit TimestampMixin
    because audit records only have performed_at (immutable).
    """

    __tablename__ = "approval_audit_entries"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Unique audit entry identifier (UUID)"
    )

    approval_id = Column(
        String(255),
        ForeignKey("pending_approvals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="ID of the approval this entry relates to"
    )

    event = Column(
        Enum(AuditEvent, name="approval_audit_event", values_callable=enum_values),
        nullable=False,
        index=True,
        comment="Type of audit event"
    )

    from_status = Column(
        Enum(ApprovalStatus, name="approval_status", values_callable=enum_values),
        nullable=True,
        comment="Status before the transition (null on creation)"
    )

    to_status = Column(
        Enum(ApprovalStatus, name="approval_status", values_callable=enum_values),
        nullable=False,
        comment="Status after the transition"
    )

    actor = Column(
        String(255),
        nullable=False,
        index=True,
        comment="'system' or the reviewing user's ID"
    )

    executed_action_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Executed action produced by this transition, if any"
    )

    reason = Column(
        Text,
        nullable=True,
        comment="Guardrail reason or executor failure"
    )

    performed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
        comment="When the transition was performed"
    )

    __table_args__ = (
        Index(
            "ix_approval_audit_tenant_approval",
            "tenant_id",
            "approval_id",
        ),
        Index(
            "ix_approval_audit_tenant_performed",
            "tenant_id",
            "performed_at",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalAuditEntry("
            f"id={self.id}, "
            f"approval_id={self.approval_id}, "
            f"event={self.event.value if self.event else None}, "
            f"actor={self.actor}"
            f")>"
        )

    @classmethod
    def create_entry(
        cls,
        tenant_id: str,
        approval_id: str,
        event: AuditEvent,
        to_status: ApprovalStatus,
        actor: str,
        from_status: ApprovalStatus | None = None,
        executed_action_id: str | None = None,
        reason: str | None = None,
    ) -> "ApprovalAuditEntry":
        """
        Factory method to create an audit entry.

        Args:
            tenant_id: Tenant ID (from session token)
            approval_id: ID of the related approval
            event: Type of audit event
            to_status: Status after the transition
            actor: 'system' or reviewing user ID
            from_status: Status before the transition (null for creation)
            executed_action_id: Executed action linked by this transition
            reason: Optional reason/notes

        Returns:
            New ApprovalAuditEntry instance (not yet persisted)
        """
        return cls(
            tenant_id=tenant_id,
            approval_id=approval_id,
            event=event,
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            executed_action_id=executed_action_id,
            reason=reason,
            performed_at=datetime.now(timezone.utc),
        )
