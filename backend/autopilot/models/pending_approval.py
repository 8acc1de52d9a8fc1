"""
Pending approval model for AI-proposed storefront actions.

Stores every proposed action that passed through the guardrail evaluator,
whether it was queued for a human decision or cleared for autonomous
execution (stored approved-at-creation for audit continuity).

KEY PRINCIPLES:
- Three-state lifecycle: pending -> approved | rejected (both terminal)
- A record is immutable once non-pending, except for the single atomic
  write that performs the transition
- The execution link (executed_action_id) is written once, when the
  executor first reports success
- recommended_action is opaque: the governance layer never interprets it

SECURITY:
- Tenant isolation via TenantScopedMixin (tenant_id from session token only)
"""

import enum
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    text,
)

from autopilot.db_base import Base
from autopilot.models.base import (
    JSONType,
    TimestampMixin,
    TenantScopedMixin,
    assert_exhaustive,
    enum_values,
)


class ApprovalActionType(str, enum.Enum):
    """
    Closed set of actions the agent may propose.

    Adding a member requires extending every mapping keyed by this enum
    (entity types here, customer-facing classification in
    autopilot.governance.recipients); both are checked at import time.
    """
    OPTIMIZE_SEO = "optimize_seo"
    SEND_CAMPAIGN = "send_campaign"
    SEND_CART_RECOVERY = "send_cart_recovery"
    ADJUST_PRICE = "adjust_price"


class ApprovalStatus(str, enum.Enum):
    """
    Status of a proposal in the approval workflow.

    State transitions:
    - PENDING -> APPROVED (merchant approves, or guardrails clear it)
    - PENDING -> REJECTED (merchant rejects)
    """
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalPriority(str, enum.Enum):
    """Display/sort priority. Never used in admission logic."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class MessageChannel(str, enum.Enum):
    """Delivery channel for customer-facing sends."""
    EMAIL = "email"
    SMS = "sms"


# Sort rank for priorities (higher first)
PRIORITY_RANK: dict[ApprovalPriority, int] = {
    ApprovalPriority.URGENT: 3,
    ApprovalPriority.HIGH: 2,
    ApprovalPriority.MEDIUM: 1,
    ApprovalPriority.LOW: 0,
}

# Default entity type for each action when the proposal does not name one
DEFAULT_ENTITY_TYPES: dict[ApprovalActionType, str] = {
    ApprovalActionType.OPTIMIZE_SEO: "product",
    ApprovalActionType.ADJUST_PRICE: "product",
    ApprovalActionType.SEND_CAMPAIGN: "campaign",
    ApprovalActionType.SEND_CART_RECOVERY: "cart",
}

# Payload key holding the entity id for each action
ENTITY_ID_PAYLOAD_KEYS: dict[ApprovalActionType, str] = {
    ApprovalActionType.OPTIMIZE_SEO: "productId",
    ApprovalActionType.ADJUST_PRICE: "productId",
    ApprovalActionType.SEND_CAMPAIGN: "campaignId",
    ApprovalActionType.SEND_CART_RECOVERY: "cartId",
}

assert_exhaustive(PRIORITY_RANK, ApprovalPriority, "PRIORITY_RANK")
assert_exhaustive(DEFAULT_ENTITY_TYPES, ApprovalActionType, "DEFAULT_ENTITY_TYPES")
assert_exhaustive(ENTITY_ID_PAYLOAD_KEYS, ApprovalActionType, "ENTITY_ID_PAYLOAD_KEYS")


class PendingApproval(Base, TimestampMixin, TenantScopedMixin):
    """
    A proposed action and the merchant's (or system's) decision on it.

    reviewed_at, reviewed_by and status are written together by a single
    compare-and-set UPDATE in ApprovalQueueService. Application code never
    assigns status on a loaded instance.
    """

    __tablename__ = "pending_approvals"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Unique approval identifier (UUID)"
    )

    action_type = Column(
        Enum(ApprovalActionType, name="approval_action_type", values_callable=enum_values),
        nullable=False,
        index=True,
        comment="Type of proposed action"
    )

    entity_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="ID of the affected resource (reference only)"
    )

    entity_type = Column(
        String(50),
        nullable=True,
        comment="product, campaign, cart, customer"
    )

    rule_id = Column(
        String(255),
        nullable=True,
        comment="Proposal source rule that generated the action (cooldown key)"
    )

    recommended_action = Column(
        JSONType,
        nullable=False,
        comment="Opaque payload executed verbatim if cleared"
    )

    ai_reasoning = Column(
        Text,
        nullable=False,
        comment="Why the agent recommends this action (display only)"
    )

    estimated_impact = Column(
        JSONType,
        nullable=True,
        comment="Predicted metric changes (display only, never used in guardrails)"
    )

    credit_cost = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Credits consumed if executed autonomously"
    )

    priority = Column(
        Enum(ApprovalPriority, name="approval_priority", values_callable=enum_values),
        nullable=False,
        default=ApprovalPriority.MEDIUM,
        index=True,
        comment="Display/sort priority"
    )

    status = Column(
        Enum(ApprovalStatus, name="approval_status", values_callable=enum_values),
        nullable=False,
        default=ApprovalStatus.PENDING,
        index=True,
        comment="pending, approved, rejected"
    )

    # Decision tracking (written once, with the status transition)
    reviewed_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the proposal was approved/rejected"
    )

    reviewed_by = Column(
        String(255),
        nullable=True,
        comment="User ID of the reviewer, or 'system' for guardrail clearance"
    )

    # Execution tracking
    executed_action_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Executor's id for the executed action (null until success)"
    )

    execution_error = Column(
        Text,
        nullable=True,
        comment="Last executor failure message"
    )

    execution_attempts = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Number of executor calls made for this approval"
    )

    last_execution_attempt_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the executor was last called"
    )

    execution_retryable = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="False once the executor rejected the action outright; the retry worker skips it"
    )

    # Normalized recipient data for customer-facing sends (de-duplication)
    recipient_email = Column(String(320), nullable=True)
    recipient_phone = Column(String(32), nullable=True)
    channel = Column(
        Enum(MessageChannel, name="message_channel", values_callable=enum_values),
        nullable=True,
    )

    __table_args__ = (
        Index(
            "ix_pending_approvals_tenant_status_created",
            "tenant_id",
            "status",
            "created_at",
        ),
        Index(
            "ix_pending_approvals_tenant_executed",
            "tenant_id",
            "executed_action_id",
        ),
        Index(
            "ix_pending_approvals_tenant_rule_entity",
            "tenant_id",
            "rule_id",
            "entity_id",
        ),
        # One pending send per recipient and channel
        Index(
            "uq_pending_approvals_email_dedup",
            "tenant_id",
            "action_type",
            "recipient_email",
            "channel",
            unique=True,
            postgresql_where=text("status = 'pending' AND recipient_email IS NOT NULL"),
            sqlite_where=text("status = 'pending' AND recipient_email IS NOT NULL"),
        ),
        Index(
            "uq_pending_approvals_sms_dedup",
            "tenant_id",
            "action_type",
            "recipient_phone",
            "channel",
            unique=True,
            postgresql_where=text("status = 'pending' AND recipient_phone IS NOT NULL"),
            sqlite_where=text("status = 'pending' AND recipient_phone IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PendingApproval("
            f"id={self.id}, "
            f"tenant_id={self.tenant_id}, "
            f"action_type={self.action_type.value if self.action_type else None}, "
            f"status={self.status.value if self.status else None}"
            f")>"
        )

    @property
    def is_pending(self) -> bool:
        """Check if proposal is awaiting a decision."""
        return self.status == ApprovalStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        """Approved and rejected are both terminal."""
        return self.status in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED)

    @property
    def is_executed(self) -> bool:
        return self.executed_action_id is not None

    @property
    def awaiting_execution(self) -> bool:
        """Approved but the executor has not (yet) succeeded."""
        return self.status == ApprovalStatus.APPROVED and self.executed_action_id is None
