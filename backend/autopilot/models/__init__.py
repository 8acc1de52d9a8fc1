"""
Database models for autonomous action governance.

All models follow strict tenant isolation patterns.
Tenant-scoped models inherit from TenantScopedMixin.
"""

from autopilot.models.base import TimestampMixin, TenantScopedMixin
from autopilot.models.automation_settings import AutomationSettings
from autopilot.models.pending_approval import (
    PendingApproval,
    ApprovalActionType,
    ApprovalStatus,
    ApprovalPriority,
    MessageChannel,
)
from autopilot.models.approval_audit import ApprovalAuditEntry, AuditEvent, SYSTEM_ACTOR
from autopilot.models.daily_consumption import DailyConsumptionCounter

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "AutomationSettings",
    "PendingApproval",
    "ApprovalActionType",
    "ApprovalStatus",
    "ApprovalPriority",
    "MessageChannel",
    "ApprovalAuditEntry",
    "AuditEvent",
    "SYSTEM_ACTOR",
    "DailyConsumptionCounter",
]
