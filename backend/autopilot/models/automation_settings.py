"""
Automation settings model.

One row per tenant holding the merchant's global automation mode and the
numeric guardrails applied to autonomous executions.

KEY PRINCIPLES:
- Mutated only by the merchant (settings update) or administrative override
- NEVER mutated by the agent
- Read fresh on every guardrail evaluation (no process-wide cache)
- Versioned: every update bumps `version` (optimistic concurrency)

SECURITY:
- Tenant isolation via TenantScopedMixin (tenant_id from session token only)
"""

import uuid
from datetime import time

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Integer,
    String,
    Time,
    UniqueConstraint,
)

from autopilot.db_base import Base
from autopilot.models.base import TimestampMixin, TenantScopedMixin


# Bounds accepted for autonomous_credit_limit
MIN_CREDIT_LIMIT = 1
MAX_CREDIT_LIMIT = 1000

# Bounds accepted for max_catalog_change_percent
MIN_CATALOG_CHANGE_PERCENT = 1
MAX_CATALOG_CHANGE_PERCENT = 100


class AutomationSettings(Base, TimestampMixin, TenantScopedMixin):
    """
    Per-tenant automation mode and guardrails.

    global_autopilot_enabled is the master kill-switch: when False, every
    proposed action is queued for explicit approval regardless of budget.

    Quiet hours are a half-open window [quiet_hours_start, quiet_hours_end)
    in the merchant's timezone. The window may wrap midnight (21:00 -> 09:00).
    Equal start and end means no quiet window.
    """

    __tablename__ = "automation_settings"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Unique settings identifier (UUID)"
    )

    global_autopilot_enabled = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Master toggle: True = autonomous, False = every action requires approval"
    )

    autonomous_credit_limit = Column(
        Integer,
        nullable=False,
        default=100,
        comment="Credits autonomous executions may consume per merchant-local day"
    )

    max_daily_actions = Column(
        Integer,
        nullable=False,
        default=10,
        comment="Autonomous executions allowed per merchant-local day"
    )

    max_catalog_change_percent = Column(
        Integer,
        nullable=False,
        default=5,
        comment="Share of the catalog (percent) that SEO and price actions may touch per day"
    )

    quiet_hours_start = Column(
        Time,
        nullable=False,
        default=time(21, 0),
        comment="Start of quiet window (inclusive, merchant-local)"
    )

    quiet_hours_end = Column(
        Time,
        nullable=False,
        default=time(9, 0),
        comment="End of quiet window (exclusive, merchant-local)"
    )

    timezone = Column(
        String(64),
        nullable=False,
        default="UTC",
        comment="IANA timezone used for quiet hours and the daily counter boundary"
    )

    version = Column(
        Integer,
        nullable=False,
        comment="Optimistic concurrency version, bumped on every update"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_automation_settings_tenant"),
        CheckConstraint(
            f"autonomous_credit_limit >= {MIN_CREDIT_LIMIT} "
            f"AND autonomous_credit_limit <= {MAX_CREDIT_LIMIT}",
            name="ck_automation_settings_credit_limit",
        ),
        CheckConstraint(
            "max_daily_actions >= 1",
            name="ck_automation_settings_max_daily_actions",
        ),
        CheckConstraint(
            f"max_catalog_change_percent >= {MIN_CATALOG_CHANGE_PERCENT} "
            f"AND max_catalog_change_percent <= {MAX_CATALOG_CHANGE_PERCENT}",
            name="ck_automation_settings_catalog_change_percent",
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<AutomationSettings("
            f"tenant_id={self.tenant_id}, "
            f"autopilot={self.global_autopilot_enabled}, "
            f"credit_limit={self.autonomous_credit_limit}, "
            f"version={self.version}"
            f")>"
        )

    @property
    def has_quiet_hours(self) -> bool:
        """True when a non-empty quiet window is configured."""
        return self.quiet_hours_start != self.quiet_hours_end
