"""
Daily consumption counter for autonomous executions.

One row per tenant per merchant-local calendar day. A new day is a new row,
which is how the counters reset at the merchant's midnight.

COUNTER SEMANTICS:
- credits_spent / actions_executed: autonomous executions the executor
  reported as successful. Monotonically increasing within a day.
- credits_reserved / actions_reserved: headroom claimed by in-flight
  autonomous executions. Claimed and settled with single UPDATE
  statements (increment-and-check), never check-then-increment.
- manual_actions_executed: human-approved executions. Exempt from the
  caps but still counted.
"""

import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    Integer,
    String,
    UniqueConstraint,
)

from autopilot.db_base import Base
from autopilot.models.base import TimestampMixin, TenantScopedMixin


class DailyConsumptionCounter(Base, TimestampMixin, TenantScopedMixin):
    """Autonomous credit and action consumption for one merchant-local day."""

    __tablename__ = "daily_consumption_counters"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )

    counter_date = Column(
        Date,
        nullable=False,
        comment="Merchant-local calendar day"
    )

    credits_spent = Column(Integer, nullable=False, default=0)
    actions_executed = Column(Integer, nullable=False, default=0)
    credits_reserved = Column(Integer, nullable=False, default=0)
    actions_reserved = Column(Integer, nullable=False, default=0)
    manual_actions_executed = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("tenant_id", "counter_date", name="uq_daily_consumption_tenant_date"),
        CheckConstraint(
            "credits_reserved >= 0 AND actions_reserved >= 0",
            name="ck_daily_consumption_reservations_non_negative",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<DailyConsumptionCounter("
            f"tenant_id={self.tenant_id}, "
            f"date={self.counter_date}, "
            f"credits={self.credits_spent}+{self.credits_reserved}, "
            f"actions={self.actions_executed}+{self.actions_reserved}"
            f")>"
        )
