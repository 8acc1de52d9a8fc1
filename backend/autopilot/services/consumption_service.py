"""
Daily consumption accounting for autonomous executions.

Counters live in one row per tenant per merchant-local day. Every
mutation is a single UPDATE so concurrent executions cannot overshoot
the caps:

- reserve(): increment-and-check. The cap comparison sits in the UPDATE's
  WHERE clause, so it either claims headroom or matches zero rows.
- commit_reservation(): executor succeeded; reserved moves into spent.
- release_reservation(): executor failed; reserved headroom is returned.
- record_manual_execution(): human-approved execution, exempt from caps.

Spent counters therefore only grow on a successful executor report and
never exceed the caps in force when the reservation was taken.
"""

import logging
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from autopilot.governance.base import merchant_local_date
from autopilot.governance.guardrails import ConsumptionSnapshot, SettingsSnapshot
from autopilot.models.daily_consumption import DailyConsumptionCounter

logger = logging.getLogger(__name__)


class ConsumptionService:
    """
    Tenant-scoped daily counters.

    SECURITY: tenant_id from JWT only.
    """

    def __init__(self, db_session: Session, tenant_id: str):
        if not tenant_id:
            raise ValueError("tenant_id is required")

        self.db = db_session
        self.tenant_id = tenant_id

    @staticmethod
    def local_date(settings: SettingsSnapshot, now: datetime) -> date:
        return merchant_local_date(now, settings.timezone)

    def _counter_query(self, counter_date: date):
        return self.db.query(DailyConsumptionCounter).filter(
            DailyConsumptionCounter.tenant_id == self.tenant_id,
            DailyConsumptionCounter.counter_date == counter_date,
        )

    def get_counter(self, counter_date: date) -> DailyConsumptionCounter | None:
        return self._counter_query(counter_date).populate_existing().first()

    def get_or_create_counter(self, counter_date: date) -> DailyConsumptionCounter:
        counter = self.get_counter(counter_date)
        if counter:
            return counter

        counter = DailyConsumptionCounter(
            tenant_id=self.tenant_id,
            counter_date=counter_date,
            credits_spent=0,
            actions_executed=0,
            credits_reserved=0,
            actions_reserved=0,
            manual_actions_executed=0,
        )
        try:
            with self.db.begin_nested():
                self.db.add(counter)
        except IntegrityError:
            # Another execution opened the day first
            return self._counter_query(counter_date).one()
        return counter

    def get_snapshot(self, settings: SettingsSnapshot, now: datetime) -> ConsumptionSnapshot:
        """Today's consumption, counting in-flight reservations as spent."""
        return ConsumptionSnapshot.from_counter(self.get_counter(self.local_date(settings, now)))

    def reserve(self, counter_date: date, credit_cost: int, settings: SettingsSnapshot) -> bool:
        """
        Claim headroom for one autonomous execution.

        Returns:
            True if the reservation was taken, False if the caps would be exceeded
        """
        self.get_or_create_counter(counter_date)

        C = DailyConsumptionCounter
        updated = (
            self._counter_query(counter_date)
            .filter(
                C.credits_spent + C.credits_reserved + credit_cost <= settings.autonomous_credit_limit,
                C.actions_executed + C.actions_reserved + 1 <= settings.max_daily_actions,
            )
            .update(
                {
                    C.credits_reserved: C.credits_reserved + credit_cost,
                    C.actions_reserved: C.actions_reserved + 1,
                },
                synchronize_session=False,
            )
        )

        if not updated:
            logger.info(
                "Autonomous reservation refused: caps reached",
                extra={
                    "tenant_id": self.tenant_id,
                    "counter_date": counter_date.isoformat(),
                    "credit_cost": credit_cost,
                },
            )
        return updated == 1

    def commit_reservation(self, counter_date: date, credit_cost: int) -> None:
        """Move a reservation into the spent counters after executor success."""
        C = DailyConsumptionCounter
        self._counter_query(counter_date).update(
            {
                C.credits_spent: C.credits_spent + credit_cost,
                C.actions_executed: C.actions_executed + 1,
                C.credits_reserved: C.credits_reserved - credit_cost,
                C.actions_reserved: C.actions_reserved - 1,
            },
            synchronize_session=False,
        )

    def release_reservation(self, counter_date: date, credit_cost: int) -> None:
        """Return reserved headroom after executor failure."""
        C = DailyConsumptionCounter
        self._counter_query(counter_date).update(
            {
                C.credits_reserved: C.credits_reserved - credit_cost,
                C.actions_reserved: C.actions_reserved - 1,
            },
            synchronize_session=False,
        )

    def record_manual_execution(self, counter_date: date) -> None:
        """Log a human-approved execution. Does not touch the capped counters."""
        self.get_or_create_counter(counter_date)

        C = DailyConsumptionCounter
        self._counter_query(counter_date).update(
            {C.manual_actions_executed: C.manual_actions_executed + 1},
            synchronize_session=False,
        )
