"""
Unit tests for ConsumptionService.

Tests cover:
- Increment-and-check reservations against both caps
- Commit and release of reservations
- Manual executions exempt from the caps
- Merchant-local day boundary
"""

import pytest
from datetime import date, datetime, time, timezone

from autopilot.governance.guardrails import ConsumptionSnapshot, SettingsSnapshot
from autopilot.services.consumption_service import ConsumptionService

DAY = date(2026, 3, 10)


def make_settings(credit_limit=100, max_actions=10, tz="UTC") -> SettingsSnapshot:
    return SettingsSnapshot(
        global_autopilot_enabled=True,
        autonomous_credit_limit=credit_limit,
        max_daily_actions=max_actions,
        quiet_hours_start=time(21, 0),
        quiet_hours_end=time(9, 0),
        timezone=tz,
    )


@pytest.fixture
def service(db_session, tenant_id):
    return ConsumptionService(db_session, tenant_id)


class TestReservations:

    def test_reserve_claims_headroom(self, service):
        assert service.reserve(DAY, 30, make_settings())

        counter = service.get_counter(DAY)
        assert counter.credits_reserved == 30
        assert counter.actions_reserved == 1
        assert counter.credits_spent == 0

    def test_reserve_refused_over_credit_limit(self, service):
        settings = make_settings(credit_limit=50)

        assert service.reserve(DAY, 30, settings)
        assert not service.reserve(DAY, 21, settings)
        assert service.reserve(DAY, 20, settings)

        assert service.get_counter(DAY).credits_reserved == 50

    def test_reserve_refused_over_action_limit(self, service):
        settings = make_settings(max_actions=2)

        assert service.reserve(DAY, 0, settings)
        assert service.reserve(DAY, 0, settings)
        assert not service.reserve(DAY, 0, settings)

    def test_commit_moves_reservation_to_spent(self, service):
        service.reserve(DAY, 30, make_settings())

        service.commit_reservation(DAY, 30)

        counter = service.get_counter(DAY)
        assert (counter.credits_spent, counter.actions_executed) == (30, 1)
        assert (counter.credits_reserved, counter.actions_reserved) == (0, 0)

    def test_release_returns_headroom(self, service):
        settings = make_settings(credit_limit=30, max_actions=1)
        service.reserve(DAY, 30, settings)

        service.release_reservation(DAY, 30)

        counter = service.get_counter(DAY)
        assert (counter.credits_spent, counter.actions_executed) == (0, 0)
        assert (counter.credits_reserved, counter.actions_reserved) == (0, 0)
        assert service.reserve(DAY, 30, settings)

    def test_spent_never_exceeds_limit(self, service):
        settings = make_settings(credit_limit=100, max_actions=100)

        for _ in range(30):
            if service.reserve(DAY, 7, settings):
                service.commit_reservation(DAY, 7)

        counter = service.get_counter(DAY)
        assert counter.credits_spent == 98
        assert counter.actions_executed == 14

    def test_days_are_independent(self, service):
        settings = make_settings(max_actions=1)

        assert service.reserve(DAY, 0, settings)
        assert service.reserve(date(2026, 3, 11), 0, settings)


class TestManualExecutions:

    def test_manual_execution_bypasses_caps(self, service):
        settings = make_settings(max_actions=1)
        service.reserve(DAY, 0, settings)
        service.commit_reservation(DAY, 0)

        service.record_manual_execution(DAY)
        service.record_manual_execution(DAY)

        counter = service.get_counter(DAY)
        assert counter.manual_actions_executed == 2
        assert counter.actions_executed == 1


class TestSnapshot:

    def test_snapshot_counts_reservations(self, service):
        settings = make_settings()
        now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        service.reserve(DAY, 10, settings)
        service.commit_reservation(DAY, 10)
        service.reserve(DAY, 5, settings)

        assert service.get_snapshot(settings, now) == ConsumptionSnapshot(credits_spent=15, actions_executed=2)

    def test_empty_day_snapshot(self, service):
        now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

        assert service.get_snapshot(make_settings(), now) == ConsumptionSnapshot()

    def test_local_date_uses_merchant_timezone(self):
        # 02:00 UTC on the 10th is still the 9th in Los Angeles
        now = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)

        assert ConsumptionService.local_date(make_settings(tz="America/Los_Angeles"), now) == date(2026, 3, 9)
        assert ConsumptionService.local_date(make_settings(tz="UTC"), now) == date(2026, 3, 10)
