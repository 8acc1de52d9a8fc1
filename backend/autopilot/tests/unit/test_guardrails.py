"""
Unit tests for the guardrail evaluator.

Tests cover:
- Rule order (disabled, quiet hours, action cap, credit cap, catalog limit, cooldown)
- Quiet-hours windows, including midnight wrap and empty windows
- Structural validation (DENY), including sends without a recipient
- Catalog change share and per-rule cooldown
- Monotonicity: more consumption never loosens a verdict
"""

import pytest
from datetime import datetime, time, timedelta, timezone

from autopilot.governance.guardrails import (
    CUSTOMER_FACING,
    DEFAULT_RULE_COOLDOWN_SECONDS,
    CatalogActivity,
    ConsumptionSnapshot,
    GuardrailRule,
    ProposalCandidate,
    SettingsSnapshot,
    Verdict,
    catalog_change_allowance,
    evaluate,
    in_quiet_hours,
    is_customer_facing,
    validate_candidate,
)
from autopilot.models.pending_approval import ApprovalActionType


# Noon UTC: outside the default 21:00-09:00 window
NOON = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def make_settings(**overrides) -> SettingsSnapshot:
    values = dict(
        global_autopilot_enabled=True,
        autonomous_credit_limit=100,
        max_daily_actions=20,
        quiet_hours_start=time(21, 0),
        quiet_hours_end=time(9, 0),
        timezone="UTC",
    )
    values.update(overrides)
    return SettingsSnapshot(**values)


def make_candidate(**overrides) -> ProposalCandidate:
    values = dict(
        action_type="optimize_seo",
        credit_cost=5,
        payload={"productId": "prod_1", "title": "New title"},
        reasoning="Title is missing the primary keyword",
    )
    values.update(overrides)
    return ProposalCandidate(**values)


# =============================================================================
# Caps
# =============================================================================


class TestCaps:

    def test_credit_cap_exceeded_requires_approval(self):
        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(credits_spent=95, actions_executed=3),
            make_candidate(credit_cost=10),
            NOON,
        )

        assert decision.verdict == Verdict.REQUIRE_APPROVAL
        assert decision.rule == GuardrailRule.CREDIT_CAP
        assert "5 of 100" in decision.reason

    def test_cost_exactly_filling_limit_is_allowed(self):
        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(credits_spent=95, actions_executed=3),
            make_candidate(credit_cost=5),
            NOON,
        )

        assert decision.verdict == Verdict.ALLOW_AUTONOMOUS
        assert decision.rule == GuardrailRule.WITHIN_LIMITS
        assert decision.allows_autonomous

    def test_action_cap_reached_requires_approval(self):
        decision = evaluate(
            make_settings(max_daily_actions=3),
            ConsumptionSnapshot(credits_spent=0, actions_executed=3),
            make_candidate(credit_cost=0),
            NOON,
        )

        assert decision.verdict == Verdict.REQUIRE_APPROVAL
        assert decision.rule == GuardrailRule.ACTION_CAP

    def test_action_cap_checked_before_credit_cap(self):
        decision = evaluate(
            make_settings(max_daily_actions=3),
            ConsumptionSnapshot(credits_spent=100, actions_executed=3),
            make_candidate(credit_cost=10),
            NOON,
        )

        assert decision.rule == GuardrailRule.ACTION_CAP

    def test_zero_cost_allowed_at_full_credit_spend(self):
        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(credits_spent=100, actions_executed=0),
            make_candidate(credit_cost=0),
            NOON,
        )

        assert decision.verdict == Verdict.ALLOW_AUTONOMOUS

    def test_cap_details_reported(self):
        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(credits_spent=95, actions_executed=3),
            make_candidate(credit_cost=10),
            NOON,
        )

        assert decision.to_dict()["details"] == {
            "credits_spent": 95,
            "credit_cost": 10,
            "autonomous_credit_limit": 100,
        }


# =============================================================================
# Kill-switch
# =============================================================================


class TestAutopilotDisabled:

    def test_disabled_requires_approval_for_every_action(self):
        settings = make_settings(global_autopilot_enabled=False)

        for action_type in ApprovalActionType:
            decision = evaluate(
                settings,
                ConsumptionSnapshot(),
                make_candidate(
                    action_type=action_type.value,
                    credit_cost=0,
                    payload={"productId": "prod_1", "customerEmail": "a@example.com"},
                ),
                NOON,
            )
            assert decision.verdict == Verdict.REQUIRE_APPROVAL
            assert decision.rule == GuardrailRule.AUTOPILOT_DISABLED

    def test_disabled_still_denies_malformed(self):
        decision = evaluate(
            make_settings(global_autopilot_enabled=False),
            ConsumptionSnapshot(),
            make_candidate(credit_cost=-1),
            NOON,
        )

        assert decision.verdict == Verdict.DENY


# =============================================================================
# Quiet hours
# =============================================================================


class TestQuietHours:

    @pytest.mark.parametrize("clock,expected", [
        (time(20, 59), False),
        (time(21, 0), True),
        (time(23, 30), True),
        (time(0, 0), True),
        (time(8, 59), True),
        (time(9, 0), False),
        (time(12, 0), False),
    ])
    def test_window_wrapping_midnight(self, clock, expected):
        assert in_quiet_hours(clock, time(21, 0), time(9, 0)) is expected

    @pytest.mark.parametrize("clock,expected", [
        (time(12, 59), False),
        (time(13, 0), True),
        (time(13, 59), True),
        (time(14, 0), False),
    ])
    def test_window_within_day(self, clock, expected):
        assert in_quiet_hours(clock, time(13, 0), time(14, 0)) is expected

    def test_equal_bounds_mean_no_window(self):
        for hour in (0, 9, 21, 23):
            assert not in_quiet_hours(time(hour, 0), time(9, 0), time(9, 0))

    def test_customer_facing_in_quiet_hours_requires_approval(self):
        late = datetime(2026, 3, 10, 22, 0, tzinfo=timezone.utc)
        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(),
            make_candidate(
                action_type="send_campaign",
                payload={"campaignId": "camp_1", "customerEmail": "a@example.com"},
            ),
            late,
        )

        assert decision.verdict == Verdict.REQUIRE_APPROVAL
        assert decision.rule == GuardrailRule.QUIET_HOURS
        assert decision.details == {"local_time": "22:00"}

    def test_non_customer_facing_ignores_quiet_hours(self):
        late = datetime(2026, 3, 10, 22, 0, tzinfo=timezone.utc)
        decision = evaluate(make_settings(), ConsumptionSnapshot(), make_candidate(), late)

        assert decision.verdict == Verdict.ALLOW_AUTONOMOUS

    def test_quiet_hours_use_merchant_timezone(self):
        # 12:00 UTC is 21:00 in Tokyo
        decision = evaluate(
            make_settings(timezone="Asia/Tokyo"),
            ConsumptionSnapshot(),
            make_candidate(
                action_type="send_cart_recovery",
                payload={"cartId": "c1", "customerEmail": "a@example.com"},
            ),
            NOON,
        )

        assert decision.rule == GuardrailRule.QUIET_HOURS

    def test_naive_now_treated_as_utc(self):
        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(),
            make_candidate(action_type="send_campaign", payload={"customerPhone": "+15550100"}),
            datetime(2026, 3, 10, 22, 0),
        )

        assert decision.rule == GuardrailRule.QUIET_HOURS

    def test_quiet_hours_checked_before_caps(self):
        late = datetime(2026, 3, 10, 23, 0, tzinfo=timezone.utc)
        decision = evaluate(
            make_settings(max_daily_actions=1),
            ConsumptionSnapshot(credits_spent=100, actions_executed=1),
            make_candidate(action_type="send_campaign", payload={"customerPhone": "+15550100"}),
            late,
        )

        assert decision.rule == GuardrailRule.QUIET_HOURS

    def test_customer_facing_classification(self):
        assert is_customer_facing(ApprovalActionType.SEND_CAMPAIGN)
        assert is_customer_facing(ApprovalActionType.SEND_CART_RECOVERY)
        assert not is_customer_facing(ApprovalActionType.OPTIMIZE_SEO)
        assert not is_customer_facing(ApprovalActionType.ADJUST_PRICE)
        assert set(CUSTOMER_FACING) == set(ApprovalActionType)


# =============================================================================
# Validation
# =============================================================================


class TestValidation:

    @pytest.mark.parametrize("overrides,fragment", [
        ({"action_type": "delete_store"}, "Unknown action type"),
        ({"action_type": None}, "Unknown action type"),
        ({"action_type": ["send_campaign"]}, "Unknown action type"),
        ({"credit_cost": -1}, "negative"),
        ({"credit_cost": 2.5}, "integer"),
        ({"credit_cost": "5"}, "integer"),
        ({"credit_cost": True}, "integer"),
        ({"payload": ["not", "an", "object"]}, "object"),
        ({"payload": None}, "object"),
        ({"reasoning": ""}, "Reasoning"),
        ({"reasoning": "   "}, "Reasoning"),
        ({"reasoning": None}, "Reasoning"),
        ({"catalog_size": -1}, "Catalog size"),
        ({"catalog_size": "200"}, "Catalog size"),
        ({"cooldown_seconds": 1.5}, "Cooldown"),
        ({"cooldown_seconds": True}, "Cooldown"),
    ])
    def test_malformed_candidates_denied(self, overrides, fragment):
        decision = evaluate(make_settings(), ConsumptionSnapshot(), make_candidate(**overrides), NOON)

        assert decision.verdict == Verdict.DENY
        assert decision.rule == GuardrailRule.VALIDATION
        assert fragment in decision.reason

    def test_valid_candidate_returns_enum(self):
        action_type, reason = validate_candidate(make_candidate(action_type="adjust_price"))

        assert action_type == ApprovalActionType.ADJUST_PRICE
        assert reason is None

    def test_enum_member_accepted(self):
        action_type, reason = validate_candidate(make_candidate(
            action_type=ApprovalActionType.SEND_CAMPAIGN,
            payload={"campaignId": "camp_1", "customerEmail": "a@example.com"},
        ))

        assert action_type == ApprovalActionType.SEND_CAMPAIGN
        assert reason is None


class TestSendRecipients:

    @pytest.mark.parametrize("action_type", ["send_campaign", "send_cart_recovery"])
    def test_email_send_without_address_denied(self, action_type):
        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(),
            make_candidate(action_type=action_type, payload={"channel": "email", "customerPhone": "+15550100"}),
            NOON,
        )

        assert decision.verdict == Verdict.DENY
        assert decision.rule == GuardrailRule.VALIDATION
        assert decision.reason == "Send payload is missing the recipient email address"

    def test_sms_send_without_phone_denied(self):
        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(),
            make_candidate(action_type="send_campaign", payload={"channel": "sms", "campaignId": "camp_1"}),
            NOON,
        )

        assert decision.verdict == Verdict.DENY
        assert decision.reason == "Send payload is missing the recipient phone number"

    def test_blank_address_denied(self):
        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(),
            make_candidate(action_type="send_campaign", payload={"customerEmail": "   "}),
            NOON,
        )

        assert decision.verdict == Verdict.DENY

    def test_denied_even_when_autopilot_disabled(self):
        decision = evaluate(
            make_settings(global_autopilot_enabled=False),
            ConsumptionSnapshot(),
            make_candidate(action_type="send_cart_recovery", payload={"cartId": "c1"}),
            NOON,
        )

        assert decision.verdict == Verdict.DENY

    def test_recipient_email_key_accepted(self):
        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(),
            make_candidate(action_type="send_campaign", payload={"recipientEmail": "b@example.com"}),
            NOON,
        )

        assert decision.verdict == Verdict.ALLOW_AUTONOMOUS

    def test_catalog_actions_need_no_recipient(self):
        action_type, reason = validate_candidate(make_candidate(action_type="adjust_price", payload={"productId": "p"}))

        assert action_type == ApprovalActionType.ADJUST_PRICE
        assert reason is None


# =============================================================================
# Catalog change limit
# =============================================================================


class TestCatalogLimit:

    @pytest.mark.parametrize("size,percent,expected", [
        (20, 5, 1),
        (200, 5, 10),
        (201, 5, 11),
        (0, 5, 1),
        (3, 100, 3),
    ])
    def test_allowance(self, size, percent, expected):
        assert catalog_change_allowance(size, percent) == expected

    def test_new_product_over_share_requires_approval(self):
        activity = CatalogActivity(entities_changed_today=frozenset({"prod_9"}))

        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(),
            make_candidate(catalog_size=20),
            NOON,
            activity,
        )

        assert decision.verdict == Verdict.REQUIRE_APPROVAL
        assert decision.rule == GuardrailRule.CATALOG_LIMIT
        assert decision.reason == "Catalog change limit reached (1/1 products, 5% limit)"
        assert decision.details == {
            "products_changed": 1,
            "max_catalog_changes": 1,
            "max_catalog_change_percent": 5,
        }

    def test_product_already_changed_today_does_not_count_again(self):
        activity = CatalogActivity(entities_changed_today=frozenset({"prod_1"}))

        decision = evaluate(make_settings(), ConsumptionSnapshot(), make_candidate(catalog_size=20), NOON, activity)

        assert decision.verdict == Verdict.ALLOW_AUTONOMOUS

    def test_under_share_allowed(self):
        activity = CatalogActivity(entities_changed_today=frozenset({"prod_8", "prod_9"}))

        decision = evaluate(make_settings(), ConsumptionSnapshot(), make_candidate(catalog_size=100), NOON, activity)

        assert decision.verdict == Verdict.ALLOW_AUTONOMOUS

    def test_higher_percent_raises_allowance(self):
        activity = CatalogActivity(entities_changed_today=frozenset({"prod_9"}))

        decision = evaluate(
            make_settings(max_catalog_change_percent=10),
            ConsumptionSnapshot(),
            make_candidate(catalog_size=20),
            NOON,
            activity,
        )

        assert decision.verdict == Verdict.ALLOW_AUTONOMOUS

    def test_no_catalog_size_skips_check(self):
        activity = CatalogActivity(entities_changed_today=frozenset({"a", "b", "c"}))

        decision = evaluate(make_settings(), ConsumptionSnapshot(), make_candidate(), NOON, activity)

        assert decision.verdict == Verdict.ALLOW_AUTONOMOUS

    def test_sends_are_not_catalog_changes(self):
        activity = CatalogActivity(entities_changed_today=frozenset({"prod_9"}))

        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(),
            make_candidate(
                action_type="send_campaign",
                payload={"campaignId": "camp_1", "customerEmail": "a@example.com"},
                catalog_size=20,
            ),
            NOON,
            activity,
        )

        assert decision.verdict == Verdict.ALLOW_AUTONOMOUS

    def test_caps_checked_before_catalog_limit(self):
        activity = CatalogActivity(entities_changed_today=frozenset({"prod_9"}))

        decision = evaluate(
            make_settings(max_daily_actions=1),
            ConsumptionSnapshot(actions_executed=1),
            make_candidate(catalog_size=20),
            NOON,
            activity,
        )

        assert decision.rule == GuardrailRule.ACTION_CAP


# =============================================================================
# Rule cooldown
# =============================================================================


class TestRuleCooldown:

    def test_default_cooldown_is_one_day(self):
        assert DEFAULT_RULE_COOLDOWN_SECONDS == 86400

    def test_recent_change_by_same_rule_requires_approval(self):
        activity = CatalogActivity(last_rule_change_at=NOON - timedelta(hours=3))

        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(),
            make_candidate(rule_id="seo-title-keyword"),
            NOON,
            activity,
        )

        assert decision.verdict == Verdict.REQUIRE_APPROVAL
        assert decision.rule == GuardrailRule.COOLDOWN
        assert decision.reason == "Cooldown period active (wait 21 more hours)"
        assert decision.details["entity_id"] == "prod_1"

    def test_change_after_cooldown_allowed(self):
        activity = CatalogActivity(last_rule_change_at=NOON - timedelta(hours=25))

        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(),
            make_candidate(rule_id="seo-title-keyword"),
            NOON,
            activity,
        )

        assert decision.verdict == Verdict.ALLOW_AUTONOMOUS

    def test_custom_cooldown_honored(self):
        activity = CatalogActivity(last_rule_change_at=NOON - timedelta(hours=3))

        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(),
            make_candidate(rule_id="seo-title-keyword", cooldown_seconds=3600),
            NOON,
            activity,
        )

        assert decision.verdict == Verdict.ALLOW_AUTONOMOUS

    def test_naive_last_change_treated_as_utc(self):
        activity = CatalogActivity(last_rule_change_at=datetime(2026, 3, 10, 11, 30))

        decision = evaluate(make_settings(), ConsumptionSnapshot(), make_candidate(rule_id="r1"), NOON, activity)

        assert decision.rule == GuardrailRule.COOLDOWN
        assert "wait 24 more hours" in decision.reason

    def test_catalog_limit_checked_before_cooldown(self):
        activity = CatalogActivity(
            entities_changed_today=frozenset({"prod_9"}),
            last_rule_change_at=NOON - timedelta(hours=1),
        )

        decision = evaluate(
            make_settings(),
            ConsumptionSnapshot(),
            make_candidate(rule_id="r1", catalog_size=20),
            NOON,
            activity,
        )

        assert decision.rule == GuardrailRule.CATALOG_LIMIT


# =============================================================================
# Monotonicity
# =============================================================================


class TestMonotonicity:

    def test_more_consumption_never_loosens_verdict(self):
        settings = make_settings(autonomous_credit_limit=50, max_daily_actions=5)
        candidate = make_candidate(credit_cost=7)

        previous_allowed = True
        for spent in range(0, 60, 3):
            for executed in range(0, 7):
                allowed = evaluate(
                    settings,
                    ConsumptionSnapshot(credits_spent=spent, actions_executed=executed),
                    candidate,
                    NOON,
                ).allows_autonomous
                if executed > 0:
                    assert not (allowed and not previous_allowed)
                previous_allowed = allowed

    def test_tighter_limits_never_loosen_verdict(self):
        counters = ConsumptionSnapshot(credits_spent=40, actions_executed=2)
        candidate = make_candidate(credit_cost=10)

        verdicts = [
            evaluate(make_settings(autonomous_credit_limit=limit), counters, candidate, NOON).allows_autonomous
            for limit in range(100, 0, -5)
        ]

        # Once denied autonomy, every tighter limit also denies it
        first_block = verdicts.index(False)
        assert all(not v for v in verdicts[first_block:])

    def test_evaluation_is_pure(self):
        settings = make_settings()
        counters = ConsumptionSnapshot(credits_spent=10, actions_executed=1)
        candidate = make_candidate()

        first = evaluate(settings, counters, candidate, NOON)
        second = evaluate(settings, counters, candidate, NOON)

        assert first == second
        assert counters == ConsumptionSnapshot(credits_spent=10, actions_executed=1)


class TestConsumptionSnapshot:

    def test_reservations_count_as_consumed(self):
        class Counter:
            credits_spent = 40
            credits_reserved = 15
            actions_executed = 2
            actions_reserved = 1

        snapshot = ConsumptionSnapshot.from_counter(Counter())

        assert snapshot == ConsumptionSnapshot(credits_spent=55, actions_executed=3)

    def test_missing_counter_is_zero(self):
        assert ConsumptionSnapshot.from_counter(None) == ConsumptionSnapshot()


class TestReferenceScenarios:

    @pytest.mark.parametrize("enabled,cost,expected", [
        (True, 10, Verdict.REQUIRE_APPROVAL),
        (True, 5, Verdict.ALLOW_AUTONOMOUS),
    ])
    def test_adjust_price_against_partial_day(self, enabled, cost, expected):
        decision = evaluate(
            make_settings(global_autopilot_enabled=enabled, autonomous_credit_limit=100, max_daily_actions=20),
            ConsumptionSnapshot(credits_spent=95, actions_executed=3),
            make_candidate(action_type="adjust_price", credit_cost=cost, payload={"productId": "p", "newPrice": "9.99"}),
            NOON,
        )

        assert decision.verdict == expected

    def test_disabled_with_zero_consumption(self):
        decision = evaluate(
            make_settings(global_autopilot_enabled=False),
            ConsumptionSnapshot(),
            make_candidate(action_type="adjust_price", credit_cost=1),
            NOON,
        )

        assert decision.verdict == Verdict.REQUIRE_APPROVAL
