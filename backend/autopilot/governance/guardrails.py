"""
Guardrail evaluator for AI-proposed storefront actions.

Decides, for a single candidate action, whether it may execute
autonomously, must wait for the merchant, or is malformed and denied.

evaluate() is a pure function of its inputs: the caller fetches fresh
settings, today's counters and today's catalog activity, and supplies the
clock. Nothing here touches the database.

Rule order (first match wins, after structural validation):
1. Autopilot disabled              -> REQUIRE_APPROVAL
2. Customer-facing in quiet hours  -> REQUIRE_APPROVAL
3. Daily action cap reached        -> REQUIRE_APPROVAL
4. Daily credit cap exceeded       -> REQUIRE_APPROVAL
5. Daily catalog share used up     -> REQUIRE_APPROVAL (SEO and price actions)
6. Rule cooldown on the product    -> REQUIRE_APPROVAL (SEO and price actions)
7. Otherwise                       -> ALLOW_AUTONOMOUS

Structural validation (DENY) covers the action type, the credit cost, the
payload shape, the reasoning, and the recipient of customer-facing sends.

Guardrail breaches are never errors. They only move an action to the
approval queue.
"""

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Optional

from autopilot.governance.base import as_utc, serialize_dataclass, to_merchant_local
from autopilot.governance.recipients import (  # noqa: F401 - re-exported
    CUSTOMER_FACING,
    extract_recipient,
    is_customer_facing,
    resolve_channel,
)
from autopilot.models.pending_approval import (
    ENTITY_ID_PAYLOAD_KEYS,
    ApprovalActionType,
    MessageChannel,
)

logger = logging.getLogger(__name__)

# Cooldown between two actions of the same rule on the same product
DEFAULT_RULE_COOLDOWN_SECONDS = 24 * 60 * 60

# Actions that change the product catalog
CATALOG_ACTIONS = frozenset({
    ApprovalActionType.OPTIMIZE_SEO,
    ApprovalActionType.ADJUST_PRICE,
})


class Verdict(str, Enum):
    ALLOW_AUTONOMOUS = "allow_autonomous"
    REQUIRE_APPROVAL = "require_approval"
    DENY = "deny"


class GuardrailRule(str, Enum):
    """The rule that produced a decision."""
    VALIDATION = "validation"
    AUTOPILOT_DISABLED = "autopilot_disabled"
    QUIET_HOURS = "quiet_hours"
    ACTION_CAP = "action_cap"
    CREDIT_CAP = "credit_cap"
    CATALOG_LIMIT = "catalog_limit"
    COOLDOWN = "cooldown"
    WITHIN_LIMITS = "within_limits"
    # Headroom was taken by a concurrent execution after evaluation
    RESERVATION_CONFLICT = "reservation_conflict"


@dataclass(frozen=True)
class SettingsSnapshot:
    """The guardrail-relevant view of a tenant's AutomationSettings."""
    global_autopilot_enabled: bool
    autonomous_credit_limit: int
    max_daily_actions: int
    quiet_hours_start: time
    quiet_hours_end: time
    timezone: str = "UTC"
    max_catalog_change_percent: int = 5

    @classmethod
    def from_model(cls, settings) -> "SettingsSnapshot":
        return cls(
            global_autopilot_enabled=settings.global_autopilot_enabled,
            autonomous_credit_limit=settings.autonomous_credit_limit,
            max_daily_actions=settings.max_daily_actions,
            quiet_hours_start=settings.quiet_hours_start,
            quiet_hours_end=settings.quiet_hours_end,
            timezone=settings.timezone,
            max_catalog_change_percent=settings.max_catalog_change_percent,
        )


@dataclass(frozen=True)
class ConsumptionSnapshot:
    """
    Autonomous consumption for the current merchant-local day.

    In-flight reservations count as consumed, so an evaluation never
    admits an action whose headroom is already claimed.
    """
    credits_spent: int = 0
    actions_executed: int = 0

    @classmethod
    def from_counter(cls, counter) -> "ConsumptionSnapshot":
        if counter is None:
            return cls()
        return cls(
            credits_spent=counter.credits_spent + counter.credits_reserved,
            actions_executed=counter.actions_executed + counter.actions_reserved,
        )


@dataclass(frozen=True)
class CatalogActivity:
    """
    Catalog changes relevant to one candidate.

    entities_changed_today: products touched by approved SEO or price
    actions since merchant-local midnight.
    last_rule_change_at: when the candidate's rule last touched the
    candidate's product, if ever.
    """
    entities_changed_today: frozenset = frozenset()
    last_rule_change_at: Optional[datetime] = None


@dataclass
class ProposalCandidate:
    """
    A candidate action from the proposal source.

    Fields are left loosely typed: the evaluator validates them and
    denies anything malformed instead of trusting the caller.

    catalog_size is the store's product count as seen by the proposal
    source; without it the catalog share rule is not applied.
    """
    action_type: Any
    credit_cost: Any
    payload: Any
    reasoning: Any
    estimated_impact: Optional[dict] = None
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    priority: Optional[str] = None
    rule_id: Optional[str] = None
    catalog_size: Any = None
    cooldown_seconds: Any = None


@dataclass
class GuardrailDecision:
    verdict: Verdict
    rule: GuardrailRule
    reason: str
    action_type: Optional[ApprovalActionType] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def allows_autonomous(self) -> bool:
        return self.verdict == Verdict.ALLOW_AUTONOMOUS

    def to_dict(self) -> dict[str, Any]:
        return serialize_dataclass(self)


def in_quiet_hours(clock_time: time, start: time, end: time) -> bool:
    """
    Check whether a wall-clock time falls in the half-open window [start, end).

    The window wraps midnight when start > end. Equal bounds mean no window.
    """
    clock_time = clock_time.replace(tzinfo=None)
    if start == end:
        return False
    if start < end:
        return start <= clock_time < end
    return clock_time >= start or clock_time < end


def candidate_entity_id(candidate: ProposalCandidate, action_type: ApprovalActionType) -> Optional[str]:
    """Explicit entity id, else the action's id key in the payload."""
    entity_id = candidate.entity_id
    if entity_id is None and isinstance(candidate.payload, Mapping):
        entity_id = candidate.payload.get(ENTITY_ID_PAYLOAD_KEYS[action_type])
    return str(entity_id) if entity_id is not None else None


def candidate_rule_id(candidate: ProposalCandidate) -> Optional[str]:
    rule_id = candidate.rule_id
    if rule_id is None and isinstance(candidate.payload, Mapping):
        rule_id = candidate.payload.get("ruleId")
    return str(rule_id) if rule_id is not None else None


def catalog_change_allowance(catalog_size: int, percent: int) -> int:
    """Distinct products that may change per day. Always at least one."""
    return max(1, math.ceil(catalog_size * percent / 100))


def _is_count(value: Any) -> bool:
    return not isinstance(value, bool) and isinstance(value, int) and value >= 0


def validate_candidate(candidate: ProposalCandidate) -> tuple[Optional[ApprovalActionType], Optional[str]]:
    """
    Structural validation of a candidate.

    Returns:
        (action_type, None) when valid, (None or action_type, reason) otherwise
    """
    try:
        action_type = ApprovalActionType(candidate.action_type)
    except (ValueError, TypeError):
        return None, f"Unknown action type: {candidate.action_type!r}"

    cost = candidate.credit_cost
    if isinstance(cost, bool) or not isinstance(cost, int):
        return action_type, "Credit cost must be an integer"
    if cost < 0:
        return action_type, "Credit cost cannot be negative"

    if not isinstance(candidate.payload, Mapping):
        return action_type, "Action payload must be an object"

    if not isinstance(candidate.reasoning, str) or not candidate.reasoning.strip():
        return action_type, "Reasoning is required"

    if candidate.catalog_size is not None and not _is_count(candidate.catalog_size):
        return action_type, "Catalog size must be a non-negative integer"
    if candidate.cooldown_seconds is not None and not _is_count(candidate.cooldown_seconds):
        return action_type, "Cooldown must be a non-negative integer number of seconds"

    if is_customer_facing(action_type) and extract_recipient(action_type, candidate.payload) is None:
        if resolve_channel(candidate.payload) == MessageChannel.EMAIL:
            return action_type, "Send payload is missing the recipient email address"
        return action_type, "Send payload is missing the recipient phone number"

    return action_type, None


def _catalog_decision(
    settings: SettingsSnapshot,
    activity: CatalogActivity,
    candidate: ProposalCandidate,
    action_type: ApprovalActionType,
    now: datetime,
) -> Optional[GuardrailDecision]:
    entity_id = candidate_entity_id(candidate, action_type)

    if candidate.catalog_size is not None and entity_id not in activity.entities_changed_today:
        allowance = catalog_change_allowance(candidate.catalog_size, settings.max_catalog_change_percent)
        changed = len(activity.entities_changed_today)
        if changed >= allowance:
            return GuardrailDecision(
                verdict=Verdict.REQUIRE_APPROVAL,
                rule=GuardrailRule.CATALOG_LIMIT,
                reason=(
                    f"Catalog change limit reached ({changed}/{allowance} products, "
                    f"{settings.max_catalog_change_percent}% limit)"
                ),
                action_type=action_type,
                details={
                    "products_changed": changed,
                    "max_catalog_changes": allowance,
                    "max_catalog_change_percent": settings.max_catalog_change_percent,
                },
            )

    if activity.last_rule_change_at is not None and entity_id is not None:
        cooldown = candidate.cooldown_seconds
        if cooldown is None:
            cooldown = DEFAULT_RULE_COOLDOWN_SECONDS
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        elapsed = (now - as_utc(activity.last_rule_change_at)).total_seconds()
        if elapsed < cooldown:
            hours_remaining = math.ceil((cooldown - elapsed) / 3600)
            return GuardrailDecision(
                verdict=Verdict.REQUIRE_APPROVAL,
                rule=GuardrailRule.COOLDOWN,
                reason=f"Cooldown period active (wait {hours_remaining} more hours)",
                action_type=action_type,
                details={
                    "rule_id": candidate_rule_id(candidate),
                    "entity_id": entity_id,
                    "cooldown_seconds": cooldown,
                },
            )

    return None


def evaluate(
    settings: SettingsSnapshot,
    counters: ConsumptionSnapshot,
    candidate: ProposalCandidate,
    now: datetime,
    activity: Optional[CatalogActivity] = None,
) -> GuardrailDecision:
    """
    Evaluate a candidate action against the tenant's guardrails.

    Args:
        settings: Fresh settings for the tenant
        counters: Today's autonomous consumption (spent + reserved)
        candidate: The proposed action
        now: Current instant (timezone-aware; naive is treated as UTC)
        activity: Today's catalog changes; omitted means none

    Returns:
        GuardrailDecision naming the verdict and the rule that decided it
    """
    action_type, invalid_reason = validate_candidate(candidate)
    if invalid_reason:
        return GuardrailDecision(
            verdict=Verdict.DENY,
            rule=GuardrailRule.VALIDATION,
            reason=invalid_reason,
            action_type=action_type,
        )

    if not settings.global_autopilot_enabled:
        return GuardrailDecision(
            verdict=Verdict.REQUIRE_APPROVAL,
            rule=GuardrailRule.AUTOPILOT_DISABLED,
            reason="Autopilot is disabled; every action requires approval",
            action_type=action_type,
        )

    if is_customer_facing(action_type):
        local_now = to_merchant_local(now, settings.timezone)
        if in_quiet_hours(local_now.time(), settings.quiet_hours_start, settings.quiet_hours_end):
            return GuardrailDecision(
                verdict=Verdict.REQUIRE_APPROVAL,
                rule=GuardrailRule.QUIET_HOURS,
                reason=(
                    f"Customer-facing action during quiet hours "
                    f"({settings.quiet_hours_start:%H:%M}-{settings.quiet_hours_end:%H:%M} {settings.timezone})"
                ),
                action_type=action_type,
                details={"local_time": local_now.strftime("%H:%M")},
            )

    if counters.actions_executed + 1 > settings.max_daily_actions:
        return GuardrailDecision(
            verdict=Verdict.REQUIRE_APPROVAL,
            rule=GuardrailRule.ACTION_CAP,
            reason=f"Daily autonomous action limit reached ({settings.max_daily_actions})",
            action_type=action_type,
            details={
                "actions_executed": counters.actions_executed,
                "max_daily_actions": settings.max_daily_actions,
            },
        )

    if counters.credits_spent + candidate.credit_cost > settings.autonomous_credit_limit:
        return GuardrailDecision(
            verdict=Verdict.REQUIRE_APPROVAL,
            rule=GuardrailRule.CREDIT_CAP,
            reason=(
                f"Action costs {candidate.credit_cost} credits; "
                f"{max(settings.autonomous_credit_limit - counters.credits_spent, 0)} "
                f"of {settings.autonomous_credit_limit} remain today"
            ),
            action_type=action_type,
            details={
                "credits_spent": counters.credits_spent,
                "credit_cost": candidate.credit_cost,
                "autonomous_credit_limit": settings.autonomous_credit_limit,
            },
        )

    if action_type in CATALOG_ACTIONS:
        decision = _catalog_decision(settings, activity or CatalogActivity(), candidate, action_type, now)
        if decision is not None:
            return decision

    return GuardrailDecision(
        verdict=Verdict.ALLOW_AUTONOMOUS,
        rule=GuardrailRule.WITHIN_LIMITS,
        reason="Within autonomous limits",
        action_type=action_type,
    )
