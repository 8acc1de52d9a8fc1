"""
Recipient extraction for customer-facing sends.

Normalizes the recipient and channel out of an opaque action payload so
the approval queue can refuse to hold two pending sends to the same
person on the same channel. The guardrail evaluator denies a send whose
payload has no address on its channel.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from autopilot.models.base import assert_exhaustive
from autopilot.models.pending_approval import ApprovalActionType, MessageChannel


# Whether each action sends something to the store's customers
CUSTOMER_FACING: dict[ApprovalActionType, bool] = {
    ApprovalActionType.OPTIMIZE_SEO: False,
    ApprovalActionType.SEND_CAMPAIGN: True,
    ApprovalActionType.SEND_CART_RECOVERY: True,
    ApprovalActionType.ADJUST_PRICE: False,
}

assert_exhaustive(CUSTOMER_FACING, ApprovalActionType, "CUSTOMER_FACING")


def is_customer_facing(action_type: ApprovalActionType) -> bool:
    return CUSTOMER_FACING[action_type]


@dataclass(frozen=True)
class RecipientKey:
    channel: MessageChannel
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def address(self) -> Optional[str]:
        return self.email if self.channel == MessageChannel.EMAIL else self.phone


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def normalize_phone(phone: str) -> str:
    """Strip formatting characters, keeping a leading '+'."""
    digits = "".join(ch for ch in phone if ch.isdigit())
    return f"+{digits}" if phone.startswith("+") else digits


def resolve_channel(payload: Mapping[str, Any]) -> MessageChannel:
    """The payload's own channel when valid, otherwise email if an email is present, else sms."""
    try:
        return MessageChannel(payload.get("channel"))
    except (ValueError, TypeError):
        has_email = _clean(payload.get("customerEmail")) or _clean(payload.get("recipientEmail"))
        return MessageChannel.EMAIL if has_email else MessageChannel.SMS


def extract_recipient(
    action_type: ApprovalActionType,
    payload: Mapping[str, Any],
) -> Optional[RecipientKey]:
    """
    Extract the recipient of a customer-facing send.

    Email comes from customerEmail or recipientEmail, phone from
    customerPhone or recipientPhone.

    Returns:
        RecipientKey, or None for non-customer-facing actions and payloads
        without an address on the chosen channel
    """
    if not is_customer_facing(action_type):
        return None

    email = _clean(payload.get("customerEmail")) or _clean(payload.get("recipientEmail"))
    phone = _clean(payload.get("customerPhone")) or _clean(payload.get("recipientPhone"))

    email = email.lower() if email else None
    phone = normalize_phone(phone) if phone else None

    key = RecipientKey(channel=resolve_channel(payload), email=email, phone=phone)
    if key.address is None:
        return None
    return key
