"""
Shared utilities for governance modules.

Provides serialization of governance dataclasses for decision logging,
and timezone helpers for the merchant-local clock.
"""

import logging
from dataclasses import fields, is_dataclass
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


def resolve_timezone(name: str | None, fallback: str = "UTC") -> ZoneInfo:
    """
    Resolve an IANA timezone name.

    Unknown or empty names resolve to the fallback zone; settings updates
    reject them up front, so this only happens for rows written elsewhere.
    """
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone, using fallback", extra={"timezone": name, "fallback": fallback})
    return ZoneInfo(fallback)


def to_merchant_local(now: datetime, timezone_name: str | None) -> datetime:
    """Convert an instant to the merchant's wall clock. Naive input is treated as UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(resolve_timezone(timezone_name))


def merchant_local_date(now: datetime, timezone_name: str | None) -> date:
    """The merchant-local calendar day that owns the daily counters."""
    return to_merchant_local(now, timezone_name).date()


def merchant_day_start(now: datetime, timezone_name: str | None) -> datetime:
    """Merchant-local midnight of the current day, as a UTC instant."""
    local_now = to_merchant_local(now, timezone_name)
    midnight = datetime.combine(local_now.date(), time(0, 0), tzinfo=local_now.tzinfo)
    return midnight.astimezone(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from the database."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def serialize_dataclass(obj: Any) -> dict[str, Any]:
    """
    Serialize a dataclass to a dictionary.

    Handles:
    - Enum values (converts to .value)
    - Datetime, date and time objects (converts to ISO format)
    - Nested dataclasses (recursively serializes)
    """
    if not is_dataclass(obj):
        raise TypeError(f"Expected dataclass, got {type(obj)}")

    return {f.name: _serialize_value(getattr(obj, f.name)) for f in fields(obj)}


def _serialize_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if is_dataclass(value):
        return serialize_dataclass(value)
    if isinstance(value, list):
        return [_serialize_value(item) for item in value]
    if isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    return value
