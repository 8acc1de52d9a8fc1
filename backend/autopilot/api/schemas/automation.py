"""
Pydantic schemas for the automation settings API.
"""

from datetime import date
from typing import Any, Optional

from pydantic import Field

from autopilot.api.schemas.base import CamelModel


class QuietHours(CamelModel):
    """Half-open window [start, end) in the merchant's timezone."""

    start: str = Field(..., description="Window start, HH:MM (inclusive)")
    end: str = Field(..., description="Window end, HH:MM (exclusive)")


class AutomationSettingsResponse(CamelModel):
    global_autopilot_enabled: bool = Field(..., description="False = every action requires approval")
    autonomous_credit_limit: int = Field(..., description="Credits autonomous actions may use per day")
    max_daily_actions: int = Field(..., description="Autonomous actions allowed per day")
    max_catalog_change_percent: int = Field(..., description="Share of the catalog autonomous actions may change per day")
    quiet_hours: QuietHours
    timezone: str = Field(..., description="IANA timezone of the merchant")
    version: int = Field(..., description="Settings version, bumped on every update")


class AutomationSettingsUpdateRequest(CamelModel):
    """
    Partial settings update. Omitted fields are left unchanged.

    Numeric limits are range-checked by the service so out-of-range values
    answer 400 rather than a schema error.
    """

    global_autopilot_enabled: Optional[bool] = None
    autonomous_credit_limit: Optional[Any] = Field(None, description="Integer in [1, 1000]")
    max_daily_actions: Optional[Any] = Field(None, description="Integer >= 1")
    max_catalog_change_percent: Optional[Any] = Field(None, description="Integer in [1, 100]")
    quiet_hours: Optional[QuietHours] = None
    timezone: Optional[str] = None
    expected_version: Optional[int] = Field(None, description="Reject the update if settings changed since this version")


class ConsumptionResponse(CamelModel):
    """Today's autonomous consumption against the caps."""

    day: date = Field(..., description="Merchant-local day the counters belong to")
    timezone: str
    credits_spent: int
    credits_reserved: int
    credit_limit: int
    credits_remaining: int
    actions_executed: int
    actions_reserved: int
    max_daily_actions: int
    actions_remaining: int
    manual_actions_executed: int
