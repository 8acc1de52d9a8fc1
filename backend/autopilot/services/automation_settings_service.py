"""
Automation settings service.

Reads and updates a tenant's AutomationSettings row. The row is created
from config/automation_defaults.yml on first read.

Settings are never cached: the coordinator reads them fresh for every
guardrail evaluation, so an update takes effect on the next proposal.
"""

import logging
from dataclasses import dataclass
from datetime import time
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from autopilot.config.automation_defaults import get_automation_defaults_loader
from autopilot.governance.guardrails import SettingsSnapshot
from autopilot.models.automation_settings import (
    AutomationSettings,
    MAX_CATALOG_CHANGE_PERCENT,
    MAX_CREDIT_LIMIT,
    MIN_CATALOG_CHANGE_PERCENT,
    MIN_CREDIT_LIMIT,
)
from autopilot.services.governance_errors import ConflictError, InvalidArgumentError

logger = logging.getLogger(__name__)


@dataclass
class SettingsUpdate:
    """Partial settings update. None means 'leave unchanged'."""
    global_autopilot_enabled: Optional[bool] = None
    autonomous_credit_limit: Optional[object] = None
    max_daily_actions: Optional[object] = None
    max_catalog_change_percent: Optional[object] = None
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None
    timezone: Optional[str] = None
    expected_version: Optional[int] = None


def _require_int(value, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgumentError(f"{field_name} must be an integer")
    return value


class AutomationSettingsService:
    """
    Tenant-scoped access to automation settings.

    SECURITY: tenant_id from JWT only.
    """

    def __init__(self, db_session: Session, tenant_id: str):
        if not tenant_id:
            raise ValueError("tenant_id is required")

        self.db = db_session
        self.tenant_id = tenant_id

    def _query(self):
        return self.db.query(AutomationSettings).filter(
            AutomationSettings.tenant_id == self.tenant_id
        )

    def get_or_create(self) -> AutomationSettings:
        """Return the tenant's settings, creating them with defaults if absent."""
        settings = self._query().populate_existing().first()
        if settings:
            return settings

        defaults = get_automation_defaults_loader().get_settings_defaults()
        settings = AutomationSettings(
            tenant_id=self.tenant_id,
            global_autopilot_enabled=defaults.global_autopilot_enabled,
            autonomous_credit_limit=defaults.autonomous_credit_limit,
            max_daily_actions=defaults.max_daily_actions,
            max_catalog_change_percent=defaults.max_catalog_change_percent,
            quiet_hours_start=defaults.quiet_hours_start,
            quiet_hours_end=defaults.quiet_hours_end,
            timezone=defaults.timezone,
        )

        try:
            with self.db.begin_nested():
                self.db.add(settings)
        except IntegrityError:
            # Created concurrently by another request
            return self._query().one()

        logger.info(
            "Automation settings created with defaults",
            extra={"tenant_id": self.tenant_id},
        )
        return settings

    def get_snapshot(self) -> SettingsSnapshot:
        return SettingsSnapshot.from_model(self.get_or_create())

    def update(self, changes: SettingsUpdate, actor: str) -> AutomationSettings:
        """
        Apply a partial settings update.

        Raises:
            InvalidArgumentError: If a value is out of range or malformed
            ConflictError: If expected_version does not match
        """
        settings = self.get_or_create()

        if changes.expected_version is not None and changes.expected_version != settings.version:
            raise ConflictError(
                f"Settings version {changes.expected_version} is stale (current: {settings.version})"
            )

        if changes.autonomous_credit_limit is not None:
            limit = _require_int(changes.autonomous_credit_limit, "autonomousCreditLimit")
            if not MIN_CREDIT_LIMIT <= limit <= MAX_CREDIT_LIMIT:
                raise InvalidArgumentError(
                    f"autonomousCreditLimit must be between {MIN_CREDIT_LIMIT} and {MAX_CREDIT_LIMIT}"
                )
            settings.autonomous_credit_limit = limit

        if changes.max_daily_actions is not None:
            max_actions = _require_int(changes.max_daily_actions, "maxDailyActions")
            if max_actions < 1:
                raise InvalidArgumentError("maxDailyActions must be at least 1")
            settings.max_daily_actions = max_actions

        if changes.max_catalog_change_percent is not None:
            percent = _require_int(changes.max_catalog_change_percent, "maxCatalogChangePercent")
            if not MIN_CATALOG_CHANGE_PERCENT <= percent <= MAX_CATALOG_CHANGE_PERCENT:
                raise InvalidArgumentError(
                    f"maxCatalogChangePercent must be between {MIN_CATALOG_CHANGE_PERCENT} and {MAX_CATALOG_CHANGE_PERCENT}"
                )
            settings.max_catalog_change_percent = percent

        if changes.timezone is not None:
            try:
                ZoneInfo(changes.timezone)
            except (ZoneInfoNotFoundError, ValueError):
                raise InvalidArgumentError(f"Unknown timezone: {changes.timezone}")
            settings.timezone = changes.timezone

        if changes.quiet_hours_start is not None:
            settings.quiet_hours_start = changes.quiet_hours_start
        if changes.quiet_hours_end is not None:
            settings.quiet_hours_end = changes.quiet_hours_end

        if changes.global_autopilot_enabled is not None:
            settings.global_autopilot_enabled = bool(changes.global_autopilot_enabled)

        try:
            self.db.flush()
        except StaleDataError:
            raise ConflictError("Settings were modified concurrently")

        logger.info(
            "Automation settings updated",
            extra={
                "tenant_id": self.tenant_id,
                "user_id": actor,
                "version": settings.version,
                "autopilot_enabled": settings.global_autopilot_enabled,
                "credit_limit": settings.autonomous_credit_limit,
            },
        )
        return settings
