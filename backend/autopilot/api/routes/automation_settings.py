"""
Automation settings API routes.

Provides endpoints for:
- Reading the tenant's automation settings (created with defaults on first read)
- Updating the kill-switch, caps, catalog change limit, quiet hours and timezone
- Today's autonomous consumption against the caps

SECURITY:
- All routes require valid tenant context from JWT
- Only MERCHANT_ADMIN, AGENCY_ADMIN and SUPER_ADMIN can update settings
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status

from autopilot.api.schemas.automation import (
    AutomationSettingsResponse,
    AutomationSettingsUpdateRequest,
    ConsumptionResponse,
    QuietHours,
)
from autopilot.config.automation_defaults import parse_clock
from autopilot.constants.permissions import Permission
from autopilot.database.session import get_db_session
from autopilot.models.automation_settings import AutomationSettings
from autopilot.platform.tenant_context import get_tenant_context, require_permission
from autopilot.services.automation_settings_service import (
    AutomationSettingsService,
    SettingsUpdate,
)
from autopilot.services.consumption_service import ConsumptionService
from autopilot.services.governance_errors import ConflictError, InvalidArgumentError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/automation", tags=["automation"])

check_view_permission = require_permission(
    Permission.AUTOMATION_SETTINGS_VIEW,
    "You do not have permission to view automation settings",
)
check_manage_permission = require_permission(
    Permission.AUTOMATION_SETTINGS_MANAGE,
    "You do not have permission to change automation settings",
)


def _settings_to_response(settings: AutomationSettings) -> AutomationSettingsResponse:
    return AutomationSettingsResponse(
        global_autopilot_enabled=settings.global_autopilot_enabled,
        autonomous_credit_limit=settings.autonomous_credit_limit,
        max_daily_actions=settings.max_daily_actions,
        max_catalog_change_percent=settings.max_catalog_change_percent,
        quiet_hours=QuietHours(
            start=settings.quiet_hours_start.strftime("%H:%M"),
            end=settings.quiet_hours_end.strftime("%H:%M"),
        ),
        timezone=settings.timezone,
        version=settings.version,
    )


@router.get(
    "/settings",
    response_model=AutomationSettingsResponse,
    dependencies=[Depends(check_view_permission)],
)
async def get_automation_settings(
    request: Request,
    db_session=Depends(get_db_session),
):
    """Get the tenant's automation settings."""
    tenant_ctx = get_tenant_context(request)

    service = AutomationSettingsService(db_session, tenant_ctx.tenant_id)
    settings = service.get_or_create()
    db_session.commit()

    return _settings_to_response(settings)


@router.put(
    "/settings",
    response_model=AutomationSettingsResponse,
    dependencies=[Depends(check_manage_permission)],
)
async def update_automation_settings(
    request: Request,
    body: AutomationSettingsUpdateRequest,
    db_session=Depends(get_db_session),
):
    """
    Update automation settings.

    Takes effect on the next guardrail evaluation.
    """
    tenant_ctx = get_tenant_context(request)

    changes = SettingsUpdate(
        global_autopilot_enabled=body.global_autopilot_enabled,
        autonomous_credit_limit=body.autonomous_credit_limit,
        max_daily_actions=body.max_daily_actions,
        max_catalog_change_percent=body.max_catalog_change_percent,
        timezone=body.timezone,
        expected_version=body.expected_version,
    )
    if body.quiet_hours is not None:
        try:
            changes.quiet_hours_start = parse_clock(body.quiet_hours.start)
            changes.quiet_hours_end = parse_clock(body.quiet_hours.end)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="quietHours must use HH:MM",
            )

    service = AutomationSettingsService(db_session, tenant_ctx.tenant_id)
    try:
        settings = service.update(changes, actor=tenant_ctx.user_id)
        db_session.commit()
    except InvalidArgumentError as e:
        db_session.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ConflictError as e:
        db_session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return _settings_to_response(settings)


@router.get(
    "/consumption",
    response_model=ConsumptionResponse,
    dependencies=[Depends(check_view_permission)],
)
async def get_consumption(
    request: Request,
    db_session=Depends(get_db_session),
):
    """Today's autonomous consumption and remaining headroom."""
    tenant_ctx = get_tenant_context(request)

    settings = AutomationSettingsService(db_session, tenant_ctx.tenant_id).get_snapshot()
    consumption = ConsumptionService(db_session, tenant_ctx.tenant_id)
    day = consumption.local_date(settings, datetime.now(timezone.utc))
    counter = consumption.get_counter(day)
    db_session.commit()

    credits_spent = counter.credits_spent if counter else 0
    credits_reserved = counter.credits_reserved if counter else 0
    actions_executed = counter.actions_executed if counter else 0
    actions_reserved = counter.actions_reserved if counter else 0

    return ConsumptionResponse(
        day=day,
        timezone=settings.timezone,
        credits_spent=credits_spent,
        credits_reserved=credits_reserved,
        credit_limit=settings.autonomous_credit_limit,
        credits_remaining=max(settings.autonomous_credit_limit - credits_spent - credits_reserved, 0),
        actions_executed=actions_executed,
        actions_reserved=actions_reserved,
        max_daily_actions=settings.max_daily_actions,
        actions_remaining=max(settings.max_daily_actions - actions_executed - actions_reserved, 0),
        manual_actions_executed=counter.manual_actions_executed if counter else 0,
    )
