"""Performance alert and alert rule route handlers (coach only)."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from huddle.database.db import get_db_session
from huddle.database.models import CheckFrequency
from huddle.services import alert_rule_service, performance_alert_service
from huddle.services.alert_evaluation_service import get_alert_engine
from huddle.services.errors import ValidationError, NotFoundError
from huddle.api.auth_dependencies import require_coach
from huddle.models.schemas import (
    AlertListResponse,
    AlertSummaryResponse,
    PerformanceAlertResponse,
    AlertRuleCreate,
    AlertRuleUpdate,
    AlertRuleResponse,
    EvaluationPassResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


# ============================================================================
# Performance alerts
# ============================================================================


@router.get("/api/alerts", response_model=AlertListResponse)
async def get_alerts(
    player_id: Optional[str] = None,
    alert_type: Optional[str] = None,
    severity: Optional[str] = None,
    acknowledged: Optional[bool] = None,
    include_resolved: bool = False,
    limit: int = 20,
    user: dict = Depends(require_coach),
    session: AsyncSession = Depends(get_db_session),
):
    """List alerts (most severe, then newest first) plus the same alerts grouped by player."""
    try:
        alerts = await performance_alert_service.list_alerts(
            session,
            player_id=player_id,
            alert_type=alert_type,
            severity=severity,
            acknowledged=acknowledged,
            include_resolved=include_resolved,
            limit=limit,
        )
        alerts_by_player = {}
        for alert in alerts:
            alerts_by_player.setdefault(alert["player_id"], []).append(alert)
        return {"alerts": alerts, "alerts_by_player": alerts_by_player, "total": len(alerts)}
    except Exception as e:
        logger.error(f"Error fetching alerts: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching alerts: {str(e)}")


@router.get("/api/alerts/summary", response_model=AlertSummaryResponse)
async def get_alert_summary(
    user: dict = Depends(require_coach), session: AsyncSession = Depends(get_db_session)
):
    """Dashboard summary of open alerts."""
    try:
        return await performance_alert_service.get_alert_summary(session)
    except Exception as e:
        logger.error(f"Error fetching alert summary: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching alert summary: {str(e)}")


@router.get("/api/alerts/{alert_id}", response_model=PerformanceAlertResponse)
async def get_alert(
    alert_id: int,
    user: dict = Depends(require_coach),
    session: AsyncSession = Depends(get_db_session),
):
    """Get a single alert."""
    try:
        return await performance_alert_service.get_alert(session, alert_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error fetching alert: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching alert: {str(e)}")


@router.put("/api/alerts/{alert_id}/acknowledge", response_model=PerformanceAlertResponse)
async def acknowledge_alert(
    alert_id: int,
    user: dict = Depends(require_coach),
    session: AsyncSession = Depends(get_db_session),
):
    """Acknowledge an alert as the calling coach."""
    try:
        return await performance_alert_service.acknowledge_alert(session, alert_id, user["id"])
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error acknowledging alert: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error acknowledging alert: {str(e)}")


@router.put("/api/alerts/{alert_id}/resolve", response_model=PerformanceAlertResponse)
async def resolve_alert(
    alert_id: int,
    user: dict = Depends(require_coach),
    session: AsyncSession = Depends(get_db_session),
):
    """Manually resolve an alert."""
    try:
        return await performance_alert_service.resolve_alert(session, alert_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error resolving alert: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error resolving alert: {str(e)}")


# ============================================================================
# Alert rules
# ============================================================================


@router.get("/api/alert-rules", response_model=List[AlertRuleResponse])
async def get_alert_rules(
    active_only: bool = False,
    user: dict = Depends(require_coach),
    session: AsyncSession = Depends(get_db_session),
):
    """List alert rules ordered by name."""
    try:
        return await alert_rule_service.list_alert_rules(session, active_only=active_only)
    except Exception as e:
        logger.error(f"Error fetching alert rules: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching alert rules: {str(e)}")


@router.post("/api/alert-rules", response_model=AlertRuleResponse)
async def create_alert_rule(
    payload: AlertRuleCreate,
    user: dict = Depends(require_coach),
    session: AsyncSession = Depends(get_db_session),
):
    """Create an alert rule."""
    try:
        return await alert_rule_service.create_alert_rule(
            session, created_by=user["id"], **payload.model_dump()
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error creating alert rule: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error creating alert rule: {str(e)}")


@router.post("/api/alert-rules/run-checks", response_model=EvaluationPassResponse)
async def run_alert_checks(
    check_frequency: Optional[str] = None,
    user: dict = Depends(require_coach),
):
    """
    Run one alert evaluation pass now.

    Intended for the external scheduler; check_frequency limits the pass to
    rules with that frequency (realtime, hourly, daily, weekly).
    """
    allowed = [frequency.value for frequency in CheckFrequency]
    if check_frequency is not None and check_frequency not in allowed:
        raise HTTPException(status_code=400, detail=f"check_frequency must be one of {allowed}")
    try:
        engine = get_alert_engine()
        return await engine.run_pass(check_frequency=check_frequency)
    except Exception as e:
        logger.error(f"Error running alert checks: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error running alert checks: {str(e)}")


@router.get("/api/alert-rules/{rule_id}", response_model=AlertRuleResponse)
async def get_alert_rule(
    rule_id: int,
    user: dict = Depends(require_coach),
    session: AsyncSession = Depends(get_db_session),
):
    """Get a single alert rule."""
    try:
        return await alert_rule_service.get_alert_rule(session, rule_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error fetching alert rule: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching alert rule: {str(e)}")


@router.patch("/api/alert-rules/{rule_id}", response_model=AlertRuleResponse)
async def update_alert_rule(
    rule_id: int,
    payload: AlertRuleUpdate,
    user: dict = Depends(require_coach),
    session: AsyncSession = Depends(get_db_session),
):
    """Edit an alert rule. Only fields present in the body change."""
    try:
        updates = payload.model_dump(exclude_unset=True)
        return await alert_rule_service.update_alert_rule(session, rule_id, updates)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error updating alert rule: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error updating alert rule: {str(e)}")


@router.put("/api/alert-rules/{rule_id}/deactivate", response_model=AlertRuleResponse)
async def deactivate_alert_rule(
    rule_id: int,
    user: dict = Depends(require_coach),
    session: AsyncSession = Depends(get_db_session),
):
    """Deactivate an alert rule; its alert history is kept."""
    try:
        return await alert_rule_service.deactivate_alert_rule(session, rule_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error deactivating alert rule: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error deactivating alert rule: {str(e)}")
