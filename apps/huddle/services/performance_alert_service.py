"""
Performance alert service: read access plus the acknowledge/resolve transitions.

Alerts are created only by the alert evaluation engine and are never deleted.
"""

from typing import List, Dict, Optional
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, case
from huddle.database.models import PerformanceAlert, AlertSeverity
from huddle.services.errors import ValidationError, NotFoundError
from huddle.utils.constants import SEVERITY_RANK, AT_RISK_ALERT_COUNT, RECENT_CRITICAL_LIMIT
from huddle.utils.datetime_utils import utcnow, ensure_utc, isoformat_or_none
import logging

logger = logging.getLogger(__name__)


def alert_to_dict(alert: PerformanceAlert) -> Dict:
    """Serialize a PerformanceAlert row to an API dict."""
    return {
        "id": alert.id,
        "player_id": alert.player_id,
        "alert_type": alert.alert_type,
        "severity": alert.severity,
        "metric": alert.metric,
        "current_value": alert.current_value,
        "threshold_value": alert.threshold_value,
        "trend": alert.trend,
        "message": alert.message,
        "action_required": alert.action_required,
        "acknowledged": alert.acknowledged,
        "acknowledged_by": alert.acknowledged_by,
        "acknowledged_at": isoformat_or_none(alert.acknowledged_at),
        "resolved_at": isoformat_or_none(alert.resolved_at),
        "rule_id": alert.rule_id,
        "created_at": isoformat_or_none(alert.created_at),
        "updated_at": isoformat_or_none(alert.updated_at),
    }


def _severity_order():
    """SQL expression ranking severities (critical highest)."""
    return case(SEVERITY_RANK, value=PerformanceAlert.severity, else_=0)


async def _get_alert_or_raise(session: AsyncSession, alert_id: int) -> PerformanceAlert:
    alert = await session.get(PerformanceAlert, alert_id, populate_existing=True)
    if alert is None:
        raise NotFoundError("Performance alert", alert_id)
    return alert


async def list_alerts(
    session: AsyncSession,
    player_id: Optional[str] = None,
    alert_type: Optional[str] = None,
    severity: Optional[str] = None,
    acknowledged: Optional[bool] = None,
    include_resolved: bool = False,
    limit: Optional[int] = 20,
) -> List[Dict]:
    """
    List performance alerts, most severe first, then newest first.

    Args:
        session: Database session
        player_id: Optional player filter
        alert_type: Optional AlertType filter
        severity: Optional AlertSeverity filter
        acknowledged: Optional acknowledgement filter
        include_resolved: If True, include resolved alerts (default: open only)
        limit: Maximum number of alerts (default: 20, None for all)

    Returns:
        List of alert dicts
    """
    conditions = []
    if player_id is not None:
        conditions.append(PerformanceAlert.player_id == player_id)
    if alert_type is not None:
        conditions.append(PerformanceAlert.alert_type == alert_type)
    if severity is not None:
        conditions.append(PerformanceAlert.severity == severity)
    if acknowledged is not None:
        conditions.append(PerformanceAlert.acknowledged.is_(acknowledged))
    if not include_resolved:
        conditions.append(PerformanceAlert.resolved_at.is_(None))

    query = select(PerformanceAlert).order_by(
        _severity_order().desc(),
        PerformanceAlert.created_at.desc(),
        PerformanceAlert.id.desc(),
    )
    if conditions:
        query = query.where(and_(*conditions))
    if limit is not None:
        query = query.limit(limit)

    result = await session.execute(query.execution_options(populate_existing=True))
    return [alert_to_dict(alert) for alert in result.scalars().all()]


async def get_alert(session: AsyncSession, alert_id: int) -> Dict:
    """Fetch a single alert. Raises NotFoundError if it does not exist."""
    alert = await _get_alert_or_raise(session, alert_id)
    return alert_to_dict(alert)


async def acknowledge_alert(
    session: AsyncSession,
    alert_id: int,
    acknowledged_by: str,
    now: Optional[datetime] = None,
) -> Dict:
    """
    Acknowledge an alert. The first acknowledgement wins; later calls return
    the alert unchanged.

    Args:
        session: Database session
        alert_id: ID of the alert
        acknowledged_by: ID of the acknowledging coach
        now: Acknowledgement timestamp (default: current UTC time)

    Raises:
        NotFoundError: If the alert does not exist
        ValidationError: If acknowledged_by is missing
    """
    if not acknowledged_by:
        raise ValidationError("acknowledged_by", "acknowledged_by is required")
    now = ensure_utc(now) if now is not None else utcnow()

    alert = await _get_alert_or_raise(session, alert_id)
    if not alert.acknowledged:
        alert.acknowledged = True
        alert.acknowledged_by = acknowledged_by
        alert.acknowledged_at = now
        alert.updated_at = now
        await session.flush()
        await session.refresh(alert)
        logger.info(f"Alert {alert_id} acknowledged by {acknowledged_by}")

    return alert_to_dict(alert)


async def resolve_alert(session: AsyncSession, alert_id: int, now: Optional[datetime] = None) -> Dict:
    """
    Resolve an alert, closing its lineage. Resolving twice keeps the first
    resolved_at.

    Raises:
        NotFoundError: If the alert does not exist
    """
    now = ensure_utc(now) if now is not None else utcnow()

    alert = await _get_alert_or_raise(session, alert_id)
    if alert.resolved_at is None:
        alert.resolved_at = now
        alert.updated_at = now
        await session.flush()
        await session.refresh(alert)
        logger.info(f"Alert {alert_id} resolved")

    return alert_to_dict(alert)


async def get_alert_summary(session: AsyncSession) -> Dict:
    """
    Summarize open alerts for the coach dashboard.

    Returns:
        Dict containing:
            - total: number of open alerts
            - unacknowledged: open alerts nobody has acknowledged
            - by_severity: unacknowledged counts per severity
            - by_type: unacknowledged counts per alert type
            - recent_critical: newest unacknowledged critical alerts
            - at_risk_players: players with several unacknowledged alerts
    """
    alerts = await list_alerts(session, limit=None)
    pending = [alert for alert in alerts if not alert["acknowledged"]]

    by_severity = {severity.value: 0 for severity in AlertSeverity}
    by_type: Dict[str, int] = {}
    per_player: Dict[str, Dict] = {}
    for alert in pending:
        by_severity[alert["severity"]] = by_severity.get(alert["severity"], 0) + 1
        by_type[alert["alert_type"]] = by_type.get(alert["alert_type"], 0) + 1

        player = per_player.setdefault(
            alert["player_id"], {"player_id": alert["player_id"], "alert_count": 0, "max_severity": "info"}
        )
        player["alert_count"] += 1
        if SEVERITY_RANK.get(alert["severity"], 0) > SEVERITY_RANK[player["max_severity"]]:
            player["max_severity"] = alert["severity"]

    recent_critical = sorted(
        (alert for alert in pending if alert["severity"] == AlertSeverity.CRITICAL.value),
        key=lambda alert: alert["created_at"],
        reverse=True,
    )[:RECENT_CRITICAL_LIMIT]

    at_risk_players = sorted(
        (player for player in per_player.values() if player["alert_count"] >= AT_RISK_ALERT_COUNT),
        key=lambda player: (-SEVERITY_RANK[player["max_severity"]], -player["alert_count"], player["player_id"]),
    )

    return {
        "total": len(alerts),
        "unacknowledged": len(pending),
        "by_severity": by_severity,
        "by_type": by_type,
        "recent_critical": recent_critical,
        "at_risk_players": at_risk_players,
    }
