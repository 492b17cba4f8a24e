"""
Alert evaluation engine: turns alert rules plus player metrics into
performance alerts.

One evaluation pass walks every active rule and every player the rule applies
to. Each (rule, player) pair is evaluated in its own session and transaction,
so a failure for one pair (stats service down, bad data) never aborts the
rest of the pass.

Per pair:
    1. Average the metric over the rule's time window (missing data -> skip).
    2. Compare against the threshold(s).
    3. Condition met: open an alert for the (player, alert_type, metric)
       lineage unless one was already opened within the window.
    4. Condition not met: resolve the lineage's open alert, if any.

The open-lineage partial unique index plus ON CONFLICT DO NOTHING keeps
overlapping passes from opening duplicate alerts.

Scheduling is external: cron (scripts/run_alert_checks.py) or the
run-checks endpoint triggers passes per check_frequency.
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from huddle.database import db
from huddle.database.db import get_insert
from huddle.database.models import (
    PerformanceAlert,
    RuleComparison,
    MessageType,
    MessagePriority,
    AlertSeverity,
)
from huddle.services import alert_rule_service, message_service
from huddle.services.errors import ValidationError
from huddle.services.performance_alert_service import alert_to_dict
from huddle.services.providers import HttpRosterProvider, HttpStatsProvider
from huddle.utils.constants import (
    ACTION_REQUIRED_SEVERITIES,
    DEFAULT_ALERT_MESSAGE,
    EQUALS_TOLERANCE,
    MAX_CONTENT_LENGTH,
    METRIC_DECIMALS,
    SYSTEM_SENDER_ID,
)
from huddle.utils.datetime_utils import utcnow, ensure_utc

logger = logging.getLogger(__name__)

# Maximum number of (rule, player) pairs evaluated at once
EVAL_MAX_CONCURRENCY = int(os.getenv("EVAL_MAX_CONCURRENCY", "4"))


def quantize(value) -> float:
    """Round a metric value to the stored precision (two decimals)."""
    return round(float(value), METRIC_DECIMALS)


def evaluate_comparison(
    comparison: str,
    value: float,
    threshold: float,
    secondary_threshold: Optional[float] = None,
) -> bool:
    """
    Check a metric value against a rule's threshold(s).

    below/above are strict; between is inclusive on both ends. equals uses
    an explicit tolerance: both sides are quantized to two decimals and count
    as equal when they differ by less than EQUALS_TOLERANCE.

    Raises:
        ValidationError: If comparison is unknown, or "between" has no
            secondary threshold
    """
    value = quantize(value)
    threshold = quantize(threshold)

    if comparison == RuleComparison.BELOW.value:
        return value < threshold
    if comparison == RuleComparison.ABOVE.value:
        return value > threshold
    if comparison == RuleComparison.EQUALS.value:
        return abs(value - threshold) < EQUALS_TOLERANCE
    if comparison == RuleComparison.BETWEEN.value:
        if secondary_threshold is None:
            raise ValidationError(
                "secondary_threshold", "secondary_threshold is required for 'between' rules"
            )
        return threshold <= value <= quantize(secondary_threshold)
    raise ValidationError("comparison", f"unknown comparison: {comparison}")


def compute_trend(current: float, previous: Optional[float]) -> Optional[float]:
    """Percentage change from the previous window, or None if it can't be computed."""
    if previous is None or previous == 0:
        return None
    return quantize((current - previous) / abs(previous) * 100)


def action_required_for(severity: str) -> bool:
    """Alerts at "alert" or "critical" severity need coach action."""
    return severity in ACTION_REQUIRED_SEVERITIES


def _format_number(value: Optional[float]) -> str:
    return "" if value is None else f"{value:.2f}"


def render_alert_message(template: str, values: Dict[str, str]) -> str:
    """
    Fill a rule's alert_message template.

    Placeholders use braces, e.g. "{player_name} averaged {value} {metric}".
    Unknown placeholders are left as-is.
    """
    message = template
    for key, value in values.items():
        message = message.replace("{" + key + "}", value)
    return message


async def find_open_alert(
    session: AsyncSession, player_id: str, alert_type: str, metric: str
) -> Optional[PerformanceAlert]:
    """Return the unresolved alert for a lineage, if any (at most one exists)."""
    result = await session.execute(
        select(PerformanceAlert)
        .where(
            and_(
                PerformanceAlert.player_id == player_id,
                PerformanceAlert.alert_type == alert_type,
                PerformanceAlert.metric == metric,
                PerformanceAlert.resolved_at.is_(None),
            )
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def resolve_open_alert(session: AsyncSession, alert_id: int, now: datetime) -> bool:
    """
    Resolve an alert only if it is still open.

    Returns:
        True if this call resolved it, False if it was already resolved
    """
    result = await session.execute(
        update(PerformanceAlert)
        .where(and_(PerformanceAlert.id == alert_id, PerformanceAlert.resolved_at.is_(None)))
        .values(resolved_at=now, updated_at=now)
    )
    return result.rowcount == 1


class AlertEvaluationEngine:
    """Evaluates active alert rules against player metrics."""

    def __init__(self, roster_provider, stats_provider, session_factory=None, max_concurrency: Optional[int] = None):
        """
        Args:
            roster_provider: Object with ``async get_players(applies_to, specific_players)``
            stats_provider: Object with ``async get_metric_value(player_id, metric_name, start, end)``
            session_factory: Session factory (default: db.AsyncSessionLocal, looked up per use)
            max_concurrency: Max (rule, player) pairs evaluated at once
        """
        self.roster_provider = roster_provider
        self.stats_provider = stats_provider
        self._session_factory = session_factory
        self.max_concurrency = max(1, max_concurrency or EVAL_MAX_CONCURRENCY)

    def _new_session(self) -> AsyncSession:
        factory = self._session_factory or db.AsyncSessionLocal
        return factory()

    async def run_pass(self, now: Optional[datetime] = None, check_frequency: Optional[str] = None) -> Dict:
        """
        Run one evaluation pass.

        Args:
            now: Evaluation time (default: current UTC time)
            check_frequency: Only evaluate rules with this CheckFrequency

        Returns:
            Dict containing:
                - rules_evaluated: valid active rules considered
                - units_evaluated: (rule, player) pairs evaluated
                - alerts_created: list of new alert dicts
                - alerts_resolved: ids of alerts resolved this pass
                - deduplicated: pairs whose lineage already had a recent open alert
                - skipped: pairs skipped for missing metric data
                - invalid_rules: rules excluded for invalid configuration
                - errors: pairs (or rules) that failed
        """
        now = ensure_utc(now) if now is not None else utcnow()
        summary = {
            "evaluated_at": now.isoformat(),
            "check_frequency": check_frequency,
            "rules_evaluated": 0,
            "units_evaluated": 0,
            "alerts_created": [],
            "alerts_resolved": [],
            "deduplicated": 0,
            "skipped": [],
            "invalid_rules": [],
            "errors": [],
        }

        async with self._new_session() as session:
            rules = await alert_rule_service.list_alert_rules(
                session, active_only=True, check_frequency=check_frequency
            )

        units = []
        for rule in rules:
            try:
                alert_rule_service.validate_rule_config(rule)
            except ValidationError as e:
                logger.warning(f"Excluding invalid alert rule {rule['id']} ({rule['name']!r}): {e}")
                summary["invalid_rules"].append(
                    {"rule_id": rule["id"], "name": rule["name"], "field": e.field, "error": str(e)}
                )
                continue

            summary["rules_evaluated"] += 1
            try:
                players = await self.roster_provider.get_players(
                    rule["applies_to"], rule["specific_players"]
                )
            except Exception as e:
                logger.error(f"Failed to resolve players for alert rule {rule['id']}: {e}", exc_info=True)
                summary["errors"].append({"rule_id": rule["id"], "player_id": None, "error": str(e)})
                continue

            units.extend((rule, player) for player in players)

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_unit(rule: Dict, player: Dict) -> Dict:
            async with semaphore:
                return await self._evaluate_unit_isolated(rule, player, now)

        outcomes = await asyncio.gather(*(run_unit(rule, player) for rule, player in units))
        summary["units_evaluated"] = len(units)

        for outcome in outcomes:
            summary["alerts_resolved"].extend(outcome.get("resolved_alert_ids", []))
            status = outcome["status"]
            if status == "created":
                summary["alerts_created"].append(outcome["alert"])
            elif status == "deduplicated":
                summary["deduplicated"] += 1
            elif status == "skipped":
                summary["skipped"].append(
                    {"rule_id": outcome["rule_id"], "player_id": outcome["player_id"], "reason": outcome["reason"]}
                )
            elif status == "error":
                summary["errors"].append(
                    {"rule_id": outcome["rule_id"], "player_id": outcome["player_id"], "error": outcome["error"]}
                )

        logger.info(
            f"Alert evaluation pass ({check_frequency or 'all frequencies'}): "
            f"{summary['rules_evaluated']} rules, {summary['units_evaluated']} pairs, "
            f"{len(summary['alerts_created'])} created, {len(summary['alerts_resolved'])} resolved, "
            f"{len(summary['skipped'])} skipped, {len(summary['errors'])} errors"
        )
        return summary

    async def _evaluate_unit_isolated(self, rule: Dict, player: Dict, now: datetime) -> Dict:
        """Evaluate one (rule, player) pair in its own transaction; never raises."""
        player_id = str(player.get("id"))
        try:
            async with self._new_session() as session:
                try:
                    outcome = await self._evaluate_unit(session, rule, player, now)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except Exception as e:
            logger.error(
                f"Error evaluating alert rule {rule['id']} for player {player_id}: {e}", exc_info=True
            )
            return {"status": "error", "rule_id": rule["id"], "player_id": player_id, "error": str(e)}

        outcome.setdefault("rule_id", rule["id"])
        outcome.setdefault("player_id", player_id)
        return outcome

    async def _previous_window_value(self, player_id: str, rule: Dict, now: datetime) -> Optional[float]:
        """Metric over the window before the current one, used for the trend."""
        window = timedelta(days=rule["time_window"])
        try:
            return await self.stats_provider.get_metric_value(
                player_id, rule["metric_name"], now - 2 * window, now - window
            )
        except Exception as e:
            logger.warning(f"Could not fetch previous {rule['metric_name']} for player {player_id}: {e}")
            return None

    async def _evaluate_unit(self, session: AsyncSession, rule: Dict, player: Dict, now: datetime) -> Dict:
        player_id = str(player["id"])
        metric = rule["metric_name"]
        window = timedelta(days=rule["time_window"])

        value = await self.stats_provider.get_metric_value(player_id, metric, now - window, now)
        if value is None:
            logger.info(f"Skipping player {player_id} for alert rule {rule['id']}: no {metric} data")
            return {"status": "skipped", "reason": f"no {metric} data"}
        value = quantize(value)

        satisfied = evaluate_comparison(
            rule["comparison"], value, rule["threshold_value"], rule["secondary_threshold"]
        )
        open_alert = await find_open_alert(session, player_id, rule["alert_type"], metric)

        if not satisfied:
            if open_alert is not None and await resolve_open_alert(session, open_alert.id, now):
                logger.info(f"Resolved alert {open_alert.id} for player {player_id} ({metric} = {value})")
                return {"status": "resolved", "resolved_alert_ids": [open_alert.id]}
            return {"status": "no_change"}

        resolved_ids: List[int] = []
        if open_alert is not None:
            if ensure_utc(open_alert.created_at) >= now - window:
                return {"status": "deduplicated", "alert_id": open_alert.id}
            # Open alert predates the window: close it and start a fresh one
            if await resolve_open_alert(session, open_alert.id, now):
                resolved_ids.append(open_alert.id)

        previous = await self._previous_window_value(player_id, rule, now)
        alert = await self._open_alert(session, rule, player, value, compute_trend(value, previous), now)
        if alert is None:
            # Another pass opened this lineage first
            return {"status": "deduplicated", "resolved_alert_ids": resolved_ids}

        alert_dict = alert_to_dict(alert)
        if alert.action_required:
            await self._deliver_alert_message(session, alert, now)

        logger.info(
            f"Opened {alert_dict['severity']} alert {alert_dict['id']} for player {player_id}: "
            f"{metric} = {value} ({rule['comparison']} {rule['threshold_value']})"
        )
        return {"status": "created", "alert": alert_dict, "resolved_alert_ids": resolved_ids}

    async def _open_alert(
        self,
        session: AsyncSession,
        rule: Dict,
        player: Dict,
        value: float,
        trend: Optional[float],
        now: datetime,
    ) -> Optional[PerformanceAlert]:
        """Insert a new open alert; returns None if the lineage is already open."""
        player_id = str(player["id"])
        values = {
            "player_name": str(player.get("name") or player_id),
            "player_id": player_id,
            "metric": rule["metric_name"],
            "value": _format_number(value),
            "threshold": _format_number(rule["threshold_value"]),
            "secondary_threshold": _format_number(rule["secondary_threshold"]),
            "time_window": str(rule["time_window"]),
            "trend": _format_number(trend),
        }
        message = render_alert_message(rule["alert_message"], values).strip()
        if not message:
            message = render_alert_message(DEFAULT_ALERT_MESSAGE, values)

        insert = get_insert(session)
        stmt = (
            insert(PerformanceAlert)
            .values(
                player_id=player_id,
                alert_type=rule["alert_type"],
                severity=rule["severity"],
                metric=rule["metric_name"],
                current_value=value,
                threshold_value=rule["threshold_value"],
                trend=trend,
                message=message,
                action_required=action_required_for(rule["severity"]),
                acknowledged=False,
                rule_id=rule["id"],
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=["player_id", "alert_type", "metric"],
                index_where=PerformanceAlert.resolved_at.is_(None),
            )
            .returning(PerformanceAlert.id)
        )
        result = await session.execute(stmt)
        alert_id = result.scalar_one_or_none()
        if alert_id is None:
            return None
        return await session.get(PerformanceAlert, alert_id)

    async def _deliver_alert_message(self, session: AsyncSession, alert: PerformanceAlert, now: datetime) -> None:
        """
        Send the alert message in a SAVEPOINT. A failed delivery is logged and
        rolled back on its own; the alert itself is kept.
        """
        alert_id, player_id = alert.id, alert.player_id
        try:
            async with session.begin_nested():
                await self._send_alert_message(session, alert, now)
        except Exception as e:
            logger.warning(f"Could not send message for alert {alert_id} to player {player_id}: {e}")

    async def _send_alert_message(self, session: AsyncSession, alert: PerformanceAlert, now: datetime) -> None:
        """Deliver an action-required alert to the player as an alert message."""
        priority = (
            MessagePriority.URGENT.value
            if alert.severity == AlertSeverity.CRITICAL.value
            else MessagePriority.HIGH.value
        )
        await message_service.send_message(
            session,
            sender_id=SYSTEM_SENDER_ID,
            type=MessageType.ALERT.value,
            recipient_id=alert.player_id,
            content=alert.message[: MAX_CONTENT_LENGTH[MessageType.ALERT.value]],
            priority=priority,
            metadata={"alert_id": alert.id, "alert_type": alert.alert_type, "metric": alert.metric},
            now=now,
        )


# Global engine backed by the HTTP roster/stats services
_alert_engine: Optional[AlertEvaluationEngine] = None


def get_alert_engine() -> AlertEvaluationEngine:
    """Get the global alert evaluation engine instance."""
    global _alert_engine
    if _alert_engine is None:
        _alert_engine = AlertEvaluationEngine(HttpRosterProvider(), HttpStatsProvider())
    return _alert_engine
