"""
Alert rule service: coach-owned configuration for the alert engine.

Rules are validated in full whenever they are created or edited, so a bad
configuration (e.g. "between" with no upper bound) is rejected up front
instead of surfacing during evaluation. Rules are deactivated, never deleted.
"""

from typing import List, Dict, Optional
from numbers import Number
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from huddle.database.models import (
    AlertRule,
    AlertType,
    AlertSeverity,
    RuleComparison,
    CheckFrequency,
    RuleAppliesTo,
)
from huddle.services.errors import ValidationError, NotFoundError
from huddle.utils.constants import (
    DEFAULT_TIME_WINDOW_DAYS,
    DEFAULT_RULE_SEVERITY,
    DEFAULT_CHECK_FREQUENCY,
    DEFAULT_APPLIES_TO,
)
from huddle.utils.datetime_utils import utcnow, isoformat_or_none
import logging

logger = logging.getLogger(__name__)

# Fields a coach may set on a rule
EDITABLE_FIELDS = (
    "name",
    "description",
    "metric_name",
    "comparison",
    "threshold_value",
    "secondary_threshold",
    "time_window",
    "alert_type",
    "severity",
    "alert_message",
    "is_active",
    "check_frequency",
    "applies_to",
    "specific_players",
)

RULE_DEFAULTS = {
    "description": None,
    "secondary_threshold": None,
    "time_window": DEFAULT_TIME_WINDOW_DAYS,
    "severity": DEFAULT_RULE_SEVERITY,
    "is_active": True,
    "check_frequency": DEFAULT_CHECK_FREQUENCY,
    "applies_to": DEFAULT_APPLIES_TO,
    "specific_players": [],
}


def rule_to_dict(rule: AlertRule) -> Dict:
    """Serialize an AlertRule row to an API dict."""
    return {
        "id": rule.id,
        "name": rule.name,
        "description": rule.description,
        "metric_name": rule.metric_name,
        "comparison": rule.comparison,
        "threshold_value": rule.threshold_value,
        "secondary_threshold": rule.secondary_threshold,
        "time_window": rule.time_window,
        "alert_type": rule.alert_type,
        "severity": rule.severity,
        "alert_message": rule.alert_message,
        "is_active": rule.is_active,
        "check_frequency": rule.check_frequency,
        "applies_to": rule.applies_to,
        "specific_players": list(rule.specific_players or []),
        "created_by": rule.created_by,
        "created_at": isoformat_or_none(rule.created_at),
        "updated_at": isoformat_or_none(rule.updated_at),
    }


def _is_number(value) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def _require_choice(config: Dict, field: str, enum_cls) -> None:
    allowed = [member.value for member in enum_cls]
    if config.get(field) not in allowed:
        raise ValidationError(field, f"{field} must be one of {allowed}")


def validate_rule_config(config: Dict) -> None:
    """
    Validate a complete rule configuration.

    Used on create, on update (after merging the changes), and again by the
    engine before evaluating stored rules.

    Raises:
        ValidationError: Naming the first violated field
    """
    for field in ("name", "metric_name", "alert_message"):
        value = config.get(field)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(field, f"{field} is required")

    _require_choice(config, "comparison", RuleComparison)
    _require_choice(config, "alert_type", AlertType)
    _require_choice(config, "severity", AlertSeverity)
    _require_choice(config, "check_frequency", CheckFrequency)
    _require_choice(config, "applies_to", RuleAppliesTo)

    if not _is_number(config.get("threshold_value")):
        raise ValidationError("threshold_value", "threshold_value must be a number")

    secondary = config.get("secondary_threshold")
    if config["comparison"] == RuleComparison.BETWEEN.value:
        if secondary is None:
            raise ValidationError(
                "secondary_threshold", "secondary_threshold is required for 'between' rules"
            )
        if not _is_number(secondary):
            raise ValidationError("secondary_threshold", "secondary_threshold must be a number")
        if secondary < config["threshold_value"]:
            raise ValidationError(
                "secondary_threshold", "secondary_threshold must be >= threshold_value"
            )
    elif secondary is not None and not _is_number(secondary):
        raise ValidationError("secondary_threshold", "secondary_threshold must be a number")

    time_window = config.get("time_window")
    if not isinstance(time_window, int) or isinstance(time_window, bool) or time_window < 1:
        raise ValidationError("time_window", "time_window must be a positive number of days")

    if not isinstance(config.get("is_active"), bool):
        raise ValidationError("is_active", "is_active must be true or false")

    specific_players = config.get("specific_players")
    if not isinstance(specific_players, list):
        raise ValidationError("specific_players", "specific_players must be a list of player ids")
    if config["applies_to"] == RuleAppliesTo.SPECIFIC.value and not specific_players:
        raise ValidationError(
            "specific_players", "specific_players is required when applies_to is 'specific'"
        )


async def _name_taken(session: AsyncSession, name: str, exclude_rule_id: Optional[int] = None) -> bool:
    query = select(AlertRule.id).where(AlertRule.name == name)
    if exclude_rule_id is not None:
        query = query.where(AlertRule.id != exclude_rule_id)
    result = await session.execute(query)
    return result.first() is not None


async def _get_rule_or_raise(session: AsyncSession, rule_id: int) -> AlertRule:
    rule = await session.get(AlertRule, rule_id)
    if rule is None:
        raise NotFoundError("Alert rule", rule_id)
    return rule


async def create_alert_rule(session: AsyncSession, created_by: Optional[str], **fields) -> Dict:
    """
    Create an alert rule.

    Args:
        session: Database session
        created_by: ID of the configuring coach
        **fields: Rule fields (see EDITABLE_FIELDS); omitted optional fields
            take their defaults

    Returns:
        Dict containing the created rule

    Raises:
        ValidationError: If the configuration is invalid or the name is taken
    """
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(sorted(unknown)[0], f"unknown field: {sorted(unknown)[0]}")

    config = dict(RULE_DEFAULTS)
    config.update({key: value for key, value in fields.items() if value is not None})
    validate_rule_config(config)
    config["name"] = config["name"].strip()

    if await _name_taken(session, config["name"]):
        raise ValidationError("name", f"an alert rule named '{config['name']}' already exists")

    now = utcnow()
    rule = AlertRule(created_by=created_by, created_at=now, updated_at=now, **config)
    session.add(rule)
    try:
        await session.flush()
    except IntegrityError:
        raise ValidationError("name", f"an alert rule named '{config['name']}' already exists")
    await session.refresh(rule)

    logger.info(f"Alert rule {rule.id} ({rule.name!r}) created by {created_by}")
    return rule_to_dict(rule)


async def update_alert_rule(session: AsyncSession, rule_id: int, updates: Dict) -> Dict:
    """
    Edit an alert rule. The merged configuration is re-validated as a whole.

    Args:
        session: Database session
        rule_id: ID of the rule
        updates: Fields to change (see EDITABLE_FIELDS)

    Returns:
        Dict containing the updated rule

    Raises:
        NotFoundError: If the rule does not exist
        ValidationError: If the resulting configuration is invalid
    """
    unknown = set(updates) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(sorted(unknown)[0], f"unknown field: {sorted(unknown)[0]}")

    rule = await _get_rule_or_raise(session, rule_id)

    config = {field: getattr(rule, field) for field in EDITABLE_FIELDS}
    config["specific_players"] = list(config["specific_players"] or [])
    config.update(updates)
    validate_rule_config(config)
    config["name"] = config["name"].strip()

    if config["name"] != rule.name and await _name_taken(session, config["name"], exclude_rule_id=rule_id):
        raise ValidationError("name", f"an alert rule named '{config['name']}' already exists")

    for field, value in config.items():
        setattr(rule, field, value)
    rule.updated_at = utcnow()

    await session.flush()
    await session.refresh(rule)
    return rule_to_dict(rule)


async def deactivate_alert_rule(session: AsyncSession, rule_id: int) -> Dict:
    """
    Stop evaluating a rule. Its history (alerts) is kept.

    Raises:
        NotFoundError: If the rule does not exist
    """
    rule = await _get_rule_or_raise(session, rule_id)
    if rule.is_active:
        rule.is_active = False
        rule.updated_at = utcnow()
        await session.flush()
        await session.refresh(rule)
        logger.info(f"Alert rule {rule_id} deactivated")
    return rule_to_dict(rule)


async def get_alert_rule(session: AsyncSession, rule_id: int) -> Dict:
    """Fetch a single rule. Raises NotFoundError if it does not exist."""
    rule = await _get_rule_or_raise(session, rule_id)
    return rule_to_dict(rule)


async def list_alert_rules(
    session: AsyncSession,
    active_only: bool = False,
    check_frequency: Optional[str] = None,
) -> List[Dict]:
    """
    List alert rules ordered by name.

    Args:
        session: Database session
        active_only: If True, only return active rules
        check_frequency: Optional CheckFrequency filter
    """
    conditions = []
    if active_only:
        conditions.append(AlertRule.is_active.is_(True))
    if check_frequency is not None:
        conditions.append(AlertRule.check_frequency == check_frequency)

    query = select(AlertRule).order_by(AlertRule.name)
    if conditions:
        query = query.where(and_(*conditions))

    result = await session.execute(query.execution_options(populate_existing=True))
    return [rule_to_dict(rule) for rule in result.scalars().all()]
