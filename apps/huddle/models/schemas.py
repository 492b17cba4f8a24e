"""
Pydantic models for API request/response validation.
"""

from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, Field, ConfigDict


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: bool
    message: str


# ============================================================================
# Message schemas
# ============================================================================


class MessageCreate(BaseModel):
    """Request to send a message."""

    type: str = Field(description="broadcast, direct or alert")
    recipient_id: Optional[str] = None
    content: str
    priority: str = "normal"
    metadata: Optional[dict] = None
    expires_at: Optional[datetime] = None


class MessageResponse(BaseModel):
    """Message response. is_read/read_at are the caller's own read state."""

    id: int
    type: str
    sender_id: str
    recipient_id: Optional[str] = None
    content: str
    priority: str
    metadata: dict = Field(default_factory=dict)
    status: str
    expires_at: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None
    is_read: Optional[bool] = None
    read_at: Optional[str] = None


class MessageListResponse(BaseModel):
    """Paginated message list response."""

    messages: List[MessageResponse]
    total_count: int
    has_more: bool


class MarkReadRequest(BaseModel):
    """Request to mark a message as read. Note: message_id is in URL path."""

    device_info: Optional[dict] = None


class MessageReadResponse(BaseModel):
    """Read receipt response."""

    message_id: int
    user_id: str
    read_at: str
    device_info: dict = Field(default_factory=dict)


class UnreadCountResponse(BaseModel):
    """Unread message count response."""

    count: int


class UnreadByPlayerResponse(BaseModel):
    """Unread direct-message counts per player for the calling coach."""

    counts: Dict[str, int]
    total: int


class MarkAllReadResponse(BaseModel):
    success: bool
    count: int


# ============================================================================
# Alert rule schemas
# ============================================================================


class AlertRuleBase(BaseModel):
    """Fields shared by alert rule requests."""

    description: Optional[str] = None
    secondary_threshold: Optional[float] = None
    time_window: Optional[int] = None
    severity: Optional[str] = None
    is_active: Optional[bool] = None
    check_frequency: Optional[str] = None
    applies_to: Optional[str] = None
    specific_players: Optional[List[str]] = None


class AlertRuleCreate(AlertRuleBase):
    """Request to create an alert rule."""

    name: str
    metric_name: str
    comparison: str
    threshold_value: float
    alert_type: str
    alert_message: str


class AlertRuleUpdate(AlertRuleBase):
    """Request to edit an alert rule. Only provided fields change."""

    name: Optional[str] = None
    metric_name: Optional[str] = None
    comparison: Optional[str] = None
    threshold_value: Optional[float] = None
    alert_type: Optional[str] = None
    alert_message: Optional[str] = None


class AlertRuleResponse(BaseModel):
    """Alert rule response."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    name: str
    description: Optional[str] = None
    metric_name: str
    comparison: str
    threshold_value: float
    secondary_threshold: Optional[float] = None
    time_window: int
    alert_type: str
    severity: str
    alert_message: str
    is_active: bool
    check_frequency: str
    applies_to: str
    specific_players: List[str] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None


# ============================================================================
# Performance alert schemas
# ============================================================================


class PerformanceAlertResponse(BaseModel):
    """Performance alert response."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    player_id: str
    alert_type: str
    severity: str
    metric: str
    current_value: float
    threshold_value: float
    trend: Optional[float] = None
    message: str
    action_required: bool
    acknowledged: bool
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[str] = None
    resolved_at: Optional[str] = None
    rule_id: Optional[int] = None
    created_at: str
    updated_at: Optional[str] = None


class AlertListResponse(BaseModel):
    """Alert list, also grouped by player for the dashboard."""

    alerts: List[PerformanceAlertResponse]
    alerts_by_player: Dict[str, List[PerformanceAlertResponse]]
    total: int


class AtRiskPlayer(BaseModel):
    player_id: str
    alert_count: int
    max_severity: str


class AlertSummaryResponse(BaseModel):
    """Open-alert summary for the coach dashboard."""

    total: int
    unacknowledged: int
    by_severity: Dict[str, int]
    by_type: Dict[str, int]
    recent_critical: List[PerformanceAlertResponse]
    at_risk_players: List[AtRiskPlayer]


class InvalidRuleItem(BaseModel):
    rule_id: int
    name: str
    field: Optional[str] = None
    error: str


class SkippedUnitItem(BaseModel):
    rule_id: int
    player_id: str
    reason: str


class EvaluationErrorItem(BaseModel):
    rule_id: int
    player_id: Optional[str] = None
    error: str


class EvaluationPassResponse(BaseModel):
    """Summary of one alert evaluation pass."""

    evaluated_at: str
    check_frequency: Optional[str] = None
    rules_evaluated: int
    units_evaluated: int
    alerts_created: List[PerformanceAlertResponse]
    alerts_resolved: List[int]
    deduplicated: int
    skipped: List[SkippedUnitItem]
    invalid_rules: List[InvalidRuleItem]
    errors: List[EvaluationErrorItem]
