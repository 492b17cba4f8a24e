"""
SQLAlchemy ORM models for the coach/player messaging and alerting system.
"""

import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Float,
    DateTime,
    ForeignKey,
    CheckConstraint,
    Index,
    JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator
from huddle.database.db import Base
from huddle.utils.datetime_utils import utcnow, ensure_utc


class MessageType(str, enum.Enum):
    """Message type enum."""

    BROADCAST = "broadcast"
    DIRECT = "direct"
    ALERT = "alert"


class MessagePriority(str, enum.Enum):
    """Message priority enum."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class MessageStatus(str, enum.Enum):
    """Coarse delivery status. Display hint only; read state lives in message_reads."""

    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class AlertType(str, enum.Enum):
    """Performance alert type enum."""

    BENCHMARK_LOW = "benchmark_low"
    NEGATIVE_TREND = "negative_trend"
    MISSED_GAMES = "missed_games"
    ACADEMIC_DECLINE = "academic_decline"
    IMPROVEMENT = "improvement"
    MILESTONE_REACHED = "milestone_reached"


class AlertSeverity(str, enum.Enum):
    """Performance alert severity enum."""

    INFO = "info"
    WARNING = "warning"
    ALERT = "alert"
    CRITICAL = "critical"


class RuleComparison(str, enum.Enum):
    """How an alert rule compares a metric against its threshold."""

    BELOW = "below"
    ABOVE = "above"
    EQUALS = "equals"
    BETWEEN = "between"


class CheckFrequency(str, enum.Enum):
    """How often the scheduler evaluates a rule."""

    REALTIME = "realtime"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class RuleAppliesTo(str, enum.Enum):
    """Roster segment an alert rule applies to."""

    ALL = "all"
    STARTERS = "starters"
    BENCH = "bench"
    SPECIFIC = "specific"


class UTCDateTime(TypeDecorator):
    """Timezone-aware DateTime that always round-trips as aware UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Message(Base):
    """Coach/player messages: broadcasts, direct messages and system alerts."""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(20), nullable=False)  # MessageType enum value
    sender_id = Column(String(50), nullable=False)
    recipient_id = Column(String(50), nullable=True)  # NULL for broadcasts
    content = Column(Text, nullable=False)
    priority = Column(String(20), nullable=False, default=MessagePriority.NORMAL.value)
    # "metadata" is reserved on declarative classes
    message_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=MessageStatus.SENT.value)
    expires_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    # Relationships
    reads = relationship(
        "MessageRead", back_populates="message", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint(
            "(type = 'direct' AND recipient_id IS NOT NULL)"
            " OR (type = 'broadcast' AND recipient_id IS NULL)"
            " OR type = 'alert'",
            name="ck_messages_recipient_shape",
        ),
        Index("idx_messages_recipient_created", "recipient_id", "created_at"),
        Index("idx_messages_type_created", "type", "created_at"),
        Index("idx_messages_sender_type", "sender_id", "type"),
        Index("idx_messages_expires_at", "expires_at"),
    )


class MessageRead(Base):
    """Per-user read receipts. One row per (message, user)."""

    __tablename__ = "message_reads"

    message_id = Column(
        Integer, ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True
    )
    user_id = Column(String(50), primary_key=True)
    read_at = Column(UTCDateTime, nullable=False, default=utcnow)
    device_info = Column(JSONType, nullable=False, default=dict)

    # Relationships
    message = relationship("Message", back_populates="reads")

    __table_args__ = (Index("idx_message_reads_user_read_at", "user_id", "read_at"),)


class AlertRule(Base):
    """Coach-configured metric thresholds evaluated by the alert engine."""

    __tablename__ = "alert_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    metric_name = Column(String(100), nullable=False)
    comparison = Column(String(20), nullable=False)  # RuleComparison enum value
    threshold_value = Column(Float, nullable=False)
    secondary_threshold = Column(Float, nullable=True)  # Only for "between"
    time_window = Column(Integer, nullable=False, default=7)  # Days
    alert_type = Column(String(50), nullable=False)  # AlertType enum value
    severity = Column(String(20), nullable=False, default=AlertSeverity.WARNING.value)
    alert_message = Column(Text, nullable=False)  # Template
    is_active = Column(Boolean, nullable=False, default=True)
    check_frequency = Column(String(20), nullable=False, default=CheckFrequency.DAILY.value)
    applies_to = Column(String(20), nullable=False, default=RuleAppliesTo.ALL.value)
    specific_players = Column(JSONType, nullable=False, default=list)
    created_by = Column(String(50), nullable=True)  # Owning coach
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    # Relationships
    alerts = relationship("PerformanceAlert", back_populates="rule")

    __table_args__ = (
        Index("idx_alert_rules_is_active", "is_active"),
        Index("idx_alert_rules_metric_name", "metric_name"),
        Index("idx_alert_rules_check_frequency", "check_frequency"),
    )


class PerformanceAlert(Base):
    """Alerts raised when a player's metric trips an alert rule."""

    __tablename__ = "performance_alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    player_id = Column(String(50), nullable=False)
    alert_type = Column(String(50), nullable=False)  # AlertType enum value
    severity = Column(String(20), nullable=False, default=AlertSeverity.INFO.value)
    metric = Column(String(100), nullable=False)
    current_value = Column(Float, nullable=True)
    threshold_value = Column(Float, nullable=True)
    trend = Column(Float, nullable=True)  # Percentage change vs. previous window
    message = Column(Text, nullable=False)
    action_required = Column(Boolean, nullable=False, default=False)
    acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_by = Column(String(50), nullable=True)
    acknowledged_at = Column(UTCDateTime, nullable=True)
    resolved_at = Column(UTCDateTime, nullable=True)
    rule_id = Column(Integer, ForeignKey("alert_rules.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    # Relationships
    rule = relationship("AlertRule", back_populates="alerts")

    __table_args__ = (
        # At most one open alert per (player, alert_type, metric) lineage
        Index(
            "uq_performance_alerts_open_lineage",
            "player_id",
            "alert_type",
            "metric",
            unique=True,
            postgresql_where=resolved_at.is_(None),
            sqlite_where=resolved_at.is_(None),
        ),
        Index("idx_performance_alerts_player", "player_id"),
        Index("idx_active_alerts", "acknowledged", "severity", "created_at"),
    )
