"""
Constants used across the messaging and alerting core.
"""

# Maximum message length (characters) per message type
MAX_CONTENT_LENGTH = {
    "broadcast": 1000,
    "direct": 500,
    "alert": 1000,
}

# Sender id used for system-generated alert messages
SYSTEM_SENDER_ID = "system"

# Alert rule defaults
DEFAULT_TIME_WINDOW_DAYS = 7
DEFAULT_RULE_SEVERITY = "warning"
DEFAULT_CHECK_FREQUENCY = "daily"
DEFAULT_APPLIES_TO = "all"

# Metric values are quantized to two decimals (0.01). "equals" rules treat two
# values as equal when they differ by less than half a quantum.
METRIC_DECIMALS = 2
EQUALS_TOLERANCE = 0.005

# Severity ordering, highest first when sorted descending
SEVERITY_RANK = {
    "info": 1,
    "warning": 2,
    "alert": 3,
    "critical": 4,
}

# Severities whose alerts require coach action
ACTION_REQUIRED_SEVERITIES = frozenset({"alert", "critical"})

# Players with at least this many unacknowledged open alerts are "at risk"
AT_RISK_ALERT_COUNT = 2

# Number of unacknowledged critical alerts shown in the summary
RECENT_CRITICAL_LIMIT = 5

# Used when a rule's alert_message renders to blank (e.g. "{trend}" with no trend)
DEFAULT_ALERT_MESSAGE = "{player_name}: {metric} is {value} (threshold {threshold})"
