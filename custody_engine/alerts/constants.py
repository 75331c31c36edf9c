from __future__ import annotations

# Alert types (alert identity is (type, client_id-or-None))
LOW_BALANCE = "LowBalance"
ALLOCATION_DRIFT = "AllocationDrift"
SYNC_FAILURE = "SyncFailure"

# Alert statuses
STATUS_ACTIVE = "Active"
STATUS_ACKNOWLEDGED = "Acknowledged"
STATUS_RESOLVED = "Resolved"
STATUS_DISMISSED = "Dismissed"
ALERT_STATUSES = (STATUS_ACTIVE, STATUS_ACKNOWLEDGED, STATUS_RESOLVED, STATUS_DISMISSED)

# Severities
SEVERITY_WARNING = "Warning"
SEVERITY_MEDIUM = "Medium"
SEVERITY_HIGH = "High"

# Thresholds (unit: USD / percent / hours)
LOW_BALANCE_THRESHOLD_USD = 1000.0
ALLOCATION_DRIFT_THRESHOLD_PCT = 10.0
FAILED_SYNC_ALERT_HOURS = 24

DRIFT_ALERT_HIGH_PCT = 20.0          # drift above this raises a High alert, otherwise Medium
DRIFT_SEVERITY_LOW_MAX = 5.0         # reporting bands: <5 Low, <10 Medium, else High
DRIFT_SEVERITY_MEDIUM_MAX = 10.0
