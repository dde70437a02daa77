"""Default policy values shared across signoff modules."""

from __future__ import annotations

# Per-step SLA for approval workflows, matching the daily reminder window.
DEFAULT_APPROVAL_STEP_SLA_HOURS = 24.0

# Amount tier boundaries (upper bound exclusive) for amount-scaled approvals.
DEFAULT_PURCHASE_THRESHOLDS = (100_000, 500_000)
DEFAULT_EXPENSE_THRESHOLDS = (50_000, 200_000)

# Severity -> (immediate action, root cause, corrective action, verification)
# offsets in hours. Closure has no deadline.
DEFAULT_DEADLINE_HOURS = {
    "CRITICAL": (4, 24, 3 * 24, 7 * 24),
    "HIGH": (24, 3 * 24, 7 * 24, 14 * 24),
    "MEDIUM": (2 * 24, 5 * 24, 14 * 24, 21 * 24),
    "LOW": (3 * 24, 7 * 24, 21 * 24, 30 * 24),
}

DEFAULT_SWEEP_INTERVAL_SECONDS = 3600

DEFAULT_DELIVERY_ATTEMPTS = 3
DEFAULT_DELIVERY_BACKOFF_BASE = 1.5

REDIS_NOTIFICATION_PREFIX = "signoff:notifications"
