"""
Shared constants for the Day of Timeline billing functions.
"""

# Purchase tiers
PERPETUAL = "perpetual"
SHORT_CYCLE = "short_cycle"
LONG_CYCLE = "long_cycle"

RECURRING_TIERS = (SHORT_CYCLE, LONG_CYCLE)

# Stripe checkout modes
MODE_PAYMENT = "payment"
MODE_SUBSCRIPTION = "subscription"

# Local mirror of Stripe subscription statuses
SUBSCRIPTION_STATUSES = (
    "not_started",
    "incomplete",
    "incomplete_expired",
    "trialing",
    "active",
    "past_due",
    "canceled",
    "unpaid",
    "paused",
)
STATUS_NOT_STARTED = "not_started"
STATUS_ACTIVE = "active"

# Stripe statuses that no longer grant access and never change again
TERMINAL_STATUSES = ("canceled", "incomplete_expired")

# Order lifecycle (the only status this subsystem writes)
ORDER_COMPLETED = "completed"

# Display-safe placeholder used when no validated card data exists
SENTINEL_BRAND = "card"
SENTINEL_LAST4 = "****"

# Locally generated subscription ids; Stripe ids are "sub_<random>"
FALLBACK_SUBSCRIPTION_PREFIX = "sub_fallback_"
EMERGENCY_SUBSCRIPTION_PREFIX = "sub_emergency_"

# Sync log outcomes
SYNC_SUCCESS = "success"
SYNC_FAILED = "failed"
SYNC_ERROR = "error"
SYNC_NO_DATA = "no_data_found"

# Sync log operations
OP_SUBSCRIPTION_SYNC = "subscription_sync"
OP_PAYMENT_METHOD_SYNC = "payment_method_sync"
OP_STUCK_SUBSCRIPTION_SYNC = "stuck_subscription_sync"

SECONDS_PER_DAY = 24 * 60 * 60
