"""
Subscription Monitor - Scheduled Lambda (daily at 2:00 AM UTC)

Soft-deletes customers whose cancelled subscription has run past the end
of its paid period, and reports customers losing access within the next
7 days. Records are tombstoned with deleted_at, never removed.
"""

import logging
import time
from collections import defaultdict
from datetime import datetime, timezone

from botocore.exceptions import ClientError

from shared.billing_store import get_store
from shared.constants import LONG_CYCLE, PERPETUAL, SECONDS_PER_DAY, SHORT_CYCLE, STATUS_ACTIVE
from shared.logging_utils import configure_structured_logging, mask_email, set_request_id

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

EXPIRY_WARNING_DAYS = 7


def _period_end(order: dict) -> int | None:
    value = order.get("current_period_end")
    return int(value) if value is not None else None


def _is_cancelled(order: dict) -> bool:
    return bool(order.get("cancel_at_period_end"))


def _access_ended(orders: list[dict], now: int) -> bool:
    """True when every entitlement the customer holds is a cancelled, lapsed period."""
    if any(o.get("purchase_type") == PERPETUAL for o in orders):
        return False
    for order in orders:
        period_end = _period_end(order)
        if not _is_cancelled(order) or period_end is None or period_end > now:
            return False
    return True


def _summarize(orders_by_customer: dict) -> dict:
    summary = {
        "total_customers": len(orders_by_customer),
        "perpetual_customers": 0,
        "active_short_cycle": 0,
        "active_long_cycle": 0,
        "cancelling": 0,
    }
    for orders in orders_by_customer.values():
        latest = max(orders, key=lambda o: o.get("created_at") or "")
        tier = latest.get("purchase_type")
        if tier == PERPETUAL:
            summary["perpetual_customers"] += 1
        elif _is_cancelled(latest):
            summary["cancelling"] += 1
        elif latest.get("subscription_status") == STATUS_ACTIVE:
            if tier == SHORT_CYCLE:
                summary["active_short_cycle"] += 1
            elif tier == LONG_CYCLE:
                summary["active_long_cycle"] += 1
    return summary


def handler(event, context):
    """
    Lambda handler for the daily subscription monitor.

    Returns:
        Counts of removed and soon-to-expire customers plus a summary
    """
    configure_structured_logging()
    set_request_id(event)

    store = get_store()
    now = int(time.time())
    warning_cutoff = now + EXPIRY_WARNING_DAYS * SECONDS_PER_DAY

    orders_by_customer = defaultdict(list)
    try:
        for order in store.iter_completed_orders():
            if order.get("customer_id"):
                orders_by_customer[order["customer_id"]].append(order)
    except ClientError as e:
        logger.error(f"Failed to scan orders: {e}")
        return {"removed": 0, "expiring_soon": 0, "error": str(e)}

    removed = []
    expiring_soon = []
    errors = 0

    for customer_id, orders in list(orders_by_customer.items()):
        try:
            customer = store.get_customer(customer_id)
            if not customer or customer.get("deleted_at"):
                orders_by_customer.pop(customer_id)
                continue

            email = customer.get("email")
            if _access_ended(orders, now):
                store.soft_delete_customer(customer_id)
                store.soft_delete_orders(customer_id)
                orders_by_customer.pop(customer_id)
                removed.append(customer_id)
                logger.info(f"Removed access for {mask_email(email)} ({customer_id}): cancelled period ended")
                continue

            for order in orders:
                period_end = _period_end(order)
                if _is_cancelled(order) and period_end and now < period_end <= warning_cutoff:
                    expiring_soon.append({
                        "customer_id": customer_id,
                        "purchase_type": order.get("purchase_type"),
                        "access_expires_on": datetime.fromtimestamp(period_end, timezone.utc).date().isoformat(),
                        "days_remaining": (period_end - now) // SECONDS_PER_DAY,
                    })
                    break

        except ClientError as e:
            logger.error(f"Error processing customer {customer_id}: {e}")
            errors += 1

    summary = _summarize(orders_by_customer)

    logger.info(
        f"Subscription monitor complete: removed={len(removed)}, "
        f"expiring_soon={len(expiring_soon)}, errors={errors}"
    )

    return {
        "removed": len(removed),
        "removed_customers": removed,
        "expiring_soon": len(expiring_soon),
        "expiring_customers": expiring_soon,
        "errors": errors,
        "summary": summary,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
