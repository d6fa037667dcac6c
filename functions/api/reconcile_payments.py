"""
Payment Reconciliation Sweep - Scheduled Lambda (every 15 minutes) and
GET/POST /admin/reconcile (X-Admin-Token)

Safety net for missed or out-of-order webhooks:
- Orders still showing the "****" placeholder card are re-resolved
- Subscriptions stuck in not_started are re-synced

Runs alongside live webhook traffic; every write it makes is the same
idempotent update the webhook path performs.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from botocore.exceptions import ClientError

from shared.billing_config import BillingConfig
from shared.billing_store import get_store
from shared.constants import (
    OP_PAYMENT_METHOD_SYNC,
    OP_STUCK_SUBSCRIPTION_SYNC,
    SENTINEL_LAST4,
    SYNC_ERROR,
    SYNC_NO_DATA,
    SYNC_SUCCESS,
)
from shared.errors import APIError, InvalidRequestError, UnauthorizedError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.payment_methods import CheckoutContext, resolve_payment_method
from shared.request_utils import get_http_method, is_scheduled_event, parse_json_body
from shared.response_utils import error_response, get_origin, preflight_response, success_response
from shared.session_auth import is_admin_request
from shared.stripe_gateway import get_gateway
from shared.subscription_sync import sync_subscription

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


@dataclass
class SweepReport:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    no_data_found: int = 0
    results: list = field(default_factory=list)

    def add(self, customer_id: str, kind: str, outcome: str, **details) -> None:
        self.processed += 1
        if outcome == SYNC_SUCCESS:
            self.succeeded += 1
        elif outcome == SYNC_NO_DATA:
            self.no_data_found += 1
        else:
            self.failed += 1
        self.results.append({"customer_id": customer_id, "type": kind, "status": outcome, **details})

    def to_dict(self) -> dict:
        return asdict(self)


def _append_log(store, customer_id: str, operation: str, status: str, details: dict) -> None:
    severity = {SYNC_SUCCESS: "info", SYNC_NO_DATA: "warning"}.get(status, "error")
    try:
        store.append_sync_log(customer_id, operation, status, details, severity=severity)
    except ClientError as e:
        logger.error(f"Failed to write sync log for {customer_id}: {e}")


def _repair_payment_method(order: dict, gateway, store, config: BillingConfig, report: SweepReport) -> None:
    customer_id = order["customer_id"]
    context = CheckoutContext(
        mode=order.get("checkout_mode"),
        subscription_id=order.get("subscription_id"),
        payment_intent_id=order.get("payment_intent_id"),
        setup_intent_id=order.get("setup_intent_id"),
        list_limit=config.payment_method_list_limit,
    )

    try:
        details = resolve_payment_method(gateway, customer_id, context)
        if details.is_sentinel:
            report.add(customer_id, OP_PAYMENT_METHOD_SYNC, SYNC_NO_DATA)
            _append_log(store, customer_id, OP_PAYMENT_METHOD_SYNC, SYNC_NO_DATA, {
                "checkout_session_id": order.get("checkout_session_id"),
            })
            return

        orders_updated = store.update_order_payment_method(customer_id, details.brand, details.last4)
        store.update_subscription_payment_method(customer_id, details.brand, details.last4)
    except Exception as e:
        logger.error(f"Payment method repair failed for {customer_id}: {e}")
        report.add(customer_id, OP_PAYMENT_METHOD_SYNC, SYNC_ERROR, error=str(e))
        _append_log(store, customer_id, OP_PAYMENT_METHOD_SYNC, SYNC_ERROR, {"error": str(e)})
        return

    logger.info(f"Repaired payment method for {customer_id}: {details.brand} ending in {details.last4}")
    report.add(
        customer_id, OP_PAYMENT_METHOD_SYNC, SYNC_SUCCESS,
        brand=details.brand, last4=details.last4, source=details.source,
    )
    _append_log(store, customer_id, OP_PAYMENT_METHOD_SYNC, SYNC_SUCCESS, {
        "brand": details.brand,
        "last4": details.last4,
        "source": details.source,
        "orders_updated": orders_updated,
    })


def _resync_stuck_subscription(record: dict, gateway, store, config: BillingConfig, sleep, report: SweepReport) -> None:
    customer_id = record["customer_id"]
    try:
        snapshot = sync_subscription(customer_id, gateway=gateway, store=store, config=config, sleep=sleep)
    except Exception as e:
        logger.error(f"Stuck subscription re-sync failed for {customer_id}: {e}")
        report.add(customer_id, OP_STUCK_SUBSCRIPTION_SYNC, SYNC_ERROR, error=str(e))
        _append_log(store, customer_id, OP_STUCK_SUBSCRIPTION_SYNC, SYNC_ERROR, {"error": str(e)})
        return

    report.add(
        customer_id, OP_STUCK_SUBSCRIPTION_SYNC, SYNC_SUCCESS,
        subscription_status=snapshot.status, source=snapshot.source,
    )
    _append_log(store, customer_id, OP_STUCK_SUBSCRIPTION_SYNC, SYNC_SUCCESS, {
        "subscription_id": snapshot.subscription_id,
        "subscription_status": snapshot.status,
        "source": snapshot.source,
    })


def sweep(
    lookback_hours: float,
    batch_limit: int,
    *,
    gateway,
    store,
    config: BillingConfig,
    sleep: Callable[[float], None] = time.sleep,
) -> SweepReport:
    """
    Re-resolve placeholder card data and re-sync stuck subscriptions.

    Per-item failures are counted in the report and never abort the sweep.
    Query failures propagate.

    Args:
        lookback_hours: Only orders created within this window are repaired
        batch_limit: Max customers per category
        gateway: StripeGateway
        store: BillingStore
        config: BillingConfig
        sleep: Wait function for the inter-item delay

    Returns:
        SweepReport
    """
    now = datetime.now(timezone.utc)
    since_iso = (now - timedelta(hours=lookback_hours)).isoformat()
    stuck_before_iso = (now - timedelta(minutes=config.stuck_subscription_minutes)).isoformat()

    placeholder_orders = store.find_orders_with_placeholder_payment(SENTINEL_LAST4, since_iso, batch_limit)
    stuck_subscriptions = store.find_stuck_subscriptions(stuck_before_iso, batch_limit)

    logger.info(
        f"Sweep found {len(placeholder_orders)} customers with placeholder card data "
        f"and {len(stuck_subscriptions)} stuck subscriptions"
    )

    report = SweepReport()
    work = [("order", item) for item in placeholder_orders] + [
        ("subscription", item) for item in stuck_subscriptions
    ]
    for index, (kind, item) in enumerate(work):
        if index and config.sweep_item_delay:
            sleep(config.sweep_item_delay)

        if kind == "order":
            _repair_payment_method(item, gateway, store, config, report)
        else:
            _resync_stuck_subscription(item, gateway, store, config, sleep, report)

    logger.info(
        f"Sweep complete: processed={report.processed}, succeeded={report.succeeded}, "
        f"failed={report.failed}, no_data_found={report.no_data_found}"
    )
    return report


def _positive_number(body: dict, keys: tuple[str, ...], default, cast):
    for key in keys:
        if body.get(key) is not None:
            try:
                value = cast(body[key])
            except (TypeError, ValueError):
                raise InvalidRequestError(f"{key} must be a number")
            if value <= 0:
                raise InvalidRequestError(f"{key} must be positive")
            return value
    return default


def handler(event, context):
    """
    Lambda handler for the reconciliation sweep.

    EventBridge invocations use configured defaults and return the report
    dict; API Gateway invocations accept an optional JSON body
    ``{"lookback_hours", "batch_limit"}`` (or ``lookbackWindow``/``batchLimit``).
    """
    configure_structured_logging()
    set_request_id(event)

    scheduled = is_scheduled_event(event or {})
    origin = None if scheduled else get_origin(event)
    config = BillingConfig.from_env()

    if not scheduled:
        method = get_http_method(event)
        if method == "OPTIONS":
            return preflight_response(origin)
        if method and method not in ("GET", "POST"):
            return error_response(405, "method_not_allowed", "Method not allowed", origin=origin)

    try:
        if not scheduled and not is_admin_request(event):
            raise UnauthorizedError("Admin token required")
        body = {} if scheduled else parse_json_body(event)
        lookback_hours = _positive_number(
            body, ("lookback_hours", "lookbackWindow"), config.sweep_lookback_hours, float
        )
        batch_limit = _positive_number(
            body, ("batch_limit", "batchLimit"), config.sweep_batch_limit, int
        )
    except APIError as e:
        return e.to_response(origin)

    gateway = get_gateway()
    if gateway is None:
        logger.error("Stripe secrets not configured")
        if scheduled:
            return {"processed": 0, "error": "Stripe not configured"}
        return error_response(500, "stripe_not_configured", "Stripe not configured", origin=origin)

    try:
        report = sweep(lookback_hours, batch_limit, gateway=gateway, store=get_store(), config=config)
    except ClientError as e:
        logger.error(f"Sweep query failed: {e}")
        if scheduled:
            return {"processed": 0, "error": str(e)}
        return error_response(500, "sweep_failed", "Reconciliation sweep failed", origin=origin)

    if scheduled:
        return report.to_dict()
    return success_response(report.to_dict(), origin=origin)
