"""
Subscription state synchronization.

Mirrors a customer's Stripe subscription into the subscriptions table and
onto the snapshot fields of their recurring orders. Stripe may not list a
subscription for a few seconds after checkout completes, so a missing
record is retried with capped exponential backoff before falling back.

Whatever happens, a completed checkout never leaves the customer in
not_started: every terminal branch writes either Stripe's real status or
a forced "active" record that is flagged for investigation.
"""

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from .billing_config import BillingConfig
from .constants import (
    EMERGENCY_SUBSCRIPTION_PREFIX,
    FALLBACK_SUBSCRIPTION_PREFIX,
    MODE_SUBSCRIPTION,
    OP_SUBSCRIPTION_SYNC,
    PERPETUAL,
    SECONDS_PER_DAY,
    SENTINEL_BRAND,
    SENTINEL_LAST4,
    STATUS_ACTIVE,
    STATUS_NOT_STARTED,
    SUBSCRIPTION_STATUSES,
    SYNC_ERROR,
    SYNC_SUCCESS,
    TERMINAL_STATUSES,
)
from .notifications import send_operator_alert
from .payment_methods import (
    CheckoutContext,
    card_from_payment_method,
    is_valid_card,
    resolve_payment_method,
)
from .retry import calculate_delay, retry_config_from_billing

logger = logging.getLogger(__name__)

# Where a snapshot came from
SOURCE_STRIPE = "stripe"
SOURCE_PERPETUAL = "perpetual"
SOURCE_FALLBACK = "fallback"
SOURCE_EMERGENCY = "emergency"


@dataclass
class SubscriptionSnapshot:
    customer_id: str
    subscription_id: Optional[str]
    price_id: Optional[str]
    status: str
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    payment_method_brand: str = SENTINEL_BRAND
    payment_method_last4: str = SENTINEL_LAST4
    source: str = SOURCE_STRIPE
    attempts: int = 0

    def to_record(self) -> dict:
        """Subscriptions table row (without bookkeeping fields)."""
        record = asdict(self)
        record.pop("source")
        record.pop("attempts")
        return record

    def to_dict(self) -> dict:
        return asdict(self)


def map_stripe_status(status: Optional[str], customer_id: str) -> str:
    """Map a Stripe status onto the local enumeration.

    not_started is local-only; anything unrecognised becomes active.
    """
    if status in SUBSCRIPTION_STATUSES and status != STATUS_NOT_STARTED:
        return status
    logger.warning(f"Unknown Stripe subscription status '{status}' for {customer_id}, treating as active")
    return STATUS_ACTIVE


def _first_item(subscription: dict) -> dict:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _period(subscription: dict, field: str) -> Optional[int]:
    # Newer API versions moved billing periods onto subscription items
    value = subscription.get(field)
    if value is None:
        value = _first_item(subscription).get(field)
    return int(value) if value is not None else None


def _stored_card(record: Optional[dict]) -> Optional[tuple[str, str]]:
    if not record:
        return None
    brand = record.get("payment_method_brand")
    last4 = record.get("payment_method_last4")
    return (brand, last4) if is_valid_card(brand, last4) else None


def _fetch_subscription(customer_id: str, gateway, config: BillingConfig, sleep) -> tuple[Optional[dict], int]:
    """List the customer's latest subscription, retrying while none is visible."""
    retry_config = retry_config_from_billing(config)
    for attempt in range(1, retry_config.max_attempts + 1):
        subscriptions = gateway.list_subscriptions(customer_id, limit=1)
        if subscriptions:
            return subscriptions[0], attempt

        if attempt < retry_config.max_attempts:
            delay = calculate_delay(attempt, retry_config)
            logger.info(
                f"No subscription visible for {customer_id} "
                f"(attempt {attempt}/{retry_config.max_attempts}), retrying in {delay:.1f}s"
            )
            sleep(delay)

    return None, retry_config.max_attempts


def _snapshot_from_stripe(
    customer_id: str,
    subscription: dict,
    gateway,
    store,
    config: BillingConfig,
) -> SubscriptionSnapshot:
    brand, last4 = card_from_payment_method(subscription.get("default_payment_method"))
    if not is_valid_card(brand, last4):
        resolved = resolve_payment_method(
            gateway,
            customer_id,
            CheckoutContext(
                mode=MODE_SUBSCRIPTION,
                subscription_id=subscription.get("id"),
                list_limit=config.payment_method_list_limit,
            ),
        )
        brand, last4 = resolved.brand, resolved.last4
        if resolved.is_sentinel:
            # Keep previously captured real card data over the placeholder
            stored = _stored_card(store.get_subscription(customer_id))
            if stored:
                brand, last4 = stored

    price = _first_item(subscription).get("price") or {}
    return SubscriptionSnapshot(
        customer_id=customer_id,
        subscription_id=subscription.get("id"),
        price_id=price.get("id"),
        status=map_stripe_status(subscription.get("status"), customer_id),
        current_period_start=_period(subscription, "current_period_start"),
        current_period_end=_period(subscription, "current_period_end"),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        payment_method_brand=brand,
        payment_method_last4=last4,
        source=SOURCE_STRIPE,
    )


def build_fallback_snapshot(
    customer_id: str,
    tier: Optional[str],
    config: BillingConfig,
    prefix: str = FALLBACK_SUBSCRIPTION_PREFIX,
    order: Optional[dict] = None,
) -> SubscriptionSnapshot:
    """Synthesize an entitlement-safe active record when Stripe has none."""
    now = int(time.time())
    card = _stored_card(order) or (SENTINEL_BRAND, SENTINEL_LAST4)
    return SubscriptionSnapshot(
        customer_id=customer_id,
        subscription_id=f"{prefix}{now}_{uuid.uuid4().hex[:8]}",
        price_id=config.default_price_for_tier(tier),
        status=STATUS_ACTIVE,
        current_period_start=now,
        current_period_end=now + config.fallback_days_for_tier(tier) * SECONDS_PER_DAY,
        cancel_at_period_end=False,
        payment_method_brand=card[0],
        payment_method_last4=card[1],
        source=SOURCE_EMERGENCY if prefix == EMERGENCY_SUBSCRIPTION_PREFIX else SOURCE_FALLBACK,
    )


def _snapshot_without_stripe(
    customer_id: str, store, config: BillingConfig, order: Optional[dict] = None
) -> SubscriptionSnapshot:
    if order is None:
        order = store.get_latest_completed_order(customer_id)
    tier = order.get("purchase_type") if order else None

    if tier == PERPETUAL:
        card = _stored_card(order) or (SENTINEL_BRAND, SENTINEL_LAST4)
        return SubscriptionSnapshot(
            customer_id=customer_id,
            subscription_id=None,
            price_id=config.perpetual_price_id,
            status=STATUS_ACTIVE,
            payment_method_brand=card[0],
            payment_method_last4=card[1],
            source=SOURCE_PERPETUAL,
        )

    return build_fallback_snapshot(customer_id, tier, config, order=order)


def _sync_once(customer_id: str, gateway, store, config: BillingConfig, sleep) -> SubscriptionSnapshot:
    subscription, attempts = _fetch_subscription(customer_id, gateway, config, sleep)

    order = None
    if subscription and subscription.get("status") in TERMINAL_STATUSES:
        # A lapsed plan from before a perpetual purchase must not revoke access
        order = store.get_latest_completed_order(customer_id)
        if order and order.get("purchase_type") == PERPETUAL:
            logger.info(
                f"Ignoring {subscription.get('status')} subscription {subscription.get('id')} "
                f"for perpetual customer {customer_id}"
            )
            subscription = None

    if subscription:
        snapshot = _snapshot_from_stripe(customer_id, subscription, gateway, store, config)
    else:
        snapshot = _snapshot_without_stripe(customer_id, store, config, order=order)
    snapshot.attempts = attempts

    store.put_subscription(customer_id, snapshot.to_record())

    if snapshot.source == SOURCE_PERPETUAL:
        store.append_sync_log(
            customer_id,
            OP_SUBSCRIPTION_SYNC,
            SYNC_SUCCESS,
            {"resolution": SOURCE_PERPETUAL, "attempts": attempts},
        )
        logger.info(f"No subscription for perpetual customer {customer_id}, recorded as active")
        return snapshot

    orders_updated = store.update_order_subscription_snapshot(customer_id, snapshot.to_record())

    if snapshot.source == SOURCE_FALLBACK:
        logger.error(
            f"Completed recurring checkout for {customer_id} has no Stripe subscription after "
            f"{attempts} attempts; wrote fallback {snapshot.subscription_id} as active",
            extra={"customer_id": customer_id, "subscription_id": snapshot.subscription_id},
        )
        store.append_sync_log(
            customer_id,
            OP_SUBSCRIPTION_SYNC,
            SYNC_ERROR,
            {
                "resolution": SOURCE_FALLBACK,
                "subscription_id": snapshot.subscription_id,
                "price_id": snapshot.price_id,
                "attempts": attempts,
                "message": "No Stripe subscription found for completed recurring checkout",
            },
            severity="error",
        )
        send_operator_alert(
            "Fallback subscription created",
            (
                f"No Stripe subscription was found for a completed recurring checkout.\n\n"
                f"Customer ID: {customer_id}\n"
                f"Fallback ID: {snapshot.subscription_id}\n"
                f"Price ID: {snapshot.price_id}\n\n"
                f"The customer was marked active. Please investigate in the Stripe dashboard."
            ),
        )
        return snapshot

    store.append_sync_log(
        customer_id,
        OP_SUBSCRIPTION_SYNC,
        SYNC_SUCCESS,
        {
            "subscription_id": snapshot.subscription_id,
            "status": snapshot.status,
            "attempts": attempts,
            "orders_updated": orders_updated,
        },
    )
    logger.info(f"Synced subscription {snapshot.subscription_id} for {customer_id}: {snapshot.status}")
    return snapshot


def _persist_emergency_record(customer_id: str, store, config: BillingConfig, error: Exception) -> None:
    order = None
    try:
        order = store.get_latest_completed_order(customer_id)
    except Exception as lookup_error:
        logger.error(f"Could not read latest order for {customer_id}: {lookup_error}")

    tier = order.get("purchase_type") if order else None
    snapshot = build_fallback_snapshot(
        customer_id, tier, config, prefix=EMERGENCY_SUBSCRIPTION_PREFIX, order=order
    )
    store.put_subscription(customer_id, snapshot.to_record())
    store.append_sync_log(
        customer_id,
        OP_SUBSCRIPTION_SYNC,
        SYNC_ERROR,
        {
            "resolution": SOURCE_EMERGENCY,
            "subscription_id": snapshot.subscription_id,
            "error": str(error),
        },
        severity="error",
    )
    logger.error(f"Wrote emergency subscription {snapshot.subscription_id} for {customer_id}")


def sync_subscription(
    customer_id: str,
    *,
    gateway,
    store,
    config: BillingConfig,
    sleep: Callable[[float], None] = time.sleep,
) -> SubscriptionSnapshot:
    """
    Synchronize one customer's subscription state from Stripe.

    Idempotent and safe to call repeatedly. An unexpected error retries
    the whole sync once; a second error persists an emergency active
    record and re-raises.

    Args:
        customer_id: Stripe customer id
        gateway: StripeGateway
        store: BillingStore
        config: BillingConfig
        sleep: Wait function used between fetch attempts

    Returns:
        The snapshot that was written
    """
    try:
        return _sync_once(customer_id, gateway, store, config, sleep)
    except Exception as first_error:
        logger.warning(f"Subscription sync failed for {customer_id}, retrying once: {first_error}")

    try:
        return _sync_once(customer_id, gateway, store, config, sleep)
    except Exception as e:
        logger.error(f"Subscription sync failed twice for {customer_id}: {e}", exc_info=True)
        try:
            _persist_emergency_record(customer_id, store, config, e)
        except Exception as persist_error:
            logger.error(f"Failed to persist emergency subscription for {customer_id}: {persist_error}")
        raise
