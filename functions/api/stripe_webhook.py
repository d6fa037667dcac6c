"""
Stripe Webhook Endpoint - POST /webhooks/stripe

Records completed checkouts and keeps subscription state in sync.
Uses Stripe signature verification instead of caller authentication.
"""

import json
import logging
import os

import stripe
from botocore.exceptions import ClientError

from shared.aws_clients import get_lambda
from shared.billing_config import BillingConfig
from shared.billing_store import get_store
from shared.constants import MODE_SUBSCRIPTION, ORDER_COMPLETED, RECURRING_TIERS, STATUS_NOT_STARTED
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.notifications import send_beta_invite
from shared.payment_methods import CheckoutContext, resolve_payment_method
from shared.purchase_classifier import classify_purchase
from shared.request_utils import get_header, get_http_method, get_raw_body
from shared.response_utils import error_response, get_origin, preflight_response, success_response
from shared.stripe_gateway import get_gateway
from shared.subscription_sync import sync_subscription

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)


def _event_customer_id(stripe_event: dict) -> str | None:
    data = (stripe_event.get("data") or {}).get("object") or {}
    customer = data.get("customer")
    return customer if isinstance(customer, str) and customer else None


def _release_claim(store, stripe_event: dict) -> None:
    """Release event claim so the next Stripe retry can re-process.

    The claim row doubles as the audit entry, so a released event is not
    also recorded as failed (that would block the retry as a duplicate).
    """
    try:
        store.release_event_claim(stripe_event["id"], stripe_event["type"])
        logger.info(f"Released event claim for {stripe_event['id']} to allow retry")
    except Exception as e:
        logger.error(f"Failed to release event claim {stripe_event['id']}: {e}")


def _record_event(store, stripe_event: dict, status: str, error: str = None) -> None:
    """Audit trail entry (best-effort)."""
    try:
        store.record_event(stripe_event, status, error)
    except Exception as e:
        logger.error(f"Failed to record billing event {stripe_event.get('id')}: {e}")


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - checkout.session.completed: Record the order, sync recurring purchases
    - customer.subscription.created/updated/deleted: Sync subscription state
    """
    configure_structured_logging()
    set_request_id(event)

    method = get_http_method(event)
    if method == "OPTIONS":
        return preflight_response(get_origin(event))
    if method and method != "POST":
        return error_response(405, "method_not_allowed", "Method not allowed")

    gateway = get_gateway()
    if gateway is None or not gateway.webhook_secret:
        logger.error("Stripe secrets not configured")
        return error_response(500, "stripe_not_configured", "Stripe not configured")

    sig_header = get_header(event, "stripe-signature")
    if not sig_header:
        logger.warning("Missing Stripe signature")
        return error_response(400, "missing_signature", "Missing Stripe signature")

    # Verify webhook signature over the raw body
    try:
        payload = get_raw_body(event)
        stripe_event = gateway.construct_event(payload, sig_header)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Invalid Stripe signature: {e}")
        return error_response(400, "invalid_signature", "Invalid signature")
    except ValueError as e:
        logger.error(f"Webhook error: {e}")
        return error_response(400, "invalid_webhook_payload", "Invalid webhook payload")

    event_type = stripe_event["type"]
    customer_id = _event_customer_id(stripe_event)

    if not customer_id:
        logger.info(f"Ignoring {event_type} (id={stripe_event['id']}) without customer")
        return success_response({"received": True})

    logger.info(f"Processing Stripe event: {event_type} (id={stripe_event['id']})")

    store = get_store()
    config = BillingConfig.from_env()

    # Check for duplicate event and atomically claim it
    try:
        claimed = store.claim_event(stripe_event["id"], event_type)
    except ClientError as e:
        logger.error(f"Failed to claim event {stripe_event['id']}: {e}")
        return error_response(500, "temporary_error", "Temporary error, please retry")

    if not claimed:
        logger.info(f"Skipping duplicate event {stripe_event['id']}")
        return success_response({"received": True, "duplicate": True})

    try:
        if event_type == "checkout.session.completed":
            _handle_checkout_completed(stripe_event["data"]["object"], gateway, store, config)

        elif event_type in SUBSCRIPTION_EVENTS:
            sync_subscription(customer_id, gateway=gateway, store=store, config=config)

        else:
            logger.info(f"Unhandled event type: {event_type}")

        _record_event(store, stripe_event, "success")

    except ClientError as e:
        # DynamoDB errors are transient - release claim so Stripe retry can re-process
        _release_claim(store, stripe_event)
        logger.error(f"Transient error handling {event_type}: {e}")
        return error_response(500, "temporary_error", "Temporary error, please retry")
    except stripe.StripeError as e:
        _release_claim(store, stripe_event)
        logger.error(f"Stripe error handling {event_type}: {e}")
        return error_response(500, "stripe_error", "Stripe error, please retry")
    except Exception as e:
        # Order insert and sync are idempotent, so Stripe may retry the whole event
        _release_claim(store, stripe_event)
        logger.error(f"Unexpected error handling {event_type}: {e}", exc_info=True)
        return error_response(500, "processing_failed", "Processing failed")

    return success_response({"received": True})


def _resolve_email(session: dict, customer_id: str, store) -> str | None:
    """Stored customer email, falling back to the email collected at checkout.

    Creates the customer row when Stripe knows a customer we have not stored.
    """
    customer = store.get_customer(customer_id)
    if customer and customer.get("email"):
        return customer["email"]

    email = (session.get("customer_details") or {}).get("email") or session.get("customer_email")
    if not customer:
        if store.ensure_customer(customer_id, email=email):
            logger.info(f"Created customer record for {customer_id} from checkout")
    return email


def _handle_checkout_completed(session: dict, gateway, store, config: BillingConfig) -> None:
    """Insert the order for a completed checkout and sync subscription state when needed."""
    customer_id = session["customer"]
    checkout_session_id = session["id"]
    mode = session.get("mode")
    amount_total = session.get("amount_total") or 0

    price_id = gateway.get_line_item_price_id(checkout_session_id)
    purchase_type = classify_purchase(mode, amount_total, price_id, config)

    checkout_context = CheckoutContext.from_session(session, list_limit=config.payment_method_list_limit)
    payment_method = resolve_payment_method(gateway, customer_id, checkout_context)

    email = _resolve_email(session, customer_id, store)

    created = store.insert_order({
        "checkout_session_id": checkout_session_id,
        "payment_intent_id": checkout_context.payment_intent_id,
        "setup_intent_id": checkout_context.setup_intent_id,
        "subscription_id": checkout_context.subscription_id,
        "checkout_mode": mode,
        "customer_id": customer_id,
        "amount_subtotal": session.get("amount_subtotal"),
        "amount_total": amount_total,
        "currency": session.get("currency"),
        "payment_status": session.get("payment_status"),
        "status": ORDER_COMPLETED,
        "purchase_type": purchase_type,
        "email": email,
        "price_id": price_id,
        "payment_method_brand": payment_method.brand,
        "payment_method_last4": payment_method.last4,
    })

    if created:
        logger.info(
            f"Recorded {purchase_type} order {checkout_session_id} for {customer_id} "
            f"({payment_method.brand} ending in {payment_method.last4})"
        )
        # Best-effort, never fails the delivery. Sent before the sync so a
        # retried delivery (order already recorded) does not lose it.
        send_beta_invite(email)
    else:
        logger.info(f"Order {checkout_session_id} already recorded, skipping insert")

    if _needs_subscription_sync(customer_id, mode, purchase_type, store):
        _run_subscription_sync(customer_id, gateway, store, config)


def _needs_subscription_sync(customer_id: str, mode: str | None, purchase_type: str, store) -> bool:
    """Recurring purchases, subscription-mode checkouts of any tier, and pending records."""
    if purchase_type in RECURRING_TIERS or mode == MODE_SUBSCRIPTION:
        return True
    record = store.get_subscription(customer_id)
    return bool(record) and record.get("status") == STATUS_NOT_STARTED


def _run_subscription_sync(customer_id: str, gateway, store, config: BillingConfig) -> None:
    """Sync inline, or hand off to the sync function when DEFERRED_SYNC_FUNCTION is set."""
    function_name = os.environ.get("DEFERRED_SYNC_FUNCTION")
    if not function_name:
        sync_subscription(customer_id, gateway=gateway, store=store, config=config)
        return

    get_lambda().invoke(
        FunctionName=function_name,
        InvocationType="Event",
        Payload=json.dumps({"customer_id": customer_id, "source": "stripe_webhook"}).encode(),
    )
    logger.info(f"Deferred subscription sync for {customer_id} to {function_name}")
