"""
Create Checkout Session Endpoint - POST /checkout/create

Creates a Stripe Checkout session for a lifetime purchase or a plan
subscription. Requires session authentication (logged-in user).
"""

import logging
import os

import stripe
from botocore.exceptions import ClientError

from shared.billing_config import BillingConfig
from shared.billing_store import get_store
from shared.constants import MODE_PAYMENT, MODE_SUBSCRIPTION
from shared.errors import APIError
from shared.logging_utils import configure_structured_logging, mask_email, set_request_id
from shared.request_utils import get_http_method, parse_json_body
from shared.response_utils import (
    ALLOWED_ORIGINS,
    error_response,
    get_origin,
    preflight_response,
    success_response,
)
from shared.session_auth import get_session
from shared.stripe_gateway import get_gateway

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

BASE_URL = os.environ.get("BASE_URL") or "https://dayoftimeline.app"

CHECKOUT_MODES = (MODE_PAYMENT, MODE_SUBSCRIPTION)


def _plan_name(price_id: str, mode: str, config: BillingConfig) -> str:
    """Plan label used on the return pages."""
    if mode == MODE_PAYMENT or price_id == config.perpetual_price_id:
        return "lifetime"
    if price_id in config.long_cycle_price_ids:
        return "yearly"
    return "monthly"


def _redirect_base(origin: str | None) -> str:
    return origin if origin and origin in ALLOWED_ORIGINS else BASE_URL


def _get_or_create_customer(gateway, store, user_id: str, email: str | None) -> str:
    """Stripe customer id for the user, reusing existing mappings first."""
    customer = store.get_customer_by_user_id(user_id)
    if customer:
        return customer["customer_id"]

    existing = gateway.find_customer_by_email(email) if email else None
    if existing:
        customer_id = existing["id"]
    else:
        customer_id = gateway.create_customer(email, user_id)["id"]
        logger.info(f"Created Stripe customer {customer_id} for {mask_email(email)}")

    try:
        if not store.ensure_customer(customer_id, email=email, user_id=user_id):
            store.link_customer_to_user(customer_id, user_id, email)
    except ClientError:
        # Don't leave an orphaned Stripe customer we just created
        if not existing:
            try:
                gateway.delete_customer(customer_id)
            except stripe.StripeError as e:
                logger.error(f"Failed to clean up Stripe customer {customer_id}: {e}")
        raise

    return customer_id


def handler(event, context):
    """
    Lambda handler for POST /checkout/create.

    Request body:
    {
        "price_id": "price_...",
        "mode": "payment" | "subscription"
    }

    Returns:
    {
        "session_id": "cs_...",
        "url": "https://checkout.stripe.com/..."
    }
    """
    configure_structured_logging()
    set_request_id(event)

    origin = get_origin(event)
    method = get_http_method(event)
    if method == "OPTIONS":
        return preflight_response(origin)
    if method != "POST":
        return error_response(405, "method_not_allowed", "Method not allowed", origin=origin)

    try:
        body = parse_json_body(event)
    except APIError as e:
        return e.to_response(origin)

    price_id = body.get("price_id")
    mode = body.get("mode")
    if not isinstance(price_id, str) or not price_id:
        return error_response(400, "invalid_request", "Missing required parameter price_id", origin=origin)
    if mode not in CHECKOUT_MODES:
        return error_response(
            400, "invalid_request", f"mode must be one of {', '.join(CHECKOUT_MODES)}", origin=origin
        )

    session_data = get_session(event)
    if not session_data or not session_data.get("user_id"):
        return error_response(401, "unauthorized", "Please log in to purchase", origin=origin)

    user_id = session_data["user_id"]
    email = session_data.get("email")

    gateway = get_gateway()
    if gateway is None:
        logger.error("Stripe API key not configured")
        return error_response(500, "stripe_not_configured", "Payment system not configured", origin=origin)

    store = get_store()
    config = BillingConfig.from_env()

    try:
        customer_id = _get_or_create_customer(gateway, store, user_id, email)

        if mode == MODE_SUBSCRIPTION:
            store.create_pending_subscription(customer_id)

        base_url = _redirect_base(origin)
        plan = _plan_name(price_id, mode, config)
        session = gateway.create_checkout_session(
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            mode=mode,
            success_url=f"{base_url}/payment/verify?plan={plan}",
            cancel_url=f"{base_url}/payment?plan={plan}",
            client_reference_id=user_id,
            metadata={"user_id": user_id},
            allow_promotion_codes=True,
        )

    except stripe.StripeError as e:
        logger.error(f"Stripe error creating checkout session: {e}")
        return error_response(500, "stripe_error", "Failed to create checkout session", origin=origin)
    except ClientError as e:
        logger.error(f"Storage error creating checkout session: {e}")
        return error_response(500, "internal_error", "Failed to store customer information", origin=origin)

    logger.info(f"Created checkout session {session['id']} for user {user_id} ({mode}, {price_id})")
    return success_response({"session_id": session["id"], "url": session.get("url")}, origin=origin)
