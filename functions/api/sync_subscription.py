"""
Subscription Sync Endpoint - POST /subscription/sync

Re-synchronizes a customer's subscription state from Stripe.

Body: {"customer_id": "me"} (default) syncs the caller's own customer,
resolved from the session. {"customer_id": "cus_..."} syncs any customer
and requires the X-Admin-Token header.

Also accepts direct asynchronous invocation from the webhook
({"customer_id": ..., "source": "stripe_webhook"}) when syncs are deferred.
"""

import logging

from shared.billing_config import BillingConfig
from shared.billing_store import get_store
from shared.errors import APIError, CustomerNotFoundError, InternalError, InvalidRequestError, UnauthorizedError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.request_utils import get_http_method, parse_json_body
from shared.response_utils import error_response, get_origin, preflight_response, success_response
from shared.session_auth import get_session, is_admin_request
from shared.stripe_gateway import get_gateway
from shared.subscription_sync import sync_subscription

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

SESSION_CUSTOMER = "me"


def _is_direct_invocation(event: dict) -> bool:
    return "customer_id" in event and "requestContext" not in event and "httpMethod" not in event


def _resolve_customer_id(event: dict, requested: str, store) -> str:
    if requested == SESSION_CUSTOMER:
        session = get_session(event)
        if not session or not session.get("user_id"):
            raise UnauthorizedError()
        customer = store.get_customer_by_user_id(session["user_id"])
        if not customer:
            raise CustomerNotFoundError()
        return customer["customer_id"]

    if not is_admin_request(event):
        raise UnauthorizedError("Admin token required to sync another customer")
    customer = store.get_customer(requested)
    if not customer or customer.get("deleted_at"):
        raise CustomerNotFoundError()
    return requested


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)

    event = event or {}
    store = get_store()
    config = BillingConfig.from_env()

    if _is_direct_invocation(event):
        customer_id = event["customer_id"]
        logger.info(f"Running deferred subscription sync for {customer_id} (source={event.get('source')})")
        gateway = get_gateway()
        if gateway is None:
            raise RuntimeError("Stripe not configured")
        # Errors propagate so Lambda's async retry re-runs the sync
        snapshot = sync_subscription(customer_id, gateway=gateway, store=store, config=config)
        return snapshot.to_dict()

    origin = get_origin(event)
    method = get_http_method(event)
    if method == "OPTIONS":
        return preflight_response(origin)
    if method != "POST":
        return error_response(405, "method_not_allowed", "Method not allowed", origin=origin)

    try:
        body = parse_json_body(event)
        requested = body.get("customer_id") or SESSION_CUSTOMER
        if not isinstance(requested, str):
            raise InvalidRequestError("customer_id must be a string")
        customer_id = _resolve_customer_id(event, requested, store)

        gateway = get_gateway()
        if gateway is None:
            logger.error("Stripe secrets not configured")
            return error_response(500, "stripe_not_configured", "Stripe not configured", origin=origin)

        try:
            snapshot = sync_subscription(customer_id, gateway=gateway, store=store, config=config)
        except Exception as e:
            logger.error(f"Subscription sync failed for {customer_id}: {e}")
            raise InternalError("Subscription sync failed")

    except APIError as e:
        return e.to_response(origin)

    return success_response({"success": True, "subscription": snapshot.to_dict()}, origin=origin)
