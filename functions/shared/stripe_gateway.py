"""
Narrow Stripe facade.

One StripeGateway is built per execution environment and passed
explicitly into the resolver, synchronizer and sweep. Every call carries
its own api_key instead of mutating the global ``stripe.api_key``, and
every result is returned as a plain dict so downstream code never depends
on StripeObject behaviour.
"""

import logging
import os

import stripe

from .secrets import get_secret

logger = logging.getLogger(__name__)

STRIPE_API_VERSION = os.environ.get("STRIPE_API_VERSION") or None


def get_stripe_secrets() -> tuple[str | None, str | None]:
    """Retrieve Stripe API key and webhook secret from Secrets Manager (cached with TTL)."""
    api_key = get_secret(os.environ.get("STRIPE_SECRET_ARN"), "key")
    webhook_secret = get_secret(os.environ.get("STRIPE_WEBHOOK_SECRET_ARN"), "secret")
    return api_key, webhook_secret


def _to_dict(obj) -> dict | None:
    """Convert a StripeObject (or ListObject) into plain nested dicts."""
    if obj is None:
        return None
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    return obj.to_dict()


class StripeGateway:
    """Read-mostly access to the Stripe resources billing reconciliation needs."""

    def __init__(self, api_key: str, webhook_secret: str | None = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def _opts(self) -> dict:
        opts = {"api_key": self.api_key}
        if STRIPE_API_VERSION:
            opts["stripe_version"] = STRIPE_API_VERSION
        return opts

    # -- Webhooks -------------------------------------------------------

    def construct_event(self, payload: str, sig_header: str) -> dict:
        """Verify the signature over the raw payload and return the event.

        Raises:
            stripe.SignatureVerificationError: bad or stale signature
            ValueError: payload is not valid JSON
        """
        event = stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        return _to_dict(event)

    # -- Subscriptions ----------------------------------------------------

    def retrieve_subscription(self, subscription_id: str) -> dict:
        subscription = stripe.Subscription.retrieve(
            subscription_id, expand=["default_payment_method"], **self._opts()
        )
        return _to_dict(subscription)

    def list_subscriptions(self, customer_id: str, limit: int = 1) -> list[dict]:
        """Most recent subscriptions for a customer, any status."""
        result = stripe.Subscription.list(
            customer=customer_id,
            status="all",
            limit=limit,
            expand=["data.default_payment_method"],
            **self._opts(),
        )
        return _to_dict(result).get("data", [])

    # -- Payment instruments ------------------------------------------------

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict:
        intent = stripe.PaymentIntent.retrieve(
            payment_intent_id, expand=["payment_method"], **self._opts()
        )
        return _to_dict(intent)

    def retrieve_setup_intent(self, setup_intent_id: str) -> dict:
        intent = stripe.SetupIntent.retrieve(
            setup_intent_id, expand=["payment_method"], **self._opts()
        )
        return _to_dict(intent)

    def list_card_payment_methods(self, customer_id: str, limit: int = 3) -> list[dict]:
        result = stripe.PaymentMethod.list(
            customer=customer_id, type="card", limit=limit, **self._opts()
        )
        return _to_dict(result).get("data", [])

    # -- Checkout -------------------------------------------------------------

    def get_line_item_price_id(self, checkout_session_id: str) -> str | None:
        """Price id of the first line item of a Checkout Session."""
        result = stripe.checkout.Session.list_line_items(
            checkout_session_id, limit=1, **self._opts()
        )
        items = _to_dict(result).get("data", [])
        if not items:
            return None
        return (items[0].get("price") or {}).get("id")

    def create_checkout_session(self, **params) -> dict:
        session = stripe.checkout.Session.create(**params, **self._opts())
        return _to_dict(session)

    # -- Customers ------------------------------------------------------------

    def find_customer_by_email(self, email: str) -> dict | None:
        result = stripe.Customer.list(email=email, limit=1, **self._opts())
        customers = _to_dict(result).get("data", [])
        return customers[0] if customers else None

    def create_customer(self, email: str, user_id: str) -> dict:
        customer = stripe.Customer.create(
            email=email, metadata={"userId": user_id}, **self._opts()
        )
        return _to_dict(customer)

    def delete_customer(self, customer_id: str) -> None:
        stripe.Customer.delete(customer_id, **self._opts())


_gateway: StripeGateway | None = None


def get_gateway() -> StripeGateway | None:
    """Process-wide gateway, or None when Stripe secrets are not configured."""
    global _gateway
    if _gateway is None:
        api_key, webhook_secret = get_stripe_secrets()
        if not api_key:
            return None
        _gateway = StripeGateway(api_key, webhook_secret)
    return _gateway


def reset_gateway() -> None:
    """Forget the cached gateway. Used in tests."""
    global _gateway
    _gateway = None
