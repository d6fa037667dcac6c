"""
Payment-method resolution for checkout display data.

Stripe exposes the card used for a checkout in different places depending
on the checkout mode and on how far the subscription has progressed, so
the resolver walks an ordered list of lookup strategies and accepts the
first candidate that passes validation. When nothing validates it returns
the sentinel (brand "card", last4 "****") instead of guessing.

Only brand and last4 are ever read or logged.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .constants import MODE_SUBSCRIPTION, SENTINEL_BRAND, SENTINEL_LAST4
from .logging_utils import log_external_call

logger = logging.getLogger(__name__)

LAST4_PATTERN = re.compile(r"[0-9]{4}")


@dataclass(frozen=True)
class CheckoutContext:
    """Identifiers available from a checkout session (or a stored order)."""

    mode: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    setup_intent_id: Optional[str] = None
    list_limit: int = 3

    @classmethod
    def from_session(cls, session: dict, list_limit: int = 3) -> "CheckoutContext":
        return cls(
            mode=session.get("mode"),
            subscription_id=_object_id(session.get("subscription")),
            payment_intent_id=_object_id(session.get("payment_intent")),
            setup_intent_id=_object_id(session.get("setup_intent")),
            list_limit=list_limit,
        )


@dataclass(frozen=True)
class PaymentMethodDetails:
    brand: str
    last4: str
    source: str

    @property
    def is_sentinel(self) -> bool:
        return self.last4 == SENTINEL_LAST4


SENTINEL = PaymentMethodDetails(brand=SENTINEL_BRAND, last4=SENTINEL_LAST4, source="none")


def _object_id(value) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def is_valid_card(brand: Optional[str], last4: Optional[str]) -> bool:
    """A candidate is only accepted with a brand and exactly four digits."""
    return bool(brand) and isinstance(last4, str) and bool(LAST4_PATTERN.fullmatch(last4))


def card_from_payment_method(payment_method) -> tuple[Optional[str], Optional[str]]:
    """Extract (brand, last4) from an expanded PaymentMethod, if it is a card."""
    if not isinstance(payment_method, dict):
        return None, None
    card = payment_method.get("card") or {}
    return card.get("brand"), card.get("last4")


# Strategies: (gateway, customer_id, context) -> (brand, last4) | None


def _from_subscription(gateway, customer_id: str, context: CheckoutContext):
    if context.mode != MODE_SUBSCRIPTION or not context.subscription_id:
        return None
    subscription = gateway.retrieve_subscription(context.subscription_id)
    return card_from_payment_method(subscription.get("default_payment_method"))


def _from_payment_intent(gateway, customer_id: str, context: CheckoutContext):
    if not context.payment_intent_id:
        return None
    intent = gateway.retrieve_payment_intent(context.payment_intent_id)
    return card_from_payment_method(intent.get("payment_method"))


def _from_customer_cards(gateway, customer_id: str, context: CheckoutContext):
    if not customer_id:
        return None
    for payment_method in gateway.list_card_payment_methods(customer_id, limit=context.list_limit):
        brand, last4 = card_from_payment_method(payment_method)
        if is_valid_card(brand, last4):
            return brand, last4
    return None


def _from_setup_intent(gateway, customer_id: str, context: CheckoutContext):
    if not context.setup_intent_id:
        return None
    intent = gateway.retrieve_setup_intent(context.setup_intent_id)
    return card_from_payment_method(intent.get("payment_method"))


STRATEGIES: list[tuple[str, Callable]] = [
    ("subscription", _from_subscription),
    ("payment_intent", _from_payment_intent),
    ("customer_payment_methods", _from_customer_cards),
    ("setup_intent", _from_setup_intent),
]


def resolve_payment_method(gateway, customer_id: str, context: CheckoutContext) -> PaymentMethodDetails:
    """
    Resolve display card data for a customer's checkout.

    Never raises: a failing lookup is logged and the next strategy runs,
    and exhaustion returns SENTINEL.

    Args:
        gateway: StripeGateway (or any object with the same lookups)
        customer_id: Stripe customer id
        context: Identifiers from the checkout session

    Returns:
        PaymentMethodDetails with a validated last4, or SENTINEL
    """
    for source, strategy in STRATEGIES:
        start_time = time.time()
        try:
            candidate = strategy(gateway, customer_id, context)
        except Exception as e:
            log_external_call(
                logger, "stripe", f"payment_method.{source}", False,
                (time.time() - start_time) * 1000, error=str(e),
            )
            continue

        if candidate is None:
            continue

        brand, last4 = candidate
        if is_valid_card(brand, last4):
            logger.info(f"Resolved payment method for {customer_id} from {source}: {brand} ending in {last4}")
            return PaymentMethodDetails(brand=brand, last4=last4, source=source)

        if brand or last4:
            logger.warning(
                f"Rejected payment method candidate from {source} for {customer_id}: "
                f"last4 is not 4 digits"
            )

    logger.warning(f"No valid payment method found for {customer_id}, using placeholder")
    return SENTINEL
