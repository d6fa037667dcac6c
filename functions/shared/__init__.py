# Shared utilities package
from .billing_config import BillingConfig
from .billing_store import BillingStore, get_store
from .errors import APIError
from .payment_methods import CheckoutContext, PaymentMethodDetails, resolve_payment_method
from .purchase_classifier import classify_purchase
from .response_utils import error_response, success_response
from .stripe_gateway import StripeGateway, get_gateway
from .subscription_sync import SubscriptionSnapshot, sync_subscription

__all__ = [
    "BillingConfig",
    "BillingStore",
    "get_store",
    "StripeGateway",
    "get_gateway",
    "CheckoutContext",
    "PaymentMethodDetails",
    "resolve_payment_method",
    "classify_purchase",
    "SubscriptionSnapshot",
    "sync_subscription",
    "error_response",
    "success_response",
    "APIError",
]
