"""
Shared pytest fixtures for Day of Timeline billing tests.
"""

import base64
import hashlib
import hmac
import json
import os
import sys
import time
from unittest.mock import MagicMock

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

WEBHOOK_SECRET = "whsec_test_secret"
SESSION_SECRET = "test-session-secret"
ADMIN_TOKEN = "test-admin-token"


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared client singletons and caches between tests."""
    yield
    from shared.aws_clients import reset_clients
    from shared.billing_store import reset_store
    from shared.secrets import clear_secret_cache
    from shared.stripe_gateway import reset_gateway

    reset_clients()
    reset_store()
    reset_gateway()
    clear_secret_cache()


@pytest.fixture(autouse=True)
def clean_billing_env(monkeypatch):
    """Keep optional integrations off unless a test enables them."""
    for name in (
        "BETA_INVITE_URL",
        "BETA_INVITE_TOKEN",
        "ALERT_TOPIC_ARN",
        "DEFERRED_SYNC_FUNCTION",
        "STRIPE_SECRET_ARN",
        "STRIPE_WEBHOOK_SECRET_ARN",
        "SESSION_SECRET_ARN",
        "ADMIN_TOKEN_SECRET_ARN",
    ):
        monkeypatch.delenv(name, raising=False)


def create_dynamodb_tables(dynamodb):
    """Create all billing tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    dynamodb.create_table(
        TableName="dayof-customers",
        KeySchema=[{"AttributeName": "customer_id", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "customer_id", "AttributeType": "S"},
            {"AttributeName": "user_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "user-index",
                "KeySchema": [{"AttributeName": "user_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="dayof-orders",
        KeySchema=[{"AttributeName": "checkout_session_id", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "checkout_session_id", "AttributeType": "S"},
            {"AttributeName": "customer_id", "AttributeType": "S"},
            {"AttributeName": "payment_method_last4", "AttributeType": "S"},
            {"AttributeName": "created_at", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "customer-index",
                "KeySchema": [
                    {"AttributeName": "customer_id", "KeyType": "HASH"},
                    {"AttributeName": "created_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "payment-last4-index",
                "KeySchema": [
                    {"AttributeName": "payment_method_last4", "KeyType": "HASH"},
                    {"AttributeName": "created_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="dayof-subscriptions",
        KeySchema=[{"AttributeName": "customer_id", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "customer_id", "AttributeType": "S"},
            {"AttributeName": "status", "AttributeType": "S"},
            {"AttributeName": "updated_at", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "status-index",
                "KeySchema": [
                    {"AttributeName": "status", "KeyType": "HASH"},
                    {"AttributeName": "updated_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="dayof-sync-logs",
        KeySchema=[
            {"AttributeName": "customer_id", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},  # <iso>#<rand>
        ],
        AttributeDefinitions=[
            {"AttributeName": "customer_id", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="dayof-webhook-events",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # event_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # event_type
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def store(mock_dynamodb):
    """BillingStore bound to the mocked tables."""
    from shared.billing_store import BillingStore

    return BillingStore(mock_dynamodb)


@pytest.fixture
def billing_config():
    """Product configuration with explicit test price ids."""
    from shared.billing_config import BillingConfig

    return BillingConfig(
        perpetual_price_id="price_lifetime",
        short_cycle_price_id="price_monthly",
        long_cycle_price_ids=("price_yearly", "price_yearly_2024"),
    )


@pytest.fixture
def gateway():
    """Stripe gateway double; every lookup finds nothing by default."""
    from shared.stripe_gateway import StripeGateway

    gw = MagicMock(spec=StripeGateway)
    gw.api_key = "sk_test_123"
    gw.webhook_secret = WEBHOOK_SECRET
    gw.list_subscriptions.return_value = []
    gw.list_card_payment_methods.return_value = []
    gw.retrieve_subscription.return_value = {}
    gw.retrieve_payment_intent.return_value = {}
    gw.retrieve_setup_intent.return_value = {}
    gw.get_line_item_price_id.return_value = None
    return gw


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "GET",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "requestContext": {
            "requestId": "req-test-123",
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }


@pytest.fixture
def secrets(mock_dynamodb, monkeypatch):
    """Stripe, session and admin secrets in mocked Secrets Manager."""
    sm = boto3.client("secretsmanager", region_name="us-east-1")
    arns = {
        "STRIPE_SECRET_ARN": sm.create_secret(
            Name="dayof/stripe", SecretString=json.dumps({"key": "sk_test_123"})
        )["ARN"],
        "STRIPE_WEBHOOK_SECRET_ARN": sm.create_secret(
            Name="dayof/stripe-webhook", SecretString=json.dumps({"secret": WEBHOOK_SECRET})
        )["ARN"],
        "SESSION_SECRET_ARN": sm.create_secret(
            Name="dayof/session", SecretString=json.dumps({"secret": SESSION_SECRET})
        )["ARN"],
        "ADMIN_TOKEN_SECRET_ARN": sm.create_secret(
            Name="dayof/admin", SecretString=ADMIN_TOKEN
        )["ARN"],
    }
    for name, arn in arns.items():
        monkeypatch.setenv(name, arn)
    return arns


def card(brand="visa", last4="4242"):
    """Expanded PaymentMethod object."""
    return {"id": "pm_test", "type": "card", "card": {"brand": brand, "last4": last4}}


def stripe_subscription(sub_id="sub_123", status="active", price_id="price_monthly", payment_method=None):
    """Subscription as returned by Subscription.list with expansions."""
    return {
        "id": sub_id,
        "status": status,
        "cancel_at_period_end": False,
        "current_period_start": 1700000000,
        "current_period_end": 1702592000,
        "default_payment_method": payment_method if payment_method is not None else card(),
        "items": {"data": [{"price": {"id": price_id}}]},
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a stripe-signature header for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_session_token(user_id="user_123", email="couple@example.com", secret=SESSION_SECRET, expires_in=3600):
    """Signed session token as issued by the auth service."""
    data = {"user_id": user_id, "email": email, "exp": int(time.time()) + expires_in}
    payload = base64.urlsafe_b64encode(json.dumps(data).encode()).decode()
    signature = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()
    return f"{payload}.{signature}"
