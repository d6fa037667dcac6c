"""
DynamoDB access for billing records.

Tables:
- customers:      customer_id (HASH); user-index GSI on user_id
- orders:         checkout_session_id (HASH); customer-index and
                  payment-last4-index GSIs (both ranged on created_at)
- subscriptions:  customer_id (HASH); status-index GSI (status, updated_at)
- sync logs:      customer_id (HASH), sk "<iso>#<rand>" (RANGE), append-only
- webhook events: pk event id (HASH), sk event type (RANGE), 90-day TTL

Every write is either a conditional insert that treats "already exists"
as success, or a full-row/field update keyed by customer or session id.
Nothing relies on read-modify-write of individual fields.
"""

import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterator, Optional

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from .aws_clients import get_dynamodb
from .constants import ORDER_COMPLETED, RECURRING_TIERS, SENTINEL_LAST4, STATUS_NOT_STARTED

logger = logging.getLogger(__name__)

CUSTOMERS_TABLE = os.environ.get("CUSTOMERS_TABLE", "dayof-customers")
ORDERS_TABLE = os.environ.get("ORDERS_TABLE", "dayof-orders")
SUBSCRIPTIONS_TABLE = os.environ.get("SUBSCRIPTIONS_TABLE", "dayof-subscriptions")
SYNC_LOGS_TABLE = os.environ.get("SYNC_LOGS_TABLE", "dayof-sync-logs")
WEBHOOK_EVENTS_TABLE = os.environ.get("WEBHOOK_EVENTS_TABLE", "dayof-webhook-events")

EVENT_TTL_DAYS = 90

# Longer than the webhook Lambda's 15 minute maximum timeout
CLAIM_STALE_SECONDS = 20 * 60
EVENT_PROCESSING = "processing"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_dynamo(value):
    """Convert floats (unsupported by boto3) to Decimal, recursively."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_dynamo(v) for v in value]
    return value


def _compact(item: dict) -> dict:
    """Drop None attributes so GSI key attributes are never written as NULL."""
    return {k: _to_dynamo(v) for k, v in item.items() if v is not None}


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response["Error"]["Code"] == "ConditionalCheckFailedException"


def _update_expression(fields: dict) -> tuple[str, dict, dict]:
    """Build SET/REMOVE expression; None values are removed."""
    set_parts = []
    remove_parts = []
    names = {}
    values = {}
    for i, (name, value) in enumerate(fields.items()):
        names[f"#f{i}"] = name
        if value is None:
            remove_parts.append(f"#f{i}")
        else:
            set_parts.append(f"#f{i} = :v{i}")
            values[f":v{i}"] = _to_dynamo(value)

    expr_parts = []
    if set_parts:
        expr_parts.append("SET " + ", ".join(set_parts))
    if remove_parts:
        expr_parts.append("REMOVE " + ", ".join(remove_parts))
    return " ".join(expr_parts), names, values


class BillingStore:
    """Narrow storage interface used by the webhook, synchronizer and sweep."""

    def __init__(self, dynamodb=None):
        self._dynamodb = dynamodb

    @property
    def dynamodb(self):
        if self._dynamodb is None:
            self._dynamodb = get_dynamodb()
        return self._dynamodb

    @property
    def customers(self):
        return self.dynamodb.Table(CUSTOMERS_TABLE)

    @property
    def orders(self):
        return self.dynamodb.Table(ORDERS_TABLE)

    @property
    def subscriptions(self):
        return self.dynamodb.Table(SUBSCRIPTIONS_TABLE)

    @property
    def sync_logs(self):
        return self.dynamodb.Table(SYNC_LOGS_TABLE)

    @property
    def webhook_events(self):
        return self.dynamodb.Table(WEBHOOK_EVENTS_TABLE)

    def _update(
        self,
        table,
        key: dict,
        fields: dict,
        condition: Optional[str] = None,
        condition_values: Optional[dict] = None,
    ) -> bool:
        """Apply a field update. Returns False when ``condition`` fails.

        ``condition_values`` placeholders must not collide with the
        generated ``:v<n>`` names.
        """
        expression, names, values = _update_expression(fields)
        values.update(condition_values or {})
        params = {
            "Key": key,
            "UpdateExpression": expression,
            "ExpressionAttributeNames": names,
        }
        if values:
            params["ExpressionAttributeValues"] = values
        if condition:
            params["ConditionExpression"] = condition
        try:
            table.update_item(**params)
            return True
        except ClientError as e:
            if condition and _is_conditional_failure(e):
                return False
            raise

    # ===========================================
    # Customers
    # ===========================================

    def get_customer(self, customer_id: str) -> Optional[dict]:
        response = self.customers.get_item(Key={"customer_id": customer_id})
        return response.get("Item")

    def get_customer_by_user_id(self, user_id: str) -> Optional[dict]:
        """Non-deleted customer linked to an internal account."""
        response = self.customers.query(
            IndexName="user-index",
            KeyConditionExpression=Key("user_id").eq(user_id),
        )
        for item in response.get("Items", []):
            if not item.get("deleted_at"):
                return item
        return None

    def ensure_customer(
        self,
        customer_id: str,
        email: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        """Create the customer row if missing. Returns True when created."""
        now = _now_iso()
        try:
            self.customers.put_item(
                Item=_compact({
                    "customer_id": customer_id,
                    "email": email,
                    "user_id": user_id,
                    "created_at": now,
                    "updated_at": now,
                }),
                ConditionExpression="attribute_not_exists(customer_id)",
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise

    def link_customer_to_user(self, customer_id: str, user_id: str, email: Optional[str] = None) -> None:
        """Attach an internal account to an existing customer row."""
        fields = {"user_id": user_id, "updated_at": _now_iso()}
        if email:
            fields["email"] = email
        self._update(self.customers, {"customer_id": customer_id}, fields)

    def soft_delete_customer(self, customer_id: str) -> None:
        now = _now_iso()
        self._update(
            self.customers,
            {"customer_id": customer_id},
            {"deleted_at": now, "updated_at": now},
        )

    # ===========================================
    # Orders
    # ===========================================

    def insert_order(self, order: dict) -> bool:
        """Insert an order keyed by checkout_session_id.

        Returns False (not an error) when the session was already recorded,
        which is how duplicate webhook deliveries are absorbed.
        """
        now = _now_iso()
        item = {"created_at": now, "updated_at": now, **order}
        try:
            self.orders.put_item(
                Item=_compact(item),
                ConditionExpression="attribute_not_exists(checkout_session_id)",
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise

    def get_order(self, checkout_session_id: str) -> Optional[dict]:
        response = self.orders.get_item(Key={"checkout_session_id": checkout_session_id})
        return response.get("Item")

    def get_customer_orders(self, customer_id: str, completed_only: bool = True) -> list[dict]:
        """Orders for a customer, newest first."""
        items = []
        query_params = {
            "IndexName": "customer-index",
            "KeyConditionExpression": Key("customer_id").eq(customer_id),
            "ScanIndexForward": False,
        }
        while True:
            response = self.orders.query(**query_params)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            query_params["ExclusiveStartKey"] = last_key

        if completed_only:
            items = [
                o for o in items
                if o.get("status") == ORDER_COMPLETED and not o.get("deleted_at")
            ]
        return items

    def get_latest_completed_order(self, customer_id: str) -> Optional[dict]:
        orders = self.get_customer_orders(customer_id)
        return orders[0] if orders else None

    def update_order_subscription_snapshot(self, customer_id: str, snapshot: dict) -> int:
        """Overwrite the denormalized subscription fields on recurring orders.

        These snapshot fields are the only part of a completed order the
        synchronizer may change.
        """
        fields = {
            "subscription_id": snapshot.get("subscription_id"),
            "price_id": snapshot.get("price_id"),
            "current_period_start": snapshot.get("current_period_start"),
            "current_period_end": snapshot.get("current_period_end"),
            "cancel_at_period_end": bool(snapshot.get("cancel_at_period_end")),
            "subscription_status": snapshot.get("status"),
            "updated_at": _now_iso(),
        }
        updated = 0
        for order in self.get_customer_orders(customer_id):
            if order.get("purchase_type") not in RECURRING_TIERS:
                continue
            self._update(
                self.orders,
                {"checkout_session_id": order["checkout_session_id"]},
                fields,
            )
            updated += 1
        return updated

    def update_order_payment_method(self, customer_id: str, brand: str, last4: str) -> int:
        """Fill in card display data on completed orders still holding the placeholder.

        Orders that already carry real card data are never touched.
        """
        updated = 0
        for order in self.get_customer_orders(customer_id):
            if order.get("payment_method_last4") != SENTINEL_LAST4:
                continue
            repaired = self._update(
                self.orders,
                {"checkout_session_id": order["checkout_session_id"]},
                {
                    "payment_method_brand": brand,
                    "payment_method_last4": last4,
                    "updated_at": _now_iso(),
                },
                condition="payment_method_last4 = :placeholder",
                condition_values={":placeholder": SENTINEL_LAST4},
            )
            if repaired:
                updated += 1
        return updated

    def find_orders_with_placeholder_payment(
        self, placeholder: str, since_iso: str, limit: int
    ) -> list[dict]:
        """Newest completed order per customer created since ``since_iso`` still carrying ``placeholder``.

        ``limit`` counts distinct customers, so one customer with many
        placeholder orders does not use up the batch.
        """
        items = []
        seen_customers = set()
        query_params = {
            "IndexName": "payment-last4-index",
            "KeyConditionExpression": (
                Key("payment_method_last4").eq(placeholder) & Key("created_at").gte(since_iso)
            ),
            "ScanIndexForward": False,
        }
        while len(items) < limit:
            response = self.orders.query(**query_params)
            for item in response.get("Items", []):
                customer_id = item.get("customer_id")
                if item.get("status") != ORDER_COMPLETED or item.get("deleted_at"):
                    continue
                if not customer_id or customer_id in seen_customers:
                    continue
                seen_customers.add(customer_id)
                items.append(item)
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            query_params["ExclusiveStartKey"] = last_key
        return items[:limit]

    def iter_completed_orders(self) -> Iterator[dict]:
        """All completed, non-deleted orders (full table scan)."""
        scan_kwargs = {
            "FilterExpression": Attr("status").eq(ORDER_COMPLETED) & Attr("deleted_at").not_exists(),
        }
        while True:
            response = self.orders.scan(**scan_kwargs)
            yield from response.get("Items", [])
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            scan_kwargs["ExclusiveStartKey"] = last_key

    def soft_delete_orders(self, customer_id: str) -> int:
        now = _now_iso()
        deleted = 0
        for order in self.get_customer_orders(customer_id, completed_only=False):
            if order.get("deleted_at"):
                continue
            self._update(
                self.orders,
                {"checkout_session_id": order["checkout_session_id"]},
                {"deleted_at": now, "updated_at": now},
            )
            deleted += 1
        return deleted

    # ===========================================
    # Subscriptions
    # ===========================================

    def get_subscription(self, customer_id: str) -> Optional[dict]:
        response = self.subscriptions.get_item(Key={"customer_id": customer_id})
        return response.get("Item")

    def put_subscription(self, customer_id: str, record: dict) -> dict:
        """Full-row write of a customer's subscription record (insert or overwrite)."""
        item = {**record, "customer_id": customer_id, "updated_at": _now_iso()}
        self.subscriptions.put_item(Item=_compact(item))
        return item

    def create_pending_subscription(self, customer_id: str) -> bool:
        """Seed a not_started record before checkout. No-op if a record exists."""
        try:
            self.subscriptions.put_item(
                Item={
                    "customer_id": customer_id,
                    "status": STATUS_NOT_STARTED,
                    "cancel_at_period_end": False,
                    "updated_at": _now_iso(),
                },
                ConditionExpression="attribute_not_exists(customer_id)",
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise

    def update_subscription_payment_method(self, customer_id: str, brand: str, last4: str) -> bool:
        """Update card display data if the customer has a subscription record."""
        return self._update(
            self.subscriptions,
            {"customer_id": customer_id},
            {
                "payment_method_brand": brand,
                "payment_method_last4": last4,
                "updated_at": _now_iso(),
            },
            condition="attribute_exists(customer_id)",
        )

    def find_stuck_subscriptions(self, older_than_iso: str, limit: int) -> list[dict]:
        """Records still not_started whose last update is before ``older_than_iso``."""
        response = self.subscriptions.query(
            IndexName="status-index",
            KeyConditionExpression=(
                Key("status").eq(STATUS_NOT_STARTED) & Key("updated_at").lt(older_than_iso)
            ),
            Limit=limit,
        )
        return response.get("Items", [])

    # ===========================================
    # Sync log (append-only audit trail)
    # ===========================================

    def append_sync_log(
        self,
        customer_id: str,
        operation: str,
        status: str,
        details: Optional[dict] = None,
        severity: str = "info",
    ) -> None:
        now = _now_iso()
        self.sync_logs.put_item(
            Item=_compact({
                "customer_id": customer_id,
                "sk": f"{now}#{uuid.uuid4().hex[:12]}",
                "operation": operation,
                "status": status,
                "severity": severity,
                "details": {**(details or {}), "timestamp": now},
                "created_at": now,
            })
        )

    def get_sync_logs(self, customer_id: str) -> list[dict]:
        response = self.sync_logs.query(
            KeyConditionExpression=Key("customer_id").eq(customer_id),
        )
        return response.get("Items", [])

    # ===========================================
    # Webhook event claims
    # ===========================================

    def claim_event(
        self,
        event_id: str,
        event_type: str,
        stale_after_seconds: int = CLAIM_STALE_SECONDS,
    ) -> bool:
        """Atomically claim a webhook event.

        A claim left in "processing" for longer than ``stale_after_seconds``
        belongs to an invocation that died before releasing or recording
        it, and may be taken over.

        Returns:
            True if successfully claimed (should process)
            False if already exists (duplicate - skip processing)
        """
        now = datetime.now(timezone.utc)
        stale_before = now - timedelta(seconds=stale_after_seconds)
        try:
            self.webhook_events.put_item(
                Item={
                    "pk": event_id,
                    "sk": event_type,
                    "status": EVENT_PROCESSING,
                    "processed_at": now.isoformat(),
                    "ttl": int((now + timedelta(days=EVENT_TTL_DAYS)).timestamp()),
                },
                ConditionExpression=(
                    "attribute_not_exists(pk) OR "
                    "(#status = :processing AND processed_at < :stale_before)"
                ),
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":processing": EVENT_PROCESSING,
                    ":stale_before": stale_before.isoformat(),
                },
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise

    def release_event_claim(self, event_id: str, event_type: str) -> None:
        """Delete a claim so the next Stripe retry can re-process the event."""
        self.webhook_events.delete_item(Key={"pk": event_id, "sk": event_type})

    def record_event(self, event: dict, status: str, error: Optional[str] = None) -> None:
        now = datetime.now(timezone.utc)
        customer_id = ((event.get("data") or {}).get("object") or {}).get("customer")
        self.webhook_events.put_item(
            Item=_compact({
                "pk": event["id"],
                "sk": event["type"],
                "customer_id": customer_id if isinstance(customer_id, str) else "unknown",
                "processed_at": now.isoformat(),
                "event_created_at": event.get("created"),
                "livemode": event.get("livemode"),
                "status": status,
                "error": error,
                "ttl": int((now + timedelta(days=EVENT_TTL_DAYS)).timestamp()),
            })
        )


_store: Optional[BillingStore] = None


def get_store() -> BillingStore:
    """Process-wide store instance."""
    global _store
    if _store is None:
        _store = BillingStore()
    return _store


def reset_store() -> None:
    """Forget the cached store. Used in tests."""
    global _store
    _store = None
