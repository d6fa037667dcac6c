"""
Tests for subscription state synchronization.
"""

from unittest.mock import MagicMock, patch

import pytest
from freezegun import freeze_time

from conftest import card, stripe_subscription
from shared.subscription_sync import map_stripe_status, sync_subscription

FROZEN_NOW = 1740823200  # 2025-03-01T10:00:00Z


def _completed_order(store, session_id="cs_1", customer_id="cus_1", purchase_type="short_cycle", **extra):
    store.insert_order({
        "checkout_session_id": session_id,
        "customer_id": customer_id,
        "status": "completed",
        "purchase_type": purchase_type,
        "payment_method_brand": "card",
        "payment_method_last4": "****",
        **extra,
    })


def _sync(store, gateway, config, sleep=None, customer_id="cus_1"):
    return sync_subscription(
        customer_id, gateway=gateway, store=store, config=config, sleep=sleep or MagicMock()
    )


class TestSubscriptionFound:

    def test_writes_record_and_recurring_order_snapshots(self, store, gateway, billing_config):
        _completed_order(store, "cs_sub", purchase_type="long_cycle")
        _completed_order(store, "cs_perp", purchase_type="perpetual")
        gateway.list_subscriptions.return_value = [
            stripe_subscription("sub_live", status="active", price_id="price_yearly", payment_method=card("visa", "4242"))
        ]
        sleep = MagicMock()

        snapshot = _sync(store, gateway, billing_config, sleep)

        assert snapshot.subscription_id == "sub_live"
        assert snapshot.source == "stripe"
        assert snapshot.attempts == 1
        sleep.assert_not_called()
        gateway.list_subscriptions.assert_called_with("cus_1", limit=1)

        record = store.get_subscription("cus_1")
        assert record["status"] == "active"
        assert record["price_id"] == "price_yearly"
        assert record["payment_method_last4"] == "4242"
        assert record["current_period_end"] == 1702592000

        assert store.get_order("cs_sub")["subscription_id"] == "sub_live"
        assert store.get_order("cs_sub")["subscription_status"] == "active"
        assert "subscription_id" not in store.get_order("cs_perp")

        logs = store.get_sync_logs("cus_1")
        assert [(log["status"], log["severity"]) for log in logs] == [("success", "info")]

    def test_real_status_is_preserved(self, store, gateway, billing_config):
        gateway.list_subscriptions.return_value = [stripe_subscription(status="past_due")]

        snapshot = _sync(store, gateway, billing_config)

        assert snapshot.status == "past_due"
        assert store.get_subscription("cus_1")["status"] == "past_due"

    @pytest.mark.parametrize("status", ["canceled", "incomplete_expired"])
    def test_lapsed_subscription_does_not_override_perpetual_purchase(self, store, gateway, billing_config, status):
        _completed_order(store, purchase_type="perpetual", payment_method_brand="visa", payment_method_last4="4242")
        gateway.list_subscriptions.return_value = [
            stripe_subscription("sub_oldmonthly", status=status, price_id="price_monthly")
        ]

        snapshot = _sync(store, gateway, billing_config)

        assert snapshot.subscription_id is None
        assert snapshot.status == "active"
        assert snapshot.source == "perpetual"
        record = store.get_subscription("cus_1")
        assert "subscription_id" not in record
        assert record["status"] == "active"
        assert record["price_id"] == "price_lifetime"

    def test_lapsed_subscription_is_mirrored_for_recurring_customer(self, store, gateway, billing_config):
        _completed_order(store, purchase_type="short_cycle")
        gateway.list_subscriptions.return_value = [stripe_subscription("sub_old", status="canceled")]

        snapshot = _sync(store, gateway, billing_config)

        assert snapshot.subscription_id == "sub_old"
        assert store.get_subscription("cus_1")["status"] == "canceled"

    def test_periods_read_from_items_on_newer_api_versions(self, store, gateway, billing_config):
        subscription = stripe_subscription()
        del subscription["current_period_start"]
        del subscription["current_period_end"]
        subscription["items"]["data"][0].update({"current_period_start": 10, "current_period_end": 20})
        gateway.list_subscriptions.return_value = [subscription]

        snapshot = _sync(store, gateway, billing_config)

        assert (snapshot.current_period_start, snapshot.current_period_end) == (10, 20)

    def test_invalid_card_is_filled_by_resolver(self, store, gateway, billing_config):
        gateway.list_subscriptions.return_value = [stripe_subscription(payment_method=card("visa", "x1y2"))]
        gateway.list_card_payment_methods.return_value = [card("mastercard", "5555")]

        snapshot = _sync(store, gateway, billing_config)

        assert (snapshot.payment_method_brand, snapshot.payment_method_last4) == ("mastercard", "5555")

    def test_unexpanded_payment_method_keeps_stored_card(self, store, gateway, billing_config):
        store.put_subscription("cus_1", {
            "status": "active",
            "payment_method_brand": "amex",
            "payment_method_last4": "0005",
        })
        gateway.list_subscriptions.return_value = [stripe_subscription(payment_method="pm_123")]

        snapshot = _sync(store, gateway, billing_config)

        assert snapshot.payment_method_last4 == "0005"


class TestStatusMapping:

    @pytest.mark.parametrize("status", ["active", "trialing", "canceled", "unpaid", "incomplete", "paused"])
    def test_known_statuses_pass_through(self, status):
        assert map_stripe_status(status, "cus_1") == status

    @pytest.mark.parametrize("status", ["something_new", None, "not_started"])
    def test_unknown_statuses_become_active(self, status):
        assert map_stripe_status(status, "cus_1") == "active"


class TestEventualConsistency:

    def test_found_on_third_attempt_uses_real_status(self, store, gateway, billing_config):
        """Scenario B: record appears on the 3rd fetch, real status wins over forced active."""
        _completed_order(store, purchase_type="long_cycle", amount_total=2799)
        gateway.list_subscriptions.side_effect = [[], [], [stripe_subscription(status="trialing")]]
        sleep = MagicMock()

        snapshot = _sync(store, gateway, billing_config, sleep)

        assert snapshot.status == "trialing"
        assert snapshot.source == "stripe"
        assert snapshot.attempts == 3
        assert [c.args[0] for c in sleep.call_args_list] == [2.0, 4.0]
        assert store.get_subscription("cus_1")["status"] == "trialing"

    def test_backoff_is_capped(self, store, gateway, billing_config):
        from dataclasses import replace

        config = replace(billing_config, sync_max_attempts=6, sync_max_delay=10.0)
        sleep = MagicMock()

        _sync(store, gateway, config, sleep)

        assert [c.args[0] for c in sleep.call_args_list] == [2.0, 4.0, 8.0, 10.0, 10.0]
        assert gateway.list_subscriptions.call_count == 6


@freeze_time("2025-03-01T10:00:00Z")
class TestNotFound:

    def test_perpetual_customer_gets_null_id_and_active(self, store, gateway, billing_config):
        """Round-trip: perpetual records always have no subscription id and status active."""
        _completed_order(store, purchase_type="perpetual", payment_method_brand="visa", payment_method_last4="4242")

        snapshot = _sync(store, gateway, billing_config)

        assert snapshot.subscription_id is None
        assert snapshot.status == "active"
        assert snapshot.price_id == "price_lifetime"
        record = store.get_subscription("cus_1")
        assert "subscription_id" not in record
        assert record["status"] == "active"
        assert record["payment_method_last4"] == "4242"
        assert store.get_sync_logs("cus_1")[0]["status"] == "success"

    def test_no_order_creates_flagged_fallback(self, store, gateway, billing_config):
        """Scenario C: never found, no order tier to consult."""
        sleep = MagicMock()

        with patch("shared.subscription_sync.send_operator_alert") as mock_alert:
            snapshot = _sync(store, gateway, billing_config, sleep)

        assert gateway.list_subscriptions.call_count == 3
        assert sleep.call_count == 2
        assert snapshot.status == "active"
        assert snapshot.subscription_id.startswith("sub_fallback_")
        assert snapshot.price_id == "price_monthly"
        assert snapshot.current_period_start == FROZEN_NOW
        assert snapshot.current_period_end == FROZEN_NOW + 30 * 86400

        record = store.get_subscription("cus_1")
        assert record["status"] == "active"
        assert record["subscription_id"] == snapshot.subscription_id

        logs = store.get_sync_logs("cus_1")
        assert len(logs) == 1
        assert logs[0]["status"] == "error"
        assert logs[0]["severity"] == "error"
        assert logs[0]["details"]["subscription_id"] == snapshot.subscription_id
        mock_alert.assert_called_once()

    def test_long_cycle_fallback_uses_long_cycle_defaults(self, store, gateway, billing_config):
        from dataclasses import replace

        config = replace(billing_config, long_cycle_fallback_period_days=365)
        _completed_order(store, purchase_type="long_cycle")

        snapshot = _sync(store, gateway, config)

        assert snapshot.price_id == "price_yearly"
        assert snapshot.current_period_end == FROZEN_NOW + 365 * 86400
        assert store.get_order("cs_1")["subscription_id"] == snapshot.subscription_id

    def test_fallback_sends_operator_alert(self, store, gateway, billing_config, monkeypatch):
        monkeypatch.setenv("ALERT_TOPIC_ARN", "arn:aws:sns:us-east-1:123456789012:alerts")

        with patch("shared.notifications.get_sns") as mock_get_sns:
            _sync(store, gateway, billing_config)

        publish = mock_get_sns.return_value.publish
        publish.assert_called_once()
        assert "cus_1" in publish.call_args.kwargs["Message"]

    def test_pending_record_never_stays_not_started(self, store, gateway, billing_config):
        """Liveness: repeated syncs with no Stripe record converge to active."""
        store.create_pending_subscription("cus_1")
        _completed_order(store, purchase_type="short_cycle", amount_total=399)

        for _ in range(3):
            snapshot = _sync(store, gateway, billing_config)
            assert snapshot.status == "active"
            assert store.get_subscription("cus_1")["status"] != "not_started"


@freeze_time("2025-03-01T10:00:00Z")
class TestUnexpectedErrors:

    def test_first_exception_retries_whole_sync(self, store, gateway, billing_config):
        gateway.list_subscriptions.side_effect = [RuntimeError("boom"), [stripe_subscription()]]

        snapshot = _sync(store, gateway, billing_config)

        assert snapshot.subscription_id == "sub_123"
        assert store.get_subscription("cus_1")["subscription_id"] == "sub_123"

    def test_second_exception_persists_emergency_record_and_raises(self, store, gateway, billing_config):
        store.create_pending_subscription("cus_1")
        gateway.list_subscriptions.side_effect = RuntimeError("stripe exploded")

        with pytest.raises(RuntimeError, match="stripe exploded"):
            _sync(store, gateway, billing_config)

        assert gateway.list_subscriptions.call_count == 2
        record = store.get_subscription("cus_1")
        assert record["status"] == "active"
        assert record["subscription_id"].startswith("sub_emergency_")
        assert record["price_id"] == "price_monthly"

        logs = store.get_sync_logs("cus_1")
        assert logs[-1]["severity"] == "error"
        assert logs[-1]["details"]["error"] == "stripe exploded"

    def test_emergency_record_uses_order_tier(self, store, gateway, billing_config):
        _completed_order(store, purchase_type="long_cycle")
        gateway.list_subscriptions.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            _sync(store, gateway, billing_config)

        assert store.get_subscription("cus_1")["price_id"] == "price_yearly"
