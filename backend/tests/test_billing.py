"""Billing reconciler tests: ledger dedup, ordering and provider mappings"""
import json
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest

from app.models.billing_event import BillingEvent
from app.models.subscription import Subscription
from app.services import revenuecat_service, stripe_service
from app.services.billing_service import (
    SubscriptionUpdate, apply_subscription_update, plan_flags, reconcile_event
)
from app.services.subscription_service import process_revenuecat_webhook, process_stripe_webhook
from app.services.user_service import create_user
from app.utils.timestamps import ensure_utc, from_unix

from conftest import BASE_TS, checkout_session, revenuecat_body, stripe_event, stripe_subscription


def _subscription(db_session, user):
    db_session.expire_all()
    return db_session.query(Subscription).filter(Subscription.user_id == user.id).first()


def _deliver_stripe(auto_mock_stripe, db_session, event):
    auto_mock_stripe.Webhook.construct_event.return_value = event
    return process_stripe_webhook(json.dumps(event).encode(), "t=1,v1=sig", db_session)


def _deliver_revenuecat(db_session, body):
    raw = json.dumps(body).encode()
    signature = revenuecat_service.compute_signature(raw, "rc_test_secret")
    return process_revenuecat_webhook(raw, signature, db_session)


@pytest.fixture
def subscribed(db_session, alice, auto_mock_stripe):
    """alice holds an active pro subscription sub_1 / cus_1"""
    _deliver_stripe(auto_mock_stripe, db_session, stripe_event(
        "evt_checkout", "checkout.session.completed", checkout_session(alice.id), created=BASE_TS
    ))
    return _subscription(db_session, alice)


@pytest.mark.critical
class TestLedger:

    def test_same_event_twice_applies_once(self, db_session, alice, auto_mock_stripe):
        event = stripe_event("evt_1", "checkout.session.completed", checkout_session(alice.id))

        first = _deliver_stripe(auto_mock_stripe, db_session, event)
        state_after_first = (_subscription(db_session, alice).plan, _subscription(db_session, alice).status)
        second = _deliver_stripe(auto_mock_stripe, db_session, event)

        assert first["status"] == "applied"
        assert second["status"] == "duplicate"
        assert (_subscription(db_session, alice).plan, _subscription(db_session, alice).status) == state_after_first
        assert db_session.query(BillingEvent).filter(BillingEvent.event_id == "evt_1").count() == 1
        # The handler only ran for the first delivery
        assert auto_mock_stripe.Subscription.retrieve.call_count == 1

    def test_ledger_records_outcome(self, db_session, alice, auto_mock_stripe):
        _deliver_stripe(auto_mock_stripe, db_session, stripe_event("evt_x", "invoice.created", {}))
        entry = db_session.query(BillingEvent).filter(BillingEvent.event_id == "evt_x").one()
        assert entry.provider == "stripe"
        assert entry.event_type == "invoice.created"
        assert entry.outcome == "ignored"
        assert ensure_utc(entry.event_at) == from_unix(BASE_TS)

    def test_same_id_from_different_providers_is_distinct(self, db_session, alice):
        handler = Mock(return_value="ignored")
        reconcile_event("stripe", "evt_shared", "x", None, {}, handler, db_session)
        reconcile_event("revenuecat", "evt_shared", "x", None, {}, handler, db_session)
        assert handler.call_count == 2
        assert db_session.query(BillingEvent).count() == 2

    def test_failed_apply_rolls_back_ledger_and_state(self, db_session, alice, auto_mock_stripe):
        auto_mock_stripe.Subscription.retrieve.side_effect = RuntimeError("stripe down")
        event = stripe_event("evt_fail", "checkout.session.completed", checkout_session(alice.id))

        result = _deliver_stripe(auto_mock_stripe, db_session, event)

        assert result == {"received": True, "status": "error_logged"}
        assert _subscription(db_session, alice) is None
        assert db_session.query(BillingEvent).count() == 0

        # A redelivery after recovery is applied
        auto_mock_stripe.Subscription.retrieve.side_effect = None
        assert _deliver_stripe(auto_mock_stripe, db_session, event)["status"] == "applied"
        assert _subscription(db_session, alice).status == "active"


@pytest.mark.critical
class TestOrdering:

    def test_out_of_order_update_is_discarded(self, db_session, subscribed, alice, auto_mock_stripe):
        t1 = BASE_TS + 30 * 86400
        t2 = BASE_TS + 60 * 86400
        newer = stripe_event("evt_new", "customer.subscription.updated",
                             stripe_subscription(period_end=t2, status="active"), created=BASE_TS + 200)
        older = stripe_event("evt_old", "customer.subscription.updated",
                             stripe_subscription(period_end=t1, status="past_due"), created=BASE_TS + 100)

        assert _deliver_stripe(auto_mock_stripe, db_session, newer)["status"] == "applied"
        assert _deliver_stripe(auto_mock_stripe, db_session, older)["status"] == "stale"

        subscription = _subscription(db_session, alice)
        assert subscription.status == "active"
        assert ensure_utc(subscription.current_period_end) == from_unix(t2)
        assert subscription.last_event_id == "evt_new"
        # Discarded events are still recorded so redelivery stays a no-op
        assert db_session.query(BillingEvent).filter(BillingEvent.event_id == "evt_old").one().outcome == "stale"

    def test_same_timestamp_uses_period_end(self, db_session, subscribed, alice, auto_mock_stripe):
        t1 = BASE_TS + 30 * 86400
        t2 = BASE_TS + 60 * 86400
        created = BASE_TS + 100
        _deliver_stripe(auto_mock_stripe, db_session, stripe_event(
            "evt_a", "customer.subscription.updated", stripe_subscription(period_end=t2), created=created))
        result = _deliver_stripe(auto_mock_stripe, db_session, stripe_event(
            "evt_b", "customer.subscription.updated",
            stripe_subscription(period_end=t1, status="past_due"), created=created))

        assert result["status"] == "stale"
        assert _subscription(db_session, alice).status == "active"

    def test_in_order_updates_apply(self, db_session, subscribed, alice, auto_mock_stripe):
        _deliver_stripe(auto_mock_stripe, db_session, stripe_event(
            "evt_1", "customer.subscription.updated",
            stripe_subscription(status="past_due"), created=BASE_TS + 100))
        assert _subscription(db_session, alice).status == "past_due"

        _deliver_stripe(auto_mock_stripe, db_session, stripe_event(
            "evt_2", "customer.subscription.updated",
            stripe_subscription(status="active", period_end=BASE_TS + 60 * 86400), created=BASE_TS + 200))
        assert _subscription(db_session, alice).status == "active"

    def test_ordering_is_shared_across_providers(self, db_session, subscribed, alice):
        # RevenueCat event older than the Stripe checkout
        body = revenuecat_body("rc_old", "EXPIRATION", alice.id, event_ms=(BASE_TS - 3600) * 1000)
        assert _deliver_revenuecat(db_session, body)["status"] == "stale"
        assert _subscription(db_session, alice).status == "active"

        body = revenuecat_body("rc_new", "BILLING_ISSUE", alice.id, event_ms=(BASE_TS + 3600) * 1000,
                               expiration_ms=(BASE_TS + 40 * 86400) * 1000)
        assert _deliver_revenuecat(db_session, body)["status"] == "applied"
        subscription = _subscription(db_session, alice)
        assert subscription.status == "past_due"
        assert subscription.last_event_source == "revenuecat"

    def test_apply_returns_unmapped_without_record(self, db_session, alice):
        update = SubscriptionUpdate(
            source="stripe", event_id="evt", event_at=datetime.now(timezone.utc),
            user_id=alice.id, status="canceled",
        )
        assert apply_subscription_update(update, db_session) == "unmapped"

    def test_create_for_user_without_profile(self, db_session):
        update = SubscriptionUpdate(
            source="revenuecat", event_id="evt", event_at=datetime.now(timezone.utc),
            user_id="ghost", plan="pro", status="active", create_if_missing=True,
        )
        assert apply_subscription_update(update, db_session) == "applied"
        subscription = db_session.query(Subscription).filter(Subscription.user_id == "ghost").one()
        assert subscription.plan == "pro"
        assert subscription.status == "active"

    def test_purchase_before_profile_survives_redelivery(self, db_session, auto_mock_stripe):
        event = stripe_event("evt_early", "checkout.session.completed", checkout_session("user-new"))
        assert _deliver_stripe(auto_mock_stripe, db_session, event)["status"] == "applied"

        create_user("new@example.com", db_session, user_id="user-new")
        assert _deliver_stripe(auto_mock_stripe, db_session, event)["status"] == "duplicate"

        db_session.expire_all()
        subscription = db_session.query(Subscription).filter(Subscription.user_id == "user-new").one()
        assert subscription.plan == "pro"
        assert subscription.status == "active"
        assert subscription.stripe_subscription_id == "sub_1"


@pytest.mark.high
class TestStripeEvents:

    def test_checkout_creates_subscription(self, db_session, subscribed, alice, auto_mock_stripe):
        assert subscribed.plan == "pro"
        assert subscribed.status == "active"
        assert subscribed.stripe_customer_id == "cus_1"
        assert subscribed.stripe_subscription_id == "sub_1"
        assert subscribed.cancel_at_period_end is False
        auto_mock_stripe.Subscription.retrieve.assert_called_once_with("sub_1")

    def test_checkout_falls_back_to_client_reference(self, db_session, alice, auto_mock_stripe):
        event = stripe_event("evt_ref", "checkout.session.completed",
                             checkout_session(alice.id, use_client_reference=True))
        assert _deliver_stripe(auto_mock_stripe, db_session, event)["status"] == "applied"
        assert _subscription(db_session, alice) is not None

    def test_checkout_without_user_is_unmapped(self, db_session, alice, auto_mock_stripe):
        session = checkout_session(alice.id)
        session["metadata"] = {}
        result = _deliver_stripe(auto_mock_stripe, db_session,
                                 stripe_event("evt_anon", "checkout.session.completed", session))
        assert result["status"] == "unmapped"

    @pytest.mark.parametrize("price_id,plan", [
        ("price_basic", "basic"),
        ("price_pro", "pro"),
        ("price_enterprise", "enterprise"),
        ("price_unknown", "basic"),
    ])
    def test_price_to_plan(self, price_id, plan):
        assert stripe_service.price_to_plan(price_id) == plan

    @pytest.mark.parametrize("stripe_status,status", [
        ("active", "active"),
        ("trialing", "active"),
        ("past_due", "past_due"),
        ("unpaid", "past_due"),
        ("incomplete", "past_due"),
        ("canceled", "canceled"),
        ("incomplete_expired", "canceled"),
    ])
    def test_status_mapping(self, stripe_status, status):
        assert stripe_service.map_status(stripe_status) == status

    def test_update_changes_plan_and_cancel_flag(self, db_session, subscribed, alice, auto_mock_stripe):
        _deliver_stripe(auto_mock_stripe, db_session, stripe_event(
            "evt_up", "customer.subscription.updated",
            stripe_subscription(price_id="price_enterprise", cancel_at_period_end=True),
            created=BASE_TS + 100))
        subscription = _subscription(db_session, alice)
        assert subscription.plan == "enterprise"
        assert subscription.cancel_at_period_end is True

    def test_update_for_unknown_customer_is_skipped(self, db_session, alice, auto_mock_stripe):
        result = _deliver_stripe(auto_mock_stripe, db_session, stripe_event(
            "evt_unknown", "customer.subscription.updated", stripe_subscription(customer="cus_nobody")))
        assert result["status"] == "unmapped"
        assert db_session.query(Subscription).count() == 0

    def test_update_for_other_subscription_of_customer_is_ignored(self, db_session, subscribed, alice,
                                                                  auto_mock_stripe):
        result = _deliver_stripe(auto_mock_stripe, db_session, stripe_event(
            "evt_other", "customer.subscription.updated",
            stripe_subscription(sub_id="sub_old", status="canceled"), created=BASE_TS + 100))
        assert result["status"] == "ignored"
        assert _subscription(db_session, alice).status == "active"

    def test_period_end_read_from_subscription_item(self):
        subscription = stripe_subscription()
        del subscription["current_period_end"]
        subscription["items"]["data"][0]["current_period_end"] = BASE_TS + 99
        assert stripe_service.get_period_end(subscription) == from_unix(BASE_TS + 99)

    def test_checkout_then_delete_keeps_plan(self, db_session, subscribed, alice, auto_mock_stripe):
        period_end = subscribed.current_period_end
        _deliver_stripe(auto_mock_stripe, db_session, stripe_event(
            "evt_del", "customer.subscription.deleted",
            stripe_subscription(status="canceled", cancel_at_period_end=True), created=BASE_TS + 500))

        subscription = _subscription(db_session, alice)
        assert subscription.status == "canceled"
        assert subscription.cancel_at_period_end is False
        assert subscription.plan == "pro"
        assert subscription.current_period_end == period_end

    def test_delete_unknown_subscription_is_skipped(self, db_session, auto_mock_stripe):
        result = _deliver_stripe(auto_mock_stripe, db_session, stripe_event(
            "evt_del", "customer.subscription.deleted", stripe_subscription(sub_id="sub_missing")))
        assert result["status"] == "unmapped"

    def test_unrecognized_event_is_ignored(self, db_session, auto_mock_stripe):
        result = _deliver_stripe(auto_mock_stripe, db_session, stripe_event(
            "evt_new_type", "customer.tax_id.created", {"id": "txi_1"}))
        assert result == {"received": True, "status": "ignored"}


@pytest.mark.high
class TestRevenueCatEvents:

    def test_initial_purchase_creates_subscription(self, db_session, alice):
        result = _deliver_revenuecat(db_session, revenuecat_body("rc_1", "INITIAL_PURCHASE", alice.id))
        assert result["status"] == "applied"

        subscription = _subscription(db_session, alice)
        assert subscription.plan == "pro"
        assert subscription.status == "active"
        assert subscription.revenuecat_app_user_id == alice.id
        assert subscription.revenuecat_original_transaction_id == "1000000123456789"
        assert ensure_utc(subscription.current_period_end) == from_unix(BASE_TS + 30 * 86400)

    def test_renewal_updates_period(self, db_session, alice):
        _deliver_revenuecat(db_session, revenuecat_body("rc_1", "INITIAL_PURCHASE", alice.id))
        _deliver_revenuecat(db_session, revenuecat_body(
            "rc_2", "RENEWAL", alice.id, event_ms=(BASE_TS + 30 * 86400) * 1000,
            expiration_ms=(BASE_TS + 60 * 86400) * 1000))
        subscription = _subscription(db_session, alice)
        assert ensure_utc(subscription.current_period_end) == from_unix(BASE_TS + 60 * 86400)

    @pytest.mark.parametrize("event_type,status", [
        ("CANCELLATION", "canceled"),
        ("EXPIRATION", "canceled"),
        ("BILLING_ISSUE", "past_due"),
    ])
    def test_status_events(self, db_session, alice, event_type, status):
        _deliver_revenuecat(db_session, revenuecat_body("rc_1", "INITIAL_PURCHASE", alice.id))
        _deliver_revenuecat(db_session, revenuecat_body(
            "rc_2", event_type, alice.id, event_ms=(BASE_TS + 60) * 1000))
        subscription = _subscription(db_session, alice)
        assert subscription.status == status
        assert subscription.plan == "pro"

    def test_cancellation_without_record_is_unmapped(self, db_session, alice):
        result = _deliver_revenuecat(db_session, revenuecat_body("rc_1", "CANCELLATION", alice.id))
        assert result["status"] == "unmapped"
        assert _subscription(db_session, alice) is None

    def test_unknown_app_user_is_unmapped(self, db_session):
        result = _deliver_revenuecat(db_session, revenuecat_body("rc_1", "INITIAL_PURCHASE", "$RCAnonymousID:x"))
        assert result["status"] == "unmapped"

    def test_alias_changes_nothing(self, db_session, alice):
        _deliver_revenuecat(db_session, revenuecat_body("rc_1", "INITIAL_PURCHASE", alice.id))
        result = _deliver_revenuecat(db_session, revenuecat_body(
            "rc_2", "SUBSCRIBER_ALIAS", alice.id, event_ms=(BASE_TS + 60) * 1000))
        assert result["status"] == "ignored"
        assert _subscription(db_session, alice).last_event_id == "rc_1"

    def test_unknown_type_is_ignored(self, db_session, alice):
        result = _deliver_revenuecat(db_session, revenuecat_body("rc_1", "PRODUCT_CHANGE", alice.id))
        assert result["status"] == "ignored"

    @pytest.mark.parametrize("product_id,plan", [
        ("collab_pro_monthly", "pro"),
        ("collab_enterprise_yearly", "enterprise"),
        ("basic", "basic"),
        ("something_else", "pro"),
    ])
    def test_product_to_plan(self, product_id, plan):
        assert revenuecat_service.product_to_plan(product_id) == plan

    def test_sandbox_dropped_in_production(self, db_session, alice):
        body = revenuecat_body("rc_sb", "INITIAL_PURCHASE", alice.id, environment="SANDBOX")
        with patch.object(revenuecat_service.settings, "ENVIRONMENT", "production"):
            result = _deliver_revenuecat(db_session, body)
        assert result == {"received": True, "skipped": True}
        assert _subscription(db_session, alice) is None
        assert db_session.query(BillingEvent).count() == 0

    def test_sandbox_applied_outside_production(self, db_session, alice):
        body = revenuecat_body("rc_sb", "INITIAL_PURCHASE", alice.id, environment="SANDBOX")
        assert _deliver_revenuecat(db_session, body)["status"] == "applied"


@pytest.mark.medium
class TestPlanFlags:

    @pytest.mark.parametrize("plan,status,expected", [
        ("basic", "active", (True, False, False)),
        ("pro", "active", (True, True, False)),
        ("enterprise", "active", (True, True, True)),
        ("enterprise", "past_due", (False, False, False)),
        ("pro", "canceled", (False, False, False)),
    ])
    def test_flags_require_active(self, plan, status, expected):
        flags = plan_flags(Subscription(plan=plan, status=status))
        assert (flags["is_basic_or_higher"], flags["is_pro_or_higher"], flags["is_enterprise"]) == expected

    def test_no_subscription(self):
        assert not any(plan_flags(None).values())
