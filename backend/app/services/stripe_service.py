"""Stripe service - event translation and Stripe API calls"""
import logging
from datetime import datetime
from typing import Any, Optional

import stripe
from sqlalchemy.orm import Session

from app.core.config import settings
from app.services.billing_service import (
    OUTCOME_IGNORED, OUTCOME_UNMAPPED, SubscriptionUpdate,
    apply_subscription_update, find_subscription
)
from app.utils.timestamps import from_unix

logger = logging.getLogger(__name__)
billing_logger = logging.getLogger("billing")

# Stripe subscription status -> canonical status
STATUS_MAP = {
    "active": "active",
    "trialing": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "paused": "past_due",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
}

# Initialize Stripe
if settings.STRIPE_SECRET_KEY:
    stripe.api_key = settings.STRIPE_SECRET_KEY


# ============================================================================
# STRIPE OBJECT ACCESS HELPERS
# ============================================================================

def get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key)
    else:
        # Item access first: "items" is also a method name on Stripe objects
        try:
            value = obj[key]
        except (KeyError, TypeError, IndexError):
            value = getattr(obj, key, None)
    return default if value is None else value


def _first_item(subscription: Any) -> Any:
    items = get_stripe_value(subscription, "items")
    data = get_stripe_value(items, "data", [])
    return data[0] if data else None


def get_price_id(subscription: Any) -> Optional[str]:
    price = get_stripe_value(_first_item(subscription), "price")
    return get_stripe_value(price, "id")


def get_period_end(subscription: Any) -> Optional[datetime]:
    """Current period end; newer API versions carry it on the subscription item"""
    period_end = get_stripe_value(subscription, "current_period_end")
    if period_end is None:
        period_end = get_stripe_value(_first_item(subscription), "current_period_end")
    return from_unix(period_end)


def price_to_plan(price_id: Optional[str]) -> str:
    """Map a Stripe price to a plan. Unknown prices fall back to basic."""
    plan = settings.price_plan_table().get(price_id)
    if not plan:
        billing_logger.warning(f"Unknown Stripe price {price_id}, defaulting to basic plan")
        return "basic"
    return plan


def map_status(stripe_status: Optional[str]) -> str:
    status = STATUS_MAP.get(stripe_status)
    if not status:
        billing_logger.warning(f"Unknown Stripe subscription status {stripe_status}, treating as past_due")
        return "past_due"
    return status


# ============================================================================
# WEBHOOK
# ============================================================================

def construct_event(payload: bytes, sig_header: str):
    """Verify the signature and parse the event.

    Raises:
        ValueError: invalid payload
        stripe.error.SignatureVerificationError: invalid signature
    """
    return stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)


def handle_checkout_completed(session: Any, event_id: str, event_at: datetime, db: Session) -> str:
    """New purchase: create or refresh the user's subscription from the checkout session"""
    metadata = get_stripe_value(session, "metadata", {})
    user_id = get_stripe_value(metadata, "user_id") or get_stripe_value(session, "client_reference_id")
    if not user_id:
        billing_logger.warning(f"[stripe] {event_id}: checkout session has no user reference")
        return OUTCOME_UNMAPPED

    subscription_id = get_stripe_value(session, "subscription")
    if not subscription_id:
        billing_logger.info(f"[stripe] {event_id}: checkout session without subscription, ignoring")
        return OUTCOME_IGNORED
    if not isinstance(subscription_id, str):
        subscription_id = get_stripe_value(subscription_id, "id")

    subscription = stripe.Subscription.retrieve(subscription_id)
    period_end = get_period_end(subscription)

    return apply_subscription_update(SubscriptionUpdate(
        source="stripe",
        event_id=event_id,
        event_at=event_at,
        user_id=str(user_id),
        plan=price_to_plan(get_price_id(subscription)),
        status="active",
        period_end=period_end,
        cancel_at_period_end=bool(get_stripe_value(subscription, "cancel_at_period_end", False)),
        stripe_customer_id=get_stripe_value(session, "customer"),
        stripe_subscription_id=subscription_id,
        create_if_missing=True,
    ), db)


def handle_subscription_updated(subscription: Any, event_id: str, event_at: datetime, db: Session) -> str:
    """Plan, status, period or cancel flag changed on an existing subscription"""
    customer_id = get_stripe_value(subscription, "customer")
    subscription_id = get_stripe_value(subscription, "id")

    record = find_subscription(db, stripe_customer_id=customer_id) if customer_id else None
    if not record:
        billing_logger.info(f"[stripe] {event_id}: no user for customer {customer_id}, skipping")
        return OUTCOME_UNMAPPED
    if record.stripe_subscription_id and record.stripe_subscription_id != subscription_id:
        billing_logger.info(
            f"[stripe] {event_id}: {subscription_id} is not the current subscription "
            f"({record.stripe_subscription_id}) for customer {customer_id}, ignoring"
        )
        return OUTCOME_IGNORED

    return apply_subscription_update(SubscriptionUpdate(
        source="stripe",
        event_id=event_id,
        event_at=event_at,
        user_id=record.user_id,
        plan=price_to_plan(get_price_id(subscription)),
        status=map_status(get_stripe_value(subscription, "status")),
        period_end=get_period_end(subscription),
        cancel_at_period_end=bool(get_stripe_value(subscription, "cancel_at_period_end", False)),
        stripe_subscription_id=subscription_id,
    ), db)


def handle_subscription_deleted(subscription: Any, event_id: str, event_at: datetime, db: Session) -> str:
    """Subscription ended: mark canceled, keep plan and period end as history"""
    subscription_id = get_stripe_value(subscription, "id")
    record = find_subscription(db, stripe_subscription_id=subscription_id) if subscription_id else None
    if not record:
        billing_logger.info(f"[stripe] {event_id}: unknown subscription {subscription_id}, skipping")
        return OUTCOME_UNMAPPED

    return apply_subscription_update(SubscriptionUpdate(
        source="stripe",
        event_id=event_id,
        event_at=event_at,
        user_id=record.user_id,
        status="canceled",
        period_end=get_period_end(subscription),
        write_period_end=False,
        cancel_at_period_end=False,
    ), db)


EVENT_HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
}


# ============================================================================
# SELF-SERVICE
# ============================================================================

def cancel_at_period_end(subscription_id: str):
    """Ask Stripe to stop renewing. The local record follows via webhook."""
    return stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)


def create_portal_session(customer_id: str, return_url: str) -> str:
    session = stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)
    return session.url
