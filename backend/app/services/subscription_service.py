"""Subscription service - webhook processing and subscription self-service"""
import json
import logging
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import AuthenticationError, InternalError, NotFoundError
from app.core.metrics import auth_failures_counter, billing_events_counter
from app.models.subscription import Subscription
from app.services import revenuecat_service, stripe_service
from app.services.billing_service import OUTCOME_IGNORED, get_user_subscription, plan_flags, reconcile_event
from app.utils.timestamps import from_unix, isoformat

logger = logging.getLogger(__name__)
billing_logger = logging.getLogger("billing")
security_logger = logging.getLogger("security")


# ============================================================================
# WEBHOOKS
# ============================================================================

def process_stripe_webhook(payload: bytes, sig_header: str, db: Session) -> Dict[str, Any]:
    """Process Stripe webhook event

    Validates the signature, then hands the event to the reconciler. Once the
    signature checks out this returns normally even when applying fails, so
    Stripe does not retry forever on a store error.

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Stripe signature header
        db: Database session

    Returns:
        Dict with status information

    Raises:
        InternalError: webhook secret not configured
        ValueError: invalid payload
        stripe.error.SignatureVerificationError: invalid signature
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook secret not configured")
        raise InternalError("Stripe webhook secret not configured")

    try:
        event = stripe_service.construct_event(payload, sig_header)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise ValueError("Invalid payload")
    except stripe.error.SignatureVerificationError as e:
        auth_failures_counter.labels(reason="stripe_signature").inc()
        security_logger.warning(f"Invalid Stripe webhook signature: {e}")
        raise

    event_id = stripe_service.get_stripe_value(event, "id")
    event_type = stripe_service.get_stripe_value(event, "type")
    if not event_id or not event_type:
        return _unprocessable("stripe", event_id, "missing event id or type")
    try:
        data = event["data"]["object"]
        event_at = from_unix(stripe_service.get_stripe_value(event, "created"))
    except (KeyError, TypeError, ValueError, OverflowError, OSError) as e:
        return _unprocessable("stripe", event_id, f"malformed envelope: {e!r}")

    handler = stripe_service.EVENT_HANDLERS.get(event_type)
    if handler is None:
        def apply():
            logger.info(f"Ignoring Stripe event {event_id} of type {event_type}")
            return OUTCOME_IGNORED
    else:
        def apply():
            return handler(data, event_id, event_at, db)

    result = reconcile_event("stripe", event_id, event_type, event_at, _as_json(event), apply, db)
    return {"received": True, **result}


def process_revenuecat_webhook(payload: bytes, signature: Optional[str], db: Session) -> Dict[str, Any]:
    """Process RevenueCat webhook event

    Raises:
        AuthenticationError: secret configured and signature missing or wrong
    """
    secret = settings.REVENUECAT_WEBHOOK_SECRET
    if secret:
        if not revenuecat_service.verify_signature(payload, signature, secret):
            auth_failures_counter.labels(reason="revenuecat_signature").inc()
            security_logger.warning("Invalid or missing RevenueCat webhook signature")
            raise AuthenticationError("Missing signature header" if not signature else "Invalid signature")
    else:
        logger.warning("REVENUECAT_WEBHOOK_SECRET not set, accepting unverified webhook")

    try:
        body = json.loads(payload)
    except ValueError as e:
        return _unprocessable("revenuecat", None, f"invalid JSON: {e}")

    event = body.get("event") if isinstance(body, dict) else None
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        return _unprocessable("revenuecat", None, "missing event id or type")
    event_id = str(event["id"])

    try:
        event_at = revenuecat_service.event_time(event)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        return _unprocessable("revenuecat", event_id, f"bad event_timestamp_ms: {e!r}")

    if revenuecat_service.should_drop(event):
        billing_events_counter.labels(provider="revenuecat", outcome="sandbox_skipped").inc()
        logger.info(f"Skipping sandbox RevenueCat event {event['id']} in production")
        return {"received": True, "skipped": True}

    result = reconcile_event(
        "revenuecat",
        event_id,
        event["type"],
        event_at,
        body,
        lambda: revenuecat_service.handle_event(event, db),
        db
    )
    return {"received": True, **result}


def _unprocessable(provider: str, event_id: Optional[str], reason: str) -> Dict[str, Any]:
    """Verified delivery that cannot be reconciled: log it and acknowledge"""
    billing_events_counter.labels(provider=provider, outcome="malformed").inc()
    billing_logger.error(f"[{provider}] Unprocessable event {event_id or '<no id>'}: {reason}")
    return {"received": True, "status": "error_logged"}


def _as_json(event: Any) -> Any:
    """Plain-JSON copy of a Stripe event for the ledger"""
    to_dict = getattr(event, "to_dict", None)
    if to_dict:
        return to_dict()
    return json.loads(json.dumps(event, default=str))


# ============================================================================
# SELF-SERVICE
# ============================================================================

def serialize_subscription(subscription: Subscription) -> Dict[str, Any]:
    return {
        "plan": subscription.plan,
        "status": subscription.status,
        "current_period_end": isoformat(subscription.current_period_end),
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "stripe_customer_id": subscription.stripe_customer_id,
        "stripe_subscription_id": subscription.stripe_subscription_id,
        "revenuecat_app_user_id": subscription.revenuecat_app_user_id,
        "last_event_source": subscription.last_event_source,
        "updated_at": isoformat(subscription.updated_at),
    }


def get_current_subscription(user_id: str, db: Session) -> Dict[str, Any]:
    """The caller's canonical subscription (or None) with entitlement flags"""
    subscription = get_user_subscription(user_id, db)
    return {
        "subscription": serialize_subscription(subscription) if subscription else None,
        **plan_flags(subscription),
    }


def _require_stripe():
    if not settings.STRIPE_SECRET_KEY:
        raise InternalError("Stripe not configured")


def cancel_user_subscription(user_id: str, subscription_id: str, db: Session) -> Dict[str, Any]:
    """Cancel the caller's Stripe subscription at period end.

    Only Stripe is told; the local record changes when the resulting
    ``customer.subscription.updated`` webhook comes back.
    """
    subscription = get_user_subscription(user_id, db)
    if not subscription or not subscription_id or subscription.stripe_subscription_id != subscription_id:
        raise NotFoundError("Subscription not found")
    _require_stripe()

    try:
        result = stripe_service.cancel_at_period_end(subscription_id)
    except stripe.error.StripeError as e:
        raise InternalError(f"Stripe cancel failed for {subscription_id}: {e}")

    logger.info(f"User {user_id} requested cancellation of {subscription_id}")
    return {
        "subscription_id": subscription_id,
        "cancel_at_period_end": bool(stripe_service.get_stripe_value(result, "cancel_at_period_end", True)),
        "current_period_end": isoformat(stripe_service.get_period_end(result)),
    }


def create_portal_session(
    user_id: str,
    customer_id: str,
    db: Session,
    return_url: Optional[str] = None
) -> str:
    """Stripe billing portal URL for the caller's own customer"""
    subscription = get_user_subscription(user_id, db)
    if not subscription or not customer_id or subscription.stripe_customer_id != customer_id:
        raise NotFoundError("Customer not found")
    _require_stripe()

    return_url = return_url or settings.STRIPE_PORTAL_RETURN_URL or f"{settings.FRONTEND_URL}/profile"
    try:
        return stripe_service.create_portal_session(customer_id, return_url)
    except stripe.error.StripeError as e:
        raise InternalError(f"Stripe portal session failed for {customer_id}: {e}")
