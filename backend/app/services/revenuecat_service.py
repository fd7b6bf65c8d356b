"""RevenueCat service - signature check and event translation"""
import hashlib
import hmac
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import PLANS, settings
from app.services.billing_service import (
    OUTCOME_IGNORED, OUTCOME_UNMAPPED, SubscriptionUpdate, apply_subscription_update
)
from app.utils.timestamps import from_millis

logger = logging.getLogger(__name__)
billing_logger = logging.getLogger("billing")

PURCHASE_EVENTS = ("INITIAL_PURCHASE", "RENEWAL")
CANCEL_EVENTS = ("CANCELLATION", "EXPIRATION")
BILLING_ISSUE_EVENT = "BILLING_ISSUE"
ALIAS_EVENT = "SUBSCRIBER_ALIAS"
ANONYMOUS_PREFIX = "$RCAnonymousID:"


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Constant-time compare of the hex HMAC-SHA256 of the raw body"""
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature.strip().lower())


def product_to_plan(product_id: Optional[str]) -> str:
    """Configured mapping first, then a product id that already names a plan, then the default"""
    plan = settings.revenuecat_product_plans().get(product_id or "")
    if plan:
        return plan
    if product_id in PLANS:
        return product_id
    billing_logger.info(
        f"[revenuecat] No plan mapping for product {product_id}, using {settings.REVENUECAT_DEFAULT_PLAN}"
    )
    return settings.REVENUECAT_DEFAULT_PLAN


def is_sandbox(event: Dict[str, Any]) -> bool:
    return str(event.get("environment", "")).upper() == "SANDBOX"


def should_drop(event: Dict[str, Any]) -> bool:
    """Sandbox purchases must not touch production subscriptions"""
    return (
        settings.IS_PRODUCTION
        and settings.REVENUECAT_DROP_SANDBOX_IN_PRODUCTION
        and is_sandbox(event)
    )


def event_time(event: Dict[str, Any]) -> Optional[datetime]:
    return from_millis(event.get("event_timestamp_ms"))


def handle_event(event: Dict[str, Any], db: Session) -> str:
    """Translate one RevenueCat event and apply it. Returns the ledger outcome."""
    event_type = event.get("type")
    event_id = str(event.get("id"))
    user_id = event.get("app_user_id")

    if event_type == ALIAS_EVENT:
        billing_logger.info(
            f"[revenuecat] {event_id}: alias {event.get('aliases')} for {user_id}, no state change"
        )
        return OUTCOME_IGNORED

    if event_type not in PURCHASE_EVENTS + CANCEL_EVENTS + (BILLING_ISSUE_EVENT,):
        billing_logger.info(f"[revenuecat] {event_id}: unhandled event type {event_type}")
        return OUTCOME_IGNORED

    if not user_id:
        billing_logger.warning(f"[revenuecat] {event_id}: {event_type} without app_user_id")
        return OUTCOME_IGNORED

    if str(user_id).startswith(ANONYMOUS_PREFIX):
        billing_logger.warning(f"[revenuecat] {event_id}: anonymous app user {user_id}, skipping")
        return OUTCOME_UNMAPPED

    update = SubscriptionUpdate(
        source="revenuecat",
        event_id=event_id,
        event_at=event_time(event),
        user_id=str(user_id),
        period_end=from_millis(event.get("expiration_at_ms")),
        revenuecat_app_user_id=str(user_id),
        revenuecat_original_transaction_id=event.get("original_transaction_id"),
    )

    if event_type in PURCHASE_EVENTS:
        update.plan = product_to_plan(event.get("product_id"))
        update.status = "active"
        update.cancel_at_period_end = False
        update.create_if_missing = True
    elif event_type in CANCEL_EVENTS:
        update.status = "canceled"
    else:
        update.status = "past_due"

    return apply_subscription_update(update, db)
