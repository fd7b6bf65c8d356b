"""Billing service - canonical subscription reconciliation

Both webhook providers funnel into ``reconcile_event``:

1. The ``billing_events`` ledger row is inserted and flushed first. The unique
   (provider, event_id) constraint makes a redelivered event fail here, before
   anything else is touched.
2. The provider handler turns the event into a ``SubscriptionUpdate`` and
   ``apply_subscription_update`` folds it into the user's subscription, subject
   to the ordering check.
3. Ledger row and subscription change commit together. If anything fails, both
   roll back and the failure is logged.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.metrics import billing_events_counter
from app.core.otel import get_tracer
from app.models.billing_event import BillingEvent
from app.models.subscription import Subscription
from app.utils.timestamps import ensure_utc

logger = logging.getLogger(__name__)
billing_logger = logging.getLogger("billing")
tracer = get_tracer(__name__)

PLAN_RANK = {"basic": 1, "pro": 2, "enterprise": 3}

OUTCOME_APPLIED = "applied"
OUTCOME_STALE = "stale"
OUTCOME_IGNORED = "ignored"
OUTCOME_UNMAPPED = "unmapped"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class SubscriptionUpdate:
    """A provider event translated into canonical terms.

    ``None`` fields are left untouched on the stored record. ``period_end`` is
    always used for ordering; it is only written when ``write_period_end`` is set.
    """
    source: str
    event_id: str
    event_at: datetime
    user_id: str
    plan: Optional[str] = None
    status: Optional[str] = None
    period_end: Optional[datetime] = None
    write_period_end: bool = True
    cancel_at_period_end: Optional[bool] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    revenuecat_app_user_id: Optional[str] = None
    revenuecat_original_transaction_id: Optional[str] = None
    create_if_missing: bool = False


def ordering_key(event_at: Optional[datetime], period_end: Optional[datetime]) -> Tuple[datetime, datetime]:
    return (ensure_utc(event_at) or _EPOCH, ensure_utc(period_end) or _EPOCH)


def is_stale(subscription: Subscription, update: SubscriptionUpdate) -> bool:
    """True when the stored record already reflects an event at least as new"""
    if subscription.last_event_at is None:
        return False
    stored = ordering_key(subscription.last_event_at, subscription.last_event_period_end)
    incoming = ordering_key(update.event_at, update.period_end)
    return stored >= incoming


def find_subscription(
    db: Session,
    user_id: Optional[str] = None,
    stripe_subscription_id: Optional[str] = None,
    stripe_customer_id: Optional[str] = None,
    for_update: bool = False
) -> Optional[Subscription]:
    """Look a subscription up by the first reference given"""
    query = db.query(Subscription)
    if user_id:
        query = query.filter(Subscription.user_id == user_id)
    elif stripe_subscription_id:
        query = query.filter(Subscription.stripe_subscription_id == stripe_subscription_id)
    elif stripe_customer_id:
        query = query.filter(Subscription.stripe_customer_id == stripe_customer_id)
    else:
        return None
    if for_update:
        query = query.with_for_update()
    return query.first()


def apply_subscription_update(update: SubscriptionUpdate, db: Session) -> str:
    """Fold one update into the user's subscription. Does not commit.

    Returns the ledger outcome: applied, stale or unmapped.
    """
    subscription = find_subscription(db, user_id=update.user_id, for_update=True)

    if subscription is None:
        if not update.create_if_missing:
            billing_logger.info(
                f"[{update.source}] {update.event_id}: no subscription for user {update.user_id}, skipping"
            )
            return OUTCOME_UNMAPPED
        billing_logger.info(f"[{update.source}] {update.event_id}: first purchase for user {update.user_id}")
        subscription = Subscription(
            user_id=update.user_id,
            plan=update.plan or "basic",
            status=update.status or "active",
            cancel_at_period_end=False,
        )
        db.add(subscription)
    elif is_stale(subscription, update):
        billing_logger.info(
            f"[{update.source}] {update.event_id}: older than last applied event "
            f"{subscription.last_event_source}/{subscription.last_event_id}, discarding"
        )
        return OUTCOME_STALE

    if update.plan is not None:
        subscription.plan = update.plan
    if update.status is not None:
        subscription.status = update.status
    if update.write_period_end and update.period_end is not None:
        subscription.current_period_end = update.period_end
    if update.cancel_at_period_end is not None:
        subscription.cancel_at_period_end = update.cancel_at_period_end
    for ref in ("stripe_customer_id", "stripe_subscription_id",
                "revenuecat_app_user_id", "revenuecat_original_transaction_id"):
        value = getattr(update, ref)
        if value:
            setattr(subscription, ref, value)

    subscription.last_event_source = update.source
    subscription.last_event_id = update.event_id
    subscription.last_event_at = update.event_at
    subscription.last_event_period_end = update.period_end or subscription.current_period_end
    db.flush()

    billing_logger.info(
        f"[{update.source}] {update.event_id}: user {update.user_id} -> "
        f"plan={subscription.plan} status={subscription.status} "
        f"cancel_at_period_end={subscription.cancel_at_period_end}"
    )
    return OUTCOME_APPLIED


def record_event(
    provider: str,
    event_id: str,
    event_type: str,
    event_at: Optional[datetime],
    payload: Any,
    db: Session
) -> BillingEvent:
    """Insert the ledger row. Raises IntegrityError for an event seen before."""
    entry = BillingEvent(
        provider=provider,
        event_id=event_id,
        event_type=event_type,
        event_at=event_at,
        payload=payload,
    )
    db.add(entry)
    db.flush()
    return entry


def reconcile_event(
    provider: str,
    event_id: str,
    event_type: str,
    event_at: Optional[datetime],
    payload: Any,
    handler: Callable[[], str],
    db: Session
) -> Dict[str, Any]:
    """Run ``handler`` at most once per (provider, event_id).

    Never raises: failures after the ledger insert are rolled back and logged so
    the webhook can still be acknowledged.
    """
    with tracer.start_as_current_span("billing.reconcile") as span:
        span.set_attribute("billing.provider", provider)
        span.set_attribute("billing.event_id", event_id)
        span.set_attribute("billing.event_type", event_type)
        result = _reconcile(provider, event_id, event_type, event_at, payload, handler, db)
        span.set_attribute("billing.outcome", result["status"])
        return result


def _reconcile(provider, event_id, event_type, event_at, payload, handler, db):
    try:
        entry = record_event(provider, event_id, event_type, event_at, payload, db)
    except IntegrityError:
        db.rollback()
        billing_events_counter.labels(provider=provider, outcome="duplicate").inc()
        billing_logger.info(f"[{provider}] {event_id} ({event_type}) already processed")
        return {"status": "duplicate"}

    try:
        outcome = handler()
        entry.outcome = outcome
        db.commit()
    except Exception as e:
        db.rollback()
        billing_events_counter.labels(provider=provider, outcome="error").inc()
        billing_logger.error(f"[{provider}] Error processing {event_id} ({event_type}): {e}", exc_info=True)
        return {"status": "error_logged"}

    billing_events_counter.labels(provider=provider, outcome=outcome).inc()
    billing_logger.info(f"[{provider}] {event_id} ({event_type}): {outcome}")
    return {"status": outcome}


# ============================================================================
# READ SIDE
# ============================================================================

def get_user_subscription(user_id: str, db: Session) -> Optional[Subscription]:
    return find_subscription(db, user_id=user_id)


def plan_flags(subscription: Optional[Subscription]) -> Dict[str, bool]:
    """Entitlement flags. Only an active subscription grants anything."""
    rank = 0
    if subscription and subscription.status == "active":
        rank = PLAN_RANK.get(subscription.plan, 0)
    return {
        "is_basic_or_higher": rank >= PLAN_RANK["basic"],
        "is_pro_or_higher": rank >= PLAN_RANK["pro"],
        "is_enterprise": rank >= PLAN_RANK["enterprise"],
    }
