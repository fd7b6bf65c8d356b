"""Billing webhook routes"""
import logging
import stripe
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.core.errors import ValidationError
from app.db.session import get_db
from app.services.subscription_service import process_revenuecat_webhook, process_stripe_webhook

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events

    Note: the body must reach this route as raw bytes for signature verification.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise ValidationError("Missing stripe-signature header")

    try:
        return process_stripe_webhook(payload, sig_header, db)
    except ValueError as e:
        raise ValidationError(str(e))
    except stripe.error.SignatureVerificationError:
        raise ValidationError("Invalid signature")


@router.post("/revenuecat")
async def revenuecat_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle RevenueCat webhook events"""
    payload = await request.body()
    signature = request.headers.get("X-RevenueCat-Signature")
    return process_revenuecat_webhook(payload, signature, db)
