"""Subscriptions API routes"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.security import require_user
from app.db.session import get_db
from app.models.user import User
from app.schemas.subscriptions import CancelSubscriptionRequest, PortalSessionRequest
from app.services.subscription_service import (
    cancel_user_subscription, create_portal_session, get_current_subscription
)

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])
logger = logging.getLogger(__name__)


@router.get("/current")
def get_subscription(user: User = Depends(require_user), db: Session = Depends(get_db)):
    """Get the caller's subscription and plan flags"""
    return {"success": True, **get_current_subscription(user.id, db)}


@router.post("/cancel")
def cancel_subscription(
    request_data: CancelSubscriptionRequest,
    user: User = Depends(require_user),
    db: Session = Depends(get_db)
):
    """Cancel at period end"""
    result = cancel_user_subscription(user.id, request_data.subscription_id, db)
    return {"success": True, "message": "Subscription will be canceled at the end of the billing period", **result}


@router.post("/portal")
def get_portal_url(
    request_data: PortalSessionRequest,
    user: User = Depends(require_user),
    db: Session = Depends(get_db)
):
    """Get Stripe customer portal URL"""
    url = create_portal_session(user.id, request_data.customer_id, db, return_url=request_data.return_url)
    return {"success": True, "url": url}
