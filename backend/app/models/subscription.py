"""Subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean
from datetime import datetime, timezone
from app.models.base import Base

class Subscription(Base):
    """Canonical subscription state, one per user, written only by the billing reconciler"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    # Identity provider subject; the profile row may not exist yet
    user_id = Column(String(36), nullable=False, unique=True, index=True)
    plan = Column(String(20), nullable=False)  # 'basic', 'pro', 'enterprise'
    status = Column(String(20), nullable=False)  # 'active', 'past_due', 'canceled'

    # Provider references (a user may be linked to zero, one or both providers)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, unique=True, index=True)
    revenuecat_app_user_id = Column(String(255), nullable=True, index=True)
    revenuecat_original_transaction_id = Column(String(255), nullable=True)

    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)

    # Provenance of the last applied event, used for ordering
    last_event_source = Column(String(20), nullable=True)  # 'stripe', 'revenuecat'
    last_event_id = Column(String(255), nullable=True)
    last_event_at = Column(DateTime(timezone=True), nullable=True)
    last_event_period_end = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<Subscription(user_id={self.user_id}, plan={self.plan}, status={self.status})>"
