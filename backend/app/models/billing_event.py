"""BillingEvent model"""
from sqlalchemy import Column, Integer, String, JSON, DateTime, UniqueConstraint
from datetime import datetime, timezone
from app.models.base import Base


class BillingEvent(Base):
    """Webhook event ledger for idempotency. A (provider, event_id) pair is applied at most once."""
    __tablename__ = "billing_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_billing_events_provider_event"),
    )

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(20), nullable=False, index=True)  # 'stripe', 'revenuecat'
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False, index=True)
    event_at = Column(DateTime(timezone=True), nullable=True)  # Provider-side event timestamp
    outcome = Column(String(20), nullable=True)  # 'applied', 'stale', 'ignored', 'unmapped'
    payload = Column(JSON, nullable=True)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<BillingEvent(provider={self.provider}, event_id={self.event_id}, outcome={self.outcome})>"
