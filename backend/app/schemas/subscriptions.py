"""Pydantic schemas for subscriptions"""
from pydantic import BaseModel
from typing import Optional


class CancelSubscriptionRequest(BaseModel):
    subscription_id: str


class PortalSessionRequest(BaseModel):
    customer_id: str
    return_url: Optional[str] = None
