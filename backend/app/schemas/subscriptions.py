"""Pydantic schemas for subscriptions"""
from pydantic import BaseModel
from typing import Optional

from app.models.enums import Provider


class SubscribeRequest(BaseModel):
    plan_id: int
    provider: Provider  # 'stripe' or 'paypal'


class CancelRequest(BaseModel):
    immediate: bool = False  # True revokes access now instead of at period end
    reason: Optional[str] = None


class SubscriptionActionRequest(BaseModel):
    reason: Optional[str] = None
