from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SubscriptionPayment(BaseModel):
    id: str
    amount: Decimal
    currency: str
    method: str
    status: str
    paid_at: Optional[datetime] = None


class SubscriptionResponse(BaseModel):
    id: str
    plan_id: str
    plan_name: str
    plan_description: Optional[str] = None
    organization: str
    price: Decimal = Field(..., description="Current plan price, may differ from the amount paid")
    duration: int = Field(..., description="Duration in days")
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    days_remaining: int
    is_active: bool
    is_expired: bool
    payment: SubscriptionPayment
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SubscriptionStatsResponse(BaseModel):
    total_subscriptions: int
    active_subscriptions: int
    expired_subscriptions: int
    cancelled_subscriptions: int
    total_spent: Decimal
    currency: str


class CancelSubscriptionResponse(BaseModel):
    id: str
    status: SubscriptionStatus
    already_cancelled: bool = False
    updated_at: Optional[datetime] = None
