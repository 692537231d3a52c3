from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CARD = "card"
    REDIRECT = "redirect"  # PromptPay QR code, settled out-of-band


class GatewayFailureReason(str, Enum):
    INVALID_CARD = "invalid_card"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    STOLEN_OR_LOST_CARD = "stolen_or_lost_card"
    EXPIRED_CARD = "expired_card"
    PROCESSING_ERROR = "processing_error"
    FAILED_PROCESSING = "failed_processing"
    INVALID_SECURITY_CODE = "invalid_security_code"
    LIMIT_EXCEEDED = "limit_exceeded"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


TERMINAL_FAILURE_STATUSES = frozenset(
    [PaymentStatus.FAILED, PaymentStatus.EXPIRED, PaymentStatus.REFUNDED]
)

# Statuses a payment may move *from* to reach the key status.
# Re-applying the current status is allowed and only refreshes the snapshot.
ALLOWED_PREVIOUS_STATUSES = {
    PaymentStatus.PENDING: frozenset([PaymentStatus.PENDING]),
    PaymentStatus.SUCCESSFUL: frozenset([PaymentStatus.PENDING, PaymentStatus.SUCCESSFUL]),
    PaymentStatus.FAILED: frozenset([PaymentStatus.PENDING, PaymentStatus.FAILED]),
    PaymentStatus.EXPIRED: frozenset([PaymentStatus.PENDING, PaymentStatus.EXPIRED]),
    PaymentStatus.REFUNDED: frozenset(
        [PaymentStatus.PENDING, PaymentStatus.SUCCESSFUL, PaymentStatus.REFUNDED]
    ),
}


class CreatePaymentRequest(BaseModel):
    plan_id: str = Field(..., description="ID of the plan to subscribe to")
    payment_method: str = Field(..., description="card or redirect")
    payment_source: Optional[str] = Field(None, description="Card token (tokn_...) for card payments")
    customer_data: Dict[str, Any] = Field(default_factory=dict)


class PurchaseResponse(BaseModel):
    payment_id: str
    charge_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: PaymentStatus
    payment_method: PaymentMethod
    subscription_id: Optional[str] = None
    authorize_uri: Optional[str] = None
    qr_code_url: Optional[str] = None
    expires_at: Optional[datetime] = None


class SubscriptionSummary(BaseModel):
    id: str
    status: str
    start_date: datetime
    end_date: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentStatusResponse(BaseModel):
    payment_id: str
    status: PaymentStatus
    amount: Decimal
    currency: str
    payment_method: PaymentMethod
    description: Optional[str] = None
    plan_name: Optional[str] = None
    organization: Optional[str] = None
    subscription: Optional[SubscriptionSummary] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PollResponse(PaymentStatusResponse):
    attempts: int
    last_checked: datetime


class PaymentHistoryItem(PaymentStatusResponse):
    charge_id: Optional[str] = None
    can_refresh: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChargeData(BaseModel):
    """The charge object embedded in a gateway event."""

    id: str
    status: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")


class WebhookEvent(BaseModel):
    key: str = Field(..., description="Event type, e.g. charge.complete")
    data: ChargeData

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "object": "event",
                "key": "charge.complete",
                "data": {
                    "object": "charge",
                    "id": "chrg_test_5xyz",
                    "status": "successful",
                    "metadata": {"payment_id": "4f1c..."},
                },
            }
        },
    )


class WebhookResult(BaseModel):
    processed: bool
    acknowledged: bool = True
    reason: Optional[str] = None
    payment_id: Optional[str] = None
    charge_id: Optional[str] = None
    previous_status: Optional[PaymentStatus] = None
    new_status: Optional[PaymentStatus] = None
    status_changed: bool = False
    subscription_id: Optional[str] = None


class PaymentBreakdown(BaseModel):
    status: PaymentStatus
    payment_method: PaymentMethod
    count: int
    total_amount: Decimal


class PaymentStatistics(BaseModel):
    total_payments: int
    total_successful_amount: Decimal
    breakdown: List[PaymentBreakdown]


class PaymentMethodInfo(BaseModel):
    method: PaymentMethod
    currency: str
    min_amount: Decimal
    max_amount: Decimal


class WebhookCacheStatus(BaseModel):
    cached_webhooks: int
    cache_timeout_seconds: int
    last_cleanup: datetime
