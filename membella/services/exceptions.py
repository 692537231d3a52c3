"""Errors raised by the payment and subscription services.

Every error derives from ``ValueError`` so callers that only care about
"bad request vs. crash" can keep catching ``ValueError``.
"""
from typing import Optional

from membella.schemas.payment import GatewayFailureReason, PaymentStatus


class PaymentError(ValueError):
    pass


class PaymentValidationError(PaymentError):
    pass


class PlanNotFoundError(PaymentValidationError):
    def __init__(self, plan_id: str):
        super().__init__(f"Plan not found: {plan_id}")
        self.plan_id = plan_id


class MemberNotFoundError(PaymentValidationError):
    def __init__(self, member_id: str):
        super().__init__(f"Member not found: {member_id}")
        self.member_id = member_id


class InvalidPaymentMethodError(PaymentValidationError):
    def __init__(self, method):
        super().__init__(f"Payment method must be either 'card' or 'redirect', got {method!r}")
        self.method = method


class MissingPaymentSourceError(PaymentValidationError):
    def __init__(self):
        super().__init__("Payment source token is required for card payments")


class InvalidPaymentSourceError(PaymentValidationError):
    def __init__(self):
        super().__init__("Invalid payment token format")


class AmountBelowMinimumError(PaymentValidationError):
    def __init__(self, method, minimum, currency: str):
        super().__init__(f"{method.value} payments require a minimum of {minimum} {currency}")
        self.minimum = minimum


class AmountAboveMaximumError(PaymentValidationError):
    def __init__(self, method, maximum, currency: str):
        super().__init__(f"{method.value} payments allow a maximum of {maximum} {currency}")
        self.maximum = maximum


class DuplicateActiveSubscriptionError(PaymentError):
    def __init__(self, member_id: str, plan_id: str):
        super().__init__("You already have an active subscription to this plan")
        self.member_id = member_id
        self.plan_id = plan_id


class PaymentNotFoundError(PaymentError):
    def __init__(self, payment_id: str):
        super().__init__(f"Payment not found: {payment_id}")
        self.payment_id = payment_id


class SubscriptionNotFoundError(PaymentError):
    def __init__(self, subscription_id: str):
        super().__init__(f"Subscription not found: {subscription_id}")
        self.subscription_id = subscription_id


GUIDANCE = {
    GatewayFailureReason.INVALID_CARD: "Invalid card information. Please check your card details and try again.",
    GatewayFailureReason.INSUFFICIENT_FUNDS: "Insufficient funds on your card. Please use a different card.",
    GatewayFailureReason.STOLEN_OR_LOST_CARD: "This card has been reported as stolen or lost. Please use a different card.",
    GatewayFailureReason.EXPIRED_CARD: "This card has expired. Please check the expiry date.",
    GatewayFailureReason.PROCESSING_ERROR: "Payment processing error. Please try again in a few moments.",
    GatewayFailureReason.FAILED_PROCESSING: "Card processing failed. Please check your card details.",
    GatewayFailureReason.INVALID_SECURITY_CODE: "Invalid security code (CVV). Please check and try again.",
    GatewayFailureReason.LIMIT_EXCEEDED: "Transaction limit exceeded. Please contact your bank.",
    GatewayFailureReason.UNAVAILABLE: "The payment provider is unavailable. Please try again later.",
    GatewayFailureReason.UNKNOWN: "Payment failed.",
}


class GatewayError(PaymentError):
    """A charge was refused or the gateway could not be reached."""

    def __init__(
        self,
        reason: GatewayFailureReason,
        detail: Optional[str] = None,
        code: Optional[str] = None,
    ):
        message = GUIDANCE[reason]
        if reason == GatewayFailureReason.UNKNOWN and detail:
            message = f"Payment failed: {detail}"
        super().__init__(message)
        self.reason = reason
        self.detail = detail
        self.code = code


class PaymentNotSuccessfulError(PaymentError):
    """Polling ended because the payment reached a terminal non-success status."""

    def __init__(self, payment_id: str, status: PaymentStatus):
        super().__init__(f"Payment {PaymentStatus(status).value}")
        self.payment_id = payment_id
        self.status = PaymentStatus(status)


class PaymentPollTimeoutError(PaymentError):
    """Polling gave up while the payment was still pending. Not a failure."""

    def __init__(self, payment_id: str, attempts: int):
        super().__init__(
            "Payment verification timeout. Please check your payment status later."
        )
        self.payment_id = payment_id
        self.attempts = attempts


class InvalidWebhookSignatureError(PaymentError):
    def __init__(self):
        super().__init__("Invalid webhook signature")
