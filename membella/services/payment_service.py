import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from membella.config import payment_config
from membella.database.subscription import Payment, Subscription
from membella.repositories.payment_repository import PaymentRepository
from membella.schemas.payment import (
    GatewayFailureReason,
    PaymentBreakdown,
    PaymentHistoryItem,
    PaymentMethod,
    PaymentStatistics,
    PaymentStatus,
    PaymentStatusResponse,
    PurchaseResponse,
    SubscriptionSummary,
    WebhookCacheStatus,
    WebhookEvent,
    WebhookResult,
)
from membella.schemas.subscription import SubscriptionStatus
from membella.services.exceptions import (
    AmountAboveMaximumError,
    AmountBelowMinimumError,
    DuplicateActiveSubscriptionError,
    GatewayError,
    InvalidPaymentMethodError,
    InvalidPaymentSourceError,
    InvalidWebhookSignatureError,
    MemberNotFoundError,
    MissingPaymentSourceError,
    PaymentNotFoundError,
    PaymentValidationError,
    PlanNotFoundError,
)
from membella.services.gateway import PaymentGateway, failure_reason_for
from membella.services.webhook_cache import WebhookDedupCache

logger = logging.getLogger(__name__)

GATEWAY_STATUS_MAP = {
    "pending": PaymentStatus.PENDING,
    "successful": PaymentStatus.SUCCESSFUL,
    "failed": PaymentStatus.FAILED,
    "expired": PaymentStatus.EXPIRED,
    "reversed": PaymentStatus.REFUNDED,
    "voided": PaymentStatus.FAILED,
}


def map_gateway_status(gateway_status: Optional[str]) -> PaymentStatus:
    """Translate a gateway charge status into a local payment status.

    Total over all inputs: unknown values map to PENDING so reconciliation
    keeps working when the provider adds statuses.
    """
    status = GATEWAY_STATUS_MAP.get(gateway_status)
    if status is None:
        logger.warning(f"Unrecognized gateway status {gateway_status!r}, treating as pending")
        return PaymentStatus.PENDING
    return status


def to_minor_units(amount: Decimal) -> int:
    scaled = Decimal(str(amount)) * payment_config.MINOR_UNIT_SCALE
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / payment_config.MINOR_UNIT_SCALE).quantize(Decimal("0.01"))


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Could not parse gateway timestamp {value!r}")
        return None


def _scannable_code_url(source: Optional[Dict[str, Any]]) -> Optional[str]:
    if not source:
        return None
    image = (source.get("scannable_code") or {}).get("image") or {}
    return image.get("download_uri")


class PaymentService:
    """Owns the subscription purchase lifecycle.

    Three independent triggers can move a payment forward: the synchronous
    gateway response, an incoming webhook and a poll/refresh. All of them go
    through `_apply_gateway_status`, which only applies forward transitions,
    and through `create_subscription_from_payment`, which is idempotent.
    """

    def __init__(
        self,
        repository: PaymentRepository,
        gateway: PaymentGateway,
        webhook_cache: Optional[WebhookDedupCache] = None,
        currency: str = payment_config.CURRENCY,
    ):
        self.repository = repository
        self.gateway = gateway
        self.webhook_cache = webhook_cache if webhook_cache is not None else WebhookDedupCache()
        self.currency = currency

    # Purchase

    def _validate_method(self, payment_method, payment_source: Optional[str]) -> PaymentMethod:
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise InvalidPaymentMethodError(payment_method)

        if method == PaymentMethod.CARD:
            if not payment_source:
                raise MissingPaymentSourceError()
            if not payment_source.startswith(payment_config.CARD_TOKEN_PREFIX):
                raise InvalidPaymentSourceError()
        return method

    def _validate_amount(self, method: PaymentMethod, amount: Decimal) -> int:
        minor = to_minor_units(amount)
        if minor <= 0 or minor < payment_config.MIN_AMOUNT[method]:
            raise AmountBelowMinimumError(
                method, from_minor_units(payment_config.MIN_AMOUNT[method]), self.currency
            )
        if minor > payment_config.MAX_AMOUNT[method]:
            raise AmountAboveMaximumError(
                method, from_minor_units(payment_config.MAX_AMOUNT[method]), self.currency
            )
        return minor

    def initiate_purchase(
        self,
        member_id: str,
        plan_id: str,
        payment_method,
        payment_source: Optional[str] = None,
        customer_data: Optional[Dict[str, Any]] = None,
    ) -> PurchaseResponse:
        """Validate, record a pending payment, charge it and reconcile the result."""
        logger.info(f"Processing subscription payment: member={member_id}, plan={plan_id}, method={payment_method}")

        method = self._validate_method(payment_method, payment_source)

        plan = self.repository.get_plan(plan_id)
        if not plan:
            raise PlanNotFoundError(plan_id)

        member = self.repository.get_member(member_id)
        if not member:
            raise MemberNotFoundError(member_id)

        if self.repository.find_active_subscription(member_id, plan_id):
            raise DuplicateActiveSubscriptionError(member_id, plan_id)

        # Snapshot the price; later plan edits must not affect this payment
        amount = Decimal(str(plan.price))
        amount_minor = self._validate_amount(method, amount)

        org_name = plan.owner.org_name if plan.owner else None
        description = f"Subscription: {plan.name} - {org_name}"
        now = datetime.now(timezone.utc)

        payment = self.repository.create_payment(Payment(
            payment_id=str(uuid.uuid4()),
            member_id=member_id,
            plan_id=plan_id,
            amount=amount,
            currency=self.currency,
            payment_method=method,
            status=PaymentStatus.PENDING,
            description=description,
            payment_metadata={
                "plan_name": plan.name,
                "organization": org_name,
                "member_email": member.email,
                "member_name": member.full_name,
                "customer_data": customer_data or {},
            },
            created_at=now,
            updated_at=now,
        ))
        payment_id = payment.payment_id

        charge_metadata = {
            "payment_id": payment_id,
            "plan_id": plan_id,
            "member_id": member_id,
            "payment_method": method.value,
            "created_by": payment_config.CREATED_BY,
        }

        source = None
        try:
            if method == PaymentMethod.REDIRECT:
                source = self.gateway.create_source(
                    payment_config.REDIRECT_SOURCE_TYPE, amount_minor, self.currency
                )
                charge = self.gateway.create_charge(
                    amount=amount_minor,
                    currency=self.currency,
                    description=description,
                    metadata=charge_metadata,
                    source_id=source["id"],
                    capture=False,
                )
            else:
                charge = self.gateway.create_charge(
                    amount=amount_minor,
                    currency=self.currency,
                    description=description,
                    metadata=charge_metadata,
                    card_token=payment_source,
                    capture=True,
                )
        except GatewayError as e:
            self._mark_failed(payment_id, e)
            raise
        except Exception as e:
            logger.error(f"Unexpected error while charging payment {payment_id}: {e}")
            error = GatewayError(GatewayFailureReason.PROCESSING_ERROR, str(e))
            self._mark_failed(payment_id, error)
            raise error from e

        payment = self.repository.save_gateway_details(
            payment,
            charge_id=charge.get("id"),
            source_id=source["id"] if source else None,
            gateway_response=charge,
        )

        qr_code_url = None
        expires_at = None
        if method == PaymentMethod.REDIRECT:
            qr_code_url, expires_at = self._resolve_scannable_code(source, charge)
            if not qr_code_url:
                error = GatewayError(
                    GatewayFailureReason.PROCESSING_ERROR,
                    "Failed to generate QR code for PromptPay payment",
                )
                self._mark_failed(payment_id, error)
                raise error

        new_status = map_gateway_status(charge.get("status"))
        if method == PaymentMethod.CARD and charge.get("paid"):
            new_status = PaymentStatus.SUCCESSFUL

        status, subscription = self._apply_gateway_status(payment_id, new_status, charge)

        if method == PaymentMethod.CARD and status == PaymentStatus.FAILED:
            code = charge.get("failure_code")
            raise GatewayError(failure_reason_for(code), charge.get("failure_message"), code)

        logger.info(f"Subscription payment processed: {payment_id} -> {status.value}")

        return PurchaseResponse(
            payment_id=payment_id,
            charge_id=charge.get("id"),
            amount=amount,
            currency=self.currency,
            status=status,
            payment_method=method,
            subscription_id=subscription.subscription_id if subscription else None,
            authorize_uri=charge.get("authorize_uri") if method == PaymentMethod.CARD else None,
            qr_code_url=qr_code_url,
            expires_at=expires_at,
        )

    def _resolve_scannable_code(self, source, charge):
        qr_code_url = _scannable_code_url(source) or _scannable_code_url(charge.get("source"))
        expires_at = _parse_timestamp(
            (source or {}).get("expires_at") or (charge.get("source") or {}).get("expires_at")
            or charge.get("expires_at")
        )

        if not qr_code_url and source:
            logger.warning(f"No QR code in source {source['id']}, retrieving it again")
            try:
                qr_code_url = _scannable_code_url(self.gateway.retrieve_source(source["id"]))
            except GatewayError as e:
                logger.error(f"Failed to retrieve source {source['id']}: {e}")
        return qr_code_url, expires_at

    def _mark_failed(self, payment_id: str, error: GatewayError) -> None:
        logger.error(f"Charge failed for payment {payment_id}: {error.reason.value} ({error.detail})")
        self.repository.transition_status(
            payment_id,
            PaymentStatus.FAILED,
            gateway_response={
                "error": str(error),
                "error_reason": error.reason.value,
                "error_code": error.code,
                "error_detail": error.detail,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    # Reconciliation

    def _apply_gateway_status(
        self,
        payment_id: str,
        new_status: PaymentStatus,
        gateway_response: Dict[str, Any],
    ):
        """Apply a forward-only status change and activate the subscription on success.

        Returns the stored status afterwards and the subscription, if any.
        """
        applied = self.repository.transition_status(payment_id, new_status, gateway_response)
        if not applied:
            # A regression or a race we lost; keep the snapshot for audit.
            self.repository.record_gateway_response(payment_id, gateway_response)
            payment = self.repository.get_payment(payment_id)
            logger.warning(
                f"Ignored transition of payment {payment_id} "
                f"from {payment.status.value} to {new_status.value}"
            )
        else:
            payment = self.repository.get_payment(payment_id)

        subscription = None
        if payment.status == PaymentStatus.SUCCESSFUL:
            subscription = self.create_subscription_from_payment(payment_id)
        elif payment.status == PaymentStatus.REFUNDED:
            # Whether a refund cancels access is a product decision; leave it alone.
            logger.info(f"Payment {payment_id} refunded; subscription left unchanged")
        return payment.status, subscription

    def create_subscription_from_payment(self, payment_id: str) -> Subscription:
        """Create the subscription granted by a successful payment, exactly once."""
        payment = self.repository.get_payment(payment_id)
        if not payment:
            raise PaymentNotFoundError(payment_id)
        if payment.status != PaymentStatus.SUCCESSFUL:
            raise PaymentValidationError(
                f"Payment {payment_id} is {payment.status.value}, not successful"
            )

        existing = self.repository.get_subscription_for_payment(payment_id)
        if existing:
            logger.info(f"Subscription already exists: {existing.subscription_id}")
            return existing

        start_date = datetime.now(timezone.utc)
        end_date = start_date + timedelta(days=payment.plan.duration)
        try:
            subscription = self.repository.add_subscription(Subscription(
                subscription_id=str(uuid.uuid4()),
                member_id=payment.member_id,
                plan_id=payment.plan_id,
                payment_id=payment_id,
                status=SubscriptionStatus.ACTIVE,
                start_date=start_date,
                end_date=end_date,
            ))
        except IntegrityError:
            # Another trigger created it between our check and insert
            self.repository.rollback()
            existing = self.repository.get_subscription_for_payment(payment_id)
            if existing is None:
                raise
            logger.info(f"Subscription for payment {payment_id} created concurrently")
            return existing

        logger.info(
            f"Subscription created: id={subscription.subscription_id}, payment={payment_id}, "
            f"plan={payment.plan_id}, duration={payment.plan.duration}, end={end_date.isoformat()}"
        )
        return subscription

    def authenticate_webhook(self, headers, body: bytes) -> None:
        if not self.gateway.verify_webhook_signature(headers, body):
            logger.warning("Rejected webhook with invalid signature")
            raise InvalidWebhookSignatureError()

    def reconcile_from_webhook(self, event: WebhookEvent) -> WebhookResult:
        charge = event.data
        charge_id = charge.id
        logger.info(f"Processing webhook event {event.key} for charge {charge_id}")

        webhook_key = WebhookDedupCache.make_key(event.key, charge_id, charge.status)
        if self.webhook_cache.seen(webhook_key):
            logger.info(f"Duplicate webhook detected, skipping: {webhook_key}")
            return WebhookResult(
                processed=False, reason="Duplicate webhook", charge_id=charge_id
            )

        try:
            return self._reconcile_charge(event, charge_id)
        except Exception:
            # Let the provider's retry through
            self.webhook_cache.forget(webhook_key)
            raise

    def _reconcile_charge(self, event: WebhookEvent, charge_id: str) -> WebhookResult:
        charge = event.data
        payment_id = charge.metadata.get("payment_id")

        if payment_id:
            payment = self.repository.get_payment(payment_id)
        else:
            logger.warning(f"No payment_id in webhook metadata for charge {charge_id}")
            payment = self.repository.find_payment_by_charge_id(charge_id)

        if not payment:
            logger.warning(f"Payment not found for webhook: payment_id={payment_id}, charge={charge_id}")
            return WebhookResult(
                processed=False,
                reason="Payment record not found",
                payment_id=payment_id,
                charge_id=charge_id,
            )

        payment_id = payment.payment_id
        previous_status = PaymentStatus(payment.status)
        new_status = map_gateway_status(charge.status)

        status, subscription = self._apply_gateway_status(
            payment_id, new_status, charge.model_dump(mode="json")
        )
        logger.info(
            f"Webhook processed for payment {payment_id}: {previous_status.value} -> {status.value}"
        )
        return WebhookResult(
            processed=True,
            payment_id=payment_id,
            charge_id=charge_id,
            previous_status=previous_status,
            new_status=status,
            status_changed=status != previous_status,
            subscription_id=subscription.subscription_id if subscription else None,
        )

    def refresh_payment_from_gateway(self, payment_id: str) -> Payment:
        """Ask the gateway for the charge status and reconcile a dropped webhook."""
        payment = self.repository.get_payment(payment_id)
        if not payment:
            raise PaymentNotFoundError(payment_id)
        if not payment.gateway_charge_id:
            raise PaymentValidationError("No charge ID associated with this payment")

        charge = self.gateway.retrieve_charge(payment.gateway_charge_id)
        new_status = map_gateway_status(charge.get("status"))
        if payment.payment_method == PaymentMethod.CARD and charge.get("paid"):
            new_status = PaymentStatus.SUCCESSFUL

        self._apply_gateway_status(payment_id, new_status, charge)
        return self.repository.get_payment(payment_id)

    # Queries

    def get_payment_status(self, payment_id: str, fresh: bool = False) -> Payment:
        payment = self.repository.get_payment(payment_id, fresh=fresh)
        if not payment:
            raise PaymentNotFoundError(payment_id)
        return payment

    @staticmethod
    def summarize(payment: Payment) -> PaymentStatusResponse:
        return PaymentStatusResponse(**PaymentService._summary_fields(payment))

    @staticmethod
    def _summary_fields(payment: Payment) -> Dict[str, Any]:
        plan = payment.plan
        return {
            "payment_id": payment.payment_id,
            "status": payment.status,
            "amount": payment.amount,
            "currency": payment.currency,
            "payment_method": payment.payment_method,
            "description": payment.description,
            "plan_name": plan.name if plan else None,
            "organization": plan.owner.org_name if plan and plan.owner else None,
            "subscription": SubscriptionSummary(
                id=payment.subscription.subscription_id,
                status=payment.subscription.status.value,
                start_date=payment.subscription.start_date,
                end_date=payment.subscription.end_date,
            ) if payment.subscription else None,
            "created_at": payment.created_at,
            "updated_at": payment.updated_at,
        }

    def get_member_payment_history(self, member_id: str) -> List[PaymentHistoryItem]:
        return [
            PaymentHistoryItem(
                **self._summary_fields(payment),
                charge_id=payment.gateway_charge_id,
                can_refresh=payment.status == PaymentStatus.PENDING and bool(payment.gateway_charge_id),
                metadata=payment.payment_metadata or {},
            )
            for payment in self.repository.list_member_payments(member_id)
        ]

    def get_payment_statistics(self, member_id: Optional[str] = None) -> PaymentStatistics:
        breakdown = [
            PaymentBreakdown(
                status=status,
                payment_method=method,
                count=count,
                total_amount=Decimal(str(total)),
            )
            for status, method, count, total in self.repository.payment_breakdown(member_id)
        ]
        return PaymentStatistics(
            total_payments=self.repository.count_payments(member_id),
            total_successful_amount=self.repository.total_successful_amount(member_id),
            breakdown=breakdown,
        )

    def get_webhook_cache_status(self) -> WebhookCacheStatus:
        self.webhook_cache.cleanup()
        return WebhookCacheStatus(
            cached_webhooks=len(self.webhook_cache),
            cache_timeout_seconds=self.webhook_cache.ttl_seconds,
            last_cleanup=self.webhook_cache.last_cleanup,
        )
