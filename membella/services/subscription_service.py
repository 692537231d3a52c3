import logging
import math
from datetime import datetime, timezone

from membella.config import payment_config
from membella.database.subscription import Subscription
from membella.repositories.payment_repository import PaymentRepository
from membella.repositories.subscription_repository import SubscriptionRepository
from membella.schemas.subscription import (
    CancelSubscriptionResponse,
    SubscriptionPayment,
    SubscriptionResponse,
    SubscriptionStatsResponse,
    SubscriptionStatus,
)
from membella.services.exceptions import SubscriptionNotFoundError

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # Some backends (SQLite) hand back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SubscriptionService:
    def __init__(self, repository: SubscriptionRepository, payments: PaymentRepository):
        self.repository = repository
        self.payments = payments

    def _to_response(self, subscription: Subscription) -> SubscriptionResponse:
        now = datetime.now(timezone.utc)
        seconds_left = (_as_utc(subscription.end_date) - now).total_seconds()
        days_remaining = max(0, math.ceil(seconds_left / 86400))
        plan = subscription.plan
        payment = subscription.payment

        return SubscriptionResponse(
            id=subscription.subscription_id,
            plan_id=subscription.plan_id,
            plan_name=plan.name,
            plan_description=plan.description,
            organization=plan.owner.org_name,
            price=plan.price,
            duration=plan.duration,
            status=subscription.status,
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            days_remaining=days_remaining,
            is_active=subscription.status == SubscriptionStatus.ACTIVE and days_remaining > 0,
            is_expired=subscription.status == SubscriptionStatus.EXPIRED or days_remaining <= 0,
            payment=SubscriptionPayment(
                id=payment.payment_id,
                amount=payment.amount,
                currency=payment.currency,
                method=payment.payment_method.value,
                status=payment.status.value,
                paid_at=payment.created_at,
            ),
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )

    def get_member_subscriptions(self, member_id: str):
        logger.info(f"Getting subscriptions for member: {member_id}")
        return [self._to_response(s) for s in self.repository.list_for_member(member_id)]

    def get_subscription(self, subscription_id: str, member_id: str) -> SubscriptionResponse:
        subscription = self.repository.get_for_member(subscription_id, member_id)
        if not subscription:
            raise SubscriptionNotFoundError(subscription_id)
        return self._to_response(subscription)

    def cancel_subscription(self, subscription_id: str, member_id: str) -> CancelSubscriptionResponse:
        """Cancel a member's subscription. Cancelling twice is a no-op."""
        subscription = self.repository.get_for_member(subscription_id, member_id)
        if not subscription:
            raise SubscriptionNotFoundError(subscription_id)

        if subscription.status == SubscriptionStatus.CANCELLED:
            return CancelSubscriptionResponse(
                id=subscription_id,
                status=SubscriptionStatus.CANCELLED,
                already_cancelled=True,
                updated_at=subscription.updated_at,
            )

        if not self.repository.cancel(subscription_id):
            subscription = self.repository.get_for_member(subscription_id, member_id)
            if subscription.status != SubscriptionStatus.CANCELLED:
                raise ValueError(
                    f"Cannot cancel a subscription that is {subscription.status.value}"
                )
            return CancelSubscriptionResponse(
                id=subscription_id,
                status=SubscriptionStatus.CANCELLED,
                already_cancelled=True,
                updated_at=subscription.updated_at,
            )

        subscription = self.repository.get_for_member(subscription_id, member_id)
        logger.info(f"Subscription cancelled: {subscription_id}")
        return CancelSubscriptionResponse(
            id=subscription_id,
            status=subscription.status,
            updated_at=subscription.updated_at,
        )

    def get_subscription_stats(self, member_id: str) -> SubscriptionStatsResponse:
        now = datetime.now(timezone.utc)
        by_status = {SubscriptionStatus(status): count for status, count in self.repository.count_by_status(member_id)}
        return SubscriptionStatsResponse(
            total_subscriptions=sum(by_status.values()),
            active_subscriptions=self.repository.count_active(member_id, now),
            expired_subscriptions=self.repository.count_expired(member_id, now),
            cancelled_subscriptions=by_status.get(SubscriptionStatus.CANCELLED, 0),
            total_spent=self.payments.total_successful_amount(member_id),
            currency=payment_config.CURRENCY,
        )
