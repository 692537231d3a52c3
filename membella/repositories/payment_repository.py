from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from membella.database.subscription import Payment, Subscription
from membella.models.plan_models import Plan
from membella.models.user_models import Member
from membella.schemas.payment import ALLOWED_PREVIOUS_STATUSES, PaymentStatus
from membella.schemas.subscription import SubscriptionStatus


class PaymentRepository:
    """Persistence for payments and the subscriptions they create."""

    def __init__(self, db: Session):
        self.db = db

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return self.db.query(Plan).filter(
            Plan.plan_id == plan_id,
            Plan.deleted_at.is_(None)
        ).first()

    def get_member(self, member_id: str) -> Optional[Member]:
        return self.db.query(Member).filter(Member.member_id == member_id).first()

    def find_active_subscription(self, member_id: str, plan_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.member_id == member_id,
            Subscription.plan_id == plan_id,
            Subscription.status == SubscriptionStatus.ACTIVE
        ).first()

    def create_payment(self, payment: Payment) -> Payment:
        self.db.add(payment)
        self.db.commit()
        self.db.refresh(payment)
        return payment

    def get_payment(self, payment_id: str, fresh: bool = False) -> Optional[Payment]:
        """Load a payment. `fresh` discards cached state so writes from other
        sessions (webhooks, other workers) are visible."""
        if fresh:
            self.db.expire_all()
        return self.db.query(Payment).filter(Payment.payment_id == payment_id).first()

    def find_payment_by_charge_id(self, charge_id: str) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.gateway_charge_id == charge_id).first()

    def save_gateway_details(
        self,
        payment: Payment,
        charge_id: Optional[str],
        source_id: Optional[str],
        gateway_response: Optional[Dict[str, Any]],
    ) -> Payment:
        if charge_id:
            payment.gateway_charge_id = charge_id
        if source_id:
            payment.gateway_source_id = source_id
        payment.gateway_response = gateway_response
        payment.updated_at = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(payment)
        return payment

    def transition_status(
        self,
        payment_id: str,
        new_status: PaymentStatus,
        gateway_response: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Conditionally move a payment to `new_status`.

        The UPDATE only matches rows whose current status may precede
        `new_status`, so concurrent or out-of-order writers cannot regress a
        terminal payment. Returns False when the row was left untouched.
        """
        values = {
            Payment.status: new_status,
            Payment.updated_at: datetime.now(timezone.utc),
        }
        if gateway_response is not None:
            values[Payment.gateway_response] = gateway_response

        matched = self.db.query(Payment).filter(
            Payment.payment_id == payment_id,
            Payment.status.in_(list(ALLOWED_PREVIOUS_STATUSES[new_status]))
        ).update(values, synchronize_session=False)
        self.db.commit()
        self.db.expire_all()
        return matched > 0

    def record_gateway_response(self, payment_id: str, gateway_response: Dict[str, Any]) -> None:
        self.db.query(Payment).filter(Payment.payment_id == payment_id).update(
            {
                Payment.gateway_response: gateway_response,
                Payment.updated_at: datetime.now(timezone.utc),
            },
            synchronize_session=False,
        )
        self.db.commit()
        self.db.expire_all()

    def get_subscription_for_payment(self, payment_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.payment_id == payment_id).first()

    def add_subscription(self, subscription: Subscription) -> Subscription:
        self.db.add(subscription)
        self.db.commit()
        self.db.refresh(subscription)
        return subscription

    def rollback(self) -> None:
        self.db.rollback()

    def list_member_payments(self, member_id: str) -> List[Payment]:
        return self.db.query(Payment).filter(
            Payment.member_id == member_id
        ).order_by(Payment.created_at.desc()).all()

    def payment_breakdown(self, member_id: Optional[str] = None):
        query = self.db.query(
            Payment.status,
            Payment.payment_method,
            func.count(Payment.payment_id),
            func.coalesce(func.sum(Payment.amount), 0),
        )
        if member_id:
            query = query.filter(Payment.member_id == member_id)
        return query.group_by(Payment.status, Payment.payment_method).all()

    def count_payments(self, member_id: Optional[str] = None) -> int:
        query = self.db.query(func.count(Payment.payment_id))
        if member_id:
            query = query.filter(Payment.member_id == member_id)
        return query.scalar() or 0

    def total_successful_amount(self, member_id: Optional[str] = None) -> Decimal:
        query = self.db.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
            Payment.status == PaymentStatus.SUCCESSFUL
        )
        if member_id:
            query = query.filter(Payment.member_id == member_id)
        return Decimal(str(query.scalar() or 0))
