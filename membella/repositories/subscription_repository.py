from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from membella.database.subscription import Subscription
from membella.schemas.subscription import SubscriptionStatus


class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def list_for_member(self, member_id: str) -> List[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.member_id == member_id
        ).order_by(Subscription.created_at.desc()).all()

    def get_for_member(self, subscription_id: str, member_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.subscription_id == subscription_id,
            Subscription.member_id == member_id
        ).first()

    def cancel(self, subscription_id: str) -> bool:
        """Cancel an active subscription. False if it was not active."""
        matched = self.db.query(Subscription).filter(
            Subscription.subscription_id == subscription_id,
            Subscription.status == SubscriptionStatus.ACTIVE
        ).update(
            {
                Subscription.status: SubscriptionStatus.CANCELLED,
                Subscription.updated_at: datetime.now(timezone.utc),
            },
            synchronize_session=False,
        )
        self.db.commit()
        self.db.expire_all()
        return matched > 0

    def count_by_status(self, member_id: str):
        return self.db.query(Subscription.status, func.count(Subscription.subscription_id)).filter(
            Subscription.member_id == member_id
        ).group_by(Subscription.status).all()

    def count_active(self, member_id: str, now: datetime) -> int:
        return self.db.query(func.count(Subscription.subscription_id)).filter(
            Subscription.member_id == member_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.end_date > now
        ).scalar() or 0

    def count_expired(self, member_id: str, now: datetime) -> int:
        return self.db.query(func.count(Subscription.subscription_id)).filter(
            Subscription.member_id == member_id,
            or_(
                Subscription.status == SubscriptionStatus.EXPIRED,
                (Subscription.status == SubscriptionStatus.ACTIVE) & (Subscription.end_date <= now),
            )
        ).scalar() or 0
