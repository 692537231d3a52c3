from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import make_charge
from membella.database.subscription import Subscription
from membella.repositories.payment_repository import PaymentRepository
from membella.repositories.subscription_repository import SubscriptionRepository
from membella.schemas.subscription import SubscriptionStatus
from membella.services.exceptions import SubscriptionNotFoundError
from membella.services.subscription_service import SubscriptionService


@pytest.fixture
def subscription_service(test_db):
    return SubscriptionService(SubscriptionRepository(test_db), PaymentRepository(test_db))


@pytest.fixture
def subscription(payment_service, gateway, member, plan):
    gateway.create_charge.return_value = make_charge(status="successful", paid=True)
    purchase = payment_service.initiate_purchase(member.member_id, plan.plan_id, "card", payment_source="tokn_x")
    return purchase.subscription_id


class TestSubscriptionService:
    def test_lists_member_subscriptions(self, subscription_service, subscription, member):
        subscriptions = subscription_service.get_member_subscriptions(member.member_id)

        assert len(subscriptions) == 1
        sub = subscriptions[0]
        assert sub.id == subscription
        assert sub.plan_name == "Monthly Unlimited"
        assert sub.organization == "Riverside Yoga"
        assert sub.days_remaining == 30
        assert sub.is_active is True
        assert sub.is_expired is False
        assert sub.payment.amount == Decimal("299.00")
        assert sub.payment.status == "successful"

    def test_get_subscription_of_other_member(self, subscription_service, subscription, other_member):
        with pytest.raises(SubscriptionNotFoundError):
            subscription_service.get_subscription(subscription, other_member.member_id)

    def test_lapsed_subscription_is_reported_expired(self, subscription_service, subscription, member, test_db):
        row = test_db.query(Subscription).one()
        row.end_date = datetime.now(timezone.utc) - timedelta(days=1)
        test_db.commit()

        sub = subscription_service.get_subscription(subscription, member.member_id)
        stats = subscription_service.get_subscription_stats(member.member_id)

        assert sub.days_remaining == 0
        assert sub.is_active is False
        assert sub.is_expired is True
        assert stats.active_subscriptions == 0
        assert stats.expired_subscriptions == 1

    def test_cancel_is_idempotent(self, subscription_service, subscription, member):
        first = subscription_service.cancel_subscription(subscription, member.member_id)
        second = subscription_service.cancel_subscription(subscription, member.member_id)

        assert first.status == SubscriptionStatus.CANCELLED
        assert first.already_cancelled is False
        assert second.status == SubscriptionStatus.CANCELLED
        assert second.already_cancelled is True

    def test_expired_subscription_cannot_be_cancelled(self, subscription_service, subscription, member, test_db):
        row = test_db.query(Subscription).one()
        row.status = SubscriptionStatus.EXPIRED
        test_db.commit()

        with pytest.raises(ValueError):
            subscription_service.cancel_subscription(subscription, member.member_id)

    def test_stats(self, subscription_service, subscription, member):
        stats = subscription_service.get_subscription_stats(member.member_id)

        assert stats.total_subscriptions == 1
        assert stats.active_subscriptions == 1
        assert stats.cancelled_subscriptions == 0
        assert stats.total_spent == Decimal("299.00")
        assert stats.currency == "THB"


class TestSubscriptionEndpoints:
    def test_list(self, client, subscription, auth_headers):
        response = client.get("/subscriptions", headers=auth_headers)

        assert response.status_code == 200
        assert [s["id"] for s in response.json()] == [subscription]

    def test_get(self, client, subscription, auth_headers):
        response = client.get(f"/subscriptions/{subscription}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "active"

    def test_get_unknown(self, client, member, auth_headers):
        assert client.get("/subscriptions/missing", headers=auth_headers).status_code == 404

    def test_stats(self, client, subscription, auth_headers):
        response = client.get("/subscriptions/stats", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["active_subscriptions"] == 1

    def test_cancel_twice(self, client, subscription, auth_headers):
        first = client.post(f"/subscriptions/{subscription}/cancel", headers=auth_headers)
        second = client.post(f"/subscriptions/{subscription}/cancel", headers=auth_headers)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["already_cancelled"] is True

    def test_cancelled_subscription_allows_new_purchase(self, client, gateway, plan, subscription, auth_headers):
        client.post(f"/subscriptions/{subscription}/cancel", headers=auth_headers)
        gateway.create_charge.return_value = make_charge("chrg_test_2", status="successful", paid=True)

        response = client.post(
            "/payments/subscription",
            json={"plan_id": plan.plan_id, "payment_method": "card", "payment_source": "tokn_y"},
            headers=auth_headers,
        )

        assert response.status_code == 201
