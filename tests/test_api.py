from datetime import timedelta

import pytest

from conftest import create_access_token, make_charge, make_source, start_promptpay_purchase
from membella.database.subscription import Payment
from membella.schemas.payment import GatewayFailureReason
from membella.services.exceptions import GatewayError


@pytest.fixture
def other_headers(other_member):
    token = create_access_token(data={"sub": other_member.member_id}, expires_delta=timedelta(days=1))
    return {"Authorization": f"Bearer {token}"}


class TestAuth:
    def test_requires_token(self, client, member, plan):
        response = client.post("/payments/subscription", json={"plan_id": plan.plan_id, "payment_method": "redirect"})
        assert response.status_code == 401

    def test_rejects_bad_token(self, client, member):
        response = client.get("/payments/history", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_rejects_token_for_unknown_member(self, client, test_db):
        token = create_access_token(data={"sub": "ghost"})
        response = client.get("/payments/history", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401


class TestCreateSubscriptionPayment:
    def test_promptpay_purchase(self, client, gateway, plan, auth_headers):
        gateway.create_source.return_value = make_source()
        gateway.create_charge.return_value = make_charge()

        response = client.post(
            "/payments/subscription",
            json={"plan_id": plan.plan_id, "payment_method": "redirect"},
            headers=auth_headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["qr_code_url"] == "https://cdn.example.com/qr/src_test_1.png"
        assert data["charge_id"] == "chrg_test_1"
        assert data["currency"] == "THB"

    def test_card_purchase_creates_subscription(self, client, gateway, plan, auth_headers):
        gateway.create_charge.return_value = make_charge(status="successful", paid=True)

        response = client.post(
            "/payments/subscription",
            json={"plan_id": plan.plan_id, "payment_method": "card", "payment_source": "tokn_test_1"},
            headers=auth_headers,
        )

        assert response.status_code == 201
        assert response.json()["status"] == "successful"
        assert response.json()["subscription_id"] is not None

    def test_invalid_method_is_bad_request(self, client, plan, auth_headers, test_db):
        response = client.post(
            "/payments/subscription",
            json={"plan_id": plan.plan_id, "payment_method": "cash"},
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert test_db.query(Payment).count() == 0

    def test_unknown_plan_is_not_found(self, client, member, auth_headers):
        response = client.post(
            "/payments/subscription",
            json={"plan_id": "missing", "payment_method": "redirect"},
            headers=auth_headers,
        )
        assert response.status_code == 404

    def test_duplicate_subscription_is_conflict(self, client, gateway, plan, auth_headers):
        gateway.create_charge.return_value = make_charge(status="successful", paid=True)
        body = {"plan_id": plan.plan_id, "payment_method": "card", "payment_source": "tokn_test_1"}

        client.post("/payments/subscription", json=body, headers=auth_headers)
        response = client.post("/payments/subscription", json=body, headers=auth_headers)

        assert response.status_code == 409

    def test_declined_card_reports_reason(self, client, gateway, plan, auth_headers):
        gateway.create_charge.side_effect = GatewayError(GatewayFailureReason.EXPIRED_CARD, "expired", "expired_card")

        response = client.post(
            "/payments/subscription",
            json={"plan_id": plan.plan_id, "payment_method": "card", "payment_source": "tokn_test_1"},
            headers=auth_headers,
        )

        assert response.status_code == 402
        assert response.json()["detail"]["reason"] == "expired_card"
        assert "expired" in response.json()["detail"]["message"]


class TestPaymentStatus:
    def test_get_status(self, client, payment_service, gateway, member, plan, auth_headers):
        purchase = start_promptpay_purchase(payment_service, gateway, member, plan)

        response = client.get(f"/payments/status/{purchase.payment_id}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "pending"
        assert data["plan_name"] == plan.name
        assert data["organization"] == "Riverside Yoga"
        assert data["subscription"] is None

    def test_other_members_payment_is_forbidden(self, client, payment_service, gateway, member, plan, other_headers):
        purchase = start_promptpay_purchase(payment_service, gateway, member, plan)

        response = client.get(f"/payments/status/{purchase.payment_id}", headers=other_headers)

        assert response.status_code == 403

    def test_unknown_payment(self, client, auth_headers):
        response = client.get("/payments/status/missing", headers=auth_headers)
        assert response.status_code == 404

    def test_refresh(self, client, payment_service, gateway, member, plan, auth_headers):
        purchase = start_promptpay_purchase(payment_service, gateway, member, plan)
        gateway.retrieve_charge.return_value = make_charge(status="successful")

        response = client.post(f"/payments/{purchase.payment_id}/refresh", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "successful"
        assert response.json()["subscription"]["status"] == "active"

    def test_refresh_gateway_unavailable(self, client, payment_service, gateway, member, plan, auth_headers):
        purchase = start_promptpay_purchase(payment_service, gateway, member, plan)
        gateway.retrieve_charge.side_effect = GatewayError(GatewayFailureReason.UNAVAILABLE, "down")

        response = client.post(f"/payments/{purchase.payment_id}/refresh", headers=auth_headers)

        assert response.status_code == 402
        assert response.json()["detail"]["reason"] == "unavailable"


class TestPollEndpoint:
    def test_poll_successful_payment(self, client, gateway, plan, auth_headers):
        gateway.create_charge.return_value = make_charge(status="successful", paid=True)
        purchase = client.post(
            "/payments/subscription",
            json={"plan_id": plan.plan_id, "payment_method": "card", "payment_source": "tokn_test_1"},
            headers=auth_headers,
        ).json()

        response = client.get(f"/payments/poll/{purchase['payment_id']}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["attempts"] == 1
        assert response.json()["status"] == "successful"

    def test_poll_failed_payment(self, client, payment_service, gateway, member, plan, auth_headers):
        purchase = start_promptpay_purchase(payment_service, gateway, member, plan)
        gateway.retrieve_charge.return_value = make_charge(status="failed")

        response = client.get(f"/payments/poll/{purchase.payment_id}", headers=auth_headers)

        assert response.status_code == 402
        assert response.json()["detail"]["reason"] == "failed"

    def test_poll_timeout(self, client, payment_service, gateway, member, plan, auth_headers):
        purchase = start_promptpay_purchase(payment_service, gateway, member, plan)
        gateway.retrieve_charge.return_value = make_charge(status="pending")

        response = client.get(
            f"/payments/poll/{purchase.payment_id}",
            params={"max_attempts": 1},
            headers=auth_headers,
        )

        assert response.status_code == 408
        assert response.json()["detail"]["attempts"] == 1

    def test_poll_other_members_payment(self, client, payment_service, gateway, member, plan, other_headers):
        purchase = start_promptpay_purchase(payment_service, gateway, member, plan)

        response = client.get(f"/payments/poll/{purchase.payment_id}", headers=other_headers)

        assert response.status_code == 403


class TestHistoryAndInfo:
    def test_history_only_shows_own_payments(self, client, payment_service, gateway, member, other_member, plan, auth_headers, other_headers):
        start_promptpay_purchase(payment_service, gateway, member, plan)

        mine = client.get("/payments/history", headers=auth_headers)
        theirs = client.get("/payments/history", headers=other_headers)

        assert len(mine.json()) == 1
        assert mine.json()[0]["can_refresh"] is True
        assert theirs.json() == []

    def test_statistics(self, client, payment_service, gateway, member, plan, auth_headers):
        start_promptpay_purchase(payment_service, gateway, member, plan)

        response = client.get("/payments/statistics", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["total_payments"] == 1

    def test_payment_methods(self, client):
        response = client.get("/payments/methods")

        assert response.status_code == 200
        methods = {m["method"]: m for m in response.json()}
        assert set(methods) == {"card", "redirect"}
        assert methods["redirect"]["min_amount"] == "20.00"

    def test_public_key(self, client, monkeypatch):
        monkeypatch.setenv("OMISE_PUBLIC_KEY", "pkey_test_abc")
        response = client.get("/payments/public-key")
        assert response.json() == {"public_key": "pkey_test_abc"}

    def test_public_key_not_configured(self, client, monkeypatch):
        monkeypatch.delenv("OMISE_PUBLIC_KEY", raising=False)
        assert client.get("/payments/public-key").status_code == 500

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"
