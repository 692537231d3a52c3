"""Test configuration and fixtures."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import membella.models  # noqa: F401  registers all tables
from membella.database.database import Base
from membella.dependencies import get_db, get_payment_gateway, get_webhook_cache
from membella.main import app
from membella.models import Member, Owner, Plan
from membella.repositories.payment_repository import PaymentRepository
from membella.services.gateway import PaymentGateway
from membella.services.payment_service import PaymentService
from membella.services.webhook_cache import WebhookDedupCache
from membella.utils.rate_limit import limiter

TEST_SECRET = "test_secret_key_123"


def create_access_token(data: dict, expires_delta: timedelta = timedelta(days=1)) -> str:
    """Mint a member token the way the identity provider would."""
    to_encode = data.copy()
    to_encode["exp"] = datetime.now(timezone.utc) + expires_delta
    return jwt.encode(to_encode, TEST_SECRET, algorithm="HS256")


def make_charge(charge_id="chrg_test_1", status="pending", paid=False, **extra):
    """Build a gateway charge payload the way the provider returns it."""
    charge = {
        "object": "charge",
        "id": charge_id,
        "status": status,
        "paid": paid,
        "amount": 29900,
        "currency": "thb",
    }
    charge.update(extra)
    return charge


def make_source(source_id="src_test_1", qr_url="https://cdn.example.com/qr/src_test_1.png"):
    source = {"object": "source", "id": source_id, "type": "promptpay"}
    if qr_url:
        source["scannable_code"] = {"image": {"download_uri": qr_url}}
    return source


def start_promptpay_purchase(service, gateway, member, plan, charge_id="chrg_test_1"):
    """Create a pending PromptPay payment through the normal purchase flow."""
    gateway.create_source.return_value = make_source()
    gateway.create_charge.return_value = make_charge(charge_id)
    return service.initiate_purchase(member.member_id, plan.plan_id, "redirect")


@pytest.fixture(autouse=True)
def mock_jwt_secret(monkeypatch):
    """Mock JWT secret key for testing."""
    monkeypatch.setenv("JWT_SECRET_KEY", TEST_SECRET)
    monkeypatch.setattr("membella.utils.auth.SECRET_KEY", TEST_SECRET)
    monkeypatch.setattr("membella.utils.auth.ALGORITHM", "HS256")
    return TEST_SECRET


@pytest.fixture(autouse=True)
def disable_rate_limits(monkeypatch):
    monkeypatch.setattr(limiter, "enabled", False)


@pytest.fixture(scope="function")
def test_db() -> Session:
    """Create a fresh in-memory database for each test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    def override_get_db():
        try:
            yield db
        finally:
            pass  # Closed below, shared with the test

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        app.dependency_overrides.clear()


@pytest.fixture
def gateway():
    """A gateway double; tests set return values per call."""
    gateway = MagicMock(spec=PaymentGateway)
    gateway.verify_webhook_signature.return_value = True
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    return gateway


@pytest.fixture
def webhook_cache():
    cache = WebhookDedupCache(ttl_seconds=300)
    app.dependency_overrides[get_webhook_cache] = lambda: cache
    return cache


@pytest.fixture
def client(test_db, gateway, webhook_cache):
    return TestClient(app)


@pytest.fixture
def payment_service(test_db, gateway, webhook_cache) -> PaymentService:
    return PaymentService(PaymentRepository(test_db), gateway, webhook_cache)


@pytest.fixture
def owner(test_db):
    owner = Owner(owner_id="owner-1", org_name="Riverside Yoga", email="hello@riverside.example")
    test_db.add(owner)
    test_db.commit()
    test_db.refresh(owner)
    return owner


@pytest.fixture
def plan(test_db, owner):
    plan = Plan(
        plan_id="plan-monthly",
        owner_id=owner.owner_id,
        name="Monthly Unlimited",
        description="Unlimited classes for 30 days",
        price=Decimal("299.00"),
        duration=30,
    )
    test_db.add(plan)
    test_db.commit()
    test_db.refresh(plan)
    return plan


@pytest.fixture
def member(test_db):
    member = Member(member_id="member-1", email="somchai@example.com", full_name="Somchai P.")
    test_db.add(member)
    test_db.commit()
    test_db.refresh(member)
    return member


@pytest.fixture
def other_member(test_db):
    member = Member(member_id="member-2", email="other@example.com", full_name="Other Member")
    test_db.add(member)
    test_db.commit()
    test_db.refresh(member)
    return member


@pytest.fixture
def auth_headers(member):
    token = create_access_token(data={"sub": member.member_id}, expires_delta=timedelta(days=1))
    return {"Authorization": f"Bearer {token}"}
