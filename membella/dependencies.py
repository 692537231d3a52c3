from membella.database.database import SessionLocal
from fastapi import Depends, HTTPException, status, Security
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional
from .models.user_models import Member
from .utils.auth import decode_access_token, bearer_scheme
from .repositories.payment_repository import PaymentRepository
from .repositories.subscription_repository import SubscriptionRepository
from .services.gateway import OmiseGateway, PaymentGateway
from .services.payment_poller import PaymentPoller
from .services.payment_service import PaymentService
from .services.subscription_service import SubscriptionService
from .services.webhook_cache import WebhookDedupCache
import os


# One cache per process; webhooks are deduplicated across requests
webhook_cache = WebhookDedupCache()


# Dependency to get DB session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def get_current_member(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    db: Session = Depends(get_db),
) -> Member:
    """Get the current member from the bearer token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception
    member_id = decode_access_token(credentials.credentials)
    if member_id is None:
        raise credentials_exception
    member = db.query(Member).filter(Member.member_id == member_id).first()
    if member is None:
        raise credentials_exception
    return member


def get_payment_gateway() -> PaymentGateway:
    """Dependency provider for the payment gateway client"""
    return OmiseGateway(
        secret_key=os.getenv("OMISE_SECRET_KEY"),
        webhook_secret=os.getenv("OMISE_WEBHOOK_SECRET"),
    )


def get_webhook_cache() -> WebhookDedupCache:
    return webhook_cache


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    cache: WebhookDedupCache = Depends(get_webhook_cache),
) -> PaymentService:
    return PaymentService(PaymentRepository(db), gateway, cache)


def get_payment_poller(
    service: PaymentService = Depends(get_payment_service),
) -> PaymentPoller:
    return PaymentPoller(service)


def get_subscription_service(db: Session = Depends(get_db)) -> SubscriptionService:
    return SubscriptionService(SubscriptionRepository(db), PaymentRepository(db))
