import asyncio
import json
import logging
import os
import traceback
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from membella.config import payment_config
from membella.dependencies import (
    get_current_member,
    get_payment_poller,
    get_payment_service,
)
from membella.models.user_models import Member
from membella.schemas.payment import (
    CreatePaymentRequest,
    PaymentHistoryItem,
    PaymentMethod,
    PaymentMethodInfo,
    PaymentStatistics,
    PaymentStatusResponse,
    PollResponse,
    PurchaseResponse,
    WebhookCacheStatus,
    WebhookEvent,
    WebhookResult,
)
from membella.services.exceptions import (
    DuplicateActiveSubscriptionError,
    GatewayError,
    InvalidWebhookSignatureError,
    MemberNotFoundError,
    PaymentError,
    PaymentNotFoundError,
    PaymentNotSuccessfulError,
    PaymentPollTimeoutError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
)
from membella.services.payment_poller import PaymentPoller, run_until_disconnected
from membella.services.payment_service import PaymentService, from_minor_units
from membella.utils.rate_limit import API_LIMIT, PAYMENT_LIMIT, WEBHOOK_LIMIT, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def to_http_exception(e: PaymentError) -> HTTPException:
    """Translate a service error into the HTTP error the client sees."""
    if isinstance(e, (PlanNotFoundError, MemberNotFoundError, PaymentNotFoundError, SubscriptionNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, DuplicateActiveSubscriptionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, GatewayError):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"reason": e.reason.value, "message": str(e)},
        )
    if isinstance(e, PaymentNotSuccessfulError):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"reason": e.status.value, "message": str(e)},
        )
    if isinstance(e, PaymentPollTimeoutError):
        return HTTPException(
            status_code=status.HTTP_408_REQUEST_TIMEOUT,
            detail={"reason": "timeout", "message": str(e), "attempts": e.attempts},
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _get_owned_payment(service: PaymentService, payment_id: str, member: Member):
    try:
        payment = service.get_payment_status(payment_id)
    except PaymentError as e:
        raise to_http_exception(e)
    if payment.member_id != member.member_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return payment


@router.get("/public-key")
@limiter.limit(API_LIMIT)
def get_public_key(request: Request):
    """Public key the frontend uses to tokenize cards"""
    public_key = os.getenv("OMISE_PUBLIC_KEY")
    if not public_key:
        raise HTTPException(status_code=500, detail="Payment public key not configured")
    return {"public_key": public_key}


@router.get("/methods", response_model=List[PaymentMethodInfo])
@limiter.limit(API_LIMIT)
def get_payment_methods(request: Request):
    return [
        PaymentMethodInfo(
            method=method,
            currency=payment_config.CURRENCY,
            min_amount=from_minor_units(payment_config.MIN_AMOUNT[method]),
            max_amount=from_minor_units(payment_config.MAX_AMOUNT[method]),
        )
        for method in PaymentMethod
    ]


@router.post("/webhook")
@limiter.limit(WEBHOOK_LIMIT)
async def handle_webhook(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
):
    """Handle charge events from the payment gateway.

    Every handled outcome is acknowledged with 200, including duplicates and
    events for unknown payments, so the provider does not keep redelivering.
    """
    body = await request.body()

    try:
        service.authenticate_webhook(dict(request.headers), body)
    except InvalidWebhookSignatureError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))

    try:
        event = WebhookEvent.model_validate(json.loads(body or b"{}"))
    except (ValueError, ValidationError) as e:
        logger.warning(f"Ignoring malformed webhook payload: {e}")
        return WebhookResult(processed=False, reason="Malformed event")

    try:
        result = await asyncio.to_thread(service.reconcile_from_webhook, event)
    except Exception as e:
        logger.error(f"Webhook processing failed: {e}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return JSONResponse(
            status_code=500,
            content={"received": False, "message": "Webhook processing failed"},
        )

    if not result.processed:
        logger.warning(f"Webhook acknowledged without processing: {result.reason}")
    return result


@router.get("/webhook/cache-status", response_model=WebhookCacheStatus)
def get_webhook_cache_status(
    service: PaymentService = Depends(get_payment_service),
    current_member: Member = Depends(get_current_member),
):
    return service.get_webhook_cache_status()


@router.post("/subscription", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(PAYMENT_LIMIT)
def create_subscription_payment(
    request: Request,
    payment_request: CreatePaymentRequest,
    service: PaymentService = Depends(get_payment_service),
    current_member: Member = Depends(get_current_member),
):
    """Start a subscription purchase for the current member"""
    try:
        return service.initiate_purchase(
            member_id=current_member.member_id,
            plan_id=payment_request.plan_id,
            payment_method=payment_request.payment_method,
            payment_source=payment_request.payment_source,
            customer_data=payment_request.customer_data,
        )
    except PaymentError as e:
        logger.info(f"Subscription payment rejected: {e}")
        raise to_http_exception(e)


@router.get("/status/{payment_id}", response_model=PaymentStatusResponse)
@limiter.limit(API_LIMIT)
def get_payment_status(
    request: Request,
    payment_id: str,
    service: PaymentService = Depends(get_payment_service),
    current_member: Member = Depends(get_current_member),
):
    payment = _get_owned_payment(service, payment_id, current_member)
    return PaymentService.summarize(payment)


@router.get("/poll/{payment_id}", response_model=PollResponse)
@limiter.limit(API_LIMIT)
async def poll_payment_status(
    request: Request,
    payment_id: str,
    max_attempts: Optional[int] = Query(None, ge=1),
    interval_ms: Optional[int] = Query(None, ge=1),
    service: PaymentService = Depends(get_payment_service),
    poller: PaymentPoller = Depends(get_payment_poller),
    current_member: Member = Depends(get_current_member),
):
    """Wait (bounded) until the payment is successful, failed or the wait times out"""
    await asyncio.to_thread(_get_owned_payment, service, payment_id, current_member)
    try:
        result = await run_until_disconnected(
            poller.poll(payment_id, max_attempts=max_attempts, interval_ms=interval_ms),
            request.is_disconnected,
        )
    except PaymentError as e:
        raise to_http_exception(e)

    if result is None:
        # Nobody is listening anymore
        return JSONResponse(status_code=499, content={"detail": "Client closed request"})
    return result


@router.post("/{payment_id}/refresh", response_model=PaymentStatusResponse)
@limiter.limit(API_LIMIT)
def refresh_payment(
    request: Request,
    payment_id: str,
    service: PaymentService = Depends(get_payment_service),
    current_member: Member = Depends(get_current_member),
):
    """Re-check the charge with the gateway in case a webhook was missed"""
    _get_owned_payment(service, payment_id, current_member)
    try:
        payment = service.refresh_payment_from_gateway(payment_id)
    except PaymentError as e:
        raise to_http_exception(e)
    return PaymentService.summarize(payment)


@router.get("/history", response_model=List[PaymentHistoryItem])
@limiter.limit(API_LIMIT)
def get_payment_history(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
    current_member: Member = Depends(get_current_member),
):
    return service.get_member_payment_history(current_member.member_id)


@router.get("/statistics", response_model=PaymentStatistics)
@limiter.limit(API_LIMIT)
def get_payment_statistics(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
    current_member: Member = Depends(get_current_member),
):
    return service.get_payment_statistics(current_member.member_id)
