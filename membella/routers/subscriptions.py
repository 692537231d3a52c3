import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request

from membella.dependencies import get_current_member, get_subscription_service
from membella.models.user_models import Member
from membella.schemas.subscription import (
    CancelSubscriptionResponse,
    SubscriptionResponse,
    SubscriptionStatsResponse,
)
from membella.services.exceptions import SubscriptionNotFoundError
from membella.services.subscription_service import SubscriptionService
from membella.utils.rate_limit import API_LIMIT, limiter


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("", response_model=List[SubscriptionResponse])
@limiter.limit(API_LIMIT)
def list_subscriptions(
    request: Request,
    service: SubscriptionService = Depends(get_subscription_service),
    current_member: Member = Depends(get_current_member),
):
    """List the current member's subscriptions, newest first"""
    return service.get_member_subscriptions(current_member.member_id)


@router.get("/stats", response_model=SubscriptionStatsResponse)
@limiter.limit(API_LIMIT)
def get_subscription_stats(
    request: Request,
    service: SubscriptionService = Depends(get_subscription_service),
    current_member: Member = Depends(get_current_member),
):
    return service.get_subscription_stats(current_member.member_id)


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
@limiter.limit(API_LIMIT)
def get_subscription(
    request: Request,
    subscription_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
    current_member: Member = Depends(get_current_member),
):
    try:
        return service.get_subscription(subscription_id, current_member.member_id)
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{subscription_id}/cancel", response_model=CancelSubscriptionResponse)
@limiter.limit(API_LIMIT)
def cancel_subscription(
    request: Request,
    subscription_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
    current_member: Member = Depends(get_current_member),
):
    """Cancel a subscription; cancelling twice returns the cancelled record"""
    try:
        return service.cancel_subscription(subscription_id, current_member.member_id)
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
