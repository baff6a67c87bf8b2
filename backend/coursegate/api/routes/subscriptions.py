"""
Subscription API routes.

All routes act on the authenticated caller; user_id is NEVER accepted from
the request body. Store receipts are not accepted here: they are verified
and submitted by the mobile purchase service through SubscriptionService.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from coursegate.api.dependencies import (
    get_current_user_id,
    get_entitlement_store,
    get_gateway,
    get_request_db_session,
)
from coursegate.entitlements import EntitlementStore
from coursegate.models.subscription import Subscription
from coursegate.platform.errors import get_correlation_id
from coursegate.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


# Request/Response Models

class StartSubscriptionRequest(BaseModel):
    plan_id: str = Field(..., description="Plan ID to subscribe to")


class CheckoutResponse(BaseModel):
    subscription_id: str
    status: str
    provider: str
    requires_payment: bool
    amount_due: int
    currency: str
    message: str
    is_trial: bool = False
    trial_days: int = 0
    trial_fee: int = 0
    key_id: Optional[str] = None
    gateway_subscription_id: Optional[str] = None
    order_id: Optional[str] = None
    short_url: Optional[str] = None


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = Field(False, description="End access now instead of at period end")


class SubscriptionResponse(BaseModel):
    """Subscription details response."""
    id: str
    plan_id: str
    plan_name: Optional[str]
    plan_type: Optional[str]
    target_id: Optional[str]
    provider: str
    status: str
    is_trial: bool
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    trial_ends_at: Optional[datetime]
    grace_until: Optional[datetime]
    cancel_at_period_end: bool
    cancelled_at: Optional[datetime]
    created_at: Optional[datetime]


def _to_response(subscription: Subscription) -> SubscriptionResponse:
    plan = subscription.plan
    return SubscriptionResponse(
        id=subscription.id,
        plan_id=subscription.plan_id,
        plan_name=plan.name if plan else None,
        plan_type=plan.plan_type if plan else None,
        target_id=plan.target_id if plan else None,
        provider=subscription.provider,
        status=subscription.status,
        is_trial=bool(subscription.is_trial),
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        trial_ends_at=subscription.trial_ends_at,
        grace_until=subscription.grace_until,
        cancel_at_period_end=bool(subscription.cancel_at_period_end),
        cancelled_at=subscription.cancelled_at,
        created_at=subscription.created_at,
    )


def _service(request: Request, db: Session, gateway, store: EntitlementStore) -> SubscriptionService:
    return SubscriptionService(
        db,
        gateway=gateway,
        entitlement_store=store,
        correlation_id=get_correlation_id(request),
    )


@router.post("", response_model=CheckoutResponse, status_code=201)
async def start_subscription(
    body: StartSubscriptionRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_request_db_session),
    gateway=Depends(get_gateway),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """Start a web checkout for a plan."""
    result = await _service(request, db, gateway, store).initiate_subscription(user_id, body.plan_id)
    return CheckoutResponse(**result.to_dict())


@router.get("", response_model=List[SubscriptionResponse])
async def list_subscriptions(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_request_db_session),
):
    service = SubscriptionService(db)
    return [_to_response(s) for s in service.list_user_subscriptions(user_id)]


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_request_db_session),
):
    return _to_response(SubscriptionService(db).get_subscription(user_id, subscription_id))


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: str,
    request: Request,
    body: Optional[CancelSubscriptionRequest] = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_request_db_session),
    gateway=Depends(get_gateway),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """Cancel at period end (default) or immediately."""
    service = _service(request, db, gateway, store)
    if body is not None and body.immediate:
        subscription = await service.cancel_immediately(user_id, subscription_id)
    else:
        subscription = await service.cancel_at_period_end(user_id, subscription_id)

    logger.info("Subscription cancel requested", extra={
        "subscription_id": subscription_id,
        "immediate": bool(body and body.immediate),
    })
    return _to_response(subscription)


class CancelPendingResponse(BaseModel):
    cancelled: int
    subscription_ids: List[str]


@router.delete("/pending", response_model=CancelPendingResponse)
async def cancel_pending_subscriptions(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_request_db_session),
    gateway=Depends(get_gateway),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """Drop checkouts the caller started and never paid for."""
    cancelled = await _service(request, db, gateway, store).cancel_pending(user_id)
    return CancelPendingResponse(cancelled=len(cancelled), subscription_ids=[s.id for s in cancelled])
