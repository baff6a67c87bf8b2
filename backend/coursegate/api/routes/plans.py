"""
Plan catalogue routes.

GET /api/plans is public. Everything under /api/admin/plans requires an
admin caller; billing terms of an existing plan can never be edited.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from coursegate.api.dependencies import get_gateway, get_request_db_session, require_admin
from coursegate.models.plan import BillingPeriod, PlanType, SubscriptionPlan
from coursegate.platform.errors import ValidationError, get_correlation_id
from coursegate.services.plan_registry import PlanRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["plans"])


class CreatePlanRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    plan_type: PlanType
    subscription_type: BillingPeriod
    price: int = Field(..., gt=0, description="Price in minor units")
    target_id: Optional[str] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    trial_days: int = Field(0, ge=0)
    trial_fee: int = Field(0, ge=0)
    description: Optional[str] = None
    display_order: int = 0


class UpdatePlanRequest(BaseModel):
    """Only display fields; anything else is rejected by the registry."""
    model_config = {"extra": "allow"}

    name: Optional[str] = None
    description: Optional[str] = None
    display_order: Optional[int] = None


class DeactivateTargetRequest(BaseModel):
    target_id: str
    plan_type: PlanType


class PlanResponse(BaseModel):
    """Plan details response."""
    model_config = {"from_attributes": True}

    id: str
    name: str
    description: Optional[str]
    plan_type: str
    target_id: Optional[str]
    subscription_type: str
    price: int
    currency: str
    trial_days: int
    trial_fee: int
    display_order: int
    is_active: bool
    created_at: Optional[datetime] = None


class DeactivationResponse(BaseModel):
    target_id: str
    plan_type: str
    plans_deactivated: int
    subscriptions_cancelled: int
    success: bool
    error_count: int


def _to_response(plan: SubscriptionPlan) -> PlanResponse:
    return PlanResponse.model_validate(plan)


@router.get("/api/plans", response_model=List[PlanResponse])
async def list_plans(
    plan_type: Optional[PlanType] = Query(None),
    target_id: Optional[str] = Query(None),
    db: Session = Depends(get_request_db_session),
):
    plans = PlanRegistry(db).list_active_plans(plan_type=plan_type, target_id=target_id)
    return [_to_response(p) for p in plans]


@router.post("/api/admin/plans", response_model=PlanResponse, status_code=201)
async def create_plan(
    body: CreatePlanRequest,
    request: Request,
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_request_db_session),
    gateway=Depends(get_gateway),
):
    registry = PlanRegistry(db, gateway=gateway, correlation_id=get_correlation_id(request))
    plan = await registry.create_plan(**body.model_dump())
    logger.info("Plan created by admin", extra={"plan_id": plan.id, "admin_id": admin_id})
    return _to_response(plan)


@router.patch("/api/admin/plans/{plan_id}", response_model=PlanResponse)
async def update_plan(
    plan_id: str,
    body: UpdatePlanRequest,
    request: Request,
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_request_db_session),
):
    updates = body.model_dump(exclude_unset=True)
    if not updates:
        raise ValidationError("No fields to update")
    plan = PlanRegistry(db, correlation_id=get_correlation_id(request)).update_plan(plan_id, updates)
    return _to_response(plan)


@router.delete("/api/admin/plans/{plan_id}", response_model=PlanResponse)
async def delete_plan(
    plan_id: str,
    request: Request,
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_request_db_session),
):
    plan = PlanRegistry(db, correlation_id=get_correlation_id(request)).delete_plan(plan_id)
    return _to_response(plan)


@router.post("/api/admin/plans/deactivate-by-target", response_model=DeactivationResponse)
async def deactivate_plans_by_target(
    body: DeactivateTargetRequest,
    request: Request,
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_request_db_session),
    gateway=Depends(get_gateway),
):
    """Called when a course or category is deleted."""
    registry = PlanRegistry(db, gateway=gateway, correlation_id=get_correlation_id(request))
    result = await registry.deactivate_plans_by_target(body.target_id, body.plan_type)
    return DeactivationResponse(**result.to_dict())
