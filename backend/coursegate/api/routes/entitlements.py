"""
Entitlement routes.

GET /api/entitlements/me lists the caller's own effective grants. The
/api/admin/entitlements routes list and revoke grants for any user and
require an admin caller.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from coursegate.api.dependencies import get_current_user_id, get_entitlement_store, require_admin
from coursegate.entitlements import EntitlementStore
from coursegate.models.entitlement import UserEntitlement
from coursegate.models.plan import PlanType
from coursegate.platform.errors import get_correlation_id
from coursegate.services.entitlement_admin import EntitlementAdmin

logger = logging.getLogger(__name__)

router = APIRouter(tags=["entitlements"])


class EntitlementResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    user_id: str
    type: str
    target_id: Optional[str]
    status: str
    valid_until: Optional[datetime]
    source: Optional[str]
    created_at: Optional[datetime] = None


class EntitlementPage(BaseModel):
    total: int
    page: int
    limit: int
    items: List[EntitlementResponse]


class RevokeEntitlementRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    type: PlanType
    target_id: Optional[str] = None


class RevokeEntitlementResponse(BaseModel):
    user_id: str
    type: str
    target_id: Optional[str]
    revoked: int


def _to_response(entitlement: UserEntitlement) -> EntitlementResponse:
    return EntitlementResponse.model_validate(entitlement)


@router.get("/api/entitlements/me", response_model=List[EntitlementResponse])
async def my_entitlements(
    user_id: str = Depends(get_current_user_id),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    return [_to_response(e) for e in store.get_active_entitlements(user_id)]


@router.get("/api/admin/entitlements", response_model=EntitlementPage)
async def list_entitlements(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    admin_id: str = Depends(require_admin),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    result = store.list_entitlements(page=page, limit=limit)
    return EntitlementPage(
        total=result["total"],
        page=result["page"],
        limit=result["limit"],
        items=[_to_response(e) for e in result["items"]],
    )


@router.get("/api/admin/entitlements/by-target", response_model=List[EntitlementResponse])
async def list_entitlements_by_target(
    ent_type: PlanType = Query(..., alias="type"),
    target_id: Optional[str] = Query(None),
    admin_id: str = Depends(require_admin),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """Who currently holds a course, a category or the whole app."""
    return [_to_response(e) for e in store.list_by_target(ent_type, target_id)]


@router.post("/api/admin/entitlements/revoke", response_model=RevokeEntitlementResponse)
async def revoke_entitlement(
    body: RevokeEntitlementRequest,
    request: Request,
    admin_id: str = Depends(require_admin),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    admin = EntitlementAdmin(store.session, entitlement_store=store, correlation_id=get_correlation_id(request))
    revoked = admin.revoke(admin_id, body.user_id, body.type, body.target_id)
    return RevokeEntitlementResponse(
        user_id=body.user_id,
        type=body.type.value,
        target_id=body.target_id,
        revoked=revoked,
    )
