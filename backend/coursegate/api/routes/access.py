"""Access checks for the content layer. Anonymous callers are allowed."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from coursegate.api.dependencies import get_entitlement_cache, get_optional_user_id, get_request_db_session
from coursegate.entitlements import AccessChecker, EntitlementCache

router = APIRouter(prefix="/api/access", tags=["access"])


class AccessResponse(BaseModel):
    resource_type: str
    resource_id: Optional[str]
    has_access: bool
    is_paid: bool


def _check(resource_type: str, resource_id: Optional[str], user_id, db, cache) -> AccessResponse:
    checker = AccessChecker(db, cache=cache)
    resource_type = resource_type.upper()
    allowed = checker.has_access(user_id, resource_type, resource_id)
    return AccessResponse(
        resource_type=resource_type,
        resource_id=resource_id,
        has_access=allowed,
        is_paid=checker.is_paid("WHOLE_APP" if resource_type == "APP" else resource_type, resource_id),
    )


@router.get("/app", response_model=AccessResponse)
async def check_app_access(
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: Session = Depends(get_request_db_session),
    cache: Optional[EntitlementCache] = Depends(get_entitlement_cache),
):
    return _check("APP", None, user_id, db, cache)


@router.get("/{resource_type}/{resource_id}", response_model=AccessResponse)
async def check_access(
    resource_type: str,
    resource_id: str,
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: Session = Depends(get_request_db_session),
    cache: Optional[EntitlementCache] = Depends(get_entitlement_cache),
):
    return _check(resource_type, resource_id, user_id, db, cache)
