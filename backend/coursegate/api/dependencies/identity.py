"""
Caller identity for billing routes.

Authentication happens upstream: the auth middleware leaves the user id on
request.state.user_id. The X-User-Id header is only honoured when
TRUST_USER_ID_HEADER marks the deployment as sitting behind a proxy that
sets it; otherwise any client could claim any id. user_id is NEVER accepted
from a request body.
"""

import logging
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from coursegate.api.dependencies.request_db import get_request_db_session
from coursegate.config import get_settings
from coursegate.models.user import User
from coursegate.platform.errors import AuthenticationError, PermissionDeniedError

logger = logging.getLogger(__name__)


def get_optional_user_id(request: Request) -> Optional[str]:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        header = request.headers.get("X-User-Id")
        if header and not get_settings().trust_user_id_header:
            logger.warning("Ignoring X-User-Id header from untrusted caller", extra={
                "path": request.url.path,
            })
            header = None
        user_id = header
    if user_id:
        return user_id.strip() or None
    return None


def get_current_user_id(user_id: Optional[str] = Depends(get_optional_user_id)) -> str:
    if not user_id:
        raise AuthenticationError()
    return user_id


def require_admin(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_request_db_session),
) -> str:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None or not user.is_admin:
        raise PermissionDeniedError("Admin access required")
    return user_id
