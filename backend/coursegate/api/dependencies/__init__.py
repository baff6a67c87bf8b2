from coursegate.api.dependencies.request_db import get_request_db_session
from coursegate.api.dependencies.identity import get_current_user_id, get_optional_user_id, require_admin
from coursegate.api.dependencies.billing import get_gateway, get_entitlement_cache, get_entitlement_store

__all__ = [
    "get_request_db_session",
    "get_current_user_id",
    "get_optional_user_id",
    "require_admin",
    "get_gateway",
    "get_entitlement_cache",
    "get_entitlement_store",
]
