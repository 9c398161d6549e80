"""Security utilities exposed for convenience."""

from .auth import (
    SERVICE_ROLE,
    get_current_token_payload,
    get_current_user_id,
    require_role,
)
from .tokens import (
    JWTSettings,
    create_access_token,
    create_service_token,
    get_jwt_settings,
    reset_jwt_settings_cache,
)

__all__ = [
    "JWTSettings",
    "SERVICE_ROLE",
    "create_access_token",
    "create_service_token",
    "get_current_token_payload",
    "get_current_user_id",
    "get_jwt_settings",
    "require_role",
    "reset_jwt_settings_cache",
]
