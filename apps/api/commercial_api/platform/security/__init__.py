from commercial_api.platform.security.context import AuthContext
from commercial_api.platform.security.errors import AuthorizationError
from commercial_api.platform.security.rls import apply_community_filter, is_admin_bypass, record_denied_write

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "apply_community_filter",
    "is_admin_bypass",
    "record_denied_write",
]
