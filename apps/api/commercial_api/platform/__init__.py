from commercial_api.platform.security import AuthContext, AuthorizationError, apply_community_filter, record_denied_write

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "apply_community_filter",
    "record_denied_write",
]
