from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for scope and capability enforcement failures."""
