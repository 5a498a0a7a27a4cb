from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class AuthContext:
    """Authorization context used by community scope checks."""

    user_id: str
    role: str | None = None
    community_id: str | None = None
    correlation_id: str | None = None
    is_global_admin: bool = False
