from __future__ import annotations

from dataclasses import dataclass

from commercial_api.pipeline.permissions import GLOBAL_ROLES, StaffRole
from commercial_api.platform.security.context import AuthContext


@dataclass
class ActorUser:
    user_id: str
    role: StaffRole
    community_id: str | None = None
    name: str | None = None
    correlation_id: str | None = None

    @property
    def is_global_admin(self) -> bool:
        return self.role in GLOBAL_ROLES


def to_auth_context(actor_user: ActorUser) -> AuthContext:
    return AuthContext(
        user_id=actor_user.user_id,
        role=str(actor_user.role),
        community_id=actor_user.community_id,
        correlation_id=actor_user.correlation_id,
        is_global_admin=actor_user.is_global_admin,
    )
