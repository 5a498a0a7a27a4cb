from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from commercial_api.core.config import get_settings
from commercial_api.core.context import get_request_context


@dataclass
class AuthUser:
    sub: str
    role: str | None
    name: str | None = None
    community_id: str | None = None


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", role=None)

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", role=None)

    subject = str(payload.get("sub", "anonymous"))
    role = payload.get("role")
    community_id = payload.get("community_id")
    user = AuthUser(
        sub=subject,
        role=str(role) if role else None,
        name=str(payload["name"]) if payload.get("name") else None,
        community_id=str(community_id) if community_id else None,
    )
    context = get_request_context(request)
    if context is not None:
        context.user_id = user.sub
        context.role = user.role
        # The signed claim wins over the informational x-community-id header.
        context.community_id = user.community_id
    return user
