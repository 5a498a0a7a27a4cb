from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None = None
    role: str | None = None
    community_id: str | None = None


def get_request_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "context", None)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Per-request actor context, filled in by the auth dependency once the token is decoded."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        request.state.context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            community_id=request.headers.get("x-community-id"),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        if request.state.context.community_id:
            response.headers["x-community-id"] = request.state.context.community_id
        return response
