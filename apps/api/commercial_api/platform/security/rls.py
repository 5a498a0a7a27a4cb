from __future__ import annotations

from typing import Any

from sqlalchemy import or_
from sqlalchemy.sql import Select

from commercial_api import audit
from commercial_api.metrics import observe_rls_denied_write
from commercial_api.platform.security.context import AuthContext


def is_admin_bypass(ctx: AuthContext) -> bool:
    return ctx.is_global_admin


def apply_community_filter(query: Select[Any], ctx: AuthContext) -> Select[Any]:
    """Restrict queries over models exposing a community_id column to the actor's community.

    Records without a community are shared and stay visible to every actor.
    """

    if is_admin_bypass(ctx):
        return query

    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None or not hasattr(model, "community_id"):
            continue
        column = getattr(model, "community_id")
        if ctx.community_id is None:
            query = query.where(column.is_(None))
        else:
            query = query.where(or_(column.is_(None), column == ctx.community_id))

    return query


def record_denied_write(
    resource: str,
    ctx: AuthContext,
    *,
    community_id: str | None,
    action: str = "write",
) -> None:
    """Count and audit a write that crossed the actor's community boundary."""

    observe_rls_denied_write(resource=resource, scope_type="community")
    audit.record(
        actor_user_id=ctx.user_id,
        entity_type="security.rls",
        entity_id="scope",
        action="rls.denied",
        before=None,
        after={
            "resource": resource,
            "action": action,
            "scope_type": "community",
            "scope_value": community_id,
            "user_id": ctx.user_id,
        },
        correlation_id=ctx.correlation_id,
        community_id=community_id,
    )
