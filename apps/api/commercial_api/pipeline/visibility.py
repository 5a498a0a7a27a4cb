from __future__ import annotations

from commercial_api.pipeline.permissions import PERMISSION_ENGINE, PermissionEngine, StaffRole, view_stage
from commercial_api.pipeline.stages import STAGE_GRAPH, EntityKind, StageGraph


class RoleVisibilityFilter:
    """Ordered list of stages a role may see for one entity kind."""

    def __init__(self, graph: StageGraph = STAGE_GRAPH, permissions: PermissionEngine = PERMISSION_ENGINE) -> None:
        self._graph = graph
        self._permissions = permissions

    def visible_stages(self, role: StaffRole, kind: EntityKind) -> tuple[str, ...]:
        grants = self._permissions.capabilities(role)
        return tuple(stage for stage in self._graph.stages(kind) if view_stage(kind, stage) in grants)

    def is_visible(self, role: StaffRole, kind: EntityKind, stage: str) -> bool:
        return stage in self.visible_stages(role, kind)


VISIBILITY_FILTER = RoleVisibilityFilter()
