"""Role to capability mapping for the commercial pipeline.

The table below has one explicit entry for every role, entity kind and stage.
It is checked against the stage graph when this module is imported, so a stage
added to the graph without a matching permission row fails at startup.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum

from commercial_api.pipeline.stages import STAGE_GRAPH, CompanyStage, EntityKind, LeadStage, StageGraph


class StaffRole(StrEnum):
    SUPER_ADMIN = "super-admin"
    ADMIN = "admin"
    ADMIN_OPS = "admin-ops"
    CRM_COMMERCIAL = "crm-commercial"
    CRM_CONTENT = "crm-content"
    ACCOUNT_MANAGER_STANDARD = "account-manager-standard"
    ACCOUNT_MANAGER_STRATEGIC = "account-manager-strategic"
    ACCOUNT_MANAGER_ENTERPRISE = "account-manager-enterprise"


GLOBAL_ROLES = frozenset({StaffRole.SUPER_ADMIN, StaffRole.ADMIN, StaffRole.ADMIN_OPS})
CRM_ROLES = frozenset({StaffRole.CRM_COMMERCIAL, StaffRole.CRM_CONTENT})
ACCOUNT_MANAGER_ROLES = frozenset(
    {
        StaffRole.ACCOUNT_MANAGER_STANDARD,
        StaffRole.ACCOUNT_MANAGER_STRATEGIC,
        StaffRole.ACCOUNT_MANAGER_ENTERPRISE,
    }
)
TEAM_VIEWER_ROLES = GLOBAL_ROLES | CRM_ROLES


class StageAccess(StrEnum):
    NONE = "none"
    VIEW = "view"
    ADVANCE = "advance"


class CapabilityAction(StrEnum):
    VIEW_STAGE = "view-stage"
    TRANSITION = "transition"


@dataclass(frozen=True, slots=True)
class Capability:
    action: CapabilityAction
    kind: EntityKind
    stage: str
    target: str | None = None

    def __str__(self) -> str:
        if self.target is None:
            return f"{self.kind}.{self.action}:{self.stage}"
        return f"{self.kind}.{self.action}:{self.stage}>{self.target}"


def view_stage(kind: EntityKind, stage: str) -> Capability:
    return Capability(CapabilityAction.VIEW_STAGE, kind, str(stage))


def transition(kind: EntityKind, from_stage: str, to_stage: str) -> Capability:
    return Capability(CapabilityAction.TRANSITION, kind, str(from_stage), str(to_stage))


class PermissionTableError(RuntimeError):
    pass


_N = StageAccess.NONE
_V = StageAccess.VIEW
_A = StageAccess.ADVANCE

StageAccessTable = Mapping[StaffRole, Mapping[EntityKind, Mapping[str, StageAccess]]]

_ADMIN_ACCESS: Mapping[EntityKind, Mapping[str, StageAccess]] = {
    EntityKind.LEAD: {
        LeadStage.NEW: _A,
        LeadStage.ASSIGNED: _A,
        LeadStage.IN_PROGRESS: _A,
        LeadStage.PENDING_VERIFICATION: _A,
        LeadStage.VERIFIED: _A,
        LeadStage.PRE_CONTRACT: _A,
        LeadStage.CONTRACTED: _A,
    },
    EntityKind.COMPANY: {
        CompanyStage.CREATED: _A,
        CompanyStage.ASSIGNED: _A,
        CompanyStage.ONBOARDING: _A,
        CompanyStage.ACTIVE: _A,
    },
}

_CRM_ACCESS: Mapping[EntityKind, Mapping[str, StageAccess]] = {
    EntityKind.LEAD: {
        LeadStage.NEW: _A,
        LeadStage.ASSIGNED: _N,
        LeadStage.IN_PROGRESS: _N,
        LeadStage.PENDING_VERIFICATION: _A,
        LeadStage.VERIFIED: _A,
        LeadStage.PRE_CONTRACT: _A,
        LeadStage.CONTRACTED: _V,
    },
    EntityKind.COMPANY: {
        CompanyStage.CREATED: _A,
        CompanyStage.ASSIGNED: _V,
        CompanyStage.ONBOARDING: _V,
        CompanyStage.ACTIVE: _V,
    },
}

_ACCOUNT_MANAGER_ACCESS: Mapping[EntityKind, Mapping[str, StageAccess]] = {
    EntityKind.LEAD: {
        LeadStage.NEW: _N,
        LeadStage.ASSIGNED: _A,
        LeadStage.IN_PROGRESS: _A,
        LeadStage.PENDING_VERIFICATION: _V,
        LeadStage.VERIFIED: _N,
        LeadStage.PRE_CONTRACT: _N,
        LeadStage.CONTRACTED: _N,
    },
    EntityKind.COMPANY: {
        CompanyStage.CREATED: _N,
        CompanyStage.ASSIGNED: _A,
        CompanyStage.ONBOARDING: _A,
        CompanyStage.ACTIVE: _V,
    },
}

ROLE_STAGE_ACCESS: StageAccessTable = {
    StaffRole.SUPER_ADMIN: _ADMIN_ACCESS,
    StaffRole.ADMIN: _ADMIN_ACCESS,
    StaffRole.ADMIN_OPS: _ADMIN_ACCESS,
    StaffRole.CRM_COMMERCIAL: _CRM_ACCESS,
    StaffRole.CRM_CONTENT: _CRM_ACCESS,
    StaffRole.ACCOUNT_MANAGER_STANDARD: _ACCOUNT_MANAGER_ACCESS,
    StaffRole.ACCOUNT_MANAGER_STRATEGIC: _ACCOUNT_MANAGER_ACCESS,
    StaffRole.ACCOUNT_MANAGER_ENTERPRISE: _ACCOUNT_MANAGER_ACCESS,
}


def validate_access_table(table: StageAccessTable, graph: StageGraph) -> None:
    missing_roles = set(StaffRole) - set(table)
    if missing_roles:
        raise PermissionTableError(f"roles without permission rows: {sorted(missing_roles)}")
    for role, per_kind in table.items():
        if set(per_kind) != set(graph.kinds):
            raise PermissionTableError(f"{role} must list exactly the kinds {sorted(graph.kinds)}")
        for kind, per_stage in per_kind.items():
            expected = set(graph.stages(kind))
            listed = {str(stage) for stage in per_stage}
            if listed != expected:
                raise PermissionTableError(
                    f"{role}/{kind} stages mismatch: missing={sorted(expected - listed)} extra={sorted(listed - expected)}"
                )
            for stage, access in per_stage.items():
                if not isinstance(access, StageAccess):
                    raise PermissionTableError(f"{role}/{kind}/{stage} has invalid access {access!r}")


def parse_role(value: str | None) -> StaffRole | None:
    """Accept both `crm-commercial` and `CRM_COMMERCIAL` spellings."""

    if not value:
        return None
    normalized = value.strip().lower().replace("_", "-")
    try:
        return StaffRole(normalized)
    except ValueError:
        return None


class PermissionEngine:
    def __init__(self, table: StageAccessTable = ROLE_STAGE_ACCESS, graph: StageGraph = STAGE_GRAPH) -> None:
        validate_access_table(table, graph)
        self._table = table
        self._graph = graph
        self._capabilities = {role: self._build_capabilities(role) for role in StaffRole}

    def _build_capabilities(self, role: StaffRole) -> frozenset[Capability]:
        grants: set[Capability] = set()
        for kind in self._graph.kinds:
            for stage in self._graph.stages(kind):
                access = self._table[role][kind][stage]
                if access is StageAccess.NONE:
                    continue
                grants.add(view_stage(kind, stage))
                if access is StageAccess.ADVANCE:
                    for target in self._graph.allowed_transitions(kind, stage):
                        grants.add(transition(kind, stage, target))
        return frozenset(grants)

    def capabilities(self, role: StaffRole) -> frozenset[Capability]:
        return self._capabilities[StaffRole(role)]

    def stage_access(self, role: StaffRole, kind: EntityKind, stage: str) -> StageAccess:
        return self._table[StaffRole(role)][kind][self._graph.require_stage(kind, stage)]

    def can_view(self, role: StaffRole, kind: EntityKind, stage: str) -> bool:
        self._graph.require_stage(kind, stage)
        return view_stage(kind, stage) in self.capabilities(role)

    def can_transition(self, role: StaffRole, kind: EntityKind, from_stage: str, to_stage: str) -> bool:
        self._graph.require_stage(kind, from_stage)
        self._graph.require_stage(kind, to_stage)
        return transition(kind, from_stage, to_stage) in self.capabilities(role)

    def can_transition_from(self, role: StaffRole, kind: EntityKind, stage: str) -> bool:
        return self.stage_access(role, kind, stage) is StageAccess.ADVANCE

    def can_reassign(self, role: StaffRole, kind: EntityKind, stage: str) -> bool:
        """Account managers may not reassign; other roles reassign on stages they advance."""

        return not self.restricted_to_own_book(role) and self.can_transition_from(role, kind, stage)

    def is_authorized(self, role: StaffRole, actor_community_id: str | None, resource_community_id: str | None) -> bool:
        """Tenant check: scoped actors only touch resources of their own community."""

        if self.is_global(role) or resource_community_id is None:
            return True
        return actor_community_id is not None and str(actor_community_id) == str(resource_community_id)

    @staticmethod
    def is_global(role: StaffRole) -> bool:
        return role in GLOBAL_ROLES

    @staticmethod
    def restricted_to_own_book(role: StaffRole) -> bool:
        return role in ACCOUNT_MANAGER_ROLES

    @staticmethod
    def can_view_team(role: StaffRole) -> bool:
        return role in TEAM_VIEWER_ROLES


PERMISSION_ENGINE = PermissionEngine()
