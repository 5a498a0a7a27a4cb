from commercial_api.pipeline.errors import (
    AssignmentRequiredError,
    ConflictError,
    EntityArchivedError,
    EntityNotFoundError,
    ForbiddenError,
    InvalidTransitionError,
    PipelineError,
    UnknownStageError,
)
from commercial_api.pipeline.permissions import PERMISSION_ENGINE, PermissionEngine, StaffRole
from commercial_api.pipeline.stages import STAGE_GRAPH, CompanyStage, EntityKind, LeadStage, StageGraph
from commercial_api.pipeline.visibility import VISIBILITY_FILTER, RoleVisibilityFilter

__all__ = [
    "AssignmentRequiredError",
    "CompanyStage",
    "ConflictError",
    "EntityArchivedError",
    "EntityKind",
    "EntityNotFoundError",
    "ForbiddenError",
    "InvalidTransitionError",
    "LeadStage",
    "PERMISSION_ENGINE",
    "PermissionEngine",
    "PipelineError",
    "RoleVisibilityFilter",
    "STAGE_GRAPH",
    "StaffRole",
    "StageGraph",
    "UnknownStageError",
    "VISIBILITY_FILTER",
]
