from __future__ import annotations

from typing import Any

from commercial_api.platform.security.errors import AuthorizationError


class PipelineError(Exception):
    """Base class for every error the pipeline engine reports to its callers."""

    code = "pipeline_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class UnknownStageError(PipelineError):
    code = "pipeline_unknown_stage"
    status_code = 422

    def __init__(self, entity_kind: str, stage: str) -> None:
        super().__init__(f"unknown {entity_kind} stage '{stage}'", entity_kind=entity_kind, stage=stage)


class InvalidTransitionError(PipelineError):
    code = "pipeline_invalid_transition"
    status_code = 422

    def __init__(self, entity_kind: str, from_stage: str, to_stage: str, reason: str = "transition not allowed") -> None:
        super().__init__(
            reason,
            entity_kind=entity_kind,
            from_stage=from_stage,
            to_stage=to_stage,
        )


class AssignmentRequiredError(InvalidTransitionError):
    code = "pipeline_assignment_required"

    def __init__(self, entity_kind: str, from_stage: str, to_stage: str) -> None:
        super().__init__(entity_kind, from_stage, to_stage, reason="an assignee is required to leave the initial stage")


class ForbiddenError(PipelineError, AuthorizationError):
    code = "pipeline_forbidden"
    status_code = 403

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, **details)


class ConflictError(PipelineError):
    code = "pipeline_conflict"
    status_code = 409
    retryable = True

    def __init__(self, entity_kind: str, entity_id: str, expected_stage: str, actual_stage: str | None) -> None:
        super().__init__(
            "entity was moved by another actor; re-fetch and retry",
            entity_kind=entity_kind,
            entity_id=entity_id,
            expected_stage=expected_stage,
            actual_stage=actual_stage,
        )


class EntityArchivedError(PipelineError):
    code = "pipeline_entity_archived"
    status_code = 422

    def __init__(self, entity_kind: str, entity_id: str) -> None:
        super().__init__(f"{entity_kind} is converted and archived", entity_kind=entity_kind, entity_id=entity_id)


class EntityNotFoundError(PipelineError):
    code = "pipeline_not_found"
    status_code = 404

    def __init__(self, entity_kind: str, entity_id: str) -> None:
        super().__init__(f"{entity_kind} not found", entity_kind=entity_kind, entity_id=entity_id)
