from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from commercial_api import audit, events
from commercial_api.metrics import observe_transition, observe_transition_rejected
from commercial_api.pipeline.actor import ActorUser, to_auth_context
from commercial_api.pipeline.assignment import AssignmentTracker
from commercial_api.pipeline.conversion import ConversionLinker
from commercial_api.pipeline.errors import (
    AssignmentRequiredError,
    ConflictError,
    EntityArchivedError,
    EntityNotFoundError,
    ForbiddenError,
    InvalidTransitionError,
    PipelineError,
)
from commercial_api.pipeline.models import PipelineCompany, PipelineEntity, PipelineLead, utcnow
from commercial_api.pipeline.permissions import PERMISSION_ENGINE, PermissionEngine
from commercial_api.pipeline.repository import PipelineStore
from commercial_api.pipeline.stages import STAGE_GRAPH, EntityKind, StageGraph
from commercial_api.platform.security.rls import record_denied_write

logger = logging.getLogger("commercial_api.pipeline.transitions")
tracer = trace.get_tracer("commercial_api.pipeline")


@dataclass
class TransitionOutcome:
    kind: EntityKind
    entity: PipelineEntity
    from_stage: str
    to_stage: str
    converted_company: PipelineCompany | None = None


@dataclass
class ReassignmentOutcome:
    kind: EntityKind
    entity: PipelineEntity
    stage: str
    previous_assignee_id: str | None
    assignee_id: str | None
    changed: bool = True


class TransitionValidator:
    """Accepts or rejects a single stage move and commits accepted ones.

    The commit is a conditional update keyed on the stage the caller observed,
    so two actors racing on the same entity produce one winner and one
    ConflictError. Rejections are never retried here.
    """

    def __init__(
        self,
        store: PipelineStore,
        *,
        graph: StageGraph = STAGE_GRAPH,
        permissions: PermissionEngine = PERMISSION_ENGINE,
        tracker: AssignmentTracker | None = None,
        linker: ConversionLinker | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.graph = graph
        self.permissions = permissions
        self.tracker = tracker or AssignmentTracker(store, graph)
        self.linker = linker or ConversionLinker(store, self.tracker, graph)
        self.clock = clock

    def validate(
        self,
        kind: EntityKind,
        entity: PipelineEntity,
        target_stage: str,
        actor: ActorUser,
        observed_stage: str,
        assigned_to_id: str | None = None,
    ) -> None:
        if isinstance(entity, PipelineLead) and (
            entity.archived_at is not None or entity.stage == self.graph.terminal_stage(kind)
        ):
            raise EntityArchivedError(str(kind), str(entity.id))

        self.graph.require_stage(kind, observed_stage)
        self.graph.require_stage(kind, target_stage)

        if target_stage not in self.graph.allowed_transitions(kind, observed_stage):
            raise InvalidTransitionError(str(kind), observed_stage, target_stage)

        # Capability and scope failures win over a missing assignee.
        self._check_authorization(kind, entity, target_stage, actor, observed_stage)

        if observed_stage == self.graph.initial_stage(kind) and (assigned_to_id or entity.assignee_id) is None:
            raise AssignmentRequiredError(str(kind), observed_stage, target_stage)

        if assigned_to_id is not None:
            assignee = self.store.get_staff_user(assigned_to_id)
            if assignee is None or not assignee.is_active:
                raise EntityNotFoundError("staff_user", assigned_to_id)

    def _check_authorization(
        self,
        kind: EntityKind,
        entity: PipelineEntity,
        target_stage: str,
        actor: ActorUser,
        observed_stage: str,
    ) -> None:
        if not self.permissions.can_transition(actor.role, kind, observed_stage, target_stage):
            raise ForbiddenError(
                f"role {actor.role} may not move a {kind} from {observed_stage} to {target_stage}",
                role=str(actor.role),
                from_stage=observed_stage,
                to_stage=target_stage,
            )

        self._check_community(kind, entity, actor, action="transition")

        if self.permissions.restricted_to_own_book(actor.role) and entity.assignee_id != actor.user_id:
            raise ForbiddenError(f"{kind} is not assigned to the acting account manager", entity_id=str(entity.id))

    def _check_community(self, kind: EntityKind, entity: PipelineEntity, actor: ActorUser, *, action: str) -> None:
        if not self.permissions.is_authorized(actor.role, actor.community_id, entity.community_id):
            record_denied_write(
                f"crm.pipeline.{kind}",
                to_auth_context(actor),
                community_id=entity.community_id,
                action=action,
            )
            raise ForbiddenError(f"{kind} belongs to another community", community_id=entity.community_id)

    def attempt_transition(
        self,
        kind: EntityKind,
        entity_id: uuid.UUID,
        target_stage: str,
        actor: ActorUser,
        *,
        expected_current_stage: str | None = None,
        assigned_to_id: str | None = None,
    ) -> TransitionOutcome:
        with tracer.start_as_current_span("crm.pipeline.transition") as span:
            span.set_attribute("pipeline.entity_kind", str(kind))
            span.set_attribute("pipeline.entity_id", str(entity_id))
            span.set_attribute("pipeline.to_stage", str(target_stage))
            span.set_attribute("user.id", actor.user_id)
            try:
                outcome = self._attempt(kind, entity_id, target_stage, actor, expected_current_stage, assigned_to_id)
            except PipelineError as exc:
                self.store.rollback()
                span.set_attribute("pipeline.rejection", exc.code)
                span.set_status(Status(StatusCode.ERROR, exc.code))
                observe_transition_rejected(str(kind), exc.code)
                logger.info(
                    "pipeline.transition.rejected",
                    extra={
                        "entity_kind": str(kind),
                        "entity_id": str(entity_id),
                        "from_stage": exc.details.get("from_stage", expected_current_stage),
                        "to_stage": str(target_stage),
                        "user_id": actor.user_id,
                        "reason": exc.code,
                    },
                )
                raise
            except Exception as exc:
                self.store.rollback()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise

            span.set_attribute("pipeline.from_stage", outcome.from_stage)
            self._announce(outcome, actor)
            return outcome

    def _attempt(
        self,
        kind: EntityKind,
        entity_id: uuid.UUID,
        target_stage: str,
        actor: ActorUser,
        expected_current_stage: str | None,
        assigned_to_id: str | None,
    ) -> TransitionOutcome:
        entity = self.store.load_entity(kind, entity_id)
        observed_stage = expected_current_stage if expected_current_stage is not None else entity.stage
        self.validate(kind, entity, target_stage, actor, observed_stage, assigned_to_id)

        if entity.stage != observed_stage:
            raise ConflictError(str(kind), str(entity_id), observed_stage, entity.stage)

        now = self.clock()
        changes = self.tracker.stage_changes(kind, entity, target_stage, actor, now, assigned_to_id)
        updated = self.store.save_stage(kind, entity.id, expected_stage=observed_stage, changes=changes)
        self.tracker.record_transition(kind, updated, observed_stage, target_stage, actor, now)

        converted_company = None
        if isinstance(updated, PipelineLead) and self.graph.is_terminal(kind, target_stage):
            converted_company = self.linker.convert(updated, actor, now)

        self.store.commit()
        return TransitionOutcome(
            kind=kind,
            entity=updated,
            from_stage=observed_stage,
            to_stage=target_stage,
            converted_company=converted_company,
        )

    def _announce(self, outcome: TransitionOutcome, actor: ActorUser) -> None:
        entity = outcome.entity
        observe_transition(str(outcome.kind), outcome.from_stage, outcome.to_stage)
        audit.record(
            actor_user_id=actor.user_id,
            entity_type=f"crm.pipeline.{outcome.kind}",
            entity_id=str(entity.id),
            action="transition",
            before={"stage": outcome.from_stage},
            after={"stage": outcome.to_stage, "assignee_id": entity.assignee_id, "row_version": entity.row_version},
            correlation_id=actor.correlation_id,
            community_id=entity.community_id,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "crm.pipeline.stage_changed",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor.user_id,
                "community_id": entity.community_id,
                "payload": {
                    "entity_kind": str(outcome.kind),
                    "entity_id": str(entity.id),
                    "from_stage": outcome.from_stage,
                    "to_stage": outcome.to_stage,
                    "assignee_id": entity.assignee_id,
                },
                "version": 1,
                "correlation_id": actor.correlation_id,
            }
        )
        logger.info(
            "pipeline.transition.accepted",
            extra={
                "entity_kind": str(outcome.kind),
                "entity_id": str(entity.id),
                "from_stage": outcome.from_stage,
                "to_stage": outcome.to_stage,
                "user_id": actor.user_id,
            },
        )
        if outcome.converted_company is not None and isinstance(entity, PipelineLead):
            self.linker.announce(entity, outcome.converted_company, actor)

    def validate_reassignment(
        self,
        kind: EntityKind,
        entity: PipelineEntity,
        assigned_to_id: str | None,
        actor: ActorUser,
        observed_stage: str,
    ) -> None:
        if isinstance(entity, PipelineLead) and (
            entity.archived_at is not None or entity.stage == self.graph.terminal_stage(kind)
        ):
            raise EntityArchivedError(str(kind), str(entity.id))

        self.graph.require_stage(kind, observed_stage)

        if not self.permissions.can_reassign(actor.role, kind, observed_stage):
            raise ForbiddenError(
                f"role {actor.role} may not reassign a {kind} in {observed_stage}",
                role=str(actor.role),
                stage=observed_stage,
            )
        self._check_community(kind, entity, actor, action="reassign")

        # Only the initial stage may be left without an assignee.
        if assigned_to_id is None and observed_stage != self.graph.initial_stage(kind):
            raise AssignmentRequiredError(str(kind), observed_stage, observed_stage)

        if assigned_to_id is not None:
            assignee = self.store.get_staff_user(assigned_to_id)
            if assignee is None or not assignee.is_active:
                raise EntityNotFoundError("staff_user", assigned_to_id)

    def attempt_reassignment(
        self,
        kind: EntityKind,
        entity_id: uuid.UUID,
        assigned_to_id: str | None,
        actor: ActorUser,
        *,
        expected_current_stage: str | None = None,
        expected_row_version: int | None = None,
    ) -> ReassignmentOutcome:
        """Hand an entity to another staff member, or back to the queue, without moving it."""

        with tracer.start_as_current_span("crm.pipeline.reassign") as span:
            span.set_attribute("pipeline.entity_kind", str(kind))
            span.set_attribute("pipeline.entity_id", str(entity_id))
            span.set_attribute("user.id", actor.user_id)
            try:
                outcome = self._reassign(
                    kind, entity_id, assigned_to_id, actor, expected_current_stage, expected_row_version
                )
            except PipelineError as exc:
                self.store.rollback()
                span.set_attribute("pipeline.rejection", exc.code)
                span.set_status(Status(StatusCode.ERROR, exc.code))
                logger.info(
                    "pipeline.reassignment.rejected",
                    extra={
                        "entity_kind": str(kind),
                        "entity_id": str(entity_id),
                        "user_id": actor.user_id,
                        "reason": exc.code,
                    },
                )
                raise
            except Exception as exc:
                self.store.rollback()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise

            if outcome.changed:
                self._announce_reassignment(outcome, actor)
            return outcome

    def _reassign(
        self,
        kind: EntityKind,
        entity_id: uuid.UUID,
        assigned_to_id: str | None,
        actor: ActorUser,
        expected_current_stage: str | None,
        expected_row_version: int | None,
    ) -> ReassignmentOutcome:
        entity = self.store.load_entity(kind, entity_id)
        observed_stage = expected_current_stage if expected_current_stage is not None else entity.stage
        self.validate_reassignment(kind, entity, assigned_to_id, actor, observed_stage)

        if entity.stage != observed_stage or (
            expected_row_version is not None and entity.row_version != expected_row_version
        ):
            raise ConflictError(str(kind), str(entity_id), observed_stage, entity.stage)

        previous = entity.assignee_id
        if previous == assigned_to_id:
            return ReassignmentOutcome(kind, entity, observed_stage, previous, assigned_to_id, changed=False)

        now = self.clock()
        updated = self.store.save_stage(
            kind,
            entity.id,
            expected_stage=observed_stage,
            changes=self.tracker.assignee_changes(kind, assigned_to_id, now),
            expected_row_version=entity.row_version,
        )
        self.tracker.record_reassignment(kind, updated, actor, now)
        self.store.commit()
        return ReassignmentOutcome(kind, updated, observed_stage, previous, assigned_to_id)

    def _announce_reassignment(self, outcome: ReassignmentOutcome, actor: ActorUser) -> None:
        entity = outcome.entity
        audit.record(
            actor_user_id=actor.user_id,
            entity_type=f"crm.pipeline.{outcome.kind}",
            entity_id=str(entity.id),
            action="reassign",
            before={"assignee_id": outcome.previous_assignee_id},
            after={"assignee_id": outcome.assignee_id, "row_version": entity.row_version},
            correlation_id=actor.correlation_id,
            community_id=entity.community_id,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "crm.pipeline.assignee_changed",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor.user_id,
                "community_id": entity.community_id,
                "payload": {
                    "entity_kind": str(outcome.kind),
                    "entity_id": str(entity.id),
                    "stage": outcome.stage,
                    "previous_assignee_id": outcome.previous_assignee_id,
                    "assignee_id": outcome.assignee_id,
                },
                "version": 1,
                "correlation_id": actor.correlation_id,
            }
        )
        logger.info(
            "pipeline.assignee.changed",
            extra={
                "entity_kind": str(outcome.kind),
                "entity_id": str(entity.id),
                "stage": outcome.stage,
                "user_id": actor.user_id,
            },
        )
