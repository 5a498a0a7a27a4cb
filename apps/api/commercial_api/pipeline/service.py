from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from commercial_api import audit, events
from commercial_api.core.config import get_settings
from commercial_api.pipeline.actor import ActorUser, to_auth_context
from commercial_api.pipeline.assignment import AssignmentTracker
from commercial_api.pipeline.errors import EntityNotFoundError, ForbiddenError
from commercial_api.pipeline.models import PipelineCompany, PipelineEntity, PipelineLead, utcnow
from commercial_api.pipeline.permissions import ACCOUNT_MANAGER_ROLES, PERMISSION_ENGINE, PermissionEngine
from commercial_api.pipeline.repository import EntityFilter, SqlPipelineStore
from commercial_api.pipeline.schemas import (
    AssigneeRequest,
    BoardColumnRead,
    BoardRead,
    CompanyCreate,
    CompanyRead,
    LeadCreate,
    LeadRead,
    PendingItemRead,
    ReassignmentRead,
    StageDefinitionRead,
    StageGraphRead,
    StageHistoryRead,
    StatsRead,
    TeamMemberStatsRead,
    TransitionRead,
    TransitionRequest,
    WorkloadMemberRead,
    WorkloadRead,
)
from commercial_api.pipeline.stages import STAGE_GRAPH, EntityKind, StageGraph
from commercial_api.pipeline.stats import PipelineStats, StatsAggregator, StatsScope, StatsScopeKind
from commercial_api.pipeline.transitions import TransitionValidator
from commercial_api.pipeline.visibility import VISIBILITY_FILTER, RoleVisibilityFilter

logger = logging.getLogger("commercial_api.pipeline.service")


class PipelineService:
    """Entry points used by the HTTP layer; one store per call, bound to the request session."""

    def __init__(
        self,
        graph: StageGraph = STAGE_GRAPH,
        permissions: PermissionEngine = PERMISSION_ENGINE,
        visibility: RoleVisibilityFilter = VISIBILITY_FILTER,
    ) -> None:
        self.graph = graph
        self.permissions = permissions
        self.visibility = visibility

    def stage_graphs(self) -> list[StageGraphRead]:
        return [
            StageGraphRead(
                kind=kind,
                initial_stage=self.graph.initial_stage(kind),
                terminal_stage=self.graph.terminal_stage(kind),
                stages=[
                    StageDefinitionRead(
                        id=stage,
                        label=self.graph.label(kind, stage),
                        allowed_transitions=sorted(self.graph.allowed_transitions(kind, stage)),
                        is_terminal=self.graph.is_terminal(kind, stage),
                    )
                    for stage in self.graph.stages(kind)
                ],
            )
            for kind in self.graph.kinds
        ]

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        initial = self.graph.initial_stage(EntityKind.LEAD)
        if not self.permissions.can_transition_from(actor_user.role, EntityKind.LEAD, initial):
            raise ForbiddenError(f"role {actor_user.role} may not create leads", role=str(actor_user.role))
        community_id = self._resolve_community(actor_user, dto.community_id)
        store = SqlPipelineStore(session)
        if dto.assigned_to_id is not None:
            self._require_staff(store, dto.assigned_to_id)

        now = utcnow()
        lead = PipelineLead(
            company_name=dto.company_name,
            contact_name=dto.contact_name,
            email=dto.email,
            phone=dto.phone,
            sector=dto.sector,
            stage=initial,
            status="open",
            priority=dto.priority,
            estimated_value=dto.estimated_value,
            score=dto.score,
            assigned_to_id=dto.assigned_to_id,
            assigned_at=now if dto.assigned_to_id else None,
            community_id=community_id,
            stage_entered_at=now,
            created_at=now,
            updated_at=now,
        )
        store.add_entity(lead)
        AssignmentTracker(store, self.graph).record_creation(EntityKind.LEAD, lead, actor_user, now)
        store.commit()

        created = self._to_read(EntityKind.LEAD, lead)
        self._announce_created(EntityKind.LEAD, created.model_dump(mode="json"), actor_user)
        return created

    def create_company(self, session: Session, actor_user: ActorUser, dto: CompanyCreate) -> CompanyRead:
        initial = self.graph.initial_stage(EntityKind.COMPANY)
        if not self.permissions.can_transition_from(actor_user.role, EntityKind.COMPANY, initial):
            raise ForbiddenError(f"role {actor_user.role} may not create companies", role=str(actor_user.role))
        community_id = self._resolve_community(actor_user, dto.community_id)
        store = SqlPipelineStore(session)
        if dto.account_manager_id is not None:
            self._require_staff(store, dto.account_manager_id)

        now = utcnow()
        company = PipelineCompany(
            name=dto.name,
            email=dto.email,
            phone=dto.phone,
            sector=dto.sector,
            stage=initial,
            status=dto.status,
            account_manager_id=dto.account_manager_id,
            assigned_at=now if dto.account_manager_id else None,
            community_id=community_id,
            stage_entered_at=now,
            created_at=now,
            updated_at=now,
        )
        store.add_entity(company)
        AssignmentTracker(store, self.graph).record_creation(EntityKind.COMPANY, company, actor_user, now)
        store.commit()

        created = self._to_read(EntityKind.COMPANY, company)
        self._announce_created(EntityKind.COMPANY, created.model_dump(mode="json"), actor_user)
        return created

    def visible_board(self, session: Session, actor_user: ActorUser, kind: EntityKind) -> BoardRead:
        store = SqlPipelineStore(session)
        ctx = to_auth_context(actor_user)
        limit = get_settings().board_column_limit
        now = utcnow()
        own_book = self.permissions.restricted_to_own_book(actor_user.role)

        columns: list[BoardColumnRead] = []
        for stage in self.visibility.visible_stages(actor_user.role, kind):
            entities = store.query_entities(
                kind,
                EntityFilter(
                    stages=(stage,),
                    assignee_ids=(actor_user.user_id,) if own_book else None,
                    limit=limit,
                ),
                ctx,
            )
            columns.append(
                BoardColumnRead(
                    id=stage,
                    label=self.graph.label(kind, stage),
                    entities=[self._to_read(kind, entity, now=now) for entity in entities],
                )
            )
        return BoardRead(kind=kind, stages=columns)

    def get_entity(self, session: Session, actor_user: ActorUser, kind: EntityKind, entity_id: uuid.UUID) -> LeadRead | CompanyRead:
        entity = self._get_visible_entity(SqlPipelineStore(session), actor_user, kind, entity_id)
        return self._to_read(kind, entity)

    def history(
        self,
        session: Session,
        actor_user: ActorUser,
        kind: EntityKind,
        entity_id: uuid.UUID,
    ) -> list[StageHistoryRead]:
        store = SqlPipelineStore(session)
        entity = self._get_visible_entity(store, actor_user, kind, entity_id)
        entries = AssignmentTracker(store, self.graph).history(kind, entity.id)
        return [StageHistoryRead.model_validate(entry) for entry in entries]

    def transition(
        self,
        session: Session,
        actor_user: ActorUser,
        kind: EntityKind,
        entity_id: uuid.UUID,
        dto: TransitionRequest,
    ) -> TransitionRead:
        validator = TransitionValidator(SqlPipelineStore(session), graph=self.graph, permissions=self.permissions)
        outcome = validator.attempt_transition(
            kind,
            entity_id,
            dto.target_stage,
            actor_user,
            expected_current_stage=dto.expected_current_stage,
            assigned_to_id=dto.assigned_to_id,
        )
        converted = outcome.converted_company
        return TransitionRead(
            entity=self._to_read(kind, outcome.entity),
            from_stage=outcome.from_stage,
            to_stage=outcome.to_stage,
            converted_company=self._to_read(EntityKind.COMPANY, converted) if converted is not None else None,
        )

    def reassign(
        self,
        session: Session,
        actor_user: ActorUser,
        kind: EntityKind,
        entity_id: uuid.UUID,
        dto: AssigneeRequest,
    ) -> ReassignmentRead:
        validator = TransitionValidator(SqlPipelineStore(session), graph=self.graph, permissions=self.permissions)
        outcome = validator.attempt_reassignment(
            kind,
            entity_id,
            dto.assigned_to_id,
            actor_user,
            expected_current_stage=dto.expected_current_stage,
            expected_row_version=dto.expected_row_version,
        )
        return ReassignmentRead(
            entity=self._to_read(kind, outcome.entity),
            stage=outcome.stage,
            previous_assignee_id=outcome.previous_assignee_id,
            assignee_id=outcome.assignee_id,
            changed=outcome.changed,
        )

    def workload(self, session: Session, actor_user: ActorUser, kind: EntityKind) -> WorkloadRead:
        """Open work per team member plus the queue of entities nobody owns yet."""

        if not self.permissions.can_view_team(actor_user.role):
            raise ForbiddenError("workload requires a team viewer role", role=str(actor_user.role))
        store = SqlPipelineStore(session)
        ctx = to_auth_context(actor_user)
        if actor_user.is_global_admin:
            members = store.list_staff(ACCOUNT_MANAGER_ROLES)
        else:
            members = store.list_subordinates(actor_user.user_id)

        open_stages = tuple(stage for stage in self.graph.stages(kind) if not self.graph.is_terminal(kind, stage))
        rows = [
            WorkloadMemberRead(
                user_id=member.id,
                name=member.name,
                role=member.role,
                active_count=len(
                    store.query_entities(kind, EntityFilter(stages=open_stages, assignee_ids=(member.id,)), ctx)
                ),
            )
            for member in members
        ]

        unassigned = store.query_entities(
            kind,
            EntityFilter(stages=(self.graph.initial_stage(kind),), unassigned_only=True, oldest_first=True),
            ctx,
        )
        now = utcnow()
        return WorkloadRead(
            kind=kind,
            members=rows,
            unassigned_count=len(unassigned),
            unassigned=[self._to_read(kind, entity, now=now) for entity in unassigned[: get_settings().work_queue_limit]],
        )

    def pending(self, session: Session, actor_user: ActorUser, kind: EntityKind) -> list[PendingItemRead]:
        """Entities waiting on the actor's role, longest in stage first."""

        stages = tuple(
            stage
            for stage in self.graph.stages(kind)
            if not self.graph.is_terminal(kind, stage)
            and self.permissions.can_transition_from(actor_user.role, kind, stage)
        )
        if not stages:
            return []
        own_book = self.permissions.restricted_to_own_book(actor_user.role)
        entities = SqlPipelineStore(session).query_entities(
            kind,
            EntityFilter(
                stages=stages,
                assignee_ids=(actor_user.user_id,) if own_book else None,
                oldest_first=True,
                limit=get_settings().work_queue_limit,
            ),
            to_auth_context(actor_user),
        )
        now = utcnow()
        items: list[PendingItemRead] = []
        for entity in entities:
            is_lead = isinstance(entity, PipelineLead)
            items.append(
                PendingItemRead(
                    kind=kind,
                    id=entity.id,
                    name=entity.company_name if is_lead else entity.name,
                    stage=entity.stage,
                    priority=entity.priority if is_lead else None,
                    estimated_value=entity.estimated_value if is_lead else None,
                    assigned_to_id=entity.assignee_id,
                    days_in_stage=AssignmentTracker.days_in_current_stage(entity, now),
                    stage_entered_at=entity.stage_entered_at,
                )
            )
        return items

    def stats(
        self,
        session: Session,
        actor_user: ActorUser,
        kind: EntityKind,
        scope: StatsScopeKind,
        user_id: str | None = None,
    ) -> StatsRead:
        target_user_id = user_id or actor_user.user_id
        if target_user_id != actor_user.user_id and not self.permissions.can_view_team(actor_user.role):
            raise ForbiddenError("only team viewers may read another member's statistics", user_id=target_user_id)
        if scope == StatsScopeKind.TENANT and not self.permissions.can_view_team(actor_user.role):
            raise ForbiddenError("tenant statistics require a team viewer role", role=str(actor_user.role))

        community_id = None if actor_user.is_global_admin else actor_user.community_id
        stats_scope = StatsScope(
            kind=kind,
            scope=scope,
            user_id=None if scope == StatsScopeKind.TENANT else target_user_id,
            community_id=community_id if scope == StatsScopeKind.TENANT else None,
        )
        store = SqlPipelineStore(session)
        stats = StatsAggregator(store, self.graph).compute_stats(stats_scope, to_auth_context(actor_user))
        return self._to_stats_read(stats_scope, stats)

    def team_stats(self, session: Session, actor_user: ActorUser, kind: EntityKind) -> list[TeamMemberStatsRead]:
        if not self.permissions.can_view_team(actor_user.role):
            raise ForbiddenError("team statistics require a team viewer role", role=str(actor_user.role))
        store = SqlPipelineStore(session)
        rows = StatsAggregator(store, self.graph).team_stats(kind, actor_user.user_id, to_auth_context(actor_user))
        return [
            TeamMemberStatsRead(
                user_id=member.id,
                name=member.name,
                role=member.role,
                stats=self._to_stats_read(StatsScope(kind, StatsScopeKind.ACTOR, user_id=member.id), stats),
            )
            for member, stats in rows
        ]

    def _get_visible_entity(
        self,
        store: SqlPipelineStore,
        actor_user: ActorUser,
        kind: EntityKind,
        entity_id: uuid.UUID,
    ) -> PipelineEntity:
        entity = store.load_entity(kind, entity_id)
        visible = (
            self.visibility.is_visible(actor_user.role, kind, entity.stage)
            and self.permissions.is_authorized(actor_user.role, actor_user.community_id, entity.community_id)
            and (
                not self.permissions.restricted_to_own_book(actor_user.role)
                or entity.assignee_id == actor_user.user_id
            )
        )
        if not visible:
            raise EntityNotFoundError(str(kind), str(entity_id))
        return entity

    @staticmethod
    def _resolve_community(actor_user: ActorUser, requested: str | None) -> str | None:
        if actor_user.is_global_admin:
            return requested
        if requested is not None and requested != actor_user.community_id:
            raise ForbiddenError("cannot create records in another community", community_id=requested)
        return actor_user.community_id

    @staticmethod
    def _require_staff(store: SqlPipelineStore, user_id: str) -> None:
        staff = store.get_staff_user(user_id)
        if staff is None or not staff.is_active:
            raise EntityNotFoundError("staff_user", user_id)

    def _to_read(self, kind: EntityKind, entity: PipelineEntity, now: datetime | None = None) -> LeadRead | CompanyRead:
        schema = LeadRead if kind == EntityKind.LEAD else CompanyRead
        read = schema.model_validate(entity)
        read.days_in_stage = AssignmentTracker.days_in_current_stage(entity, now)
        return read

    @staticmethod
    def _to_stats_read(scope: StatsScope, stats: PipelineStats) -> StatsRead:
        return StatsRead(
            kind=scope.kind,
            scope=str(scope.scope),
            user_id=scope.user_id,
            community_id=scope.community_id,
            per_stage=stats.per_stage,
            total_count=stats.total_count,
            pending_count=stats.pending_count,
            in_progress_count=stats.in_progress_count,
            completed_count=stats.completed_count,
            total_value=stats.total_value,
            conversion_rate=stats.conversion_rate,
            avg_days_to_convert=stats.avg_days_to_convert,
        )

    @staticmethod
    def _announce_created(kind: EntityKind, snapshot: dict[str, Any], actor_user: ActorUser) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=f"crm.pipeline.{kind}",
            entity_id=snapshot["id"],
            action="create",
            before=None,
            after=snapshot,
            correlation_id=actor_user.correlation_id,
            community_id=snapshot.get("community_id"),
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": f"crm.pipeline.{kind}.created",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor_user.user_id,
                "community_id": snapshot.get("community_id"),
                "payload": {"entity_id": snapshot["id"], "stage": snapshot["stage"]},
                "version": 1,
                "correlation_id": actor_user.correlation_id,
            }
        )
        logger.info("pipeline.entity.created", extra={"entity_kind": str(kind), "entity_id": snapshot["id"]})


pipeline_service = PipelineService()
