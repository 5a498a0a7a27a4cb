from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import and_, case, select, update
from sqlalchemy.orm import Session

from commercial_api.pipeline.errors import ConflictError, EntityNotFoundError
from commercial_api.pipeline.models import PipelineCompany, PipelineEntity, PipelineLead, StaffUser, StageHistoryEntry
from commercial_api.pipeline.stages import EntityKind
from commercial_api.platform.security.context import AuthContext
from commercial_api.platform.security.rls import apply_community_filter

MODEL_BY_KIND: dict[EntityKind, type[PipelineLead] | type[PipelineCompany]] = {
    EntityKind.LEAD: PipelineLead,
    EntityKind.COMPANY: PipelineCompany,
}

ASSIGNEE_COLUMN: dict[EntityKind, str] = {
    EntityKind.LEAD: "assigned_to_id",
    EntityKind.COMPANY: "account_manager_id",
}

PRIORITY_RANK = {"HIGH": 3, "MEDIUM": 2, "LOW": 1}


@dataclass(frozen=True, slots=True)
class EntityFilter:
    stages: tuple[str, ...] | None = None
    assignee_ids: tuple[str, ...] | None = None
    community_id: str | None = None
    unassigned_only: bool = False
    oldest_first: bool = False
    limit: int | None = None


class PipelineStore(Protocol):
    def load_entity(self, kind: EntityKind, entity_id: uuid.UUID) -> PipelineEntity: ...

    def save_stage(
        self,
        kind: EntityKind,
        entity_id: uuid.UUID,
        *,
        expected_stage: str,
        changes: dict[str, Any],
        expected_row_version: int | None = None,
    ) -> PipelineEntity: ...

    def append_history(self, entry: StageHistoryEntry) -> StageHistoryEntry: ...

    def add_entity(self, entity: PipelineEntity) -> PipelineEntity: ...

    def query_entities(
        self,
        kind: EntityKind,
        entity_filter: EntityFilter,
        ctx: AuthContext | None = None,
    ) -> list[PipelineEntity]: ...

    def history_for(self, kind: EntityKind, entity_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, list[StageHistoryEntry]]: ...

    def get_staff_user(self, user_id: str) -> StaffUser | None: ...

    def list_subordinates(self, user_id: str) -> list[StaffUser]: ...

    def list_staff(self, roles: Iterable[str]) -> list[StaffUser]: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class SqlPipelineStore:
    """SQLAlchemy implementation of the pipeline data access interface."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def load_entity(self, kind: EntityKind, entity_id: uuid.UUID) -> PipelineEntity:
        model = MODEL_BY_KIND[kind]
        entity = self.session.scalar(select(model).where(model.id == entity_id))
        if entity is None:
            raise EntityNotFoundError(str(kind), str(entity_id))
        return entity

    def save_stage(
        self,
        kind: EntityKind,
        entity_id: uuid.UUID,
        *,
        expected_stage: str,
        changes: dict[str, Any],
        expected_row_version: int | None = None,
    ) -> PipelineEntity:
        model = MODEL_BY_KIND[kind]
        values = dict(changes)
        values["row_version"] = model.row_version + 1
        condition = and_(model.id == entity_id, model.stage == expected_stage)
        if expected_row_version is not None:
            condition = and_(condition, model.row_version == expected_row_version)
        result = self.session.execute(
            update(model)
            .where(condition)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            actual_stage = self.session.scalar(select(model.stage).where(model.id == entity_id))
            if actual_stage is None:
                raise EntityNotFoundError(str(kind), str(entity_id))
            raise ConflictError(str(kind), str(entity_id), expected_stage, actual_stage)

        updated = self.session.scalar(
            select(model).where(model.id == entity_id).execution_options(populate_existing=True)
        )
        if updated is None:
            raise EntityNotFoundError(str(kind), str(entity_id))
        return updated

    def append_history(self, entry: StageHistoryEntry) -> StageHistoryEntry:
        self.session.add(entry)
        self.session.flush()
        return entry

    def add_entity(self, entity: PipelineEntity) -> PipelineEntity:
        self.session.add(entity)
        self.session.flush()
        return entity

    def query_entities(
        self,
        kind: EntityKind,
        entity_filter: EntityFilter,
        ctx: AuthContext | None = None,
    ) -> list[PipelineEntity]:
        model = MODEL_BY_KIND[kind]
        stmt = select(model)
        if entity_filter.stages is not None:
            stmt = stmt.where(model.stage.in_(entity_filter.stages))
        if entity_filter.assignee_ids is not None:
            stmt = stmt.where(getattr(model, ASSIGNEE_COLUMN[kind]).in_(entity_filter.assignee_ids))
        if entity_filter.unassigned_only:
            stmt = stmt.where(getattr(model, ASSIGNEE_COLUMN[kind]).is_(None))
        if entity_filter.community_id is not None:
            stmt = stmt.where(model.community_id == entity_filter.community_id)
        if ctx is not None:
            stmt = apply_community_filter(stmt, ctx)

        if entity_filter.oldest_first:
            stmt = stmt.order_by(model.stage_entered_at, model.id)
        elif model is PipelineLead:
            priority_rank = case(PRIORITY_RANK, value=PipelineLead.priority, else_=0)
            stmt = stmt.order_by(priority_rank.desc(), PipelineLead.updated_at.desc(), PipelineLead.id)
        else:
            stmt = stmt.order_by(PipelineCompany.updated_at.desc(), PipelineCompany.id)
        if entity_filter.limit is not None:
            stmt = stmt.limit(entity_filter.limit)
        return list(self.session.scalars(stmt).all())

    def history_for(self, kind: EntityKind, entity_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, list[StageHistoryEntry]]:
        ids = list(entity_ids)
        grouped: dict[uuid.UUID, list[StageHistoryEntry]] = {entity_id: [] for entity_id in ids}
        if not ids:
            return grouped
        rows = self.session.scalars(
            select(StageHistoryEntry)
            .where(and_(StageHistoryEntry.entity_kind == str(kind), StageHistoryEntry.entity_id.in_(ids)))
            .order_by(StageHistoryEntry.occurred_at, StageHistoryEntry.id)
        ).all()
        for row in rows:
            grouped.setdefault(row.entity_id, []).append(row)
        return grouped

    def get_staff_user(self, user_id: str) -> StaffUser | None:
        return self.session.get(StaffUser, user_id)

    def list_subordinates(self, user_id: str) -> list[StaffUser]:
        """All active staff below `user_id` in the supervisor hierarchy."""

        found: list[StaffUser] = []
        seen = {user_id}
        frontier = [user_id]
        while frontier:
            rows: Sequence[StaffUser] = self.session.scalars(
                select(StaffUser)
                .where(and_(StaffUser.supervisor_id.in_(frontier), StaffUser.is_active.is_(True)))
                .order_by(StaffUser.name, StaffUser.id)
            ).all()
            frontier = []
            for row in rows:
                if row.id in seen:
                    continue
                seen.add(row.id)
                found.append(row)
                frontier.append(row.id)
        return found

    def list_staff(self, roles: Iterable[str]) -> list[StaffUser]:
        stmt = select(StaffUser).where(and_(StaffUser.role.in_(list(roles)), StaffUser.is_active.is_(True)))
        return list(self.session.scalars(stmt.order_by(StaffUser.name, StaffUser.id)).all())

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
