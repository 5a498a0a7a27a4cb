"""Responsibility and stage-entry bookkeeping for pipeline entities."""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

from commercial_api.pipeline.actor import ActorUser
from commercial_api.pipeline.models import PipelineEntity, StageHistoryEntry, as_utc, utcnow
from commercial_api.pipeline.repository import ASSIGNEE_COLUMN, PipelineStore
from commercial_api.pipeline.stages import STAGE_GRAPH, CompanyStage, EntityKind, LeadStage, StageGraph

MILESTONE_COLUMNS: dict[tuple[EntityKind, str], str] = {
    (EntityKind.LEAD, LeadStage.ASSIGNED): "assigned_at",
    (EntityKind.LEAD, LeadStage.VERIFIED): "verified_at",
    (EntityKind.LEAD, LeadStage.PRE_CONTRACT): "pre_contract_at",
    (EntityKind.LEAD, LeadStage.CONTRACTED): "contracted_at",
    (EntityKind.COMPANY, CompanyStage.ASSIGNED): "assigned_at",
    (EntityKind.COMPANY, CompanyStage.ACTIVE): "onboarding_completed_at",
}

STATUS_ON_ENTRY: dict[tuple[EntityKind, str], str] = {
    (EntityKind.LEAD, LeadStage.CONTRACTED): "won",
    (EntityKind.COMPANY, CompanyStage.ACTIVE): "approved",
}


class AssignmentTracker:
    def __init__(self, store: PipelineStore, graph: StageGraph = STAGE_GRAPH) -> None:
        self.store = store
        self.graph = graph

    def stage_changes(
        self,
        kind: EntityKind,
        entity: PipelineEntity,
        target_stage: str,
        actor: ActorUser,
        timestamp: datetime,
        assigned_to_id: str | None = None,
    ) -> dict[str, Any]:
        """Column values written together with the stage change."""

        changes: dict[str, Any] = {
            "stage": target_stage,
            "stage_entered_at": timestamp,
            "updated_at": timestamp,
        }
        if assigned_to_id is not None and assigned_to_id != entity.assignee_id:
            changes[ASSIGNEE_COLUMN[kind]] = assigned_to_id
            changes["assigned_at"] = timestamp

        milestone = MILESTONE_COLUMNS.get((kind, target_stage))
        if milestone is not None and milestone not in changes:
            changes[milestone] = timestamp
        if kind == EntityKind.LEAD and target_stage == LeadStage.VERIFIED:
            changes["verified_by_id"] = actor.user_id

        status = STATUS_ON_ENTRY.get((kind, target_stage))
        if status is not None:
            changes["status"] = status
        return changes

    def record_creation(
        self,
        kind: EntityKind,
        entity: PipelineEntity,
        actor: ActorUser,
        timestamp: datetime | None = None,
    ) -> StageHistoryEntry:
        return self.store.append_history(
            StageHistoryEntry(
                entity_kind=str(kind),
                entity_id=entity.id,
                from_stage=None,
                to_stage=entity.stage,
                actor_user_id=actor.user_id,
                assigned_to_id=entity.assignee_id,
                community_id=entity.community_id,
                occurred_at=timestamp or utcnow(),
            )
        )

    def record_transition(
        self,
        kind: EntityKind,
        entity: PipelineEntity,
        from_stage: str,
        to_stage: str,
        actor: ActorUser,
        timestamp: datetime,
    ) -> StageHistoryEntry:
        return self.store.append_history(
            StageHistoryEntry(
                entity_kind=str(kind),
                entity_id=entity.id,
                from_stage=from_stage,
                to_stage=to_stage,
                actor_user_id=actor.user_id,
                assigned_to_id=entity.assignee_id,
                community_id=entity.community_id,
                occurred_at=timestamp,
            )
        )

    def assignee_changes(self, kind: EntityKind, assigned_to_id: str | None, timestamp: datetime) -> dict[str, Any]:
        """Column values for handing an entity to another person without moving it."""

        return {
            ASSIGNEE_COLUMN[kind]: assigned_to_id,
            "assigned_at": timestamp if assigned_to_id is not None else None,
            "updated_at": timestamp,
        }

    def record_reassignment(
        self,
        kind: EntityKind,
        entity: PipelineEntity,
        actor: ActorUser,
        timestamp: datetime,
    ) -> StageHistoryEntry:
        # Same-stage entries mark a change of assignee.
        return self.record_transition(kind, entity, entity.stage, entity.stage, actor, timestamp)

    @staticmethod
    def days_in_current_stage(entity: PipelineEntity, now: datetime | None = None) -> int:
        reference = as_utc(now or utcnow())
        elapsed = reference - as_utc(entity.stage_entered_at)
        return max(0, elapsed.days)

    def history(self, kind: EntityKind, entity_id: uuid.UUID) -> list[StageHistoryEntry]:
        return self.store.history_for(kind, [entity_id]).get(entity_id, [])

    def conversion_interval(
        self,
        kind: EntityKind,
        entity: PipelineEntity,
        entries: Sequence[StageHistoryEntry] | None = None,
    ) -> timedelta | None:
        """Time from entering the initial stage to reaching the terminal one.

        Falls back to `created_at` and `stage_entered_at` for entities whose
        history predates the tracker.
        """

        terminal = self.graph.terminal_stage(kind)
        if entity.stage != terminal:
            return None
        if entries is None:
            entries = self.history(kind, entity.id)

        initial = self.graph.initial_stage(kind)
        started = next((item.occurred_at for item in entries if item.to_stage == initial), entity.created_at)
        finished = next(
            (
                item.occurred_at
                for item in reversed(entries)
                if item.to_stage == terminal and item.from_stage != terminal
            ),
            entity.stage_entered_at,
        )
        return max(as_utc(finished) - as_utc(started), timedelta(0))
