"""Aggregate pipeline statistics derived from persisted entities and history."""

from __future__ import annotations

import time
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum

from opentelemetry import trace

from commercial_api.metrics import observe_stats_duration
from commercial_api.pipeline.assignment import AssignmentTracker
from commercial_api.pipeline.models import PipelineEntity, PipelineLead, StaffUser, StageHistoryEntry
from commercial_api.pipeline.repository import EntityFilter, PipelineStore
from commercial_api.pipeline.stages import STAGE_GRAPH, EntityKind, StageGraph
from commercial_api.platform.security.context import AuthContext

tracer = trace.get_tracer("commercial_api.pipeline")

SECONDS_PER_DAY = 86400


class StatsScopeKind(StrEnum):
    ACTOR = "actor"
    TEAM = "team"
    TENANT = "tenant"


@dataclass(frozen=True, slots=True)
class StatsScope:
    kind: EntityKind
    scope: StatsScopeKind
    user_id: str | None = None
    community_id: str | None = None


@dataclass
class PipelineStats:
    per_stage: dict[str, int]
    total_count: int = 0
    pending_count: int = 0
    in_progress_count: int = 0
    completed_count: int = 0
    total_value: Decimal = field(default_factory=lambda: Decimal("0"))
    conversion_rate: float = 0.0
    avg_days_to_convert: float | None = None


def conversion_rate(completed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    rate = round(completed / total * 100, 1)
    return min(100.0, max(0.0, rate))


class StatsAggregator:
    def __init__(self, store: PipelineStore, graph: StageGraph = STAGE_GRAPH, tracker: AssignmentTracker | None = None) -> None:
        self.store = store
        self.graph = graph
        self.tracker = tracker or AssignmentTracker(store, graph)

    def summarize(
        self,
        kind: EntityKind,
        entities: Sequence[PipelineEntity],
        histories: Mapping[uuid.UUID, Sequence[StageHistoryEntry]] | None = None,
    ) -> PipelineStats:
        per_stage = {stage: 0 for stage in self.graph.stages(kind)}
        initial = self.graph.initial_stage(kind)
        terminal = self.graph.terminal_stage(kind)
        total_value = Decimal("0")
        durations: list[float] = []

        for entity in entities:
            per_stage[entity.stage] = per_stage.get(entity.stage, 0) + 1
            if isinstance(entity, PipelineLead):
                total_value += Decimal(entity.estimated_value or 0)
            if entity.stage == terminal:
                entries = (histories or {}).get(entity.id, ())
                interval = self.tracker.conversion_interval(kind, entity, entries)
                if interval is not None:
                    durations.append(interval.total_seconds() / SECONDS_PER_DAY)

        total = len(entities)
        completed = per_stage[terminal]
        pending = per_stage[initial]
        return PipelineStats(
            per_stage=per_stage,
            total_count=total,
            pending_count=pending,
            in_progress_count=total - pending - completed,
            completed_count=completed,
            total_value=total_value,
            conversion_rate=conversion_rate(completed, total),
            avg_days_to_convert=round(sum(durations) / len(durations), 1) if durations else None,
        )

    def _filter_for(self, scope: StatsScope) -> EntityFilter:
        if scope.scope == StatsScopeKind.ACTOR:
            return EntityFilter(assignee_ids=(scope.user_id,) if scope.user_id else ())
        if scope.scope == StatsScopeKind.TEAM:
            if not scope.user_id:
                return EntityFilter(assignee_ids=())
            members = [scope.user_id, *(member.id for member in self.store.list_subordinates(scope.user_id))]
            return EntityFilter(assignee_ids=tuple(members))
        return EntityFilter(community_id=scope.community_id)

    def compute_stats(self, scope: StatsScope, ctx: AuthContext | None = None) -> PipelineStats:
        started = time.perf_counter()
        with tracer.start_as_current_span("crm.pipeline.stats") as span:
            span.set_attribute("pipeline.entity_kind", str(scope.kind))
            span.set_attribute("pipeline.stats_scope", str(scope.scope))
            entities = self.store.query_entities(scope.kind, self._filter_for(scope), ctx)
            terminal = self.graph.terminal_stage(scope.kind)
            histories = self.store.history_for(
                scope.kind,
                [entity.id for entity in entities if entity.stage == terminal],
            )
            stats = self.summarize(scope.kind, entities, histories)
            span.set_attribute("pipeline.total_count", stats.total_count)
        observe_stats_duration(str(scope.kind), str(scope.scope), time.perf_counter() - started)
        return stats

    def team_stats(
        self,
        kind: EntityKind,
        manager_id: str,
        ctx: AuthContext | None = None,
    ) -> list[tuple[StaffUser, PipelineStats]]:
        """One row per team member below `manager_id`, best conversion first."""

        rows = [
            (member, self.compute_stats(StatsScope(kind, StatsScopeKind.ACTOR, user_id=member.id), ctx))
            for member in self.store.list_subordinates(manager_id)
        ]
        rows.sort(key=lambda row: row[1].conversion_rate, reverse=True)
        return rows
