"""Fixed stage graphs for the two pipeline entity kinds."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType

from commercial_api.pipeline.errors import UnknownStageError


class EntityKind(StrEnum):
    LEAD = "lead"
    COMPANY = "company"


class LeadStage(StrEnum):
    NEW = "NEW"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    VERIFIED = "VERIFIED"
    PRE_CONTRACT = "PRE_CONTRACT"
    CONTRACTED = "CONTRACTED"


class CompanyStage(StrEnum):
    CREATED = "CREATED"
    ASSIGNED = "ASSIGNED"
    ONBOARDING = "ONBOARDING"
    ACTIVE = "ACTIVE"


@dataclass(frozen=True, slots=True)
class StageDefinition:
    id: str
    label: str
    allowed_transitions: frozenset[str]


def linear_chain(stages: Sequence[tuple[str, str]]) -> tuple[StageDefinition, ...]:
    """Build definitions where every stage moves only to the one after it."""

    definitions: list[StageDefinition] = []
    for index, (stage_id, label) in enumerate(stages):
        successor = stages[index + 1][0] if index + 1 < len(stages) else None
        definitions.append(
            StageDefinition(
                id=stage_id,
                label=label,
                allowed_transitions=frozenset({successor}) if successor else frozenset(),
            )
        )
    return tuple(definitions)


class StageGraph:
    """Read-only lookup over the per-kind stage definitions.

    Definitions are validated on construction: every edge points at a stage of
    the same kind, there is exactly one initial and one terminal stage, and the
    graph has no cycles.
    """

    def __init__(self, definitions: Mapping[EntityKind, Sequence[StageDefinition]]) -> None:
        self._order: dict[EntityKind, tuple[str, ...]] = {}
        self._definitions: dict[EntityKind, Mapping[str, StageDefinition]] = {}
        for kind, items in definitions.items():
            by_id = {item.id: item for item in items}
            if len(by_id) != len(items):
                raise ValueError(f"duplicate stage ids for {kind}")
            self._order[kind] = tuple(item.id for item in items)
            self._definitions[kind] = MappingProxyType(by_id)
            self._validate(kind)

    def _validate(self, kind: EntityKind) -> None:
        definitions = self._definitions[kind]
        incoming = {stage_id: 0 for stage_id in definitions}
        for definition in definitions.values():
            for target in definition.allowed_transitions:
                if target not in definitions:
                    raise ValueError(f"{kind} stage {definition.id} points at unknown stage {target}")
                incoming[target] += 1

        initial = [stage_id for stage_id, count in incoming.items() if count == 0]
        terminal = [stage_id for stage_id, item in definitions.items() if not item.allowed_transitions]
        if len(initial) != 1 or len(terminal) != 1:
            raise ValueError(f"{kind} graph needs exactly one initial and one terminal stage")

        visited: set[str] = set()
        current: str | None = initial[0]
        while current is not None:
            if current in visited:
                raise ValueError(f"{kind} graph contains a cycle at {current}")
            visited.add(current)
            successors = definitions[current].allowed_transitions
            if len(successors) > 1:
                raise ValueError(f"{kind} stage {current} branches")
            current = next(iter(successors), None)
        if visited != set(definitions):
            raise ValueError(f"{kind} graph has unreachable stages")

    @property
    def kinds(self) -> tuple[EntityKind, ...]:
        return tuple(self._order)

    def stages(self, kind: EntityKind) -> tuple[str, ...]:
        return self._order[kind]

    def definition(self, kind: EntityKind, stage: str) -> StageDefinition:
        definition = self._definitions[kind].get(stage)
        if definition is None:
            raise UnknownStageError(str(kind), str(stage))
        return definition

    def require_stage(self, kind: EntityKind, stage: str) -> str:
        return self.definition(kind, stage).id

    def allowed_transitions(self, kind: EntityKind, stage: str) -> frozenset[str]:
        return self.definition(kind, stage).allowed_transitions

    def is_terminal(self, kind: EntityKind, stage: str) -> bool:
        return not self.definition(kind, stage).allowed_transitions

    def label(self, kind: EntityKind, stage: str) -> str:
        return self.definition(kind, stage).label

    def initial_stage(self, kind: EntityKind) -> str:
        return self._order[kind][0]

    def terminal_stage(self, kind: EntityKind) -> str:
        return self._order[kind][-1]


LEAD_STAGES = linear_chain(
    [
        (LeadStage.NEW, "New"),
        (LeadStage.ASSIGNED, "Assigned"),
        (LeadStage.IN_PROGRESS, "In progress"),
        (LeadStage.PENDING_VERIFICATION, "Pending verification"),
        (LeadStage.VERIFIED, "Verified"),
        (LeadStage.PRE_CONTRACT, "Pre-contract"),
        (LeadStage.CONTRACTED, "Contracted"),
    ]
)

COMPANY_STAGES = linear_chain(
    [
        (CompanyStage.CREATED, "Created"),
        (CompanyStage.ASSIGNED, "Assigned"),
        (CompanyStage.ONBOARDING, "Onboarding"),
        (CompanyStage.ACTIVE, "Active"),
    ]
)

STAGE_GRAPH = StageGraph({EntityKind.LEAD: LEAD_STAGES, EntityKind.COMPANY: COMPANY_STAGES})
