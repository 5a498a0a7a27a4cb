from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from commercial_api.pipeline.stages import EntityKind

Priority = Literal["HIGH", "MEDIUM", "LOW"]
CompanyStatus = Literal["pending", "approved", "rejected", "suspended"]
StatsScopeName = Literal["actor", "team", "tenant"]


class LeadCreate(BaseModel):
    company_name: str = Field(min_length=1)
    contact_name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    sector: str | None = None
    priority: Priority = "MEDIUM"
    estimated_value: Decimal = Field(default=Decimal("0"), ge=0)
    score: int | None = Field(default=None, ge=0, le=100)
    assigned_to_id: str | None = None
    community_id: str | None = None


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    phone: str | None = None
    sector: str | None = None
    status: CompanyStatus = "pending"
    account_manager_id: str | None = None
    community_id: str | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: Literal["lead"] = "lead"
    id: UUID
    company_name: str
    contact_name: str | None
    email: str | None
    phone: str | None
    sector: str | None
    stage: str
    status: str
    priority: str
    estimated_value: Decimal
    score: int | None
    assigned_to_id: str | None
    community_id: str | None
    stage_entered_at: datetime
    assigned_at: datetime | None
    verified_at: datetime | None
    verified_by_id: str | None
    pre_contract_at: datetime | None
    contracted_at: datetime | None
    converted_company_id: UUID | None
    converted_at: datetime | None
    archived_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int
    days_in_stage: int = 0


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: Literal["company"] = "company"
    id: UUID
    name: str
    email: str
    phone: str | None
    sector: str | None
    stage: str
    status: str
    account_manager_id: str | None
    from_lead_id: UUID | None
    community_id: str | None
    stage_entered_at: datetime
    assigned_at: datetime | None
    onboarding_completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int
    days_in_stage: int = 0


EntityRead = LeadRead | CompanyRead


class TransitionRequest(BaseModel):
    target_stage: str = Field(min_length=1)
    expected_current_stage: str = Field(min_length=1)
    assigned_to_id: str | None = None


class TransitionRead(BaseModel):
    entity: EntityRead
    from_stage: str
    to_stage: str
    converted_company: CompanyRead | None = None


class AssigneeRequest(BaseModel):
    assigned_to_id: str | None
    expected_current_stage: str = Field(min_length=1)
    expected_row_version: int | None = Field(default=None, ge=1)


class ReassignmentRead(BaseModel):
    entity: EntityRead
    stage: str
    previous_assignee_id: str | None
    assignee_id: str | None
    changed: bool


class BoardColumnRead(BaseModel):
    id: str
    label: str
    entities: list[EntityRead]


class BoardRead(BaseModel):
    kind: EntityKind
    stages: list[BoardColumnRead]


class StageHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_kind: str
    entity_id: UUID
    from_stage: str | None
    to_stage: str
    actor_user_id: str
    assigned_to_id: str | None
    community_id: str | None
    occurred_at: datetime


class StatsRead(BaseModel):
    kind: EntityKind
    scope: StatsScopeName
    user_id: str | None = None
    community_id: str | None = None
    per_stage: dict[str, int]
    total_count: int
    pending_count: int
    in_progress_count: int
    completed_count: int
    total_value: Decimal
    conversion_rate: float
    avg_days_to_convert: float | None


class TeamMemberStatsRead(BaseModel):
    user_id: str
    name: str
    role: str
    stats: StatsRead


class StageDefinitionRead(BaseModel):
    id: str
    label: str
    allowed_transitions: list[str]
    is_terminal: bool


class StageGraphRead(BaseModel):
    kind: EntityKind
    initial_stage: str
    terminal_stage: str
    stages: list[StageDefinitionRead]


class WorkloadMemberRead(BaseModel):
    user_id: str
    name: str
    role: str
    active_count: int


class WorkloadRead(BaseModel):
    kind: EntityKind
    members: list[WorkloadMemberRead]
    unassigned_count: int
    unassigned: list[EntityRead]


class PendingItemRead(BaseModel):
    kind: EntityKind
    id: UUID
    name: str
    stage: str
    priority: str | None = None
    estimated_value: Decimal | None = None
    assigned_to_id: str | None
    days_in_stage: int
    stage_entered_at: datetime
