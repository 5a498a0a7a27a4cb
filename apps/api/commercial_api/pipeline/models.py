from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from commercial_api.core.database import Base
from commercial_api.pipeline.stages import CompanyStage, LeadStage


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class StaffUser(Base):
    __tablename__ = "crm_staff_user"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    role: Mapped[str] = mapped_column(String(48), nullable=False)
    community_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    supervisor_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("crm_staff_user.id", ondelete="SET NULL"),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_crm_staff_user_supervisor", "supervisor_id"),)


class PipelineLead(Base):
    __tablename__ = "crm_pipeline_lead"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_name: Mapped[str] = mapped_column(Text, nullable=False)
    contact_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    sector: Mapped[str | None] = mapped_column(Text, nullable=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default=LeadStage.NEW.value)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="open", server_default="open")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="MEDIUM", server_default="MEDIUM")
    estimated_value: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    assigned_to_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    community_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    stage_entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_by_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pre_contract_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    contracted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    converted_company_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    converted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    __table_args__ = (
        CheckConstraint("estimated_value >= 0", name="ck_crm_pipeline_lead_value_non_negative"),
        CheckConstraint("score IS NULL OR (score >= 0 AND score <= 100)", name="ck_crm_pipeline_lead_score_range"),
        Index("ix_crm_pipeline_lead_board", "community_id", "stage", "assigned_to_id"),
    )

    @property
    def assignee_id(self) -> str | None:
        return self.assigned_to_id


class PipelineCompany(Base):
    __tablename__ = "crm_pipeline_company"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    sector: Mapped[str | None] = mapped_column(Text, nullable=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default=CompanyStage.CREATED.value)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", server_default="pending")
    account_manager_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    from_lead_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_pipeline_lead.id", ondelete="RESTRICT"),
        nullable=True,
        unique=True,
    )
    community_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    stage_entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    onboarding_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    __table_args__ = (Index("ix_crm_pipeline_company_board", "community_id", "stage", "account_manager_id"),)

    @validates("from_lead_id")
    def _validate_from_lead_id(self, key: str, value: uuid.UUID | None) -> uuid.UUID | None:
        current = self.__dict__.get(key)
        if current is not None and value != current:
            raise ValueError("from_lead_id is write-once")
        return value

    @property
    def assignee_id(self) -> str | None:
        return self.account_manager_id


class StageHistoryEntry(Base):
    __tablename__ = "crm_pipeline_stage_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    from_stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_stage: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    assigned_to_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    community_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_crm_pipeline_stage_history_entity", "entity_kind", "entity_id", "occurred_at"),)


@event.listens_for(StageHistoryEntry, "before_update")
def _reject_history_update(mapper, connection, target) -> None:
    raise ValueError("stage history entries are append-only")


@event.listens_for(StageHistoryEntry, "before_delete")
def _reject_history_delete(mapper, connection, target) -> None:
    raise ValueError("stage history entries are append-only")


PipelineEntity = PipelineLead | PipelineCompany
