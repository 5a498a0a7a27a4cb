from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from commercial_api import audit, events
from commercial_api.core.database import Base
from commercial_api.pipeline.actor import ActorUser
from commercial_api.pipeline.errors import (
    AssignmentRequiredError,
    ConflictError,
    EntityArchivedError,
    EntityNotFoundError,
    ForbiddenError,
    InvalidTransitionError,
    UnknownStageError,
)
from commercial_api.pipeline.models import PipelineCompany, PipelineLead, StaffUser, StageHistoryEntry
from commercial_api.pipeline.permissions import StaffRole
from commercial_api.pipeline.repository import SqlPipelineStore
from commercial_api.pipeline.stages import STAGE_GRAPH, CompanyStage, EntityKind, LeadStage
from commercial_api.pipeline.transitions import TransitionOutcome, TransitionValidator

FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)

ADMIN = ActorUser(user_id="admin-1", role=StaffRole.ADMIN)
CRM = ActorUser(user_id="crm-1", role=StaffRole.CRM_COMMERCIAL, community_id="community-a")
MANAGER = ActorUser(user_id="am-1", role=StaffRole.ACCOUNT_MANAGER_STANDARD, community_id="community-a")
OTHER_MANAGER = ActorUser(user_id="am-2", role=StaffRole.ACCOUNT_MANAGER_STRATEGIC, community_id="community-a")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    session.add_all(
        [
            StaffUser(id="admin-1", name="Admin", role=StaffRole.ADMIN.value),
            StaffUser(id="crm-1", name="Commercial", role=StaffRole.CRM_COMMERCIAL.value, community_id="community-a"),
            StaffUser(
                id="am-1",
                name="Manager One",
                role=StaffRole.ACCOUNT_MANAGER_STANDARD.value,
                community_id="community-a",
                supervisor_id="crm-1",
            ),
            StaffUser(
                id="am-2",
                name="Manager Two",
                role=StaffRole.ACCOUNT_MANAGER_STRATEGIC.value,
                community_id="community-a",
                supervisor_id="crm-1",
            ),
            StaffUser(id="am-gone", name="Former", role=StaffRole.ACCOUNT_MANAGER_STANDARD.value, is_active=False),
        ]
    )
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


def _validator(session: Session, store: SqlPipelineStore | None = None) -> TransitionValidator:
    return TransitionValidator(store or SqlPipelineStore(session), clock=lambda: FIXED_NOW)


def _lead(session: Session, stage: str = LeadStage.NEW, **overrides: Any) -> PipelineLead:
    values: dict[str, Any] = {
        "company_name": "Acme Solar",
        "contact_name": "Jamie Vidal",
        "email": "jamie@acme.example.com",
        "stage": stage,
        "estimated_value": Decimal("5000"),
        "community_id": "community-a",
        "stage_entered_at": FIXED_NOW - timedelta(days=3),
    }
    values.update(overrides)
    lead = PipelineLead(**values)
    session.add(lead)
    session.commit()
    return lead


def _company(session: Session, stage: str = CompanyStage.CREATED, **overrides: Any) -> PipelineCompany:
    values: dict[str, Any] = {"name": "Acme Solar", "email": "ops@acme.example.com", "stage": stage, "community_id": "community-a"}
    values.update(overrides)
    company = PipelineCompany(**values)
    session.add(company)
    session.commit()
    return company


def _history(session: Session, entity_id: uuid.UUID) -> list[StageHistoryEntry]:
    return list(
        session.scalars(
            select(StageHistoryEntry)
            .where(StageHistoryEntry.entity_id == entity_id)
            .order_by(StageHistoryEntry.occurred_at, StageHistoryEntry.id)
        ).all()
    )


def test_assigning_transition_sets_assignee_stage_and_history(db_session: Session) -> None:
    lead = _lead(db_session)

    outcome = _validator(db_session).attempt_transition(
        EntityKind.LEAD,
        lead.id,
        LeadStage.ASSIGNED,
        CRM,
        expected_current_stage=LeadStage.NEW,
        assigned_to_id="am-1",
    )

    updated = outcome.entity
    assert updated.stage == LeadStage.ASSIGNED
    assert updated.assigned_to_id == "am-1"
    assert updated.row_version == 2
    assert updated.stage_entered_at.replace(tzinfo=timezone.utc) == FIXED_NOW
    assert updated.assigned_at is not None
    assert outcome.from_stage == LeadStage.NEW

    history = _history(db_session, lead.id)
    assert [(item.from_stage, item.to_stage) for item in history] == [("NEW", "ASSIGNED")]
    assert history[0].actor_user_id == "crm-1"
    assert history[0].assigned_to_id == "am-1"

    assert events.published_events[-1]["event_type"] == "crm.pipeline.stage_changed"
    assert events.published_events[-1]["payload"]["to_stage"] == "ASSIGNED"
    assert audit.audit_entries[-1]["action"] == "transition"


@pytest.mark.parametrize("kind", list(EntityKind))
def test_only_single_forward_steps_are_accepted(db_session: Session, kind: EntityKind) -> None:
    stages = STAGE_GRAPH.stages(kind)
    validator = _validator(db_session)
    for index, current in enumerate(stages[:-1]):
        if kind == EntityKind.LEAD:
            entity = _lead(db_session, stage=current, assigned_to_id="am-1")
        else:
            entity = _company(db_session, stage=current, account_manager_id="am-1")
        for target in stages:
            if target == stages[index + 1]:
                continue
            with pytest.raises(InvalidTransitionError):
                validator.attempt_transition(kind, entity.id, target, ADMIN, expected_current_stage=current)
        db_session.refresh(entity)
        assert entity.stage == current
        assert entity.row_version == 1


def test_terminal_company_stage_accepts_nothing(db_session: Session) -> None:
    company = _company(db_session, stage=CompanyStage.ACTIVE, account_manager_id="am-1")
    for target in STAGE_GRAPH.stages(EntityKind.COMPANY):
        with pytest.raises(InvalidTransitionError):
            _validator(db_session).attempt_transition(
                EntityKind.COMPANY, company.id, target, ADMIN, expected_current_stage=CompanyStage.ACTIVE
            )


@pytest.mark.parametrize("actor", [ADMIN, CRM, MANAGER])
def test_contracted_lead_is_archived_for_every_role(db_session: Session, actor: ActorUser) -> None:
    lead = _lead(db_session, stage=LeadStage.CONTRACTED, assigned_to_id="am-1")
    for target in STAGE_GRAPH.stages(EntityKind.LEAD):
        with pytest.raises(EntityArchivedError):
            _validator(db_session).attempt_transition(
                EntityKind.LEAD, lead.id, target, actor, expected_current_stage=LeadStage.CONTRACTED
            )


def test_archived_check_runs_before_stage_validation(db_session: Session) -> None:
    lead = _lead(db_session, stage=LeadStage.CONTRACTED, assigned_to_id="am-1")
    with pytest.raises(EntityArchivedError):
        _validator(db_session).attempt_transition(EntityKind.LEAD, lead.id, "NOT_A_STAGE", CRM)


def test_unknown_stage_ids_are_rejected(db_session: Session) -> None:
    lead = _lead(db_session)
    with pytest.raises(UnknownStageError):
        _validator(db_session).attempt_transition(EntityKind.LEAD, lead.id, "WON", ADMIN, expected_current_stage="NEW")
    with pytest.raises(UnknownStageError):
        _validator(db_session).attempt_transition(
            EntityKind.LEAD, lead.id, LeadStage.ASSIGNED, ADMIN, expected_current_stage="OPEN"
        )


def test_leaving_initial_stage_requires_an_assignee(db_session: Session) -> None:
    lead = _lead(db_session)
    with pytest.raises(AssignmentRequiredError) as exc_info:
        _validator(db_session).attempt_transition(
            EntityKind.LEAD, lead.id, LeadStage.ASSIGNED, CRM, expected_current_stage=LeadStage.NEW
        )
    assert isinstance(exc_info.value, InvalidTransitionError)

    company = _company(db_session)
    with pytest.raises(AssignmentRequiredError):
        _validator(db_session).attempt_transition(
            EntityKind.COMPANY, company.id, CompanyStage.ASSIGNED, CRM, expected_current_stage=CompanyStage.CREATED
        )


def test_unknown_or_inactive_assignee_is_not_found(db_session: Session) -> None:
    lead = _lead(db_session)
    for assignee in ("nobody", "am-gone"):
        with pytest.raises(EntityNotFoundError):
            _validator(db_session).attempt_transition(
                EntityKind.LEAD,
                lead.id,
                LeadStage.ASSIGNED,
                CRM,
                expected_current_stage=LeadStage.NEW,
                assigned_to_id=assignee,
            )


def test_role_without_capability_is_forbidden(db_session: Session) -> None:
    lead = _lead(db_session, stage=LeadStage.IN_PROGRESS, assigned_to_id="am-1")
    with pytest.raises(ForbiddenError):
        _validator(db_session).attempt_transition(
            EntityKind.LEAD,
            lead.id,
            LeadStage.PENDING_VERIFICATION,
            CRM,
            expected_current_stage=LeadStage.IN_PROGRESS,
        )

    verifying = _lead(db_session, stage=LeadStage.PENDING_VERIFICATION, assigned_to_id="am-1")
    with pytest.raises(ForbiddenError):
        _validator(db_session).attempt_transition(
            EntityKind.LEAD,
            verifying.id,
            LeadStage.VERIFIED,
            MANAGER,
            expected_current_stage=LeadStage.PENDING_VERIFICATION,
        )


def test_other_community_is_forbidden_for_scoped_actor(db_session: Session) -> None:
    lead = _lead(db_session, community_id="community-b")
    with pytest.raises(ForbiddenError):
        _validator(db_session).attempt_transition(
            EntityKind.LEAD,
            lead.id,
            LeadStage.ASSIGNED,
            CRM,
            expected_current_stage=LeadStage.NEW,
            assigned_to_id="am-1",
        )
    assert audit.audit_entries[-1]["action"] == "rls.denied"

    outcome = _validator(db_session).attempt_transition(
        EntityKind.LEAD,
        lead.id,
        LeadStage.ASSIGNED,
        ADMIN,
        expected_current_stage=LeadStage.NEW,
        assigned_to_id="am-1",
    )
    assert outcome.entity.stage == LeadStage.ASSIGNED


def test_account_manager_acts_only_on_own_book(db_session: Session) -> None:
    lead = _lead(db_session, stage=LeadStage.ASSIGNED, assigned_to_id="am-1")
    with pytest.raises(ForbiddenError):
        _validator(db_session).attempt_transition(
            EntityKind.LEAD, lead.id, LeadStage.IN_PROGRESS, OTHER_MANAGER, expected_current_stage=LeadStage.ASSIGNED
        )

    outcome = _validator(db_session).attempt_transition(
        EntityKind.LEAD, lead.id, LeadStage.IN_PROGRESS, MANAGER, expected_current_stage=LeadStage.ASSIGNED
    )
    assert outcome.entity.stage == LeadStage.IN_PROGRESS


def test_second_request_with_same_observed_stage_conflicts(db_session: Session) -> None:
    lead = _lead(db_session, stage=LeadStage.IN_PROGRESS, assigned_to_id="am-1")

    first = _validator(db_session).attempt_transition(
        EntityKind.LEAD,
        lead.id,
        LeadStage.PENDING_VERIFICATION,
        MANAGER,
        expected_current_stage=LeadStage.IN_PROGRESS,
    )
    assert first.entity.stage == LeadStage.PENDING_VERIFICATION

    with pytest.raises(ConflictError) as exc_info:
        _validator(db_session).attempt_transition(
            EntityKind.LEAD,
            lead.id,
            LeadStage.PENDING_VERIFICATION,
            ADMIN,
            expected_current_stage=LeadStage.IN_PROGRESS,
        )
    assert exc_info.value.retryable
    assert exc_info.value.details["actual_stage"] == LeadStage.PENDING_VERIFICATION
    assert len(_history(db_session, lead.id)) == 1


class _RacingStore(SqlPipelineStore):
    """Moves the entity on behalf of another actor right before the conditional update."""

    def save_stage(self, kind, entity_id, *, expected_stage, changes):  # type: ignore[no-untyped-def]
        self.session.execute(
            update(PipelineLead)
            .where(PipelineLead.id == entity_id)
            .values(stage=LeadStage.PENDING_VERIFICATION, row_version=PipelineLead.row_version + 1)
        )
        return super().save_stage(kind, entity_id, expected_stage=expected_stage, changes=changes)


def test_conditional_update_detects_concurrent_move(db_session: Session) -> None:
    lead = _lead(db_session, stage=LeadStage.IN_PROGRESS, assigned_to_id="am-1")
    lead_id = lead.id

    with pytest.raises(ConflictError):
        _validator(db_session, _RacingStore(db_session)).attempt_transition(
            EntityKind.LEAD,
            lead_id,
            LeadStage.PENDING_VERIFICATION,
            MANAGER,
            expected_current_stage=LeadStage.IN_PROGRESS,
        )

    assert _history(db_session, lead_id) == []
    persisted = db_session.get(PipelineLead, lead_id)
    assert persisted is not None
    assert persisted.stage == LeadStage.IN_PROGRESS


def test_milestones_and_status_follow_stage_entry(db_session: Session) -> None:
    lead = _lead(db_session, stage=LeadStage.PENDING_VERIFICATION, assigned_to_id="am-1")
    validator = _validator(db_session)

    verified = validator.attempt_transition(
        EntityKind.LEAD, lead.id, LeadStage.VERIFIED, CRM, expected_current_stage=LeadStage.PENDING_VERIFICATION
    ).entity
    assert verified.verified_by_id == "crm-1"
    assert verified.verified_at is not None
    assert verified.status == "open"

    pre_contract = validator.attempt_transition(
        EntityKind.LEAD, lead.id, LeadStage.PRE_CONTRACT, CRM, expected_current_stage=LeadStage.VERIFIED
    ).entity
    assert pre_contract.pre_contract_at is not None

    company = _company(db_session, stage=CompanyStage.ONBOARDING, account_manager_id="am-1")
    active = validator.attempt_transition(
        EntityKind.COMPANY, company.id, CompanyStage.ACTIVE, MANAGER, expected_current_stage=CompanyStage.ONBOARDING
    ).entity
    assert active.status == "approved"
    assert active.onboarding_completed_at is not None


def test_missing_entity_is_not_found(db_session: Session) -> None:
    with pytest.raises(EntityNotFoundError):
        _validator(db_session).attempt_transition(EntityKind.COMPANY, uuid.uuid4(), CompanyStage.ASSIGNED, ADMIN)


def test_history_entries_cannot_be_rewritten(db_session: Session) -> None:
    lead = _lead(db_session)
    _validator(db_session).attempt_transition(
        EntityKind.LEAD,
        lead.id,
        LeadStage.ASSIGNED,
        ADMIN,
        expected_current_stage=LeadStage.NEW,
        assigned_to_id="am-1",
    )
    entry = _history(db_session, lead.id)[0]
    entry.to_stage = LeadStage.CONTRACTED
    with pytest.raises(ValueError):
        db_session.flush()
    db_session.rollback()


def test_capability_failure_wins_over_missing_assignee(db_session: Session) -> None:
    lead = _lead(db_session)
    with pytest.raises(ForbiddenError) as exc_info:
        _validator(db_session).attempt_transition(
            EntityKind.LEAD, lead.id, LeadStage.ASSIGNED, MANAGER, expected_current_stage=LeadStage.NEW
        )
    assert not isinstance(exc_info.value, AssignmentRequiredError)
    assert exc_info.value.details["role"] == StaffRole.ACCOUNT_MANAGER_STANDARD


def test_community_denial_wins_over_missing_assignee_and_is_audited(db_session: Session) -> None:
    lead = _lead(db_session, community_id="community-b")
    with pytest.raises(ForbiddenError) as exc_info:
        _validator(db_session).attempt_transition(
            EntityKind.LEAD, lead.id, LeadStage.ASSIGNED, CRM, expected_current_stage=LeadStage.NEW
        )
    assert exc_info.value.details["community_id"] == "community-b"

    denied = audit.audit_entries[-1]
    assert denied["action"] == "rls.denied"
    assert denied["community_id"] == "community-b"
    assert denied["after"]["resource"] == "crm.pipeline.lead"
    assert denied["after"]["action"] == "transition"
    assert denied["actor_user_id"] == "crm-1"


class _InterleavedStore(SqlPipelineStore):
    """Runs another session's move between this session's read and its conditional update."""

    def __init__(self, session: Session, competitor: Callable[[], None]) -> None:
        super().__init__(session)
        self.competitor = competitor

    def save_stage(self, kind, entity_id, *, expected_stage, changes):  # type: ignore[no-untyped-def]
        self.competitor()
        return super().save_stage(kind, entity_id, expected_stage=expected_stage, changes=changes)


def test_two_sessions_on_one_database_file_produce_one_winner(tmp_path: Path) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'pipeline.db'}")
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    with SessionLocal() as seed:
        lead_id = _lead(seed, stage=LeadStage.IN_PROGRESS, assigned_to_id="am-1").id

    first_session = SessionLocal()
    second_session = SessionLocal()
    winners: list[TransitionOutcome] = []

    def first_actor_moves() -> None:
        winners.append(
            _validator(first_session).attempt_transition(
                EntityKind.LEAD,
                lead_id,
                LeadStage.PENDING_VERIFICATION,
                MANAGER,
                expected_current_stage=LeadStage.IN_PROGRESS,
            )
        )

    try:
        with pytest.raises(ConflictError) as exc_info:
            _validator(second_session, _InterleavedStore(second_session, first_actor_moves)).attempt_transition(
                EntityKind.LEAD,
                lead_id,
                LeadStage.PENDING_VERIFICATION,
                ADMIN,
                expected_current_stage=LeadStage.IN_PROGRESS,
            )
        assert exc_info.value.details["actual_stage"] == LeadStage.PENDING_VERIFICATION
        assert [outcome.entity.stage for outcome in winners] == [LeadStage.PENDING_VERIFICATION]

        with SessionLocal() as check:
            history = _history(check, lead_id)
            assert [(item.from_stage, item.actor_user_id) for item in history] == [("IN_PROGRESS", "am-1")]
            persisted = check.get(PipelineLead, lead_id)
            assert persisted is not None
            assert persisted.row_version == 2
    finally:
        first_session.close()
        second_session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


def test_reassignment_keeps_stage_and_appends_same_stage_entry(db_session: Session) -> None:
    lead = _lead(db_session, stage=LeadStage.IN_PROGRESS, assigned_to_id="am-1")
    entered = lead.stage_entered_at

    outcome = _validator(db_session).attempt_reassignment(
        EntityKind.LEAD, lead.id, "am-2", ADMIN, expected_current_stage=LeadStage.IN_PROGRESS
    )

    assert outcome.changed
    assert outcome.previous_assignee_id == "am-1"
    assert outcome.entity.assigned_to_id == "am-2"
    assert outcome.entity.stage == LeadStage.IN_PROGRESS
    assert outcome.entity.stage_entered_at == entered
    assert outcome.entity.row_version == 2

    history = _history(db_session, lead.id)
    assert [(item.from_stage, item.to_stage, item.assigned_to_id) for item in history] == [
        ("IN_PROGRESS", "IN_PROGRESS", "am-2")
    ]
    assert events.published_events[-1]["event_type"] == "crm.pipeline.assignee_changed"
    assert events.published_events[-1]["payload"]["previous_assignee_id"] == "am-1"
    assert audit.audit_entries[-1]["action"] == "reassign"


def test_unassign_is_refused_once_the_initial_stage_is_left(db_session: Session) -> None:
    assigned = _lead(db_session, stage=LeadStage.ASSIGNED, assigned_to_id="am-1")
    with pytest.raises(AssignmentRequiredError):
        _validator(db_session).attempt_reassignment(
            EntityKind.LEAD, assigned.id, None, ADMIN, expected_current_stage=LeadStage.ASSIGNED
        )
    db_session.refresh(assigned)
    assert assigned.assigned_to_id == "am-1"

    queued = _lead(db_session, assigned_to_id="am-1")
    outcome = _validator(db_session).attempt_reassignment(
        EntityKind.LEAD, queued.id, None, CRM, expected_current_stage=LeadStage.NEW
    )
    assert outcome.entity.assigned_to_id is None
    assert outcome.entity.assigned_at is None


def test_reassignment_authorization_and_assignee_checks(db_session: Session) -> None:
    lead = _lead(db_session, stage=LeadStage.ASSIGNED, assigned_to_id="am-1")
    with pytest.raises(ForbiddenError):
        _validator(db_session).attempt_reassignment(
            EntityKind.LEAD, lead.id, "am-2", MANAGER, expected_current_stage=LeadStage.ASSIGNED
        )
    with pytest.raises(ForbiddenError):
        _validator(db_session).attempt_reassignment(
            EntityKind.LEAD, lead.id, "am-2", CRM, expected_current_stage=LeadStage.ASSIGNED
        )
    with pytest.raises(EntityNotFoundError):
        _validator(db_session).attempt_reassignment(
            EntityKind.LEAD, lead.id, "am-gone", ADMIN, expected_current_stage=LeadStage.ASSIGNED
        )

    foreign = _lead(db_session, community_id="community-b", assigned_to_id="am-1")
    with pytest.raises(ForbiddenError):
        _validator(db_session).attempt_reassignment(
            EntityKind.LEAD, foreign.id, "am-2", CRM, expected_current_stage=LeadStage.NEW
        )
    assert audit.audit_entries[-1]["after"]["action"] == "reassign"
    assert _history(db_session, lead.id) == []


def test_reassignment_to_current_assignee_changes_nothing(db_session: Session) -> None:
    company = _company(db_session, stage=CompanyStage.ONBOARDING, account_manager_id="am-1")
    outcome = _validator(db_session).attempt_reassignment(
        EntityKind.COMPANY, company.id, "am-1", ADMIN, expected_current_stage=CompanyStage.ONBOARDING
    )
    assert not outcome.changed
    assert outcome.entity.row_version == 1
    assert _history(db_session, company.id) == []
    assert events.published_events == []


def test_reassignment_with_stale_row_version_conflicts(db_session: Session) -> None:
    lead = _lead(db_session, stage=LeadStage.IN_PROGRESS, assigned_to_id="am-1")
    validator = _validator(db_session)
    validator.attempt_reassignment(
        EntityKind.LEAD, lead.id, "am-2", ADMIN, expected_current_stage=LeadStage.IN_PROGRESS, expected_row_version=1
    )

    with pytest.raises(ConflictError):
        validator.attempt_reassignment(
            EntityKind.LEAD,
            lead.id,
            "am-1",
            ADMIN,
            expected_current_stage=LeadStage.IN_PROGRESS,
            expected_row_version=1,
        )
    assert len(_history(db_session, lead.id)) == 1


def test_archived_lead_cannot_be_reassigned(db_session: Session) -> None:
    lead = _lead(db_session, stage=LeadStage.CONTRACTED, assigned_to_id="am-1")
    with pytest.raises(EntityArchivedError):
        _validator(db_session).attempt_reassignment(
            EntityKind.LEAD, lead.id, "am-2", ADMIN, expected_current_stage=LeadStage.CONTRACTED
        )
