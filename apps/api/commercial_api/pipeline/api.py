from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from commercial_api.context import get_correlation_id
from commercial_api.core.auth import AuthUser, get_current_user as get_auth_user
from commercial_api.core.context import get_request_context
from commercial_api.core.database import get_db
from commercial_api.pipeline.actor import ActorUser
from commercial_api.pipeline.errors import PipelineError
from commercial_api.pipeline.permissions import parse_role
from commercial_api.pipeline.schemas import (
    AssigneeRequest,
    BoardRead,
    CompanyCreate,
    CompanyRead,
    LeadCreate,
    LeadRead,
    PendingItemRead,
    ReassignmentRead,
    StageGraphRead,
    StageHistoryRead,
    StatsRead,
    StatsScopeName,
    TeamMemberStatsRead,
    TransitionRead,
    TransitionRequest,
    WorkloadRead,
)
from commercial_api.pipeline.service import pipeline_service
from commercial_api.pipeline.stages import EntityKind
from commercial_api.pipeline.stats import StatsScopeKind

router = APIRouter(prefix="/api/crm/pipeline", tags=["crm.pipeline"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    context = get_request_context(request)
    correlation_id = get_correlation_id() or (context.correlation_id if context is not None else None) or None
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def pipeline_error_response(request: Request, exc: PipelineError) -> JSONResponse:
    details = dict(exc.details)
    if exc.retryable:
        details["retryable"] = True
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=details,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    if auth_user.role is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    role = parse_role(auth_user.role)
    if role is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"unknown staff role: {auth_user.role}")

    context = get_request_context(request)
    correlation_id = get_correlation_id() or (context.correlation_id if context is not None else None) or None
    return ActorUser(
        user_id=auth_user.sub,
        role=role,
        community_id=auth_user.community_id,
        name=auth_user.name,
        correlation_id=correlation_id,
    )


@router.get("/stages", response_model=list[StageGraphRead])
def list_stage_graphs() -> list[StageGraphRead]:
    return pipeline_service.stage_graphs()


@router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return pipeline_service.create_lead(db, user, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.post("/companies", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(
    request: Request,
    dto: CompanyCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        return pipeline_service.create_company(db, user, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/{kind}/board", response_model=BoardRead)
def get_board(
    request: Request,
    kind: EntityKind,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BoardRead | JSONResponse:
    try:
        return pipeline_service.visible_board(db, user, kind)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/{kind}/stats", response_model=StatsRead)
def get_stats(
    request: Request,
    kind: EntityKind,
    scope: StatsScopeName = Query(default="actor"),
    user_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StatsRead | JSONResponse:
    try:
        return pipeline_service.stats(db, user, kind, StatsScopeKind(scope), user_id=user_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/{kind}/stats/team", response_model=list[TeamMemberStatsRead])
def get_team_stats(
    request: Request,
    kind: EntityKind,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TeamMemberStatsRead] | JSONResponse:
    try:
        return pipeline_service.team_stats(db, user, kind)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/{kind}/workload", response_model=WorkloadRead)
def get_workload(
    request: Request,
    kind: EntityKind,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkloadRead | JSONResponse:
    try:
        return pipeline_service.workload(db, user, kind)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/{kind}/pending", response_model=list[PendingItemRead])
def get_pending(
    request: Request,
    kind: EntityKind,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PendingItemRead] | JSONResponse:
    try:
        return pipeline_service.pending(db, user, kind)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/{kind}/{entity_id}", response_model=LeadRead | CompanyRead)
def get_entity(
    request: Request,
    kind: EntityKind,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | CompanyRead | JSONResponse:
    try:
        return pipeline_service.get_entity(db, user, kind, entity_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/{kind}/{entity_id}/history", response_model=list[StageHistoryRead])
def get_entity_history(
    request: Request,
    kind: EntityKind,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageHistoryRead] | JSONResponse:
    try:
        return pipeline_service.history(db, user, kind, entity_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.post("/{kind}/{entity_id}/transition", response_model=TransitionRead)
def transition_entity(
    request: Request,
    kind: EntityKind,
    entity_id: uuid.UUID,
    dto: TransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionRead | JSONResponse:
    try:
        return pipeline_service.transition(db, user, kind, entity_id, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.post("/{kind}/{entity_id}/assignee", response_model=ReassignmentRead)
def reassign_entity(
    request: Request,
    kind: EntityKind,
    entity_id: uuid.UUID,
    dto: AssigneeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ReassignmentRead | JSONResponse:
    try:
        return pipeline_service.reassign(db, user, kind, entity_id, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)
