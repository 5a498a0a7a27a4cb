from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from commercial_api.core.config import get_settings
from commercial_api.core.database import Base, get_db
from commercial_api.main import app
from commercial_api.otel import setup_inmemory_otel
from commercial_api.pipeline.actor import ActorUser
from commercial_api.pipeline.api import get_current_user
from commercial_api.pipeline.models import StaffUser
from commercial_api.pipeline.permissions import StaffRole


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
    session.add(StaffUser(id="am-1", name="Ana", role=StaffRole.ACCOUNT_MANAGER_STANDARD.value))
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("pipeline-api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="admin-1",
            role=StaffRole.SUPER_ADMIN,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient) -> dict:
    response = client.post("/api/crm/pipeline/leads", json={"company_name": "OTel Lead", "estimated_value": 300})
    assert response.status_code == 201
    return response.json()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/pipeline/leads",
        json={"company_name": "Traced Lead"},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_transition_span_records_stage_move(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    lead = _create_lead(client)
    response = client.post(
        f"/api/crm/pipeline/lead/{lead['id']}/transition",
        json={"target_stage": "ASSIGNED", "expected_current_stage": "NEW", "assigned_to_id": "am-1"},
    )
    assert response.status_code == 200

    transition_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.pipeline.transition"]
    assert transition_spans
    assert any(
        span.attributes.get("pipeline.entity_kind") == "lead"
        and span.attributes.get("pipeline.entity_id") == lead["id"]
        and span.attributes.get("pipeline.from_stage") == "NEW"
        and span.attributes.get("pipeline.to_stage") == "ASSIGNED"
        and span.attributes.get("user.id") == "admin-1"
        for span in transition_spans
    )


def test_rejected_transition_span_has_error_status(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    lead = _create_lead(client)
    response = client.post(
        f"/api/crm/pipeline/lead/{lead['id']}/transition",
        json={"target_stage": "CONTRACTED", "expected_current_stage": "NEW"},
    )
    assert response.status_code == 422

    transition_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.pipeline.transition"]
    assert any(
        span.status.status_code == StatusCode.ERROR
        and span.attributes.get("pipeline.rejection") == "pipeline_invalid_transition"
        for span in transition_spans
    )


def test_stats_span_carries_scope(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    _create_lead(client)
    response = client.get("/api/crm/pipeline/lead/stats", params={"scope": "tenant"})
    assert response.status_code == 200

    stats_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.pipeline.stats"]
    assert stats_spans
    assert any(
        span.attributes.get("pipeline.entity_kind") == "lead"
        and span.attributes.get("pipeline.stats_scope") == "tenant"
        and span.attributes.get("pipeline.total_count") == 1
        for span in stats_spans
    )
