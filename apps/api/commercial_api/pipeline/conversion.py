from __future__ import annotations

import logging
import uuid
from datetime import datetime

from commercial_api import audit, events
from commercial_api.metrics import observe_conversion
from commercial_api.pipeline.actor import ActorUser
from commercial_api.pipeline.assignment import AssignmentTracker
from commercial_api.pipeline.errors import EntityArchivedError
from commercial_api.pipeline.models import PipelineCompany, PipelineLead, utcnow
from commercial_api.pipeline.repository import PipelineStore
from commercial_api.pipeline.stages import STAGE_GRAPH, EntityKind, StageGraph

logger = logging.getLogger("commercial_api.pipeline.conversion")


class ConversionLinker:
    """Turns a contracted Lead into a Company and archives the Lead.

    Runs inside the caller's transaction; `announce` is called once that
    transaction has committed.
    """

    def __init__(self, store: PipelineStore, tracker: AssignmentTracker, graph: StageGraph = STAGE_GRAPH) -> None:
        self.store = store
        self.tracker = tracker
        self.graph = graph

    def convert(self, lead: PipelineLead, actor: ActorUser, timestamp: datetime | None = None) -> PipelineCompany:
        if lead.converted_company_id is not None:
            raise EntityArchivedError(str(EntityKind.LEAD), str(lead.id))

        now = timestamp or utcnow()
        company = PipelineCompany(
            name=lead.company_name,
            email=lead.email or "",
            phone=lead.phone,
            sector=lead.sector,
            stage=self.graph.initial_stage(EntityKind.COMPANY),
            status="pending",
            from_lead_id=lead.id,
            community_id=lead.community_id,
            stage_entered_at=now,
            created_at=now,
            updated_at=now,
        )
        self.store.add_entity(company)
        self.tracker.record_creation(EntityKind.COMPANY, company, actor, now)

        lead.converted_company_id = company.id
        lead.converted_at = now
        lead.archived_at = now
        lead.row_version = lead.row_version + 1
        self.store.add_entity(lead)
        return company

    def announce(self, lead: PipelineLead, company: PipelineCompany, actor: ActorUser) -> None:
        observe_conversion()
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="crm.pipeline.lead",
            entity_id=str(lead.id),
            action="convert",
            before=None,
            after={"converted_company_id": str(company.id), "converted_at": lead.converted_at.isoformat()},
            correlation_id=actor.correlation_id,
            community_id=lead.community_id,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "crm.pipeline.lead.converted",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor.user_id,
                "community_id": lead.community_id,
                "payload": {
                    "lead_id": str(lead.id),
                    "company_id": str(company.id),
                },
                "version": 1,
                "correlation_id": actor.correlation_id,
            }
        )
        logger.info(
            "pipeline.lead.converted",
            extra={"entity_kind": str(EntityKind.LEAD), "entity_id": str(lead.id), "company_id": str(company.id)},
        )
