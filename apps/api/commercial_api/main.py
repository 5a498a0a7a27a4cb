from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from commercial_api.api.routes import router as api_router
from commercial_api.core.config import get_settings
from commercial_api.core.context import RequestContextMiddleware
from commercial_api.core.events import PIPELINE_EVENT_TYPES, InternalEvent, event_bus
from commercial_api.logging import configure_logging
from commercial_api.middleware.correlation_id import CorrelationIdMiddleware
from commercial_api.middleware.request_logging import RequestLoggingMiddleware
from commercial_api.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("commercial_api.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_pipeline_event(event: InternalEvent) -> None:
    body = event.payload.get("payload") or {}
    logger.debug(
        "pipeline_event",
        extra={
            "event_name": event.name,
            "entity_id": body.get("entity_id") or body.get("lead_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe_all(PIPELINE_EVENT_TYPES, _on_pipeline_event)
    event_bus.publish("system.started", {"service": "pipeline-api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", debug=settings.app_debug, lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("pipeline-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
