from contextlib import asynccontextmanager
import logging

import uvicorn
from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from dealdesk.api.routes import router as api_router
from dealdesk.core.config import get_settings
from dealdesk.core.events import InternalEvent, event_bus
from dealdesk.logging import configure_logging
from dealdesk.middleware.correlation_id import CorrelationIdMiddleware
from dealdesk.middleware.rate_limit import PipelineMutationRateLimitMiddleware
from dealdesk.middleware.request_logging import RequestLoggingMiddleware
from dealdesk.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("dealdesk.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_pipeline_event(event: InternalEvent) -> None:
    envelope = event.payload
    payload = envelope.get("payload") or {}
    logger.info(
        "pipeline_event",
        extra={
            "event_name": event.name,
            "organization_id": envelope.get("organization_id"),
            "lead_id": payload.get("lead_id"),
            "from_stage": payload.get("from_stage"),
            "to_stage": payload.get("to_stage"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe("pipeline.*", _on_pipeline_event)
    event_bus.publish("system.started", {"service": "dealdesk"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(PipelineMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("dealdesk", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())


def run() -> None:
    uvicorn.run(
        "dealdesk.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.app_debug,
        log_config=None,
    )
