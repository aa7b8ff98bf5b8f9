from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from funnelcrm.api.routes import router as api_router
from funnelcrm.core.config import get_settings
from funnelcrm.core.context import RequestContextMiddleware
from funnelcrm.core.events import InternalEvent, event_bus
from funnelcrm.logging import configure_logging
from funnelcrm.middleware.correlation_id import CorrelationIdMiddleware
from funnelcrm.middleware.rate_limit import MutationRateLimitMiddleware
from funnelcrm.middleware.request_logging import RequestLoggingMiddleware
from funnelcrm.otel import get_fastapi_server_request_hook, setup_otel


settings = get_settings()
configure_logging(settings)
logger = logging.getLogger("funnelcrm.lifecycle")

_DOMAIN_EVENT_PATTERNS = ("crm.funnel.*", "crm.lead.*")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_domain_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload") or {}
    logger.info(
        "domain_event",
        extra={
            "event_name": event.name,
            "company_id": event.payload.get("company_id"),
            "actor_user_id": event.payload.get("actor_user_id"),
            "funnel_id": payload.get("funnel_id"),
            "lead_id": payload.get("lead_id"),
        },
    )


def register_event_handlers() -> None:
    event_bus.subscribe("system.started", _on_system_started)
    for pattern in _DOMAIN_EVENT_PATTERNS:
        event_bus.subscribe(pattern, _on_domain_event)


@asynccontextmanager
async def lifespan(app: FastAPI):
    register_event_handlers()
    event_bus.publish("system.started", {"service": settings.otel_service_name, "version": settings.app_version})
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
